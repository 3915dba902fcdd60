import logging
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from database.session import AsyncSessionLocal
from database.models.flow import FlowExecution, ExecutionLog

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("running", "waiting")


class StaleExecutionError(Exception):
    """Another invocation wrote the execution after we read it."""

    def __init__(self, execution_id: str, expected_version: int):
        self.execution_id = execution_id
        self.expected_version = expected_version
        super().__init__(f"Execution {execution_id} is no longer at version {expected_version}")


@dataclass
class LogEntry:
    node_id: str
    node_type: str
    result_data: dict
    created_at: datetime = field(default_factory=datetime.utcnow)


class ExecutionStore:

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def find_active(self, customer_id: str, channel_id: str):
        """The running or waiting execution of a customer on a channel, if any."""
        async with self.session_factory() as session:
            stmt = (
                select(FlowExecution)
                .where(
                    FlowExecution.customer_id == customer_id,
                    FlowExecution.whatsapp_config_id == channel_id,
                    FlowExecution.status.in_(ACTIVE_STATUSES),
                )
                .order_by(FlowExecution.started_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get(self, execution_id: str):
        async with self.session_factory() as session:
            return await session.get(FlowExecution, execution_id)

    async def create(self, flow_id: str, customer_id: str, channel_id: str, initial_node_id: str, variables: dict):
        """
        Creates a running execution positioned at ``initial_node_id``.
        Returns None when another non-terminal execution already exists for the
        customer (the partial unique index rejected the insert).
        """
        async with self.session_factory() as session:
            execution = FlowExecution(
                flow_id=flow_id,
                customer_id=customer_id,
                whatsapp_config_id=channel_id,
                current_node_id=initial_node_id,
                status="running",
                variables=dict(variables or {}),
                version=1,
            )
            session.add(execution)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"[ExecutionStore] Customer {customer_id} already has an active execution on {channel_id}")
                return None
            return execution

    async def update(self, execution, patch: dict, logs=()):
        """
        Compare-and-swap write: applies ``patch`` only if the stored version is
        still the one ``execution`` was read at, and appends ``logs`` in the same
        transaction. Raises StaleExecutionError otherwise; nothing is written.
        """
        expected_version = execution.version
        async with self.session_factory() as session:
            stmt = (
                update(FlowExecution)
                .where(FlowExecution.id == execution.id, FlowExecution.version == expected_version)
                .values(**patch, version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                raise StaleExecutionError(execution.id, expected_version)

            for entry in logs:
                session.add(ExecutionLog(
                    execution_id=execution.id,
                    node_id=entry.node_id,
                    node_type=entry.node_type,
                    result_data=entry.result_data,
                    created_at=entry.created_at,
                ))
            await session.commit()

        for key, value in patch.items():
            setattr(execution, key, value)
        execution.version = expected_version + 1
        return execution

    async def append_log(self, execution_id: str, node_id: str, node_type: str, result: dict):
        async with self.session_factory() as session:
            session.add(ExecutionLog(execution_id=execution_id, node_id=node_id, node_type=node_type, result_data=result))
            await session.commit()

    async def list_logs(self, execution_id: str) -> list:
        async with self.session_factory() as session:
            stmt = (
                select(ExecutionLog)
                .where(ExecutionLog.execution_id == execution_id)
                .order_by(ExecutionLog.created_at)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())


execution_store = ExecutionStore()
