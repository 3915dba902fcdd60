import copy
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from services.db_service import get_whatsapp_config
from services.execution_store import execution_store, LogEntry, StaleExecutionError
from services.graph_store import graph_store
from services.node_handlers import NodeDispatcher, DispatchContext
from services.node_schemas import parse_node_config
from services.trigger_matcher import find_matching_flow
from services.variables import set_nested_value
from services.whatsapp_service import ChannelCredentials

logger = logging.getLogger(__name__)

FLOW_MAX_STEPS = int(os.getenv("FLOW_MAX_STEPS", "500"))


class FlowEngineError(Exception):
    pass


class FlowConfigurationError(FlowEngineError):
    """The flow cannot be started: it is missing or has no trigger node."""


class NodeDispatchError(FlowEngineError):
    """A node handler raised. Nothing from the current invocation was persisted."""

    def __init__(self, node_id: str, node_type: str, cause: Exception):
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
        super().__init__(f"Node {node_id} ({node_type}) failed: {cause}")


@dataclass
class EngineOutcome:
    action: str  # started, resumed, ignored, no_match, conflict
    execution_id: str = None
    status: str = None


def _naive_utc(value: datetime):
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def observed_variables(message) -> dict:
    """Variables refreshed from every inbound message. Absent fields keep their previous value."""
    observed = {
        "last_message": message.text,
        "last_message_type": message.type,
        "last_button_id": message.button_id,
        "last_list_row_id": message.list_row_id,
        "message_timestamp": message.timestamp,
    }
    return {key: value for key, value in observed.items() if value is not None}


def schedule_timer_resume(execution_id: str, delay_seconds: float, version: int):
    resume_flow_execution.apply_async(args=[execution_id, version], countdown=delay_seconds)
    logger.info(f"[FlowEngine] Scheduled resume of execution {execution_id} in {delay_seconds}s")


class FlowEngine:
    """
    Walks a flow graph for one customer, one inbound message at a time.
    State between messages lives only in the FlowExecution row.
    """

    def __init__(self, graph_store=graph_store, execution_store=execution_store, dispatcher=None,
                 scheduler=None, max_steps: int = None, clock=None):
        self.graph_store = graph_store
        self.execution_store = execution_store
        self.dispatcher = dispatcher or NodeDispatcher()
        self.scheduler = scheduler or schedule_timer_resume
        self.max_steps = max_steps or FLOW_MAX_STEPS
        self.clock = clock or datetime.utcnow

    async def handle_inbound(self, channel: dict, customer_id: str, message, initial_variables: dict = None) -> EngineOutcome:
        """
        Entry point for an inbound message. Continues the customer's active
        execution if there is one, otherwise starts the first matching flow.
        """
        channel_id = channel["id"]
        execution = await self.execution_store.find_active(customer_id, channel_id)
        if execution:
            return await self._continue(execution, channel, customer_id, message)

        flows = await self.graph_store.find_active_flows(channel_id)
        flow = find_matching_flow(flows, message.text)
        if not flow:
            logger.info(f"[FlowEngine] No flow matched message from {customer_id} on {channel_id}")
            return EngineOutcome("no_match")

        return await self.start(flow.id, channel, customer_id, message, initial_variables)

    async def start(self, flow_id: str, channel: dict, customer_id: str, message, initial_variables: dict = None) -> EngineOutcome:
        graph = await self.graph_store.load_flow(flow_id)
        if graph is None:
            raise FlowConfigurationError(f"Flow {flow_id} not found")
        trigger = graph.trigger_node()
        if trigger is None:
            raise FlowConfigurationError(f"Flow {flow_id} has no trigger node")

        variables = dict(initial_variables or {})
        variables.update(observed_variables(message))

        execution = await self.execution_store.create(flow_id, customer_id, channel["id"], trigger.id, variables)
        if execution is None:
            # Lost the race on the active-execution index
            existing = await self.execution_store.find_active(customer_id, channel["id"])
            if existing is not None and existing.status == "waiting":
                return await self._continue(existing, channel, customer_id, message)
            return EngineOutcome("conflict", existing.id if existing else None, existing.status if existing else None)

        logger.info(f"[FlowEngine] Started execution {execution.id} of flow {flow_id} for {customer_id}")
        logs = [LogEntry(trigger.id, trigger.node_type, {"triggered": True, "message": message.text})]
        edge = graph.first_edge(trigger.id)
        return await self._run(
            graph, execution, edge.target_node_id if edge else None,
            self._context(execution, channel, copy.deepcopy(execution.variables)), logs, "started",
        )

    async def _continue(self, execution, channel: dict, customer_id: str, message) -> EngineOutcome:
        if execution.status == "waiting" and execution.waiting_for == "timer":
            return await self._record_during_timer(execution, message)
        if execution.status == "waiting":
            return await self.resume(execution, channel, message)
        return await self._restart(execution, channel, message)

    async def _record_during_timer(self, execution, message) -> EngineOutcome:
        variables = copy.deepcopy(execution.variables or {})
        variables.update(observed_variables(message))
        log = LogEntry(execution.current_node_id, "delay", {"ignored_message": message.text})
        try:
            await self.execution_store.update(execution, {"variables": variables}, [log])
        except StaleExecutionError as e:
            logger.info(f"[FlowEngine] {e}, dropping message")
            return EngineOutcome("conflict", execution.id)
        # The update bumped the version, so the pending timer is now stale
        remaining = (execution.resume_at - self.clock()).total_seconds() if execution.resume_at else 0
        self._schedule(execution, max(remaining, 0))
        return EngineOutcome("ignored", execution.id, execution.status)

    async def resume(self, execution, channel: dict, message) -> EngineOutcome:
        """Continues an execution waiting for a reply, binding the reply when the node asks for it."""
        graph = await self._load_graph(execution.flow_id)
        variables = copy.deepcopy(execution.variables or {})
        variables.update(observed_variables(message))

        node = graph.get_node(execution.current_node_id)
        logs = []
        next_node_id = None
        if node is None:
            logger.warning(f"[FlowEngine] Waiting node {execution.current_node_id} no longer exists, completing {execution.id}")
        else:
            config = parse_node_config(node.node_type, node.config)
            variable_name = getattr(config, "variable_name", None)
            if variable_name:
                set_nested_value(variables, variable_name, message.text)
            logs.append(LogEntry(node.id, node.node_type, {"resumed": True, "reply": message.text}))
            # Leaving a wait point ignores handles
            edge = graph.first_edge(node.id)
            next_node_id = edge.target_node_id if edge else None

        logger.info(f"[FlowEngine] Resuming execution {execution.id} at node {execution.current_node_id}")
        return await self._run(graph, execution, next_node_id, self._context(execution, channel, variables), logs, "resumed")

    async def _restart(self, execution, channel: dict, message) -> EngineOutcome:
        # A running row means an earlier invocation failed before its first checkpoint
        graph = await self._load_graph(execution.flow_id)
        variables = copy.deepcopy(execution.variables or {})
        variables.update(observed_variables(message))

        node = graph.get_node(execution.current_node_id)
        next_node_id = node.id if node else None
        if node is not None and node.node_type == "trigger":
            edge = graph.first_edge(node.id)
            next_node_id = edge.target_node_id if edge else None

        logger.info(f"[FlowEngine] Restarting running execution {execution.id} from node {execution.current_node_id}")
        return await self._run(graph, execution, next_node_id, self._context(execution, channel, variables), [], "resumed")

    async def resume_timer(self, execution_id: str, expected_version: int = None) -> EngineOutcome:
        """
        Continues an execution parked on a delay node. Timers for an execution
        that has since moved on are dropped; early timers are rescheduled.
        """
        execution = await self.execution_store.get(execution_id)
        if execution is None or execution.status != "waiting" or execution.waiting_for != "timer":
            logger.info(f"[FlowEngine] Timer for execution {execution_id} is no longer relevant")
            return EngineOutcome("ignored", execution_id, execution.status if execution else None)
        if expected_version is not None and execution.version != expected_version:
            logger.info(f"[FlowEngine] Stale timer for execution {execution_id} (version {expected_version} != {execution.version})")
            return EngineOutcome("ignored", execution_id, execution.status)

        now = self.clock()
        if execution.resume_at and execution.resume_at > now:
            remaining = (execution.resume_at - now).total_seconds()
            logger.info(f"[FlowEngine] Timer for execution {execution_id} fired {remaining:.1f}s early, rescheduling")
            self._schedule(execution, remaining)
            return EngineOutcome("ignored", execution_id, execution.status)

        graph = await self._load_graph(execution.flow_id)
        channel = await get_whatsapp_config(execution.whatsapp_config_id)
        if channel is None:
            logger.warning(f"[FlowEngine] Channel {execution.whatsapp_config_id} unavailable, sends for {execution_id} will fail")
            channel = {"id": execution.whatsapp_config_id}

        edge = graph.next_edge(execution.current_node_id)
        logs = [LogEntry(execution.current_node_id, "delay", {"timer_fired": True})]
        variables = copy.deepcopy(execution.variables or {})
        return await self._run(
            graph, execution, edge.target_node_id if edge else None,
            self._context(execution, channel, variables), logs, "resumed",
        )

    async def _load_graph(self, flow_id: str):
        graph = await self.graph_store.load_flow(flow_id)
        if graph is None:
            raise FlowConfigurationError(f"Flow {flow_id} not found")
        return graph

    def _context(self, execution, channel: dict, variables: dict) -> DispatchContext:
        return DispatchContext(
            variables=variables,
            customer_id=execution.customer_id,
            channel_id=execution.whatsapp_config_id,
            credentials=ChannelCredentials.from_config(channel),
            execution_id=execution.id,
        )

    async def _run(self, graph, execution, node_id, ctx: DispatchContext, logs: list, action: str) -> EngineOutcome:
        """
        Dispatch loop. Runs until a wait point, an end node or a dead end, then
        writes the execution and the buffered log entries in one checkpoint.
        """
        last_node_id = execution.current_node_id
        steps = 0

        while node_id is not None:
            node = graph.get_node(node_id)
            if node is None:
                logger.warning(f"[FlowEngine] Edge points to missing node {node_id} in flow {graph.flow.id}")
                break

            steps += 1
            if steps > self.max_steps:
                logger.warning(f"[FlowEngine] Execution {execution.id} exceeded {self.max_steps} steps, completing")
                logs.append(LogEntry(node.id, node.node_type, {"aborted": "max_steps"}))
                break

            try:
                result = await self.dispatcher.dispatch(node, ctx)
            except Exception as e:
                logger.error(f"[FlowEngine] Node {node.id} ({node.node_type}) failed in execution {execution.id}: {e}")
                await self._record_dispatch_error(execution, node, e)
                raise NodeDispatchError(node.id, node.node_type, e) from e

            logs.append(LogEntry(node.id, node.node_type, result.to_log()))
            last_node_id = node.id

            if result.wait:
                patch = {
                    "status": "waiting",
                    "waiting_for": result.wait_for,
                    "current_node_id": node.id,
                    "variables": ctx.variables,
                    "resume_at": _naive_utc(result.resume_at),
                }
                if not await self._checkpoint(execution, patch, logs):
                    return EngineOutcome("conflict", execution.id)
                logger.info(f"[FlowEngine] Execution {execution.id} waiting for {result.wait_for} at node {node.id}")
                if result.wait_for == "timer":
                    delay = (execution.resume_at - self.clock()).total_seconds() if execution.resume_at else 0
                    self._schedule(execution, max(delay, 0))
                return EngineOutcome(action, execution.id, "waiting")

            if result.end:
                break

            edge = graph.next_edge(node.id, result.output_handle)
            if edge is None:
                logger.info(f"[FlowEngine] Dead end after node {node.id} (handle {result.output_handle}), completing {execution.id}")
            node_id = edge.target_node_id if edge else None

        patch = {
            "status": "completed",
            "waiting_for": None,
            "resume_at": None,
            "current_node_id": last_node_id,
            "variables": ctx.variables,
            "completed_at": self.clock(),
        }
        if not await self._checkpoint(execution, patch, logs):
            return EngineOutcome("conflict", execution.id)
        logger.info(f"[FlowEngine] Execution {execution.id} completed")
        return EngineOutcome(action, execution.id, "completed")

    async def _checkpoint(self, execution, patch: dict, logs: list) -> bool:
        try:
            await self.execution_store.update(execution, patch, logs)
        except StaleExecutionError as e:
            logger.info(f"[FlowEngine] {e}, another invocation got there first")
            return False
        return True

    async def _record_dispatch_error(self, execution, node, error: Exception):
        try:
            await self.execution_store.append_log(execution.id, node.id, node.node_type, {"error": str(error)})
        except SQLAlchemyError as e:
            logger.error(f"[FlowEngine] Could not record failure of node {node.id}: {e}")

    def _schedule(self, execution, delay_seconds: float):
        try:
            self.scheduler(execution.id, delay_seconds, execution.version)
        except Exception as e:
            # The execution stays parked on the timer
            logger.error(f"[FlowEngine] Failed to schedule resume of execution {execution.id}: {e}")


flow_engine = FlowEngine()


# --- Celery Tasks ---

@shared_task(name="resume_flow_execution")
def resume_flow_execution(execution_id: str, expected_version: int = None):
    """
    Celery task wrapper to run the async timer resume synchronously
    """
    import asyncio
    outcome = asyncio.run(flow_engine.resume_timer(execution_id, expected_version))
    return outcome.action
