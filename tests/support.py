import itertools
import unittest
from unittest import mock

from database.base import Base
from database.models import channel, chat, flow  # noqa: F401  (registers tables)
from database.models.flow import Flow, FlowNode, FlowEdge
from database.session import build_engine, build_session_factory
from services.db_service import save_whatsapp_config, get_whatsapp_config
from services.execution_store import ExecutionStore
from services.flow_engine import FlowEngine
from services.graph_store import GraphStore
from services.node_handlers import NodeDispatcher
from services.whatsapp_service import InboundMessage, SendResult


class FakeGateway:
    """Records every outbound call and answers with a canned SendResult."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent = []
        self._ids = itertools.count(1)

    def __getattr__(self, name):
        if not (name.startswith("send_") or name == "mark_as_read"):
            raise AttributeError(name)

        async def send(credentials, to, *args):
            self.sent.append((name, to) + args)
            if self.ok:
                return SendResult(ok=True, provider_message_id=f"wamid.{next(self._ids)}")
            return SendResult(ok=False, error="provider rejected message")

        return send

    def texts(self):
        return [call[2] for call in self.sent if call[0] == "send_text"]


class FakeScheduler:
    def __init__(self):
        self.calls = []

    def __call__(self, execution_id, delay_seconds, version):
        self.calls.append((execution_id, delay_seconds, version))


def text_message(text, message_id="wamid.in.1", timestamp="1700000000"):
    return InboundMessage(type="text", text=text, message_id=message_id, timestamp=timestamp)


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh in-memory SQLite database per test, wired into the stores and the engine."""

    async def asyncSetUp(self):
        self.db_engine = build_engine("sqlite+aiosqlite://")
        async with self.db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.session_factory = build_session_factory(self.db_engine)

        patcher = mock.patch("services.db_service.AsyncSessionLocal", self.session_factory)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.graph_store = GraphStore(self.session_factory)
        self.execution_store = ExecutionStore(self.session_factory)
        self.gateway = FakeGateway()
        self.scheduler = FakeScheduler()
        self.flow_engine = self.build_flow_engine()

        channel_id = await save_whatsapp_config({
            "name": "Test channel",
            "phone_number_id": "1234567890",
            "access_token": "token-abc",
            "verify_token": "verify-me",
        })
        self.channel = await get_whatsapp_config(channel_id)

    async def asyncTearDown(self):
        await self.db_engine.dispose()

    def build_flow_engine(self, **kwargs):
        kwargs.setdefault("dispatcher", NodeDispatcher(gateway=self.gateway))
        kwargs.setdefault("scheduler", self.scheduler)
        return FlowEngine(self.graph_store, self.execution_store, **kwargs)

    async def add_flow(self, nodes, edges, trigger_type="keyword", trigger_value="hi",
                       priority=0, published=True, name="Test flow"):
        """
        nodes: (id, node_type, config) tuples.
        edges: (source, target) or (source, target, handle) tuples, in "first edge" order.
        """
        async with self.session_factory() as session:
            flow = Flow(
                whatsapp_config_id=self.channel["id"],
                name=name,
                trigger_type=trigger_type,
                trigger_value=trigger_value,
                priority=priority,
                is_active=published,
                is_published=published,
            )
            session.add(flow)
            await session.flush()

            for node_id, node_type, config in nodes:
                session.add(FlowNode(id=f"{flow.id}:{node_id}", flow_id=flow.id, node_type=node_type, config=config))
            await session.flush()

            for index, edge in enumerate(edges):
                source, target = edge[0], edge[1]
                handle = edge[2] if len(edge) > 2 else None
                session.add(FlowEdge(
                    flow_id=flow.id,
                    source_node_id=f"{flow.id}:{source}",
                    target_node_id=f"{flow.id}:{target}",
                    source_handle=handle,
                    sort_order=index,
                ))
            await session.commit()
            return flow.id

    def node_id(self, flow_id, node_id):
        return f"{flow_id}:{node_id}"
