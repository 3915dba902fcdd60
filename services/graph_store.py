import logging
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy import select
from database.session import AsyncSessionLocal
from database.models.flow import Flow, FlowNode, FlowEdge
from services.node_schemas import validate_flow_graph

logger = logging.getLogger(__name__)


class FlowValidationError(Exception):
    """Raised when a flow graph cannot be published."""

    def __init__(self, flow_id: str, errors: list):
        self.flow_id = flow_id
        self.errors = errors
        super().__init__(f"Flow {flow_id} is not publishable: {'; '.join(errors)}")


@dataclass
class FlowGraph:
    """A flow with its nodes and edges, read once per invocation and treated as immutable."""
    flow: Flow
    nodes: list = field(default_factory=list)
    edges: list = field(default_factory=list)

    def __post_init__(self):
        self._nodes_by_id = {n.id: n for n in self.nodes}

    def get_node(self, node_id: str):
        return self._nodes_by_id.get(node_id)

    def trigger_node(self):
        return next((n for n in self.nodes if n.node_type == "trigger"), None)

    def outgoing_edges(self, node_id: str) -> list:
        return [e for e in self.edges if e.source_node_id == node_id]

    def next_edge(self, node_id: str, output_handle: str = None):
        """
        Resolves the edge to follow out of ``node_id``.
        With a handle: the edge labelled with it. Without: the first unlabelled
        edge, else the first edge at all. None means a dead end.
        """
        edges = self.outgoing_edges(node_id)
        if output_handle is not None:
            return next((e for e in edges if e.source_handle == output_handle), None)
        unlabelled = next((e for e in edges if not e.source_handle), None)
        if unlabelled is not None:
            return unlabelled
        return edges[0] if edges else None

    def first_edge(self, node_id: str):
        """First outgoing edge regardless of its handle (used when leaving a wait point)."""
        edges = self.outgoing_edges(node_id)
        return edges[0] if edges else None


class GraphStore:

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def load_flow(self, flow_id: str):
        """Returns the FlowGraph of ``flow_id`` or None if the flow does not exist."""
        async with self.session_factory() as session:
            flow = await session.get(Flow, flow_id)
            if not flow:
                return None

            nodes_res = await session.execute(select(FlowNode).where(FlowNode.flow_id == flow_id))
            edges_res = await session.execute(
                select(FlowEdge)
                .where(FlowEdge.flow_id == flow_id)
                .order_by(FlowEdge.sort_order, FlowEdge.created_at)
            )
            return FlowGraph(flow=flow, nodes=list(nodes_res.scalars().all()), edges=list(edges_res.scalars().all()))

    async def find_active_flows(self, channel_id: str) -> list:
        """Active, published flows of a channel, highest priority first."""
        async with self.session_factory() as session:
            stmt = (
                select(Flow)
                .where(
                    Flow.whatsapp_config_id == channel_id,
                    Flow.is_active == True,
                    Flow.is_published == True,
                )
                .order_by(Flow.priority.desc(), Flow.created_at)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def publish_flow(self, flow_id: str, publish: bool = True):
        """
        Publishes (or unpublishes) a flow. Publishing validates the graph first
        and raises FlowValidationError when it is not walkable.
        Returns the updated Flow or None if it does not exist.
        """
        graph = await self.load_flow(flow_id)
        if not graph:
            return None

        if publish:
            errors = validate_flow_graph(graph.nodes, graph.edges)
            if errors:
                logger.warning(f"[GraphStore] Refusing to publish flow {flow_id}: {errors}")
                raise FlowValidationError(flow_id, errors)

        async with self.session_factory() as session:
            flow = await session.get(Flow, flow_id)
            flow.is_published = publish
            flow.is_active = publish
            flow.updated_at = datetime.utcnow()
            await session.commit()
            logger.info(f"[GraphStore] Flow {flow_id} {'published' if publish else 'unpublished'}")
            return flow


graph_store = GraphStore()
