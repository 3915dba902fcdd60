from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, JSON, DateTime, Text, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime
from ..base import Base
import uuid


class Flow(Base):
    __tablename__ = "flows"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    whatsapp_config_id = Column(String, ForeignKey("whatsapp_configs.id"), index=True)

    name = Column(String, nullable=False)
    description = Column(Text)
    trigger_type = Column(String, default="keyword") # keyword, any_message
    trigger_value = Column(Text) # comma separated keywords, e.g. "hi, hello"
    priority = Column(Integer, default=0) # higher wins
    is_active = Column(Boolean, default=False)
    is_published = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    nodes = relationship("FlowNode", back_populates="flow", cascade="all, delete-orphan")
    edges = relationship("FlowEdge", back_populates="flow", cascade="all, delete-orphan")
    executions = relationship("FlowExecution", back_populates="flow", cascade="all, delete-orphan")


class FlowNode(Base):
    __tablename__ = "flow_nodes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_id = Column(String, ForeignKey("flows.id"), index=True)

    node_type = Column(String, nullable=False) # trigger, sendText, condition, waitForReply, ...
    label = Column(String)
    config = Column(JSON, default=dict) # Params for the node logic, may contain {{templates}}

    # UI position (x, y) for the editor canvas
    position = Column(JSON, default=dict)

    flow = relationship("Flow", back_populates="nodes")


class FlowEdge(Base):
    __tablename__ = "flow_edges"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_id = Column(String, ForeignKey("flows.id"), index=True)

    source_node_id = Column(String, ForeignKey("flow_nodes.id"))
    target_node_id = Column(String, ForeignKey("flow_nodes.id"))

    source_handle = Column(String, nullable=True) # Branch label, e.g. "true", "loop", "complete"
    sort_order = Column(Integer, default=0) # Defines which edge is "first"
    created_at = Column(DateTime, default=datetime.utcnow)

    flow = relationship("Flow", back_populates="edges")


class FlowExecution(Base):
    __tablename__ = "flow_executions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    flow_id = Column(String, ForeignKey("flows.id"), index=True)
    customer_id = Column(String, nullable=False) # WhatsApp id of the customer
    whatsapp_config_id = Column(String, ForeignKey("whatsapp_configs.id"))

    current_node_id = Column(String)
    status = Column(String, default="running") # running, waiting, completed
    waiting_for = Column(String, nullable=True) # any, text, button, list, image, timer
    variables = Column(JSON, default=dict) # Variable environment of the conversation
    resume_at = Column(DateTime, nullable=True) # Set while waiting for a timer

    # Optimistic lock: every write must match the version it read
    version = Column(Integer, nullable=False, default=1)

    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    flow = relationship("Flow", back_populates="executions")
    logs = relationship("ExecutionLog", back_populates="execution", cascade="all, delete-orphan")

    __table_args__ = (
        # At most one non-terminal execution per customer and channel
        Index(
            "uq_flow_executions_active_customer",
            "customer_id",
            "whatsapp_config_id",
            unique=True,
            postgresql_where=text("status IN ('running', 'waiting')"),
            sqlite_where=text("status IN ('running', 'waiting')"),
        ),
    )


class ExecutionLog(Base):
    __tablename__ = "execution_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = Column(String, ForeignKey("flow_executions.id"), index=True)
    node_id = Column(String)
    node_type = Column(String)
    result_data = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow)

    execution = relationship("FlowExecution", back_populates="logs")
