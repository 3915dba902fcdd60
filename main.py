from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
import logging

# Configure Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
from dotenv import load_dotenv

load_dotenv()

from services.db_service import get_conversation_messages
from services.whatsapp_service import router as whatsapp_router
from services.graph_store import graph_store, FlowValidationError
from services.execution_store import execution_store
from celery_app import celery_app # Ensure Celery is loaded for task dispatch

app = FastAPI(title="Flow Engine API", description="WhatsApp conversational flow engine (SQL + Celery)")

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex='.*', # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
def read_root():
    return {"status": "ok", "message": "Flow Engine API is running (PostgreSQL + Celery)"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}

@app.on_event("startup")
async def startup_event():
    # Auto-create tables (no migrations yet)
    from database.session import engine
    from database.base import Base
    from database.models import channel, chat, flow
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

app.include_router(whatsapp_router)

# --- Flows ---

@app.post("/api/flows/{flow_id}/publish")
async def publish_flow(flow_id: str, publish: bool = True):
    """Validate and publish a flow (or unpublish it with ?publish=false)"""
    try:
        flow = await graph_store.publish_flow(flow_id, publish)
    except FlowValidationError as e:
        raise HTTPException(status_code=400, detail={"message": "Flow is not publishable", "errors": e.errors})

    if not flow:
        raise HTTPException(status_code=404, detail="Flow not found")
    return {"status": "published" if flow.is_published else "unpublished", "flow_id": flow.id}

# --- Executions ---

@app.get("/api/executions/{execution_id}/logs")
async def read_execution_logs(execution_id: str):
    execution = await execution_store.get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")

    logs = await execution_store.list_logs(execution_id)
    return {
        "execution_id": execution.id,
        "status": execution.status,
        "current_node_id": execution.current_node_id,
        "logs": [
            {
                "node_id": log.node_id,
                "node_type": log.node_type,
                "result": log.result_data,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ],
    }

# --- Conversations ---

@app.get("/api/conversations/{config_id}/{customer_id}/messages")
async def read_messages(config_id: str, customer_id: str, limit: int = 50):
    """Messages exchanged with a customer on one channel"""
    messages = await get_conversation_messages(config_id, customer_id, limit)
    return [
        {
            "id": m.id,
            "direction": m.direction,
            "type": m.message_type,
            "content": m.content,
            "media_url": m.media_url,
            "provider_message_id": m.provider_message_id,
            "status": m.status,
            "timestamp": m.timestamp.isoformat() if m.timestamp else None,
        }
        for m in messages
    ]
