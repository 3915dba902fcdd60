import logging
from datetime import datetime
from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from database.session import AsyncSessionLocal
from database.models.channel import WhatsAppConfig, ProcessedMessage
from database.models.chat import Conversation, Message
from backend.utils.encryption import encrypt_token, decrypt_token

logger = logging.getLogger(__name__)

# --- Channel configuration ---

async def get_whatsapp_config(config_id: str):
    """Channel credentials with the access token decrypted, or None if unknown or inactive."""
    async with AsyncSessionLocal() as session:
        config = await session.get(WhatsAppConfig, config_id)
        if not config or not config.is_active:
            return None

        return {
            "id": config.id,
            "name": config.name,
            "phone_number_id": config.phone_number_id,
            "business_account_id": config.business_account_id,
            "access_token": decrypt_token(config.access_token) if config.access_token else None,
            "verify_token": config.verify_token,
            "is_active": config.is_active,
        }

async def save_whatsapp_config(data: dict) -> str:
    """Creates a channel configuration, encrypting the access token. Returns its id."""
    async with AsyncSessionLocal() as session:
        config = WhatsAppConfig(
            name=data.get("name"),
            phone_number_id=data.get("phone_number_id"),
            business_account_id=data.get("business_account_id"),
            access_token=encrypt_token(data.get("access_token")),
            verify_token=data.get("verify_token"),
            is_active=data.get("is_active", True),
        )
        if data.get("id"):
            config.id = data["id"]
        session.add(config)
        await session.commit()
        return config.id

# --- Inbound idempotency ---

async def mark_message_processed(message_id: str) -> bool:
    """
    Records an inbound message id. Returns False if it was already recorded,
    which means the webhook delivery is a duplicate and must be ignored.
    """
    async with AsyncSessionLocal() as session:
        existing = await session.get(ProcessedMessage, message_id)
        if existing:
            return False
        session.add(ProcessedMessage(message_id=message_id))
        try:
            await session.commit()
        except IntegrityError:
            # Concurrent delivery of the same message won the insert
            await session.rollback()
            logger.info(f"Message already processed (concurrent): {message_id}")
            return False
        return True

# --- Conversations ---

async def store_message(config_id: str, customer_id: str, content: str, direction: str,
                        message_type: str = "text", media_url: str = None,
                        provider_message_id: str = None, customer_name: str = None):
    """Records a message against the customer's conversation. Best effort: failures are logged."""
    async with AsyncSessionLocal() as session:
        try:
            convo_id = f"{config_id}:{customer_id}"

            conversation = await session.get(Conversation, convo_id)
            if not conversation:
                conversation = Conversation(
                    id=convo_id,
                    whatsapp_config_id=config_id,
                    customer_id=customer_id,
                    customer_name=customer_name or customer_id,
                    unread_count=0,
                )
                session.add(conversation)
            elif customer_name:
                conversation.customer_name = customer_name

            now = datetime.utcnow()
            session.add(Message(
                conversation_id=convo_id,
                direction=direction,
                message_type=message_type,
                content=content,
                media_url=media_url,
                provider_message_id=provider_message_id,
                status="received" if direction == "inbound" else "sent",
                timestamp=now,
            ))

            conversation.last_message = content
            conversation.last_timestamp = now
            if conversation.unread_count is None:
                conversation.unread_count = 0
            if direction == "inbound":
                conversation.unread_count += 1
            else:
                conversation.unread_count = 0

            await session.commit()
            logger.info(f"Stored {direction} message for {convo_id}")
        except Exception as e:
            logger.error(f"Error storing message: {e}")
            await session.rollback()

async def get_conversation_messages(config_id: str, customer_id: str, limit: int = 50):
    """The latest ``limit`` messages of the conversation, oldest first."""
    async with AsyncSessionLocal() as session:
        stmt = (
            select(Message)
            .where(Message.conversation_id == f"{config_id}:{customer_id}")
            .order_by(desc(Message.timestamp), desc(Message.id))
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(reversed(result.scalars().all()))
