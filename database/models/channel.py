from sqlalchemy import Column, String, Boolean, DateTime, Text
from datetime import datetime
from ..base import Base
import uuid


class WhatsAppConfig(Base):
    """Stores the WhatsApp Cloud API credentials of one channel."""
    __tablename__ = "whatsapp_configs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String)

    phone_number_id = Column(String, index=True)
    business_account_id = Column(String)
    access_token = Column(Text) # Encrypted
    verify_token = Column(String) # Meta webhook verification token

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ProcessedMessage(Base):
    """Inbound WhatsApp message ids already handled (webhook idempotency)."""
    __tablename__ = "processed_messages"

    message_id = Column(String, primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow)
