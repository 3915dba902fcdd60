from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text
from sqlalchemy.orm import relationship
from datetime import datetime
from ..base import Base

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True) # "{whatsapp_config_id}:{customer_id}"
    whatsapp_config_id = Column(String, ForeignKey("whatsapp_configs.id"), index=True)
    customer_id = Column(String, index=True)

    customer_name = Column(String)
    last_message = Column(Text)
    last_timestamp = Column(DateTime, index=True)
    unread_count = Column(Integer, default=0)

    messages = relationship("Message", back_populates="conversation")

class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), index=True)

    direction = Column(String) # inbound, outbound
    message_type = Column(String, default="text") # text, image, interactive, ...
    content = Column(Text)
    media_url = Column(Text, nullable=True)
    provider_message_id = Column(String, nullable=True, index=True) # wamid.* returned by the Cloud API
    status = Column(String, default="sent") # received, sent, failed
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")
