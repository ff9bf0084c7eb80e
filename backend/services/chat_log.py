import uuid
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from core.logger import setup_logger

logger = setup_logger("ChatLog")


class ChatLog:
    """Espelha no histórico da conversa toda mensagem enviada pelo fluxo."""

    def __init__(self, db: Session):
        self.db = db

    def record_outbound(self, conversation_id: int, content, message_type: str = "text",
                        media_url: str = None, message_id: str = None, status: str = "sent"):
        db_message_id = message_id or f"flow_{int(datetime.now(timezone.utc).timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
        try:
            self.db.add(models.ChatMessage(
                conversation_id=conversation_id,
                message_id=db_message_id,
                from_me=True,
                content=content,
                message_type=message_type,
                media_url=media_url,
                status=status,
            ))
            conversation = self.db.get(models.Conversation, conversation_id)
            if conversation:
                conversation.last_message_at = datetime.now(timezone.utc)
            self.db.commit()
            logger.debug(f"💾 Message saved - type: {message_type}, content: {(content or 'N/A')[:30]}")
            return db_message_id
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Error saving message to chat log: {e}")
            return None
