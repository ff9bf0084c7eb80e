from sqlalchemy.orm import Session

import models
from core.logger import setup_logger

logger = setup_logger("EmailQueue")


class EmailQueue:
    """Fila de e-mails (fire-and-forget). A entrega fica a cargo do processador de e-mails."""

    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, to_email: str, subject: str, body_html: str, body_text: str = None,
                to_name: str = None, context_id=None, variables: dict = None) -> int:
        item = models.EmailQueueItem(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            body_html=body_html,
            body_text=body_text,
            context_type="flow",
            context_id=str(context_id) if context_id is not None else None,
            variables=dict(variables or {}),
            status="pending",
        )
        try:
            self.db.add(item)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"📧 Email queued for {to_email} (queue id {item.id})")
        return item.id
