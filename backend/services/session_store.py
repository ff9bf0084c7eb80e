from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

import models
from services.errors import ConcurrentResume
from core.logger import setup_logger

logger = setup_logger("SessionStore")

OPEN_ATTEMPTS = 2


class SessionStore:
    """
    Persistência das sessões de fluxo (uma ativa por conversa).
    Toda escrita em uma sessão ativa é um compare-and-swap sobre `version`.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_active_session(self, conversation_id: int) -> Optional[models.FlowSession]:
        return (
            self.db.query(models.FlowSession)
            .filter(
                models.FlowSession.conversation_id == conversation_id,
                models.FlowSession.is_active.is_(True),
            )
            .first()
        )

    def _deactivate_active(self, conversation_id: int) -> int:
        return self.db.execute(
            update(models.FlowSession)
            .where(
                models.FlowSession.conversation_id == conversation_id,
                models.FlowSession.is_active.is_(True),
            )
            .values(
                is_active=False,
                status="completed",
                failure_reason="replaced by a new flow run",
                ended_at=func.now(),
                version=models.FlowSession.version + 1,
            )
            .execution_options(synchronize_session=False)
        ).rowcount

    def open_session(self, flow_id: int, conversation_id: int, current_node_id: str, variables: dict) -> models.FlowSession:
        """
        Encerra qualquer sessão ativa da conversa e cria a nova na mesma transação.

        Se outra execução criar uma sessão ativa entre o UPDATE e o INSERT, o índice
        único parcial rejeita o INSERT; a troca é refeita uma vez antes de desistir
        com ConcurrentResume.
        """
        for attempt in range(1, OPEN_ATTEMPTS + 1):
            try:
                replaced = self._deactivate_active(conversation_id)
                if replaced:
                    logger.info(f"♻️ Conversation {conversation_id}: deactivated {replaced} previous session(s)")

                session = models.FlowSession(
                    flow_id=flow_id,
                    conversation_id=conversation_id,
                    current_node_id=current_node_id,
                    variables=dict(variables),
                    is_active=True,
                    status="active",
                    version=1,
                )
                self.db.add(session)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(
                    f"⚠️ Conversation {conversation_id}: another run opened a session concurrently "
                    f"(attempt {attempt}/{OPEN_ATTEMPTS})"
                )
                continue
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(session)
            return session

        raise ConcurrentResume(
            f"Conversation {conversation_id}: could not open a flow session, another run keeps replacing it"
        )

    def _swap(self, session: models.FlowSession, expected_node_id: Optional[str], **values) -> models.FlowSession:
        conditions = [
            models.FlowSession.id == session.id,
            models.FlowSession.conversation_id == session.conversation_id,
            models.FlowSession.version == session.version,
            models.FlowSession.is_active.is_(True),
        ]
        if expected_node_id is not None:
            conditions.append(models.FlowSession.current_node_id == expected_node_id)

        result = self.db.execute(
            update(models.FlowSession)
            .where(*conditions)
            .values(version=models.FlowSession.version + 1, updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConcurrentResume(
                f"Session {session.id} (conversation {session.conversation_id}) changed concurrently"
            )
        self.db.commit()
        self.db.refresh(session)
        return session

    def save_wait_point(self, session: models.FlowSession, node_id: str, variables: dict) -> models.FlowSession:
        return self._swap(session, None, current_node_id=node_id, variables=dict(variables))

    def advance(self, session: models.FlowSession, expected_node_id: str, next_node_id: str, variables: dict) -> models.FlowSession:
        """Retomada: só avança se a sessão ainda estiver no nó que foi lido."""
        return self._swap(session, expected_node_id, current_node_id=next_node_id, variables=dict(variables))

    def mark_complete(self, session: models.FlowSession, variables: dict = None, node_id: str = None) -> models.FlowSession:
        values = {"is_active": False, "status": "completed", "ended_at": func.now()}
        if variables is not None:
            values["variables"] = dict(variables)
        if node_id is not None:
            values["current_node_id"] = node_id
        return self._swap(session, None, **values)

    def mark_failed(self, session: models.FlowSession, reason: str, variables: dict = None) -> models.FlowSession:
        values = {"is_active": False, "status": "failed", "failure_reason": reason, "ended_at": func.now()}
        if variables is not None:
            values["variables"] = dict(variables)
        return self._swap(session, None, **values)

    def get_latest_session(self, conversation_id: int) -> Optional[models.FlowSession]:
        return (
            self.db.query(models.FlowSession)
            .filter(models.FlowSession.conversation_id == conversation_id)
            .order_by(models.FlowSession.id.desc())
            .first()
        )
