"""
Mensagens recebidas: retoma a sessão ativa da conversa ou inicia o primeiro
fluxo cujo gatilho por palavra-chave casar com o texto.
"""
from typing import Iterable, Optional

from sqlalchemy.orm import Session

import models
from services.errors import ConnectionNotFound
from services.session_store import SessionStore
from core.logger import setup_logger

logger = setup_logger("FlowTriggers")

MATCH_MODES = ("exact", "contains", "starts_with")


def keyword_matches(message: str, keywords: Iterable[str], match_mode: str = "exact") -> bool:
    text = (message or "").strip().lower()
    if not text:
        return False

    for keyword in keywords or []:
        keyword = str(keyword).strip().lower()
        if not keyword:
            continue
        if match_mode == "contains":
            if keyword in text:
                return True
        elif match_mode == "starts_with":
            if text.startswith(keyword):
                return True
        elif text == keyword:
            return True
    return False


def find_triggered_flow(db: Session, connection_id: int, message: str) -> Optional[models.Flow]:
    """Primeiro fluxo (ordem de criação) ativo, com gatilho habilitado e liberado para a conexão."""
    flows = (
        db.query(models.Flow)
        .filter(models.Flow.is_active.is_(True), models.Flow.trigger_enabled.is_(True))
        .order_by(models.Flow.created_at, models.Flow.id)
        .all()
    )
    for flow in flows:
        allowed = flow.connection_ids or []
        if allowed and connection_id not in allowed:
            continue
        if keyword_matches(message, flow.trigger_keywords, flow.trigger_match_mode or "exact"):
            logger.info(f"🎯 Keyword matched flow '{flow.name}' (ID {flow.id})")
            return flow
    return None


def get_or_create_conversation(db: Session, connection_id: int, phone: str, contact_name: str = None) -> models.Conversation:
    connection = db.get(models.Connection, connection_id)
    if not connection:
        raise ConnectionNotFound(f"Connection {connection_id} not found")

    conversation = (
        db.query(models.Conversation)
        .filter(models.Conversation.connection_id == connection_id, models.Conversation.contact_phone == phone)
        .first()
    )
    if conversation:
        if contact_name and not conversation.contact_name:
            conversation.contact_name = contact_name
            db.commit()
        return conversation

    conversation = models.Conversation(connection_id=connection_id, contact_phone=phone, contact_name=contact_name)
    try:
        db.add(conversation)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(conversation)
    logger.info(f"🆕 Conversation {conversation.id} created for {phone} on connection {connection_id}")
    return conversation


def route_inbound_message(db: Session, connection_id: int, phone: str, text: str, contact_name: str = None) -> dict:
    """
    Decide o que fazer com a mensagem recebida. Devolve o job a executar:
    {"action": "continue"|"start"|"ignored", "conversation_id", ...}
    """
    conversation = get_or_create_conversation(db, connection_id, phone, contact_name)

    if SessionStore(db).get_active_session(conversation.id):
        return {"action": "continue", "conversation_id": conversation.id, "input": text}

    flow = find_triggered_flow(db, connection_id, text)
    if flow:
        return {"action": "start", "conversation_id": conversation.id, "flow_id": flow.id}

    logger.info(f"ℹ️ No active session or keyword match for conversation {conversation.id}")
    return {"action": "ignored", "conversation_id": conversation.id}
