from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session
import schemas
from core.deps import get_db
from core.logger import setup_logger
from core.security import limiter, WEBHOOK_RATE_LIMIT
from services.errors import ConnectionNotFound
from services.triggers import route_inbound_message
from worker import dispatch_flow_job

logger = setup_logger(__name__)

router = APIRouter()


@router.post("/webhooks/messages", summary="Mensagem recebida do WhatsApp")
@limiter.limit(WEBHOOK_RATE_LIMIT)
async def receive_message(
    request: Request,
    message: schemas.InboundMessage,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Recebe uma mensagem do contato. Se a conversa tiver uma sessão de fluxo ativa,
    a resposta é usada para continuar o fluxo; senão, o primeiro fluxo cujo gatilho
    casar com o texto é iniciado. A execução sempre roda em segundo plano.
    """
    logger.info(f"📥 Inbound message from {message.phone} (connection {message.connection_id})")
    try:
        job = route_inbound_message(db, message.connection_id, message.phone, message.text, message.contact_name)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)

    if job["action"] == "ignored":
        return {"status": "ignored", "conversation_id": job["conversation_id"]}

    mode = await dispatch_flow_job(job, background_tasks)
    return {
        "status": job["action"],
        "conversation_id": job["conversation_id"],
        "flow_id": job.get("flow_id"),
        "dispatch": mode,
    }
