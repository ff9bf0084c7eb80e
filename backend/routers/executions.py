from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import models, schemas
from core.deps import get_db
from core.logger import setup_logger
from services.engine import FlowInterpreter, clear_execution_log, query_execution_log
from services.errors import (
    ConcurrentResume, ConnectionNotFound, ConversationNotFound, FlowNotFound,
    InvalidNodeContent, NoActiveSession, NodeNotFound,
)
from services.session_store import SessionStore
from worker import dispatch_flow_job

logger = setup_logger(__name__)

router = APIRouter()

NOT_FOUND_CODES = {
    FlowNotFound.code, ConversationNotFound.code, ConnectionNotFound.code,
    NodeNotFound.code, NoActiveSession.code,
}


def get_interpreter(db: Session = Depends(get_db)) -> FlowInterpreter:
    return FlowInterpreter(db)


def status_for_error(error_code: Optional[str]) -> int:
    if error_code in NOT_FOUND_CODES:
        return 404
    if error_code == ConcurrentResume.code:
        return 409
    if error_code == InvalidNodeContent.code:
        return 422
    return 400


def _raise_error(error_code: str, message: str):
    raise HTTPException(
        status_code=status_for_error(error_code),
        detail={"error": message, "error_code": error_code},
    )


def _raise_for_result(result: schemas.ExecutionResult):
    if not result.success:
        _raise_error(result.error_code, result.error)


# --- Execution log (declarado antes de /flows/{flow_id} para não colidir com o path param) ---

@router.get("/flows/execution-logs", response_model=schemas.ExecutionLogResponse, summary="Log de execução (todas as conversas)")
def list_execution_logs(limit: int = 100):
    return {"logs": query_execution_log(None, limit)}


@router.get("/flows/execution-logs/{conversation_id}", response_model=schemas.ExecutionLogResponse, summary="Log de execução de uma conversa")
def get_execution_logs(conversation_id: int, limit: int = 100):
    return {"logs": query_execution_log(conversation_id, limit)}


@router.delete("/flows/execution-logs", summary="Limpar todo o log de execução")
def clear_all_execution_logs():
    clear_execution_log()
    return {"success": True}


@router.delete("/flows/execution-logs/{conversation_id}", summary="Limpar o log de uma conversa")
def clear_conversation_execution_logs(conversation_id: int):
    clear_execution_log(conversation_id)
    return {"success": True}


# --- Execução ---

@router.post("/flows/{flow_id}/start", response_model=schemas.ExecutionResult, summary="Iniciar fluxo para uma conversa")
async def start_flow(
    flow_id: int,
    request: schemas.StartFlowRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    interpreter: FlowInterpreter = Depends(get_interpreter),
):
    """
    Inicia o fluxo na conversa indicada. Qualquer sessão ativa da conversa é encerrada.

    Com `background=true` a execução é enfileirada e a resposta volta imediatamente
    (delays e pausas entre mensagens podem levar minutos).
    """
    if request.background:
        if not db.get(models.Flow, flow_id):
            _raise_error(FlowNotFound.code, f"Flow {flow_id} not found")
        if not db.get(models.Conversation, request.conversation_id):
            _raise_error(ConversationNotFound.code, f"Conversation {request.conversation_id} not found")

        mode = await dispatch_flow_job({
            "action": "start",
            "flow_id": flow_id,
            "conversation_id": request.conversation_id,
            "start_node_id": request.start_node_id,
            "variables": request.variables,
        }, background_tasks)
        logger.info(f"📤 Flow {flow_id} start dispatched for conversation {request.conversation_id} ({mode})")
        return schemas.ExecutionResult(success=True)

    result = await interpreter.start(flow_id, request.conversation_id, request.start_node_id, request.variables)
    _raise_for_result(result)
    return result


@router.post("/conversations/{conversation_id}/continue", response_model=schemas.ExecutionResult, summary="Continuar fluxo com a resposta do contato")
async def continue_flow(
    conversation_id: int,
    request: schemas.ContinueFlowRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    interpreter: FlowInterpreter = Depends(get_interpreter),
):
    if request.background:
        if not SessionStore(db).get_active_session(conversation_id):
            _raise_error(NoActiveSession.code, f"No active flow session for conversation {conversation_id}")
        await dispatch_flow_job({
            "action": "continue",
            "conversation_id": conversation_id,
            "input": request.input,
        }, background_tasks)
        return schemas.ExecutionResult(success=True)

    result = await interpreter.continue_with_input(conversation_id, request.input)
    _raise_for_result(result)
    return result


@router.get("/conversations/{conversation_id}/flow-session", response_model=schemas.FlowSession, summary="Sessão de fluxo da conversa")
def get_flow_session(conversation_id: int, db: Session = Depends(get_db)):
    """
    Retorna a sessão ativa da conversa ou, se não houver, a mais recente.
    """
    store = SessionStore(db)
    session = store.get_active_session(conversation_id) or store.get_latest_session(conversation_id)
    if not session:
        _raise_error(NoActiveSession.code, f"No flow session for conversation {conversation_id}")
    return session
