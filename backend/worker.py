import asyncio
import os

from fastapi import BackgroundTasks

from rabbitmq_client import rabbitmq, FLOW_EXECUTIONS_QUEUE
from services.engine import FlowInterpreter
from database import SessionLocal
from core.logger import setup_logger

logger = setup_logger("Worker")

# Worker Configuration
PREFETCH_COUNT = int(os.getenv("RABBITMQ_PREFETCH_COUNT", 5))


async def handle_flow_execution(data: dict):
    """
    Processa um job de execução de fluxo (fila 'flow_executions' ou BackgroundTasks).

    Formatos aceitos:
        {"action": "start", "flow_id": 1, "conversation_id": 2, "start_node_id": "start", "variables": {}}
        {"action": "continue", "conversation_id": 2, "input": "sim"}
    """
    action = data.get("action")
    conversation_id = data.get("conversation_id")
    logger.info(f"🎡 Recebido job de fluxo: {action} (conversa {conversation_id})")

    db = SessionLocal()
    try:
        interpreter = FlowInterpreter(db)
        if action == "start":
            result = await interpreter.start(
                flow_id=data.get("flow_id"),
                conversation_id=conversation_id,
                start_node_id=data.get("start_node_id") or "start",
                initial_variables=data.get("variables") or {},
            )
        elif action == "continue":
            result = await interpreter.continue_with_input(conversation_id, data.get("input") or "")
        else:
            logger.warning(f"⚠️ Job com ação desconhecida ignorado: {action!r}")
            return None

        if result.success:
            logger.info(f"✅ Job {action} concluído: {result.nodes_processed} nós processados (conversa {conversation_id})")
        else:
            logger.error(f"❌ Job {action} falhou para conversa {conversation_id}: {result.error}")
        return result
    except Exception as e:
        logger.exception(f"❌ Erro ao executar job de fluxo ({action}): {e}")
        return None
    finally:
        db.close()


async def dispatch_flow_job(job: dict, background_tasks: BackgroundTasks) -> str:
    """Publica o job na fila quando o RabbitMQ está disponível; senão roda em background na API."""
    if rabbitmq.is_connected and await rabbitmq.publish(FLOW_EXECUTIONS_QUEUE, job):
        return "queued"
    background_tasks.add_task(handle_flow_execution, job)
    return "background"


async def start_worker():
    """Inicia o worker e conecta à fila de execuções"""
    logger.info(f"👷 Iniciando FlowBot Worker | Prefetch: {PREFETCH_COUNT}")

    await rabbitmq.connect()
    await rabbitmq.consume(FLOW_EXECUTIONS_QUEUE, handle_flow_execution, prefetch_count=PREFETCH_COUNT)

    logger.info("🚀 Worker rodando e aguardando processamento...")

    # Mantém o worker rodando
    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        logger.info("🛑 Worker parando...")
        await rabbitmq.close()


if __name__ == "__main__":
    try:
        asyncio.run(start_worker())
    except KeyboardInterrupt:
        logger.info("Worker parado manualmente")
