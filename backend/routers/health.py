from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from core.deps import get_db
from core.logger import setup_logger
from rabbitmq_client import rabbitmq

logger = setup_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def get_health_status(db: Session = Depends(get_db)):
    """
    Status do banco de dados e do RabbitMQ. A fila é opcional: sem ela as
    execuções rodam em segundo plano na própria API.
    """
    try:
        db.execute(text("SELECT 1"))
        database_status = "online"
    except SQLAlchemyError as e:
        logger.error(f"❌ Health check: database unavailable: {e}")
        database_status = "offline"

    return {
        "database": database_status,
        "rabbitmq": "online" if rabbitmq.is_connected else "offline",
    }
