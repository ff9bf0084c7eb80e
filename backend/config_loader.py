import os
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from database import SessionLocal
from models import AppConfig
from core.logger import setup_logger

logger = setup_logger("ConfigLoader")

# Chaves suportadas e seus valores padrão
DEFAULTS = {
    # Evolution API (gateway WhatsApp)
    "EVOLUTION_API_URL": "",
    "EVOLUTION_API_KEY": "",
    # Interpretador de fluxos
    "FLOW_MAX_STEPS": "50",
    "FLOW_MESSAGE_DELAY_MS": "800",
    "FLOW_GALLERY_DELAY_MS": "2000",
    "EXECUTION_LOG_MAX_ENTRIES": "200",
    "EXECUTION_LOG_MAX_CONVERSATIONS": "100",
    # RabbitMQ
    "RABBITMQ_HOST": "localhost",
    "RABBITMQ_PORT": "5672",
    "RABBITMQ_USER": "guest",
    "RABBITMQ_PASSWORD": "guest",
    "RABBITMQ_VHOST": "/",
    "RABBITMQ_PREFETCH_COUNT": "5",
}


def get_settings(db: Session = None):
    """
    Recupera as configurações do sistema, priorizando o banco de dados.
    Se não houver valor no banco, usa a variável de ambiente e depois o padrão.
    """
    settings = {}
    owns_session = db is None
    db = db or SessionLocal()
    try:
        db_map = {cfg.key: cfg.value for cfg in db.query(AppConfig).all()}
    except SQLAlchemyError as e:
        logger.warning(f"⚠️ Erro ao carregar configurações do banco, usando ambiente: {e}")
        db_map = {}
    finally:
        if owns_session:
            db.close()

    for key, default in DEFAULTS.items():
        # Prioridade: Banco > Variável de Ambiente > Padrão
        value = db_map.get(key)
        if not value:
            value = os.getenv(key, default)
        settings[key] = value

    return settings


def get_setting(key: str, default: str = "", db: Session = None):
    """Busca uma única configuração"""
    val = get_settings(db).get(key)
    if not val:
        return default
    return val


def get_int_setting(key: str, default: int, db: Session = None) -> int:
    raw = get_setting(key, str(default), db=db)
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Valor inválido para {key}: {raw!r}. Usando {default}.")
        return default
