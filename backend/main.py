from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
load_dotenv()
import os
import sentry_sdk

from database import engine
import models

# Routers
from routers import executions, flows, webhooks, health

from rabbitmq_client import rabbitmq

# Security
from core.security import limiter
from core.logger import logger
from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler

# Garante que as tabelas existam (Postgres ou SQLite)
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="FlowBot API - Interpretador de Fluxos",
    description="""
## 🤖 FlowBot API

Executa fluxos de chatbot (grafos de nós) em conversas do WhatsApp.

### Funcionalidades
* **Fluxos:** CRUD, canvas do editor visual (nós e arestas) e duplicação.
* **Execução:** Inicia fluxos e retoma a execução com a resposta do contato.
* **Gatilhos:** Mensagens recebidas iniciam fluxos por palavra-chave.
* **Log de execução:** Trilha em memória de cada passo do interpretador.
    """,
    version="1.0.0",
)

# Sentry
SENTRY_DSN = os.getenv("SENTRY_DSN")
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, traces_sample_rate=1.0)

# Setup Rate Limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Configuração CORS
default_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://localhost:8000",
]
env_origins = os.getenv("CORS_ORIGINS", "")
if env_origins:
    default_origins.extend([origin.strip() for origin in env_origins.split(",")])

app.add_middleware(
    CORSMiddleware,
    allow_origins=default_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
logger.info(f"🔒 CORS origins enabled: {default_origins}")

# Include Routers (executions antes de flows: /flows/execution-logs vs /flows/{flow_id})
app.include_router(executions.router, prefix="/api", tags=["Executions"])
app.include_router(flows.router, prefix="/api", tags=["Flows"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(health.router, prefix="/api", tags=["Health"])


@app.middleware("http")
async def log_requests(request: Request, call_next):
    if not any(x in request.url.path for x in ["/docs", "/openapi.json", "/favicon.ico"]):
        logger.info(f"🔍 [REQUEST] {request.method} {request.url.path}")
    return await call_next(request)


@app.on_event("startup")
async def startup_event():
    logger.info("🚀 Iniciando FlowBot API...")

    # Consumidor interno: processa a fila mesmo sem um container de worker separado
    if os.getenv("RUN_INTERNAL_WORKER", "true").lower() == "true":
        try:
            from worker import handle_flow_execution, PREFETCH_COUNT
            from rabbitmq_client import FLOW_EXECUTIONS_QUEUE
            await rabbitmq.connect()
            await rabbitmq.consume(FLOW_EXECUTIONS_QUEUE, handle_flow_execution, prefetch_count=PREFETCH_COUNT)
        except Exception as e:
            logger.error(f"❌ Falha ao iniciar worker interno: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    await rabbitmq.close()


@app.get("/")
async def read_root():
    return {
        "message": "FlowBot API",
        "docs": "/docs",
        "status": "online",
    }
