"""Pytest configuration and fixtures."""
import os
import tempfile
import uuid

# Ambiente de teste antes de importar a aplicação
_db_dir = tempfile.mkdtemp(prefix="flowbot-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'flowbot.db')}"
os.environ["LOG_FILE"] = ""
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RUN_INTERNAL_WORKER"] = "false"
os.environ["EVOLUTION_API_URL"] = ""

import pytest

import models
from database import Base, SessionLocal, engine
from services.engine import FlowInterpreter
from services.execution_log import ExecutionLog


class FakeGateway:
    """Gateway de mensagens que apenas registra os envios."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, connection, recipient, text, kind="text", media_url=None):
        self.sent.append({"to": recipient, "text": text, "kind": kind, "media_url": media_url})
        if self.fail:
            return {"success": False, "error": "gateway down"}
        return {"success": True, "messageId": f"msg-{uuid.uuid4().hex[:12]}"}

    @property
    def texts(self):
        return [m["text"] for m in self.sent]


class RecordingSleeper:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def execution_log():
    return ExecutionLog()


@pytest.fixture
def connection(db):
    conn = models.Connection(
        name="Principal",
        api_url="http://evolution.test",
        api_key="secret",
        instance_name="principal",
    )
    db.add(conn)
    db.commit()
    db.refresh(conn)
    return conn


@pytest.fixture
def conversation(db, connection):
    conv = models.Conversation(connection_id=connection.id, contact_phone="5511999990000", contact_name="Maria")
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv


@pytest.fixture
def flow_factory(db):
    """
    Cria um fluxo persistido.
    nodes: [(node_id, node_type, content, x, y)]; edges: [(source, target, source_handle)]
    """

    def _create(nodes=(), edges=(), **flow_fields):
        flow = models.Flow(name=flow_fields.pop("name", "Fluxo de teste"), **flow_fields)
        db.add(flow)
        db.flush()
        for node_id, node_type, content, x, y in nodes:
            db.add(models.FlowNode(
                flow_id=flow.id, node_id=node_id, node_type=node_type,
                content=content, position_x=x, position_y=y,
            ))
        for source, target, handle in edges:
            db.add(models.FlowEdge(
                flow_id=flow.id, source_node_id=source, target_node_id=target, source_handle=handle,
            ))
        db.commit()
        db.refresh(flow)
        return flow

    return _create


@pytest.fixture
def interpreter(db, gateway, sleeper, execution_log):
    return FlowInterpreter(
        db,
        gateway=gateway,
        sleep=sleeper,
        execution_log=execution_log,
        max_steps=50,
        message_delay_ms=800,
        gallery_delay_ms=2000,
    )
