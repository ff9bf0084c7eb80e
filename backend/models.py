from sqlalchemy import Column, Integer, String, JSON, DateTime, ForeignKey, Boolean, Float, Text, Index, UniqueConstraint, text
from sqlalchemy.sql import func
from database import Base
from sqlalchemy.orm import relationship


class Connection(Base):
    """Instância WhatsApp (Evolution API) usada para enviar as mensagens do fluxo"""
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    api_url = Column(String, nullable=False)
    api_key = Column(String, nullable=True)
    instance_name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    conversations = relationship("Conversation", back_populates="connection")


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False, index=True)
    contact_phone = Column(String, index=True, nullable=False)
    contact_name = Column(String, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    connection = relationship("Connection", back_populates="conversations")
    messages = relationship("ChatMessage", back_populates="conversation")


class Flow(Base):
    __tablename__ = "flows"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, index=True, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    is_draft = Column(Boolean, default=True)
    version = Column(Integer, default=1)

    # Gatilho por palavra-chave (mensagem recebida inicia o fluxo)
    trigger_enabled = Column(Boolean, default=False)
    trigger_keywords = Column(JSON, default=list)
    trigger_match_mode = Column(String, default="exact")  # exact, contains, starts_with
    connection_ids = Column(JSON, default=list)  # Vazio = todas as conexões

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    nodes = relationship("FlowNode", back_populates="flow", cascade="all, delete-orphan")
    edges = relationship("FlowEdge", back_populates="flow", cascade="all, delete-orphan")
    sessions = relationship("FlowSession", back_populates="flow", cascade="all, delete-orphan")


class FlowNode(Base):
    __tablename__ = "flow_nodes"
    __table_args__ = (UniqueConstraint("flow_id", "node_id", name="uq_flow_nodes_flow_node"),)

    id = Column(Integer, primary_key=True, index=True)
    flow_id = Column(Integer, ForeignKey("flows.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)  # ID do nó no editor visual
    node_type = Column(String, nullable=False)  # start, end, message, menu, input, delay, condition, action
    name = Column(String, nullable=True)
    position_x = Column(Float, default=0)
    position_y = Column(Float, default=0)
    content = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    flow = relationship("Flow", back_populates="nodes")


class FlowEdge(Base):
    __tablename__ = "flow_edges"

    id = Column(Integer, primary_key=True, index=True)
    flow_id = Column(Integer, ForeignKey("flows.id"), nullable=False, index=True)
    edge_id = Column(String, nullable=True)
    source_node_id = Column(String, nullable=False, index=True)
    target_node_id = Column(String, nullable=False)
    source_handle = Column(String, nullable=True)  # "true", "false", "option_0", "default"...
    target_handle = Column(String, nullable=True)
    label = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    flow = relationship("Flow", back_populates="edges")


class FlowSession(Base):
    """
    Estado durável de uma execução de fluxo para uma conversa.
    Apenas uma sessão ativa por conversa (índice único parcial em is_active).
    """
    __tablename__ = "flow_sessions"

    id = Column(Integer, primary_key=True, index=True)
    flow_id = Column(Integer, ForeignKey("flows.id"), nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    current_node_id = Column(String, nullable=True)
    variables = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    status = Column(String, default="active")  # active, completed, failed
    version = Column(Integer, default=1, nullable=False)  # Compare-and-swap nas retomadas
    failure_reason = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    ended_at = Column(DateTime(timezone=True), nullable=True)

    flow = relationship("Flow", back_populates="sessions")
    conversation = relationship("Conversation")


Index(
    "uq_flow_sessions_active_conversation",
    FlowSession.conversation_id,
    unique=True,
    postgresql_where=text("is_active"),
    sqlite_where=text("is_active"),
)


class ChatMessage(Base):
    """Histórico de mensagens da conversa (espelho de tudo que o fluxo envia)"""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    message_id = Column(String, unique=True, index=True)
    from_me = Column(Boolean, default=True)
    content = Column(Text, nullable=True)
    message_type = Column(String, default="text")  # text, image, video, audio
    media_url = Column(String, nullable=True)
    status = Column(String, default="sent")  # sent, failed
    timestamp = Column(DateTime(timezone=True), server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")


class EmailQueueItem(Base):
    __tablename__ = "email_queue"

    id = Column(Integer, primary_key=True, index=True)
    to_email = Column(String, nullable=False)
    to_name = Column(String, nullable=True)
    subject = Column(String, nullable=False)
    body_html = Column(Text, nullable=False)
    body_text = Column(Text, nullable=True)
    context_type = Column(String, default="flow")
    context_id = Column(String, nullable=True)
    variables = Column(JSON, default=dict)
    status = Column(String, default="pending")  # pending, sent, failed
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)


class AppConfig(Base):
    """
    Armazena configurações dinâmicas do sistema (ex: credenciais da Evolution API).
    Substitui a necessidade de reiniciar para ler variáveis de ambiente.
    """
    __tablename__ = "app_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, index=True, nullable=False)
    value = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
