from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Optional, Any, Dict
from datetime import datetime

NODE_TYPES = ("start", "end", "message", "menu", "input", "delay", "condition", "action")

# --- Conteúdo dos nós (um modelo por tipo de nó) ---

class NodeContent(BaseModel):
    # Campos extras do editor visual são preservados
    model_config = ConfigDict(extra="allow")


class StartContent(NodeContent):
    pass


class EndContent(NodeContent):
    pass


class GalleryImage(NodeContent):
    url: Optional[str] = None
    caption: Optional[str] = None


class MessageContent(NodeContent):
    media_type: str = Field("text", description="text, image, video, audio ou gallery")
    message: Optional[str] = None
    text: Optional[str] = None
    caption: Optional[str] = None
    media_url: Optional[str] = None
    gallery_images: List[GalleryImage] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _default_media_type(cls, data):
        if isinstance(data, dict) and not data.get("media_type"):
            data = {**data, "media_type": "text"}
        return data


class MenuOption(NodeContent):
    id: Optional[Any] = None
    label: Optional[str] = None
    text: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label or self.text or ""


class MenuContent(NodeContent):
    prompt: Optional[str] = None
    message: Optional[str] = None
    options: List[MenuOption] = Field(default_factory=list)
    variable_name: Optional[str] = None


class InputContent(NodeContent):
    text: Optional[str] = None
    prompt: Optional[str] = None
    variable: Optional[str] = None
    variable_name: Optional[str] = None

    @property
    def target_variable(self) -> str:
        return self.variable or self.variable_name or "resposta"


DELAY_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600}


class DelayContent(NodeContent):
    delay_seconds: Optional[float] = None
    duration: Optional[float] = None
    unit: Optional[str] = "seconds"

    def milliseconds(self) -> int:
        if self.duration is not None:
            multiplier = DELAY_UNITS.get(self.unit or "seconds", 1)
            return int(self.duration * multiplier * 1000)
        # Formato legado: delay_seconds (padrão 1s)
        return int((self.delay_seconds or 1) * 1000)


class ConditionRule(NodeContent):
    variable: str = ""
    operator: str = ""
    value: Optional[Any] = None


class ConditionContent(NodeContent):
    rules: List[ConditionRule] = Field(default_factory=list)
    operator: str = "AND"


class ActionContent(NodeContent):
    action_type: Optional[str] = None
    tag_id: Optional[Any] = None
    # external_notification
    external_phone: Optional[str] = None
    external_message: Optional[str] = None
    # send_email
    email_to: Optional[str] = None
    email_to_name: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    email_body_text: Optional[str] = None


NODE_CONTENT_MODELS = {
    "start": StartContent,
    "end": EndContent,
    "message": MessageContent,
    "menu": MenuContent,
    "input": InputContent,
    "delay": DelayContent,
    "condition": ConditionContent,
    "action": ActionContent,
}

# --- Canvas (editor visual) ---

class Position(BaseModel):
    x: float = 0
    y: float = 0


class CanvasNode(BaseModel):
    id: str = Field(..., description="ID do nó no editor", examples=["msg_1"])
    type: str = Field(..., description="Tipo do nó", examples=["message"])
    name: Optional[str] = None
    position: Position = Field(default_factory=Position)
    content: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_shapes(cls, data):
        # Aceita tanto o formato do banco (node_id, position_x) quanto o do React Flow (id, data)
        if not isinstance(data, dict):
            return data
        node_data = data.get("data") or {}
        position = data.get("position") or {
            "x": data.get("position_x") or 0,
            "y": data.get("position_y") or 0,
        }
        return {
            "id": data.get("node_id") or data.get("id"),
            "type": data.get("node_type") or data.get("type"),
            "name": data.get("name") or node_data.get("label"),
            "position": position,
            "content": data.get("content") or node_data.get("content") or {},
        }


class CanvasEdge(BaseModel):
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_shapes(cls, data):
        if not isinstance(data, dict):
            return data
        return {
            "id": data.get("edge_id") or data.get("id"),
            "source": data.get("source_node_id") or data.get("source"),
            "target": data.get("target_node_id") or data.get("target"),
            "source_handle": data.get("source_handle") or data.get("sourceHandle"),
            "target_handle": data.get("target_handle") or data.get("targetHandle"),
            "label": data.get("label"),
        }


class Canvas(BaseModel):
    nodes: List[CanvasNode] = Field(default_factory=list)
    edges: List[CanvasEdge] = Field(default_factory=list)


class CanvasSaveResponse(BaseModel):
    success: bool = True
    version: int

# --- Flow Schemas ---

class FlowBase(BaseModel):
    name: str = Field(..., description="Nome de identificação do fluxo", examples=["Boas-vindas"])
    description: Optional[str] = Field(None, description="Descrição opcional para uso interno")
    trigger_enabled: bool = Field(False, description="Inicia o fluxo quando uma mensagem recebida casar com uma palavra-chave")
    trigger_keywords: List[str] = Field(default_factory=list, examples=[["oi", "menu"]])
    trigger_match_mode: str = Field("exact", description="exact, contains ou starts_with")
    connection_ids: List[int] = Field(default_factory=list, description="Conexões permitidas (vazio = todas)")


class FlowCreate(FlowBase):
    pass


class FlowUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    is_draft: Optional[bool] = None
    trigger_enabled: Optional[bool] = None
    trigger_keywords: Optional[List[str]] = None
    trigger_match_mode: Optional[str] = None
    connection_ids: Optional[List[int]] = None


class Flow(FlowBase):
    id: int = Field(..., description="ID único do fluxo no banco de dados")
    is_active: bool = True
    is_draft: bool = True
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

# --- Execução ---

class StartFlowRequest(BaseModel):
    conversation_id: int = Field(..., description="ID da conversa que receberá o fluxo")
    start_node_id: str = Field("start", description="Nó inicial ('start' segue a primeira aresta do nó inicial)")
    variables: Dict[str, str] = Field(default_factory=dict, description="Variáveis iniciais do escopo")
    background: bool = Field(False, description="Se verdadeiro, executa em segundo plano e responde imediatamente")


class ContinueFlowRequest(BaseModel):
    input: str = Field(..., description="Resposta recebida do contato")
    background: bool = False


class ExecutionResult(BaseModel):
    success: bool
    waiting_for_input: bool = False
    flow_complete: bool = False
    nodes_processed: int = 0
    current_node: Optional[str] = None
    session_id: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class FlowSession(BaseModel):
    id: int
    flow_id: int
    conversation_id: int
    current_node_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    status: str
    version: int
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExecutionLogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    at: datetime
    type: str
    flow_id: Optional[int] = Field(None, alias="flowId")
    conversation_id: Optional[int] = Field(None, alias="conversationId")
    node_id: Optional[str] = Field(None, alias="nodeId")
    node_type: Optional[str] = Field(None, alias="nodeType")
    from_node_id: Optional[str] = Field(None, alias="fromNodeId")
    to_node_id: Optional[str] = Field(None, alias="toNodeId")
    handle: Optional[str] = None
    step: int = 0
    message: str = ""
    variables: Optional[Dict[str, Any]] = None
    resumed: bool = False


class ExecutionLogResponse(BaseModel):
    logs: List[ExecutionLogEntry]

# --- Webhook de mensagens recebidas ---

class InboundMessage(BaseModel):
    connection_id: int = Field(..., description="Conexão (instância) que recebeu a mensagem")
    phone: str = Field(..., description="Telefone do contato", examples=["5511999999999"])
    text: str = Field("", description="Texto da mensagem recebida")
    contact_name: Optional[str] = None
