"""
Flow Interpreter: executa o grafo de um fluxo contra uma conversa.

Pontos de entrada:
    start(flow_id, conversation_id, start_node_id="start", initial_variables=None)
    continue_with_input(conversation_id, user_input)

Ambos podem ficar suspensos por tempo arbitrário (nós de delay e pausas entre
envios passam pelo `sleep` injetado). Quem chama a partir de uma requisição HTTP
deve usar execução em segundo plano (BackgroundTasks ou a fila do worker).
"""
import re
from threading import Lock
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

import models
from schemas import ExecutionResult
from config_loader import get_int_setting
from services.chat_log import ChatLog
from services.email_queue import EmailQueue
from services.errors import ConcurrentResume, ConversationNotFound, DisconnectedStart, FlowError, NoActiveSession, NodeNotFound
from services.execution_log import ExecutionLog
from services.flow_graph import START_NODE_ID, FlowGraph, GraphEdge, GraphNode, GraphStore
from services.handlers import NodeDispatcher, NodeResult, RunContext
from services.session_store import SessionStore
from services.variables import normalize_text
from core.logger import setup_logger

logger = setup_logger("FlowEngine")

DEFAULT_MAX_STEPS = 50
DEFAULT_HANDLE = "default"

_execution_log: Optional[ExecutionLog] = None
_execution_log_lock = Lock()


def _shared_execution_log() -> ExecutionLog:
    global _execution_log
    with _execution_log_lock:
        if _execution_log is None:
            _execution_log = ExecutionLog(
                max_entries=get_int_setting("EXECUTION_LOG_MAX_ENTRIES", 200),
                max_conversations=get_int_setting("EXECUTION_LOG_MAX_CONVERSATIONS", 100),
            )
        return _execution_log


def query_execution_log(conversation_id: int = None, limit: int = 100) -> List[dict]:
    return _shared_execution_log().query(conversation_id, limit)


def clear_execution_log(conversation_id: int = None):
    _shared_execution_log().clear(conversation_id)


def select_edge(edges: List[GraphEdge], handle: Optional[str], fallback_handle: Optional[str] = None) -> Optional[GraphEdge]:
    """Aresta com o handle pedido; senão a do fallback_handle; senão a primeira (ordem visual)."""
    if not edges:
        return None
    if handle:
        for edge in edges:
            if edge.source_handle == handle:
                return edge
        if fallback_handle:
            for edge in edges:
                if edge.source_handle == fallback_handle:
                    return edge
    return edges[0]


def match_menu_option(options, user_input) -> Optional[int]:
    """
    Índice (base 0) da opção escolhida: primeiro pelo número digitado (1, 2, 3...),
    depois pelo rótulo, sem diferenciar maiúsculas nem acentos (igual ou contido na resposta).
    """
    raw = str(user_input or "").strip()

    number = re.match(r"^(\d+)", raw)
    if number:
        position = int(number.group(1))
        if 1 <= position <= len(options):
            return position - 1

    answer = normalize_text(raw)
    for idx, option in enumerate(options):
        label = normalize_text(option.display_label)
        if label and (label == answer or label in answer):
            return idx
    return None


class FlowInterpreter:
    def __init__(self, db: Session, gateway=None, graph_store: GraphStore = None,
                 session_store: SessionStore = None, chat_log: ChatLog = None,
                 email_queue: EmailQueue = None, execution_log: ExecutionLog = None,
                 sleep=None, max_steps: int = None, message_delay_ms: int = None,
                 gallery_delay_ms: int = None):
        if gateway is None:
            from whatsapp_client import EvolutionClient
            gateway = EvolutionClient()

        self.db = db
        self.graph_store = graph_store or GraphStore(db)
        self.session_store = session_store or SessionStore(db)
        self.execution_log = execution_log or _shared_execution_log()
        self.max_steps = max_steps or get_int_setting("FLOW_MAX_STEPS", DEFAULT_MAX_STEPS, db=db)
        self.dispatcher = NodeDispatcher(
            gateway=gateway,
            chat_log=chat_log or ChatLog(db),
            email_queue=email_queue or EmailQueue(db),
            sleep=sleep,
            message_delay_ms=message_delay_ms if message_delay_ms is not None
            else get_int_setting("FLOW_MESSAGE_DELAY_MS", 800, db=db),
            gallery_delay_ms=gallery_delay_ms if gallery_delay_ms is not None
            else get_int_setting("FLOW_GALLERY_DELAY_MS", 2000, db=db),
        )

    # --- helpers ---

    def _log(self, ctx: RunContext, entry_type: str, message: str, **fields):
        self.execution_log.append(ctx.conversation_id, entry_type, message, flowId=ctx.flow_id, **fields)

    def _load_context(self, flow_id: int, conversation_id: int, variables: dict) -> Tuple[RunContext, models.Conversation]:
        conversation = self.db.get(models.Conversation, conversation_id)
        if not conversation:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        ctx = RunContext(
            flow_id=flow_id,
            conversation_id=conversation_id,
            connection=conversation.connection,
            phone=conversation.contact_phone,
            variables=variables,
        )
        return ctx, conversation

    @staticmethod
    def _failure(error: FlowError, session_id: int = None, nodes_processed: int = 0,
                 current_node: str = None) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            error=error.message,
            error_code=error.code,
            session_id=session_id,
            nodes_processed=nodes_processed,
            current_node=current_node,
        )

    # --- entry points ---

    async def start(self, flow_id: int, conversation_id: int, start_node_id: str = START_NODE_ID,
                    initial_variables: dict = None) -> ExecutionResult:
        logger.info(f"⚙️ Starting flow {flow_id} for conversation {conversation_id} (node: {start_node_id})")
        try:
            graph = self.graph_store.load_graph(flow_id)

            current_node_id = start_node_id
            if start_node_id == START_NODE_ID:
                current_node_id = graph.first_target(graph.start_node_id or START_NODE_ID)
                if not current_node_id:
                    raise DisconnectedStart(f"Flow {flow_id}: start node is not connected to other nodes")

            ctx, conversation = self._load_context(flow_id, conversation_id, {})
            ctx.variables["nome"] = conversation.contact_name or ""
            ctx.variables["telefone"] = conversation.contact_phone or ""
            ctx.variables.update({k: str(v) for k, v in (initial_variables or {}).items()})

            session = self.session_store.open_session(flow_id, conversation_id, current_node_id, ctx.variables)
        except FlowError as e:
            logger.error(f"❌ Flow {flow_id} could not start for conversation {conversation_id}: {e.message}")
            self.execution_log.append(conversation_id, "error", e.message, flowId=flow_id)
            return self._failure(e)

        return await self._run_pass(graph, session, ctx, current_node_id, resumed=False)

    async def continue_with_input(self, conversation_id: int, user_input: str) -> ExecutionResult:
        logger.info(f"📨 Continuing flow for conversation {conversation_id} with input: {str(user_input)[:50]!r}")
        session = self.session_store.get_active_session(conversation_id)
        if not session:
            logger.info(f"ℹ️ No active flow session for conversation {conversation_id}")
            return self._failure(NoActiveSession(f"No active flow session for conversation {conversation_id}"))

        variables = dict(session.variables or {})
        expected_node_id = session.current_node_id
        try:
            graph = self.graph_store.load_graph(session.flow_id)
            ctx, _ = self._load_context(session.flow_id, conversation_id, variables)
        except FlowError as e:
            logger.error(f"❌ Could not resume session {session.id}: {e.message}")
            self.execution_log.append(conversation_id, "error", e.message, flowId=session.flow_id, resumed=True)
            return self._failure(e, session_id=session.id)

        node = graph.get_node(expected_node_id)
        if node is None:
            return self._fail_missing_node(ctx, session, expected_node_id, nodes_processed=0)

        next_handle = self._apply_input(node, ctx, user_input)

        edges = graph.outgoing(node.id)
        if not edges:
            self._log(ctx, "flow_complete", "No outgoing edges from current node, flow complete",
                      nodeId=node.id, nodeType=node.type, variables=ctx.variables, resumed=True)
            try:
                self.session_store.mark_complete(session, ctx.variables)
            except ConcurrentResume as e:
                return self._failure(e, session_id=session.id)
            return ExecutionResult(success=True, flow_complete=True, current_node=node.id, session_id=session.id)

        edge = select_edge(edges, next_handle, DEFAULT_HANDLE) if next_handle else edges[0]
        try:
            self.session_store.advance(session, expected_node_id, edge.target, ctx.variables)
        except ConcurrentResume as e:
            logger.warning(f"⚠️ {e.message}. Ignoring this resume.")
            self.execution_log.append(conversation_id, "error", e.message, flowId=session.flow_id, resumed=True)
            return self._failure(e, session_id=session.id)

        self._log(ctx, "transition", f"Resuming: {node.id} -> {edge.target}",
                  fromNodeId=node.id, toNodeId=edge.target, handle=next_handle, resumed=True)
        return await self._run_pass(graph, session, ctx, edge.target, resumed=True)

    # --- resume ---

    def _apply_input(self, node: GraphNode, ctx: RunContext, user_input: str) -> Optional[str]:
        if node.type == "input":
            var_name = node.content.target_variable
            ctx.variables[var_name] = user_input
            logger.info(f"💾 Stored input in variable '{var_name}'")
            return None

        if node.type == "menu":
            options = node.content.options
            idx = match_menu_option(options, user_input)
            if idx is None:
                logger.info("ℹ️ No menu option matched, using default handle")
                return DEFAULT_HANDLE
            var_name = node.content.variable_name or "opcao"
            ctx.variables[var_name] = options[idx].display_label
            logger.info(f"✅ Menu option matched: {options[idx].display_label} (handle: option_{idx})")
            return f"option_{idx}"

        logger.warning(f"⚠️ Resuming at node {node.id} of type {node.type}, which does not wait for input")
        return None

    def _fail_missing_node(self, ctx: RunContext, session: models.FlowSession, node_id: str,
                           nodes_processed: int) -> ExecutionResult:
        error = NodeNotFound(f"Node {node_id} not found in flow {ctx.flow_id}")
        logger.error(f"❌ {error.message}")
        self._log(ctx, "error", error.message, nodeId=node_id, step=nodes_processed)
        try:
            self.session_store.mark_failed(session, error.message, ctx.variables)
        except ConcurrentResume as e:
            logger.warning(f"⚠️ Could not mark session {session.id} as failed: {e.message}")
        return self._failure(error, session_id=session.id, nodes_processed=nodes_processed, current_node=node_id)

    # --- traversal ---

    async def _dispatch(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        try:
            return await self.dispatcher.dispatch(node, ctx)
        except Exception as e:
            logger.exception(f"❌ Unexpected error processing node {node.id} ({node.type})")
            return NodeResult(success=False, error=str(e))

    async def _run_pass(self, graph: FlowGraph, session: models.FlowSession, ctx: RunContext,
                        node_id: str, resumed: bool) -> ExecutionResult:
        current_node_id = node_id
        last_node_id = None
        processed = 0

        while current_node_id and processed < self.max_steps:
            node = graph.get_node(current_node_id)
            if node is None:
                return self._fail_missing_node(ctx, session, current_node_id, processed)

            processed += 1
            last_node_id = node.id
            logger.info(f"📍 PROCESSING NODE: Type={node.type} ID={node.id} (step {processed})")
            self._log(ctx, "node_start", f"Processing {node.type} node", nodeId=node.id,
                      nodeType=node.type, nodeName=node.name, step=processed, resumed=resumed)

            result = await self._dispatch(node, ctx)

            if not result.success:
                # Não fatal: a travessia segue adiante
                logger.error(f"❌ Node {node.id} processing failed: {result.error}")
                self._log(ctx, "error", result.error or "Node processing failed", nodeId=node.id,
                          nodeType=node.type, step=processed)

            if result.wait_for_input:
                try:
                    self.session_store.save_wait_point(session, node.id, ctx.variables)
                except ConcurrentResume as e:
                    logger.warning(f"⚠️ {e.message}")
                    return self._failure(e, session_id=session.id, nodes_processed=processed, current_node=node.id)
                self._log(ctx, "waiting_input", f"Waiting for input at {node.type} node", nodeId=node.id,
                          nodeType=node.type, step=processed, variables=ctx.variables)
                return ExecutionResult(success=True, waiting_for_input=True, current_node=node.id,
                                       nodes_processed=processed, session_id=session.id)

            edges = graph.outgoing(node.id)
            if not edges:
                logger.info(f"🏁 Flow {ctx.flow_id} complete. Processed {processed} nodes")
                self._log(ctx, "flow_complete", "No more edges, flow complete", nodeId=node.id,
                          step=processed, variables=ctx.variables)
                try:
                    self.session_store.mark_complete(session, ctx.variables, node.id)
                except ConcurrentResume as e:
                    return self._failure(e, session_id=session.id, nodes_processed=processed, current_node=node.id)
                return ExecutionResult(success=True, flow_complete=True, current_node=node.id,
                                       nodes_processed=processed, session_id=session.id)

            edge = select_edge(edges, result.next_handle)
            self._log(ctx, "transition", f"{node.id} -> {edge.target}", fromNodeId=node.id,
                      toNodeId=edge.target, handle=result.next_handle, step=processed)
            current_node_id = edge.target

        # Orçamento de passos esgotado: para sem erro, sessão continua ativa no último nó processado
        logger.warning(f"⚠️ Flow {ctx.flow_id}: step budget ({self.max_steps}) exhausted at node {last_node_id}")
        try:
            self.session_store.save_wait_point(session, last_node_id, ctx.variables)
        except ConcurrentResume as e:
            logger.warning(f"⚠️ {e.message}")
        return ExecutionResult(success=True, current_node=last_node_id, nodes_processed=processed,
                               session_id=session.id)
