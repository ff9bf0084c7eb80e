"""
Node Dispatcher: um handler por tipo de nó.

Todo handler devolve um NodeResult uniforme. Falhas de envio e de ações são
reportadas como `success=False` e nunca interrompem a travessia.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from services.flow_graph import GraphNode
from services.rules import evaluate_rules
from services.variables import replace_variables
from core.logger import setup_logger

logger = setup_logger("NodeDispatcher")

DEFAULT_MENU_PROMPT = "Selecione uma opção:"

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class NodeResult:
    success: bool = True
    error: Optional[str] = None
    wait_for_input: bool = False
    next_handle: Optional[str] = None


@dataclass
class RunContext:
    """Dados da conversa disponíveis para os handlers durante uma passada."""
    flow_id: int
    conversation_id: int
    connection: object
    phone: str
    variables: Dict[str, str] = field(default_factory=dict)


async def _sleep_seconds(seconds: float):
    await asyncio.sleep(seconds)


class NodeDispatcher:
    def __init__(self, gateway, chat_log, email_queue, sleep: Sleeper = None,
                 message_delay_ms: int = 800, gallery_delay_ms: int = 2000):
        self.gateway = gateway
        self.chat_log = chat_log
        self.email_queue = email_queue
        # Ponto de suspensão explícito: delay nodes e pausas entre envios passam por aqui
        self.sleep = sleep or _sleep_seconds
        self.message_delay_ms = message_delay_ms
        self.gallery_delay_ms = gallery_delay_ms
        self.handlers = {
            "start": self.handle_passthrough,
            "end": self.handle_passthrough,
            "message": self.handle_message,
            "menu": self.handle_menu,
            "input": self.handle_input,
            "delay": self.handle_delay,
            "condition": self.handle_condition,
            "action": self.handle_action,
        }

    async def dispatch(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        handler = self.handlers.get(node.type)
        if handler is None:
            logger.warning(f"⚠️ Unknown node type: {node.type} ({node.id})")
            return NodeResult()
        return await handler(node, ctx)

    async def _send(self, ctx: RunContext, recipient: str, text: str, kind: str = "text",
                    media_url: str = None, record: bool = True) -> dict:
        try:
            result = await self.gateway.send(ctx.connection, recipient, text, kind, media_url) or {}
        except Exception as e:
            logger.error(f"❌ Gateway error sending {kind} to {recipient}: {e}")
            result = {"success": False, "error": str(e)}
        if record:
            self.chat_log.record_outbound(
                ctx.conversation_id,
                text or None,
                kind,
                media_url,
                result.get("messageId"),
                status="sent" if result.get("success") else "failed",
            )
        return result

    async def handle_passthrough(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        return NodeResult()

    async def handle_message(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        content = node.content
        media_type = content.media_type or "text"
        failures = []

        if media_type == "gallery" and content.gallery_images:
            images = content.gallery_images
            logger.info(f"🖼️ Sending gallery with {len(images)} images")
            for i, img in enumerate(images):
                caption = replace_variables(content.caption, ctx.variables) if i == 0 and content.caption else ""
                result = await self._send(ctx, ctx.phone, caption, "image", img.url)
                if not result.get("success"):
                    failures.append(result.get("error") or "send failed")
                # O canal não garante ordem de entrega: espaçamos os envios
                if i < len(images) - 1:
                    await self.sleep(self.gallery_delay_ms / 1000)

        elif media_type in ("image", "video") and content.media_url:
            caption = replace_variables(content.caption, ctx.variables) if content.caption else ""
            result = await self._send(ctx, ctx.phone, caption, media_type, content.media_url)
            if not result.get("success"):
                failures.append(result.get("error") or "send failed")

        elif media_type == "audio" and content.media_url:
            result = await self._send(ctx, ctx.phone, "", "audio", content.media_url)
            if not result.get("success"):
                failures.append(result.get("error") or "send failed")

        elif content.message or content.text:
            text = replace_variables(content.message or content.text, ctx.variables)
            result = await self._send(ctx, ctx.phone, text, "text")
            if not result.get("success"):
                failures.append(result.get("error") or "send failed")

        else:
            logger.info(f"ℹ️ Message node {node.id} has no content to send")

        await self.sleep(self.message_delay_ms / 1000)

        if failures:
            return NodeResult(success=False, error="; ".join(failures))
        return NodeResult()

    async def handle_menu(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        content = node.content
        menu_text = content.prompt or content.message or DEFAULT_MENU_PROMPT
        if content.options:
            menu_text += "\n\n"
            for idx, opt in enumerate(content.options):
                menu_text += f"{idx + 1}. {opt.display_label}\n"
        menu_text = replace_variables(menu_text, ctx.variables)

        result = await self._send(ctx, ctx.phone, menu_text, "text")
        if not result.get("success"):
            return NodeResult(success=False, error=result.get("error") or "send failed", wait_for_input=True)
        return NodeResult(wait_for_input=True)

    async def handle_input(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        content = node.content
        prompt = replace_variables(content.text or content.prompt or "", ctx.variables)
        # Prompt vazio = aguardar em silêncio
        if not prompt or not prompt.strip():
            return NodeResult(wait_for_input=True)

        result = await self._send(ctx, ctx.phone, prompt, "text")
        if not result.get("success"):
            return NodeResult(success=False, error=result.get("error") or "send failed", wait_for_input=True)
        return NodeResult(wait_for_input=True)

    async def handle_delay(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        delay_ms = node.content.milliseconds()
        logger.info(f"⏱️ Delay node {node.id}: {delay_ms}ms")
        await self.sleep(delay_ms / 1000)
        return NodeResult()

    async def handle_condition(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        content = node.content
        result = evaluate_rules(content.rules, ctx.variables, content.operator)
        logger.info(f"🤔 Condition {node.id} ({content.operator}, {len(content.rules)} rules) -> {result}")
        return NodeResult(next_handle="true" if result else "false")

    async def handle_action(self, node: GraphNode, ctx: RunContext) -> NodeResult:
        content = node.content
        action_type = content.action_type

        try:
            if action_type == "add_tag":
                logger.info(f"🏷️ Flow action: add tag {content.tag_id}")
            elif action_type == "remove_tag":
                logger.info(f"🏷️ Flow action: remove tag {content.tag_id}")
            elif action_type == "close_conversation":
                logger.info(f"🔒 Flow action: close conversation {ctx.conversation_id}")
            elif action_type == "send_email":
                if not content.email_to or not content.email_subject:
                    return NodeResult(success=False, error="send_email requires email_to and email_subject")
                self.email_queue.enqueue(
                    to_email=replace_variables(content.email_to, ctx.variables),
                    to_name=replace_variables(content.email_to_name, ctx.variables),
                    subject=replace_variables(content.email_subject, ctx.variables),
                    body_html=replace_variables(content.email_body or "", ctx.variables),
                    body_text=replace_variables(content.email_body_text, ctx.variables),
                    context_id=ctx.conversation_id,
                    variables=ctx.variables,
                )
            elif action_type == "external_notification":
                if content.external_phone and content.external_message:
                    message = replace_variables(content.external_message, ctx.variables)
                    target_phone = replace_variables(content.external_phone, ctx.variables)
                    result = await self._send(ctx, target_phone, message, "text", record=False)
                    if not result.get("success"):
                        return NodeResult(success=False, error=result.get("error") or "external notification failed")
            else:
                logger.warning(f"⚠️ Unknown action type: {action_type!r} ({node.id})")
        except Exception as e:
            logger.error(f"❌ Action node {node.id} ({action_type}) failed: {e}")
            return NodeResult(success=False, error=str(e))

        return NodeResult()
