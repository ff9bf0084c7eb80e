"""Tests for the per-node-type handlers."""
import pytest

import models
from services.chat_log import ChatLog
from services.email_queue import EmailQueue
from services.flow_graph import GraphNode, parse_node_content
from services.handlers import NodeDispatcher, RunContext

from conftest import FakeGateway


def _node(node_type, content, node_id="n1"):
    return GraphNode(id=node_id, type=node_type, content=parse_node_content(node_type, content, node_id))


@pytest.fixture
def ctx(conversation):
    return RunContext(
        flow_id=1,
        conversation_id=conversation.id,
        connection=conversation.connection,
        phone=conversation.contact_phone,
        variables={"nome": "Maria", "produto": "Plano Pro"},
    )


@pytest.fixture
def dispatcher(db, gateway, sleeper):
    return NodeDispatcher(gateway, ChatLog(db), EmailQueue(db), sleep=sleeper,
                          message_delay_ms=800, gallery_delay_ms=2000)


@pytest.mark.asyncio
async def test_text_message_is_substituted_and_logged(db, dispatcher, ctx, gateway, sleeper):
    result = await dispatcher.dispatch(_node("message", {"message": "Oi {{nome}}!"}), ctx)

    assert result.success
    assert gateway.sent == [{"to": "5511999990000", "text": "Oi Maria!", "kind": "text", "media_url": None}]
    assert sleeper.calls == [0.8]

    saved = db.query(models.ChatMessage).filter(models.ChatMessage.conversation_id == ctx.conversation_id).all()
    assert [m.content for m in saved] == ["Oi Maria!"]
    assert saved[0].status == "sent"
    assert saved[0].from_me is True


@pytest.mark.asyncio
async def test_gallery_sends_caption_only_on_first_image(dispatcher, ctx, gateway, sleeper):
    content = {
        "media_type": "gallery",
        "caption": "Conheça o {{produto}}",
        "gallery_images": [{"url": "http://img/1.png"}, {"url": "http://img/2.png"}, {"url": "http://img/3.png"}],
    }

    result = await dispatcher.dispatch(_node("message", content), ctx)

    assert result.success
    assert [m["text"] for m in gateway.sent] == ["Conheça o Plano Pro", "", ""]
    assert [m["kind"] for m in gateway.sent] == ["image", "image", "image"]
    assert sleeper.calls == [2.0, 2.0, 0.8]


@pytest.mark.asyncio
async def test_audio_is_sent_without_caption(dispatcher, ctx, gateway):
    await dispatcher.dispatch(_node("message", {"media_type": "audio", "media_url": "http://a.ogg", "caption": "x"}), ctx)
    assert gateway.sent[0]["kind"] == "audio"
    assert gateway.sent[0]["text"] == ""


@pytest.mark.asyncio
async def test_failed_send_is_reported_but_not_raised(db, ctx, sleeper):
    failing = FakeGateway(fail=True)
    dispatcher = NodeDispatcher(failing, ChatLog(db), EmailQueue(db), sleep=sleeper)

    result = await dispatcher.dispatch(_node("message", {"message": "Oi"}), ctx)

    assert result.success is False
    assert "gateway down" in result.error
    saved = db.query(models.ChatMessage).one()
    assert saved.status == "failed"


@pytest.mark.asyncio
async def test_menu_renders_numbered_options_and_waits(dispatcher, ctx, gateway):
    content = {"prompt": "{{nome}}, escolha:", "options": [{"label": "Sim"}, {"text": "Não"}]}

    result = await dispatcher.dispatch(_node("menu", content), ctx)

    assert result.wait_for_input
    assert gateway.texts == ["Maria, escolha:\n\n1. Sim\n2. Não\n"]


@pytest.mark.asyncio
async def test_input_with_empty_prompt_waits_silently(dispatcher, ctx, gateway):
    result = await dispatcher.dispatch(_node("input", {"text": "  ", "variable": "email"}), ctx)

    assert result.wait_for_input
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_input_with_prompt_sends_it(dispatcher, ctx, gateway):
    result = await dispatcher.dispatch(_node("input", {"text": "Qual seu e-mail, {{nome}}?"}), ctx)

    assert result.wait_for_input
    assert gateway.texts == ["Qual seu e-mail, Maria?"]


@pytest.mark.asyncio
async def test_delay_sleeps_for_configured_duration(dispatcher, ctx, sleeper):
    result = await dispatcher.dispatch(_node("delay", {"duration": 5, "unit": "seconds"}), ctx)
    assert result.success
    assert sleeper.calls == [5.0]


@pytest.mark.asyncio
async def test_condition_selects_handle(dispatcher, ctx):
    node = _node("condition", {"rules": [{"variable": "idade", "operator": "greater_than", "value": "18"}]})

    ctx.variables["idade"] = "21"
    assert (await dispatcher.dispatch(node, ctx)).next_handle == "true"

    ctx.variables["idade"] = "15"
    assert (await dispatcher.dispatch(node, ctx)).next_handle == "false"


@pytest.mark.asyncio
async def test_send_email_action_enqueues_substituted_email(db, dispatcher, ctx):
    content = {
        "action_type": "send_email",
        "email_to": "vendas@empresa.com",
        "email_subject": "Novo lead: {{nome}}",
        "email_body": "<p>Interesse em {{produto}}</p>",
    }

    result = await dispatcher.dispatch(_node("action", content), ctx)

    assert result.success
    item = db.query(models.EmailQueueItem).one()
    assert item.subject == "Novo lead: Maria"
    assert item.body_html == "<p>Interesse em Plano Pro</p>"
    assert item.status == "pending"
    assert item.context_type == "flow"


@pytest.mark.asyncio
async def test_send_email_without_subject_is_non_fatal_error(db, dispatcher, ctx):
    result = await dispatcher.dispatch(_node("action", {"action_type": "send_email", "email_to": "a@b.com"}), ctx)

    assert result.success is False
    assert db.query(models.EmailQueueItem).count() == 0


@pytest.mark.asyncio
async def test_external_notification_is_not_mirrored_to_chat(db, dispatcher, ctx, gateway):
    content = {
        "action_type": "external_notification",
        "external_phone": "5581888887777",
        "external_message": "Lead {{nome}} respondeu",
    }

    result = await dispatcher.dispatch(_node("action", content), ctx)

    assert result.success
    assert gateway.sent == [{"to": "5581888887777", "text": "Lead Maria respondeu", "kind": "text", "media_url": None}]
    assert db.query(models.ChatMessage).count() == 0


@pytest.mark.asyncio
async def test_tag_and_unknown_actions_are_no_ops(dispatcher, ctx, gateway):
    assert (await dispatcher.dispatch(_node("action", {"action_type": "add_tag", "tag_id": 3}), ctx)).success
    assert (await dispatcher.dispatch(_node("action", {"action_type": "launch_rocket"}), ctx)).success
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_start_and_end_are_passthrough(dispatcher, ctx, gateway):
    assert (await dispatcher.dispatch(_node("start", {}), ctx)).success
    assert (await dispatcher.dispatch(_node("end", {}), ctx)).success
    assert gateway.sent == []
