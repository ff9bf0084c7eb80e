"""Tests for keyword triggers and inbound message routing."""
import pytest

import models
from services.errors import ConnectionNotFound
from services.session_store import SessionStore
from services.triggers import find_triggered_flow, get_or_create_conversation, keyword_matches, route_inbound_message


def test_keyword_match_modes():
    assert keyword_matches("  Oi ", ["oi"], "exact")
    assert not keyword_matches("oi tudo bem", ["oi"], "exact")
    assert keyword_matches("Quero ver o CATÁLOGO", ["catálogo"], "contains")
    assert keyword_matches("menu principal", ["Menu"], "starts_with")
    assert not keyword_matches("abrir menu", ["menu"], "starts_with")


def test_keyword_match_ignores_blank_input_and_keywords():
    assert not keyword_matches("", ["oi"])
    assert not keyword_matches("oi", ["", "  "])
    assert not keyword_matches("oi", None)


def test_unknown_match_mode_behaves_as_exact():
    assert keyword_matches("oi", ["oi"], "regex")
    assert not keyword_matches("oi!", ["oi"], "regex")


def test_first_matching_flow_by_creation_order(db, flow_factory, connection):
    first = flow_factory(name="A", trigger_enabled=True, trigger_keywords=["promo"], trigger_match_mode="contains")
    flow_factory(name="B", trigger_enabled=True, trigger_keywords=["promo"], trigger_match_mode="contains")

    assert find_triggered_flow(db, connection.id, "tem promo hoje?").id == first.id


def test_inactive_and_disabled_flows_are_skipped(db, flow_factory, connection):
    flow_factory(name="Inativo", is_active=False, trigger_enabled=True, trigger_keywords=["oi"])
    flow_factory(name="Sem gatilho", trigger_enabled=False, trigger_keywords=["oi"])
    enabled = flow_factory(name="Ok", trigger_enabled=True, trigger_keywords=["oi"])

    assert find_triggered_flow(db, connection.id, "oi").id == enabled.id


def test_connection_filter(db, flow_factory, connection):
    flow_factory(name="Outra conexão", trigger_enabled=True, trigger_keywords=["oi"], connection_ids=[connection.id + 100])
    assert find_triggered_flow(db, connection.id, "oi") is None

    allowed = flow_factory(name="Esta conexão", trigger_enabled=True, trigger_keywords=["oi"], connection_ids=[connection.id])
    assert find_triggered_flow(db, connection.id, "oi").id == allowed.id


def test_get_or_create_conversation_is_idempotent(db, connection):
    created = get_or_create_conversation(db, connection.id, "5581900001111", "João")
    again = get_or_create_conversation(db, connection.id, "5581900001111")

    assert created.id == again.id
    assert again.contact_name == "João"
    assert db.query(models.Conversation).count() == 1


def test_get_or_create_conversation_unknown_connection(db):
    with pytest.raises(ConnectionNotFound):
        get_or_create_conversation(db, 999, "5581900001111")


def test_route_inbound_starts_matching_flow(db, flow_factory, connection):
    flow = flow_factory(trigger_enabled=True, trigger_keywords=["oi"])

    job = route_inbound_message(db, connection.id, "5581900001111", "Oi", "João")

    assert job["action"] == "start"
    assert job["flow_id"] == flow.id
    assert db.get(models.Conversation, job["conversation_id"]).contact_phone == "5581900001111"


def test_route_inbound_continues_active_session(db, flow_factory, connection, conversation):
    flow = flow_factory(trigger_enabled=True, trigger_keywords=["oi"])
    SessionStore(db).open_session(flow.id, conversation.id, "menu_1", {})

    job = route_inbound_message(db, connection.id, conversation.contact_phone, "oi")

    assert job == {"action": "continue", "conversation_id": conversation.id, "input": "oi"}


def test_route_inbound_without_match_is_ignored(db, connection):
    job = route_inbound_message(db, connection.id, "5581900001111", "bom dia")
    assert job["action"] == "ignored"
