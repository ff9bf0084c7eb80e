"""Tests for graph loading, content validation and edge ordering."""
import pytest

from schemas import DelayContent, MessageContent, StartContent
from services.errors import DisconnectedStart, EmptyFlow, FlowNotFound, InvalidNodeContent
from services.flow_graph import GraphEdge, GraphNode, GraphStore, build_graph, parse_node_content, sort_edges


def _node(node_id, node_type="message", x=0, y=0):
    return GraphNode(id=node_id, type=node_type, content=StartContent(), x=x, y=y)


def test_edges_are_sorted_by_target_position():
    nodes = {
        "low": _node("low", y=200, x=0),
        "top_right": _node("top_right", y=100, x=50),
        "top_left": _node("top_left", y=100, x=10),
    }
    edges = [GraphEdge("a", "low"), GraphEdge("a", "top_right"), GraphEdge("a", "top_left")]

    ordered = sort_edges(edges, nodes)

    assert [e.target for e in ordered] == ["top_left", "top_right", "low"]


def test_edge_order_does_not_depend_on_insertion_order():
    nodes = {"b": _node("b", y=10), "c": _node("c", y=20)}
    forward = sort_edges([GraphEdge("a", "b"), GraphEdge("a", "c")], nodes)
    backward = sort_edges([GraphEdge("a", "c"), GraphEdge("a", "b")], nodes)
    assert [e.target for e in forward] == [e.target for e in backward] == ["b", "c"]


def test_unknown_targets_sort_last_and_stay_stable():
    nodes = {"b": _node("b", y=500)}
    edges = [GraphEdge("a", "ghost1"), GraphEdge("a", "b"), GraphEdge("a", "ghost2")]
    assert [e.target for e in sort_edges(edges, nodes)] == ["b", "ghost1", "ghost2"]


def test_build_graph_rejects_empty_flow():
    with pytest.raises(EmptyFlow):
        build_graph(1, [], [])


def test_build_graph_rejects_disconnected_start():
    with pytest.raises(DisconnectedStart):
        build_graph(1, [_node("start", "start"), _node("m1")], [])


def test_build_graph_finds_start_node_by_type():
    graph = build_graph(1, [_node("inicio", "start"), _node("m1")], [GraphEdge("inicio", "m1")])
    assert graph.start_node_id == "inicio"
    assert graph.first_target("inicio") == "m1"
    assert graph.outgoing("m1") == []


def test_parse_node_content_unknown_type():
    with pytest.raises(InvalidNodeContent):
        parse_node_content("carousel", {}, "n1")


def test_parse_node_content_invalid_shape():
    with pytest.raises(InvalidNodeContent):
        parse_node_content("menu", {"options": "sim,nao"}, "menu_1")


def test_message_media_type_defaults_to_text():
    content = parse_node_content("message", {"media_type": None, "message": "Oi"}, "m1")
    assert isinstance(content, MessageContent)
    assert content.media_type == "text"


def test_delay_content_milliseconds():
    assert DelayContent(duration=2, unit="minutes").milliseconds() == 120000
    assert DelayContent(delay_seconds=3).milliseconds() == 3000
    assert DelayContent().milliseconds() == 1000


def test_input_target_variable_fallbacks():
    assert parse_node_content("input", {"variable": "email"}).target_variable == "email"
    assert parse_node_content("input", {"variable_name": "cpf"}).target_variable == "cpf"
    assert parse_node_content("input", {}).target_variable == "resposta"


def test_graph_store_loads_persisted_flow(db, flow_factory):
    flow = flow_factory(
        nodes=[
            ("start", "start", {}, 0, 0),
            ("m2", "message", {"message": "dois"}, 0, 300),
            ("m1", "message", {"message": "um"}, 0, 100),
        ],
        edges=[("start", "m2", None), ("start", "m1", None)],
    )

    graph = GraphStore(db).load_graph(flow.id)

    assert graph.start_node_id == "start"
    assert graph.first_target("start") == "m1"
    assert graph.get_node("m2").content.message == "dois"


def test_graph_store_unknown_flow(db):
    with pytest.raises(FlowNotFound):
        GraphStore(db).load_graph(999)


def test_graph_store_rejects_invalid_persisted_content(db, flow_factory):
    flow = flow_factory(
        nodes=[("start", "start", {}, 0, 0), ("c1", "condition", {"rules": [{"variable": ["x"]}]}, 0, 100)],
        edges=[("start", "c1", None)],
    )
    with pytest.raises(InvalidNodeContent):
        GraphStore(db).load_graph(flow.id)
