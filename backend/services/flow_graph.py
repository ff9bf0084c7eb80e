"""
Carregamento e indexação do grafo de um fluxo.

O grafo é imutável durante uma execução: os nós são indexados por ID e as
arestas de cada nó são ordenadas pela posição visual do nó de destino
(de cima para baixo, depois da esquerda para a direita).
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

import models
from schemas import NODE_CONTENT_MODELS, NodeContent
from services.errors import DisconnectedStart, EmptyFlow, FlowNotFound, InvalidNodeContent
from core.logger import setup_logger

logger = setup_logger("FlowGraph")

START_NODE_ID = "start"


@dataclass
class GraphNode:
    id: str
    type: str
    content: NodeContent
    x: float = 0
    y: float = 0
    name: Optional[str] = None


@dataclass
class GraphEdge:
    source: str
    target: str
    source_handle: Optional[str] = None


@dataclass
class FlowGraph:
    flow_id: int
    start_node_id: Optional[str] = None
    node_by_id: Dict[str, GraphNode] = field(default_factory=dict)
    edges_by_source: Dict[str, List[GraphEdge]] = field(default_factory=dict)

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self.node_by_id.get(node_id)

    def outgoing(self, node_id: str) -> List[GraphEdge]:
        return self.edges_by_source.get(node_id, [])

    def first_target(self, node_id: str) -> Optional[str]:
        edges = self.outgoing(node_id)
        return edges[0].target if edges else None


def parse_node_content(node_type: str, raw, node_id: str = None) -> NodeContent:
    """Valida o conteúdo do nó conforme o modelo do seu tipo."""
    model = NODE_CONTENT_MODELS.get(node_type)
    if model is None:
        raise InvalidNodeContent(f"Node {node_id}: unknown node type '{node_type}'")
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise InvalidNodeContent(f"Node {node_id} ({node_type}): {e.errors()[0].get('msg')}") from e


def sort_edges(edges: List[GraphEdge], node_by_id: Dict[str, GraphNode]) -> List[GraphEdge]:
    """Ordena por (y, x) do destino. Ordenação estável; destinos desconhecidos vão para o final."""
    def _key(edge: GraphEdge):
        target = node_by_id.get(edge.target)
        if target is None:
            return (1, 0.0, 0.0)
        return (0, target.y, target.x)

    return sorted(edges, key=_key)


def build_graph(flow_id: int, nodes: List[GraphNode], edges: List[GraphEdge]) -> FlowGraph:
    if not nodes:
        raise EmptyFlow(f"Flow {flow_id} has no nodes configured")

    graph = FlowGraph(flow_id=flow_id)
    for node in nodes:
        graph.node_by_id[node.id] = node

    grouped: Dict[str, List[GraphEdge]] = {}
    for edge in edges:
        grouped.setdefault(edge.source, []).append(edge)
    for source, source_edges in grouped.items():
        graph.edges_by_source[source] = sort_edges(source_edges, graph.node_by_id)

    # Nó inicial: ID literal "start" ou o primeiro nó do tipo start
    if START_NODE_ID in graph.node_by_id:
        graph.start_node_id = START_NODE_ID
    else:
        graph.start_node_id = next((n.id for n in nodes if n.type == "start"), None)

    if graph.start_node_id and not graph.outgoing(graph.start_node_id):
        raise DisconnectedStart(f"Flow {flow_id}: start node is not connected to other nodes")

    return graph


class GraphStore:
    """Leitura (somente) de nós e arestas persistidos."""

    def __init__(self, db: Session):
        self.db = db

    def get_flow(self, flow_id: int) -> models.Flow:
        flow = self.db.get(models.Flow, flow_id)
        if not flow:
            raise FlowNotFound(f"Flow {flow_id} not found")
        return flow

    def list_nodes(self, flow_id: int) -> List[models.FlowNode]:
        return self.db.query(models.FlowNode).filter(models.FlowNode.flow_id == flow_id).all()

    def list_edges(self, flow_id: int) -> List[models.FlowEdge]:
        return (
            self.db.query(models.FlowEdge)
            .filter(models.FlowEdge.flow_id == flow_id)
            .order_by(models.FlowEdge.id)
            .all()
        )

    def load_graph(self, flow_id: int) -> FlowGraph:
        self.get_flow(flow_id)
        node_rows = self.list_nodes(flow_id)
        edge_rows = self.list_edges(flow_id)
        logger.info(f"🕸️ Flow {flow_id}: found {len(node_rows)} nodes and {len(edge_rows)} edges")

        nodes = [
            GraphNode(
                id=row.node_id,
                type=row.node_type,
                content=parse_node_content(row.node_type, row.content, row.node_id),
                x=row.position_x or 0,
                y=row.position_y or 0,
                name=row.name,
            )
            for row in node_rows
        ]
        edges = [
            GraphEdge(source=row.source_node_id, target=row.target_node_id, source_handle=row.source_handle)
            for row in edge_rows
        ]
        return build_graph(flow_id, nodes, edges)
