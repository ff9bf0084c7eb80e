from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
import models, schemas
from core.deps import get_db
from core.logger import setup_logger
from services.errors import InvalidNodeContent
from services.flow_graph import parse_node_content

logger = setup_logger(__name__)

router = APIRouter()


def _get_flow_or_404(db: Session, flow_id: int) -> models.Flow:
    flow = db.get(models.Flow, flow_id)
    if not flow:
        raise HTTPException(status_code=404, detail="Flow not found")
    return flow


@router.get("/flows", response_model=List[schemas.Flow], summary="Listar fluxos")
def list_flows(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    """
    Retorna uma lista paginada dos fluxos cadastrados (mais recentes primeiro).
    """
    return (
        db.query(models.Flow)
        .order_by(models.Flow.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


@router.get("/flows/{flow_id}", response_model=schemas.Flow, summary="Obter detalhes de um fluxo")
def read_flow(flow_id: int, db: Session = Depends(get_db)):
    return _get_flow_or_404(db, flow_id)


@router.post("/flows", response_model=schemas.Flow, status_code=201, summary="Criar novo fluxo")
def create_flow(flow: schemas.FlowCreate, db: Session = Depends(get_db)):
    """
    Cria um novo fluxo (rascunho, sem nós).

    - **name**: Nome interno do fluxo.
    - **trigger_keywords**: Palavras-chave que iniciam o fluxo quando `trigger_enabled`.
    - **trigger_match_mode**: `exact`, `contains` ou `starts_with`.
    """
    db_flow = models.Flow(**flow.model_dump(), is_draft=True, version=1)
    db.add(db_flow)
    db.commit()
    db.refresh(db_flow)
    logger.info(f"🆕 Flow created: {db_flow.name} (ID {db_flow.id})")
    return db_flow


@router.patch("/flows/{flow_id}", response_model=schemas.Flow, summary="Atualizar fluxo")
def update_flow(flow_id: int, flow_update: schemas.FlowUpdate, db: Session = Depends(get_db)):
    """
    Atualiza apenas os campos enviados.
    """
    db_flow = _get_flow_or_404(db, flow_id)
    changes = flow_update.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nenhum campo para atualizar")

    for field, value in changes.items():
        setattr(db_flow, field, value)
    db.commit()
    db.refresh(db_flow)
    return db_flow


@router.delete("/flows/{flow_id}", summary="Excluir fluxo")
def delete_flow(flow_id: int, db: Session = Depends(get_db)):
    db_flow = _get_flow_or_404(db, flow_id)
    db.delete(db_flow)
    db.commit()
    logger.info(f"🗑️ Flow {flow_id} deleted")
    return {"success": True}


@router.post("/flows/{flow_id}/toggle", response_model=schemas.Flow, summary="Ativar/desativar fluxo")
def toggle_flow(flow_id: int, db: Session = Depends(get_db)):
    db_flow = _get_flow_or_404(db, flow_id)
    db_flow.is_active = not db_flow.is_active
    db.commit()
    db.refresh(db_flow)
    return db_flow


@router.post("/flows/{flow_id}/duplicate", response_model=schemas.Flow, status_code=201, summary="Duplicar fluxo")
def duplicate_flow(flow_id: int, db: Session = Depends(get_db)):
    """
    Copia o fluxo com todos os nós e arestas. A cópia nasce como rascunho e com o gatilho desligado.
    """
    original = _get_flow_or_404(db, flow_id)

    copy = models.Flow(
        name=f"{original.name} (cópia)",
        description=original.description,
        is_draft=True,
        trigger_enabled=False,
        trigger_keywords=list(original.trigger_keywords or []),
        trigger_match_mode=original.trigger_match_mode,
        connection_ids=list(original.connection_ids or []),
    )
    for node in original.nodes:
        copy.nodes.append(models.FlowNode(
            node_id=node.node_id,
            node_type=node.node_type,
            name=node.name,
            position_x=node.position_x,
            position_y=node.position_y,
            content=dict(node.content or {}),
        ))
    for edge in original.edges:
        copy.edges.append(models.FlowEdge(
            edge_id=edge.edge_id,
            source_node_id=edge.source_node_id,
            target_node_id=edge.target_node_id,
            source_handle=edge.source_handle,
            target_handle=edge.target_handle,
            label=edge.label,
        ))

    db.add(copy)
    db.commit()
    db.refresh(copy)
    logger.info(f"📑 Flow {flow_id} duplicated as {copy.id}")
    return copy


# --- Canvas (nós e arestas) ---

@router.get("/flows/{flow_id}/canvas", response_model=schemas.Canvas, summary="Obter nós e arestas do fluxo")
def get_canvas(flow_id: int, db: Session = Depends(get_db)):
    _get_flow_or_404(db, flow_id)
    nodes = db.query(models.FlowNode).filter(models.FlowNode.flow_id == flow_id).order_by(models.FlowNode.id).all()
    edges = db.query(models.FlowEdge).filter(models.FlowEdge.flow_id == flow_id).order_by(models.FlowEdge.id).all()

    return schemas.Canvas(
        nodes=[
            {
                "node_id": n.node_id,
                "node_type": n.node_type,
                "name": n.name,
                "position_x": n.position_x,
                "position_y": n.position_y,
                "content": n.content or {},
            }
            for n in nodes
        ],
        edges=[
            {
                "edge_id": e.edge_id,
                "source_node_id": e.source_node_id,
                "target_node_id": e.target_node_id,
                "source_handle": e.source_handle,
                "target_handle": e.target_handle,
                "label": e.label,
            }
            for e in edges
        ],
    )


@router.put("/flows/{flow_id}/canvas", response_model=schemas.CanvasSaveResponse, summary="Salvar canvas (substituição total)")
def save_canvas(flow_id: int, canvas: schemas.Canvas, db: Session = Depends(get_db)):
    """
    Substitui todos os nós e arestas do fluxo. O conteúdo de cada nó é validado
    conforme o seu tipo; qualquer nó inválido rejeita o canvas inteiro (422).
    """
    db_flow = _get_flow_or_404(db, flow_id)

    seen = set()
    for node in canvas.nodes:
        if node.id in seen:
            raise HTTPException(status_code=422, detail=f"Duplicate node id: {node.id}")
        seen.add(node.id)
        try:
            parse_node_content(node.type, node.content, node.id)
        except InvalidNodeContent as e:
            raise HTTPException(status_code=422, detail=e.message)

    try:
        db.query(models.FlowEdge).filter(models.FlowEdge.flow_id == flow_id).delete(synchronize_session=False)
        db.query(models.FlowNode).filter(models.FlowNode.flow_id == flow_id).delete(synchronize_session=False)

        for node in canvas.nodes:
            db.add(models.FlowNode(
                flow_id=flow_id,
                node_id=node.id,
                node_type=node.type,
                name=node.name,
                position_x=node.position.x,
                position_y=node.position.y,
                content=node.content,
            ))
        for edge in canvas.edges:
            db.add(models.FlowEdge(
                flow_id=flow_id,
                edge_id=edge.id,
                source_node_id=edge.source,
                target_node_id=edge.target,
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
                label=edge.label,
            ))

        db_flow.version = (db_flow.version or 1) + 1
        db_flow.is_draft = False
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.expire(db_flow)
    logger.info(f"💾 Canvas saved for flow {flow_id}: {len(canvas.nodes)} nodes, {len(canvas.edges)} edges (v{db_flow.version})")
    return schemas.CanvasSaveResponse(version=db_flow.version)
