"""Matrix editor API routes."""

from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import models, presence, rbac, schemas
from ..auth import get_current_user
from ..database import get_db
from ..services import (
    batches,
    cell_comments,
    cells,
    change_feed,
    matrix_data,
    matrix_layout,
    media_automation,
    partitions,
    rules,
)
from ..services.editor import MatrixEditor, open_editor
from ..services.errors import ForbiddenError, NotFoundError, UserError

# purpose: expose cell scoring, rules, undo, the change feed and matrix layout to editor clients
# status: pilot
# depends_on: matrix_editor.services

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project_id}/matrices/{matrix_id}", tags=["matrix-editor"])

SEARCH_FLAGS: dict[str, dict[str, bool]] = {
    "scored_undocumented_unimaged": {"scored": True, "undocumented": True, "unimaged": True},
    "undocumented_unimaged": {"undocumented": True, "unimaged": True},
    "unscored": {"unscored": True},
    "npa": {"npa": True},
    "unimaged": {"unimaged": True},
    "polymorphic": {"polymorphic": True},
    "unused_media": {"unused_media": True},
}


def _editor(db: Session, project_id: int, matrix_id: int, user: models.User, *, readonly: bool = False) -> MatrixEditor:
    try:
        editor = open_editor(db, project_id, matrix_id, user.id, readonly=readonly)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if not rbac.is_project_member(db, project_id, user):
        _logger.info("user %s is not a member of project %s", user.id, project_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You are not a member of this project")
    return editor


async def _apply(db: Session, editor: MatrixEditor, operation: Callable[..., dict[str, Any]], *args, **kwargs) -> dict[str, Any]:
    """Run one engine call as a unit of work and notify peers when it changed something."""

    try:
        result = operation(editor, *args, **kwargs)
        db.commit()
    except UserError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"ok": False, "errors": exc.messages},
        ) from exc
    except ForbiddenError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except Exception as exc:
        db.rollback()
        _logger.exception("matrix editor call %s failed", getattr(operation, "__name__", "operation"))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unknown error") from exc
    if result.pop("notify", False):
        await presence.notify_peers(editor.matrix_id, editor.user_id)
    return {"ok": True, **result}


def _listed(key: str, operation: Callable[[MatrixEditor], list]) -> Callable[[MatrixEditor], dict[str, Any]]:
    def wrapper(editor: MatrixEditor) -> dict[str, Any]:
        return {key: operation(editor)}

    wrapper.__name__ = operation.__name__
    return wrapper


@router.get("")
async def get_matrix_data(
    project_id: int,
    matrix_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, matrix_data.get_matrix_data)


@router.post("/cells/fetch")
async def fetch_cells_data(
    project_id: int,
    matrix_id: int,
    payload: schemas.CellScopeRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, matrix_data.fetch_cells_data, payload.taxa_ids, payload.character_ids)


@router.post("/cells/states")
async def set_cell_states(
    project_id: int,
    matrix_id: int,
    payload: schemas.SetCellStatesRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.set_cell_states,
        payload.taxa_ids,
        payload.character_ids,
        payload.state_ids,
        batch_mode=payload.batch_mode,
        uncertain=payload.uncertain,
    )


@router.post("/cells/continuous")
async def set_cell_continuous_values(
    project_id: int,
    matrix_id: int,
    payload: schemas.SetContinuousValuesRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.set_cell_continuous_values,
        payload.taxa_ids,
        payload.character_ids,
        payload.start_value,
        payload.end_value,
        batch_mode=payload.batch_mode,
    )


@router.post("/cells/copy")
async def copy_cell_scores(
    project_id: int,
    matrix_id: int,
    payload: schemas.CopyCellScoresRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.copy_cell_scores,
        payload.source_taxon_id,
        payload.dest_taxon_id,
        payload.character_ids,
        batch_mode=payload.batch_mode,
        copy_notes=payload.copy_notes,
    )


@router.post("/cells/notes")
async def set_cell_notes(
    project_id: int,
    matrix_id: int,
    payload: schemas.SetCellNotesRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.set_cell_notes,
        payload.taxa_ids,
        payload.character_ids,
        payload.notes,
        payload.status,
        batch_mode=payload.batch_mode,
    )


@router.post("/cells/media")
async def add_cell_media(
    project_id: int,
    matrix_id: int,
    payload: schemas.AddCellMediaRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.add_cell_media,
        payload.taxon_id,
        payload.character_ids,
        payload.media_ids,
        batch_mode=payload.batch_mode,
    )


@router.post("/cells/media/remove")
async def remove_cell_media(
    project_id: int,
    matrix_id: int,
    payload: schemas.RemoveCellMediaRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.remove_cell_media,
        payload.taxon_id,
        payload.character_id,
        payload.link_id,
        transfer_citations=payload.transfer_citations,
    )


@router.post("/cells/media/remove-all")
async def remove_cells_media(
    project_id: int,
    matrix_id: int,
    payload: schemas.RemoveCellsMediaRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, cells.remove_cells_media, payload.taxon_id, payload.character_ids)


@router.post("/cells/citations")
async def add_cell_citations(
    project_id: int,
    matrix_id: int,
    payload: schemas.AddCellCitationsRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.add_cell_citations,
        payload.taxa_ids,
        payload.character_ids,
        payload.citation_id,
        payload.pp,
        payload.notes,
        batch_mode=payload.batch_mode,
    )


@router.get("/cells/citations")
async def get_cell_citations(
    project_id: int,
    matrix_id: int,
    taxon_id: int,
    character_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, cells.get_cell_citations, taxon_id, character_id)


@router.delete("/cells/citations/{link_id}")
async def remove_cell_citation(
    project_id: int,
    matrix_id: int,
    link_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, cells.remove_cell_citation, link_id)


@router.put("/cells/citations/{link_id}")
async def upsert_cell_citation(
    project_id: int,
    matrix_id: int,
    link_id: int,
    payload: schemas.UpsertCellCitationRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        cells.upsert_cell_citation,
        link_id,
        payload.taxon_id,
        payload.character_id,
        payload.citation_id,
        payload.pp,
        payload.notes,
    )


@router.post("/cells/comments")
async def add_cell_comment(
    project_id: int,
    matrix_id: int,
    payload: schemas.CellCommentCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db, editor, cell_comments.add_cell_comment, payload.taxon_id, payload.character_id, payload.comment
    )


@router.get("/cells/comments")
async def get_cell_comments(
    project_id: int,
    matrix_id: int,
    taxon_id: int,
    character_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, cell_comments.get_cell_comments, taxon_id, character_id)


@router.get("/cells/comments/counts")
async def get_comment_counts(
    project_id: int,
    matrix_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, cell_comments.get_comment_counts)


@router.post("/cells/check")
async def log_cell_check(
    project_id: int,
    matrix_id: int,
    payload: schemas.CellScopeRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, cells.log_cell_check, payload.taxa_ids, payload.character_ids)


@router.get("/cells/changes")
async def get_cell_changes(
    project_id: int,
    matrix_id: int,
    taxon_id: int,
    character_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, matrix_data.get_cell_changes, taxon_id, character_id)


@router.post("/cells/counts")
async def get_cell_counts(
    project_id: int,
    matrix_id: int,
    payload: schemas.CellCountsRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(
        db,
        editor,
        matrix_data.get_cell_counts,
        payload.start_character_num,
        payload.end_character_num,
        payload.start_taxon_num,
        payload.end_taxon_num,
    )


@router.get("/rules")
async def get_character_rules(
    project_id: int,
    matrix_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, _listed("rules", rules.get_character_rules))


@router.post("/rules")
async def add_character_rule_action(
    project_id: int,
    matrix_id: int,
    payload: schemas.AddRuleActionRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        rules.add_character_rule_action,
        payload.character_id,
        payload.state_id,
        payload.action_character_ids,
        payload.action_state_id,
        payload.action,
    )


@router.post("/rules/remove")
async def remove_character_rule_action(
    project_id: int,
    matrix_id: int,
    payload: schemas.RemoveRuleActionRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, rules.remove_character_rule_action, payload.character_id, payload.action_id)


@router.get("/rules/violations")
async def get_rule_violations(
    project_id: int,
    matrix_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, rules.get_rule_violations)


@router.post("/rules/violations/fix")
async def fix_rule_violations(
    project_id: int,
    matrix_id: int,
    payload: schemas.FixRuleViolationsRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    violations = [violation.model_dump(exclude_none=True) for violation in payload.violations]
    return await _apply(db, editor, rules.fix_rule_violations, violations)


@router.post("/rules/violations/fix-all")
async def fix_all_rule_violations(
    project_id: int,
    matrix_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, rules.fix_all_rule_violations)


@router.post("/characters/media")
async def add_character_media(
    project_id: int,
    matrix_id: int,
    payload: schemas.AddCharacterMediaRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(
        db,
        editor,
        media_automation.add_character_media,
        payload.character_id,
        payload.state_id,
        payload.media_ids,
    )


@router.get("/batches")
async def get_cell_batch_logs(
    project_id: int,
    matrix_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    return await _apply(db, editor, _listed("logs", batches.get_cell_batch_logs))


@router.post("/batches/undo")
async def undo_cell_batch(
    project_id: int,
    matrix_id: int,
    payload: schemas.UndoBatchRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, batches.undo_cell_batch, payload.id)


@router.get("/changes")
async def fetch_changes(
    project_id: int,
    matrix_id: int,
    since: int,
    client_id: str | None = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    registry = presence.get_registry()
    if client_id:
        session = await registry.lookup(matrix_id, client_id)
        if session is None or session.user_id != user.id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"ok": False, "errors": ["User invalid"]})
    result = await _apply(db, editor, change_feed.fetch_changes, since)
    if client_id:
        await registry.touch(matrix_id, client_id, result["ts"])
    return result


@router.post("/search/cells")
async def search_cells(
    project_id: int,
    matrix_id: int,
    payload: schemas.SearchRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    flags = {
        name: value
        for name, value in SEARCH_FLAGS.get(payload.limitation, {}).items()
        if name in {"unscored", "scored", "undocumented", "npa", "polymorphic", "unimaged"}
    }
    return await _apply(db, editor, matrix_data.search_cells, payload.partition_id, payload.taxon_id, **flags)


@router.post("/search/taxa")
async def search_taxa(
    project_id: int,
    matrix_id: int,
    payload: schemas.SearchRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    flags = {name: value for name, value in SEARCH_FLAGS.get(payload.limitation, {}).items() if name in {"unscored", "npa"}}
    return await _apply(db, editor, matrix_data.search_taxa, payload.partition_id, **flags)


@router.post("/search/characters")
async def search_characters(
    project_id: int,
    matrix_id: int,
    payload: schemas.SearchRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user, readonly=True)
    flags = {
        name: value
        for name, value in SEARCH_FLAGS.get(payload.limitation, {}).items()
        if name in {"unscored", "unused_media", "npa"}
    }
    return await _apply(db, editor, matrix_data.search_characters, payload.partition_id, **flags)


@router.post("/taxa")
async def add_taxa_to_matrix(
    project_id: int,
    matrix_id: int,
    payload: schemas.AddTaxaRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.add_taxa_to_matrix, payload.taxa_ids, payload.after_taxon_id)


@router.post("/taxa/remove")
async def remove_taxa_from_matrix(
    project_id: int,
    matrix_id: int,
    payload: schemas.TaxaRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.remove_taxa_from_matrix, payload.taxa_ids)


@router.post("/taxa/reorder")
async def reorder_taxa(
    project_id: int,
    matrix_id: int,
    payload: schemas.ReorderRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.reorder_taxa, payload.ids, payload.index)


@router.post("/taxa/notes")
async def set_taxa_notes(
    project_id: int,
    matrix_id: int,
    payload: schemas.TaxaNotesRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.set_taxa_notes, payload.taxa_ids, payload.notes)


@router.post("/taxa/access")
async def set_taxa_access(
    project_id: int,
    matrix_id: int,
    payload: schemas.TaxaAccessRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.set_taxa_access, payload.taxa_ids, payload.user_id, payload.group_id)


@router.post("/characters")
async def add_character(
    project_id: int,
    matrix_id: int,
    payload: schemas.CharacterCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.add_character, payload.name, payload.type, payload.index)


@router.post("/characters/remove")
async def remove_characters(
    project_id: int,
    matrix_id: int,
    payload: schemas.CharactersRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.remove_characters, payload.character_ids)


@router.post("/characters/reorder")
async def reorder_characters(
    project_id: int,
    matrix_id: int,
    payload: schemas.ReorderRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.reorder_characters, payload.ids, payload.index)


@router.put("/options")
async def set_matrix_options(
    project_id: int,
    matrix_id: int,
    payload: schemas.MatrixOptionsRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, matrix_layout.set_matrix_options, payload.options)


@router.post("/partitions")
async def add_partition(
    project_id: int,
    matrix_id: int,
    payload: schemas.PartitionCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.add_partition, payload.name, payload.description)


@router.put("/partitions/{partition_id}")
async def edit_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    payload: schemas.PartitionCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.edit_partition, partition_id, payload.name, payload.description)


@router.post("/partitions/{partition_id}/copy")
async def copy_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    payload: schemas.PartitionCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.copy_partition, partition_id, payload.name, payload.description)


@router.delete("/partitions/{partition_id}")
async def remove_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.remove_partition, partition_id)


@router.post("/partitions/{partition_id}/characters")
async def add_characters_to_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    payload: schemas.PartitionMembersRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.add_characters_to_partition, partition_id, payload.ids)


@router.post("/partitions/{partition_id}/characters/remove")
async def remove_characters_from_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    payload: schemas.PartitionMembersRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.remove_characters_from_partition, partition_id, payload.ids)


@router.post("/partitions/{partition_id}/taxa")
async def add_taxa_to_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    payload: schemas.PartitionMembersRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.add_taxa_to_partition, partition_id, payload.ids)


@router.post("/partitions/{partition_id}/taxa/remove")
async def remove_taxa_from_partition(
    project_id: int,
    matrix_id: int,
    partition_id: int,
    payload: schemas.PartitionMembersRequest,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    editor = _editor(db, project_id, matrix_id, user)
    return await _apply(db, editor, partitions.remove_taxa_from_partition, partition_id, payload.ids)
