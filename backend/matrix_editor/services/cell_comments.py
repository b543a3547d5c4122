"""Discussion threads attached to individual cells."""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Any, Iterable

from .. import changelog, models, rbac
from .editor import MatrixEditor
from .errors import UserError

# purpose: let curators and observers discuss a score without touching it
# status: pilot


def comment_result(comment: models.CellComment) -> dict[str, Any]:
    user = comment.user
    return {
        "id": comment.id,
        "taxon_id": comment.taxon_id,
        "character_id": comment.character_id,
        "user_id": comment.user_id,
        "user": f"{user.full_name or ''} ({user.email})".strip() if user else "",
        "date": comment.created_on,
        "comment": comment.comment,
    }


def add_cell_comment(editor: MatrixEditor, taxon_id: int, character_id: int, comment: str) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addCellComment", "You are not allowed to add comments to this matrix")
    rbac.ensure_can_edit_taxa(editor, [taxon_id])
    rbac.ensure_can_edit_characters(editor, [character_id])
    if not comment or not comment.strip():
        raise UserError("Comment must not be empty")

    now = editor.now()
    row = models.CellComment(
        matrix_id=editor.matrix_id,
        taxon_id=taxon_id,
        character_id=character_id,
        user_id=editor.user_id,
        comment=comment,
        created_on=now,
    )
    editor.db.add(row)
    editor.db.flush()
    changelog.record_cell_change(
        editor.db,
        change_type="I",
        table_num=changelog.TABLE_NUMBERS["annotations"],
        matrix_id=editor.matrix_id,
        taxon_id=taxon_id,
        character_id=character_id,
        user_id=editor.user_id,
        changed_on=now,
        snapshot={"comment": comment},
    )
    return {"comment": comment_result(row), "notify": True}


def get_cell_comments(editor: MatrixEditor, taxon_id: int, character_id: int) -> dict[str, Any]:
    comments = (
        editor.db.query(models.CellComment)
        .filter(
            models.CellComment.matrix_id == editor.matrix_id,
            models.CellComment.taxon_id == taxon_id,
            models.CellComment.character_id == character_id,
        )
        .order_by(models.CellComment.created_on, models.CellComment.id)
        .all()
    )
    return {"comments": [comment_result(comment) for comment in comments]}


def comment_counts(
    editor: MatrixEditor,
    taxa_ids: Iterable[int] | None = None,
    character_ids: Iterable[int] | None = None,
) -> dict[int, dict[int, int]]:
    """Count comments per cell as ``{taxon_id: {character_id: count}}``."""

    query = editor.db.query(models.CellComment.taxon_id, models.CellComment.character_id).filter(
        models.CellComment.matrix_id == editor.matrix_id
    )
    if taxa_ids is not None:
        query = query.filter(models.CellComment.taxon_id.in_(set(taxa_ids)))
    if character_ids is not None:
        query = query.filter(models.CellComment.character_id.in_(set(character_ids)))
    counts: dict[int, dict[int, int]] = defaultdict(dict)
    for (taxon_id, character_id), count in Counter(query.all()).items():
        counts[taxon_id][character_id] = count
    return dict(counts)


def get_comment_counts(editor: MatrixEditor) -> dict[str, Any]:
    return {"comment_counts": comment_counts(editor)}
