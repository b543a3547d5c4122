"""Reading and writing score rows keyed by their state sentinel."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

from .. import changelog, models
from .editor import MatrixEditor

NPA_STATE = -1
NO_STATE = 0

CellIndex = dict[tuple[int, int], dict[int, models.Cell]]


def load_cells(editor: MatrixEditor, taxa_ids: Iterable[int], character_ids: Iterable[int]) -> CellIndex:
    """Map ``(taxon_id, character_id)`` to ``{state key: cell}``."""

    taxa_ids = set(taxa_ids)
    character_ids = set(character_ids)
    index: CellIndex = defaultdict(dict)
    if not taxa_ids or not character_ids:
        return index
    rows = (
        editor.db.query(models.Cell)
        .filter(
            models.Cell.matrix_id == editor.matrix_id,
            models.Cell.taxon_id.in_(taxa_ids),
            models.Cell.character_id.in_(character_ids),
        )
        .order_by(models.Cell.id)
        .all()
    )
    for cell in rows:
        index[(cell.taxon_id, cell.character_id)][cell.state_key] = cell
    return index


def insert_score(
    editor: MatrixEditor,
    taxon_id: int,
    character_id: int,
    state_key: int,
    *,
    uncertain: bool = False,
    start_value: float | None = None,
    end_value: float | None = None,
) -> models.Cell:
    cell = models.Cell(
        matrix_id=editor.matrix_id,
        taxon_id=taxon_id,
        character_id=character_id,
        user_id=editor.user_id,
        state_id=state_key if state_key > 0 else None,
        is_npa=state_key == NPA_STATE,
        is_uncertain=bool(uncertain),
        start_value=start_value,
        end_value=end_value,
    )
    return changelog.insert_logged(editor.db, cell, user_id=editor.user_id, now=editor.now())


def delete_score(editor: MatrixEditor, cell: models.Cell) -> None:
    changelog.delete_logged(editor.db, cell, user_id=editor.user_id, now=editor.now())


def update_score(editor: MatrixEditor, cell: models.Cell, **changes) -> bool:
    return changelog.update_logged(editor.db, cell, changes, user_id=editor.user_id, now=editor.now())


def matrix_character_ids(editor: MatrixEditor) -> list[int]:
    rows = (
        editor.db.query(models.MatrixCharacterOrder.character_id)
        .filter(models.MatrixCharacterOrder.matrix_id == editor.matrix_id)
        .order_by(models.MatrixCharacterOrder.position)
        .all()
    )
    return [character_id for (character_id,) in rows]


def matrix_taxon_ids(editor: MatrixEditor) -> list[int]:
    rows = (
        editor.db.query(models.MatrixTaxaOrder.taxon_id)
        .filter(models.MatrixTaxaOrder.matrix_id == editor.matrix_id)
        .order_by(models.MatrixTaxaOrder.position)
        .all()
    )
    return [taxon_id for (taxon_id,) in rows]
