"""Batch logging and compensating undo over the cell change log."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .. import changelog, models, rbac
from . import results
from .editor import MatrixEditor
from .errors import NotFoundError, UserError

# purpose: group related cell mutations and revert them by replaying structural inverses
# status: pilot

_logger = logging.getLogger(__name__)


class CellBatchType(IntEnum):
    MEDIA_AUTOMATION = 1
    SET_SCORES = 2
    CELL_NOTES = 3
    MEDIA_ADD = 4
    MEDIA_DELETE = 5
    COPY_SCORES = 6
    ADD_CELL_CITATION = 7


ROW_BATCH = 1
COLUMN_BATCH = 2


def validate_batch_mode(batch_mode: int) -> None:
    if batch_mode not in (0, ROW_BATCH, COLUMN_BATCH):
        raise UserError("Unknown batch mode")


def describe_scope(
    editor: MatrixEditor,
    batch_mode: int,
    taxa_ids: list[int],
    character_ids: list[int],
) -> str:
    """Return ``"N taxa in <character> column"`` or ``"N characters in <taxon> row"``."""

    if batch_mode == COLUMN_BATCH:
        character = editor.db.get(models.Character, character_ids[0])
        return f"{len(taxa_ids)} taxa in {character.name} column"
    if batch_mode == ROW_BATCH:
        taxon = editor.db.get(models.Taxon, taxa_ids[0])
        return f"{len(character_ids)} characters in {taxon.display_name} row"
    raise UserError("Unknown batch mode")


@dataclass
class BatchRecorder:
    """Open batch window; only persisted when the batch produced changes."""

    editor: MatrixEditor
    batch_type: CellBatchType
    started_on: float = field(default=0.0)

    @classmethod
    def open(cls, editor: MatrixEditor, batch_type: CellBatchType) -> "BatchRecorder":
        return cls(editor=editor, batch_type=batch_type, started_on=editor.now())

    def finalize(self, description: str, *, changed: bool) -> models.CellBatchLog | None:
        if not changed:
            return None
        batch = models.CellBatchLog(
            matrix_id=self.editor.matrix_id,
            user_id=self.editor.user_id,
            batch_type=int(self.batch_type),
            started_on=self.started_on,
            finished_on=self.editor.now(),
            description=description,
            reverted=False,
        )
        self.editor.db.add(batch)
        self.editor.db.flush()
        _logger.info(
            "cell batch %s recorded on matrix %s by user %s: %s",
            batch.id,
            self.editor.matrix_id,
            self.editor.user_id,
            description,
        )
        return batch


def _user_name(user: models.User | None) -> str:
    if user is None:
        return "unknown user"
    return user.full_name or user.email


def get_cell_batch_logs(editor: MatrixEditor) -> list[dict[str, Any]]:
    batches = (
        editor.db.query(models.CellBatchLog)
        .filter(models.CellBatchLog.matrix_id == editor.matrix_id)
        .order_by(models.CellBatchLog.started_on.desc(), models.CellBatchLog.id.desc())
        .all()
    )
    logs = []
    for batch in batches:
        user = editor.db.get(models.User, batch.user_id)
        description = f"{batch.description} by {_user_name(user)}"
        if batch.batch_type == CellBatchType.MEDIA_AUTOMATION:
            description += " using the cell media automation feature"
        description += "."
        if batch.reverted:
            reverted_by = editor.db.get(models.User, batch.reverted_user_id) if batch.reverted_user_id else None
            description += f" This action was reverted by {_user_name(reverted_by)}."
        logs.append(
            {
                "id": batch.id,
                "r": bool(batch.reverted),
                "t": batch.started_on,
                "d": description,
            }
        )
    return logs


def _identity_filters(model: type, entry: models.CellChangeLog) -> list:
    table = changelog.logged_table(model)
    snapshot = entry.snapshot or {}
    filters = [
        model.matrix_id == entry.matrix_id,
        model.taxon_id == entry.taxon_id,
        model.character_id == entry.character_id,
    ]
    for name in table.identity:
        column = getattr(model, name)
        value = entry.state_id if name == "state_id" else snapshot.get(name)
        if name == "is_npa":
            value = bool(value)
        filters.append(column.is_(None) if value is None else column == value)
    return filters


def _undo_entry(editor: MatrixEditor, entry: models.CellChangeLog) -> None:
    model = changelog.MODELS_BY_TABLE_NUM.get(entry.table_num)
    if model is None:
        return
    db = editor.db
    table = changelog.logged_table(model)
    snapshot = entry.snapshot or {}
    match entry.change_type:
        case "I":
            candidates = db.query(model).filter(*_identity_filters(model, entry)).all()
            for row in candidates:
                # a row re-written by someone else since the batch is left alone
                if getattr(row, "user_id", entry.user_id) not in (entry.user_id, None):
                    continue
                changelog.delete_logged(db, row, user_id=editor.user_id, now=editor.now())
        case "D":
            if db.query(model).filter(*_identity_filters(model, entry)).first() is not None:
                return
            values = {name: snapshot.get(name) for name in table.fields}
            if model is models.Cell:
                values["state_id"] = entry.state_id
                values["is_npa"] = bool(values.get("is_npa"))
                values["is_uncertain"] = bool(values.get("is_uncertain"))
            if model is models.CellsXMedium:
                values["set_by_automation"] = bool(values.get("set_by_automation"))
            row = model(
                matrix_id=entry.matrix_id,
                taxon_id=entry.taxon_id,
                character_id=entry.character_id,
                user_id=editor.user_id,
                **values,
            )
            changelog.insert_logged(db, row, user_id=editor.user_id, now=editor.now())
        case "U":
            restore = {name: snapshot.get(name) for name in table.fields if name not in table.identity}
            if model is models.Cell:
                restore["is_uncertain"] = bool(restore.get("is_uncertain"))
            for row in db.query(model).filter(*_identity_filters(model, entry)).all():
                changelog.update_logged(db, row, restore, user_id=editor.user_id, now=editor.now())
        case _:
            # checks ("C") carry no data to revert
            return


def _pair_state(editor: MatrixEditor, pairs: set[tuple[int, int]]) -> dict[str, list[dict[str, Any]]]:
    db = editor.db
    cells: list[dict[str, Any]] = []
    media: list[dict[str, Any]] = []
    notes: list[dict[str, Any]] = []
    citations: list[dict[str, Any]] = []
    for taxon_id, character_id in sorted(pairs):
        cells.append(results.deleted_cell(taxon_id, character_id))
    taxa_ids = {taxon_id for taxon_id, _ in pairs}
    character_ids = {character_id for _, character_id in pairs}
    if not pairs:
        return {"cells": cells, "media": media, "notes": notes, "citations": citations}

    def _in_pairs(row) -> bool:
        return (row.taxon_id, row.character_id) in pairs

    current_cells = [
        cell
        for cell in db.query(models.Cell)
        .filter(
            models.Cell.matrix_id == editor.matrix_id,
            models.Cell.taxon_id.in_(taxa_ids),
            models.Cell.character_id.in_(character_ids),
        )
        .order_by(models.Cell.id)
        .all()
        if _in_pairs(cell)
    ]
    cells.extend(results.compact_cells(db, current_cells))
    for link in (
        db.query(models.CellsXMedium)
        .filter(
            models.CellsXMedium.matrix_id == editor.matrix_id,
            models.CellsXMedium.taxon_id.in_(taxa_ids),
            models.CellsXMedium.character_id.in_(character_ids),
        )
        .order_by(models.CellsXMedium.id)
        .all()
    ):
        if _in_pairs(link):
            media.append(results.cell_media_result(db, link))
    note_rows = {
        (note.taxon_id, note.character_id): note
        for note in db.query(models.CellNote)
        .filter(
            models.CellNote.matrix_id == editor.matrix_id,
            models.CellNote.taxon_id.in_(taxa_ids),
            models.CellNote.character_id.in_(character_ids),
        )
        .all()
    }
    for taxon_id, character_id in sorted(pairs):
        note = note_rows.get((taxon_id, character_id))
        if note is not None:
            notes.append(results.note_result(note))
        else:
            notes.append({"taxon_id": taxon_id, "character_id": character_id, "notes": "", "status": 0})
    for link in (
        db.query(models.CellsXBibliographicReference)
        .filter(
            models.CellsXBibliographicReference.matrix_id == editor.matrix_id,
            models.CellsXBibliographicReference.taxon_id.in_(taxa_ids),
            models.CellsXBibliographicReference.character_id.in_(character_ids),
        )
        .order_by(models.CellsXBibliographicReference.id)
        .all()
    ):
        if _in_pairs(link):
            citations.append(results.citation_result(link))
    return {"cells": cells, "media": media, "notes": notes, "citations": citations}


def undo_cell_batch(editor: MatrixEditor, log_id: int) -> dict[str, Any]:
    """Revert a batch by replaying the inverse of its change-log window, newest first.

    Writers outside the batch that touched the same cells inside the window can
    desynchronize the result; such overlaps are not detected.
    """

    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to modify cells in this matrix")
    db = editor.db
    batch = db.get(models.CellBatchLog, log_id)
    if batch is None:
        raise NotFoundError("Batch does not exist")
    if batch.matrix_id != editor.matrix_id:
        raise UserError("Matrix id is not related to Batch")
    if batch.reverted:
        raise UserError("This batch has already been reverted")

    entries = (
        db.query(models.CellChangeLog)
        .filter(
            models.CellChangeLog.matrix_id == batch.matrix_id,
            models.CellChangeLog.user_id == batch.user_id,
            models.CellChangeLog.changed_on >= batch.started_on,
            models.CellChangeLog.changed_on <= batch.finished_on,
            models.CellChangeLog.change_type.in_(("I", "U", "D")),
        )
        .order_by(models.CellChangeLog.changed_on.desc(), models.CellChangeLog.id.desc())
        .all()
    )
    pairs = {(entry.taxon_id, entry.character_id) for entry in entries}
    rbac.ensure_can_edit_taxa(editor, {taxon_id for taxon_id, _ in pairs})

    for entry in entries:
        _undo_entry(editor, entry)

    batch.reverted = True
    batch.reverted_user_id = editor.user_id
    db.flush()
    _logger.info("cell batch %s reverted by user %s (%d entries)", batch.id, editor.user_id, len(entries))

    updates = _pair_state(editor, pairs)
    updates["ts"] = editor.now()
    updates["batch_id"] = batch.id
    updates["notify"] = bool(entries)
    return updates
