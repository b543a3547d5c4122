"""Logged write steps for cell-level tables and the generic change log."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import event, select, update
from sqlalchemy.orm import Session

from . import models

# purpose: make change-log emission an explicit step of every cell mutation
# inputs: session, ORM row, acting user, timestamp
# outputs: CellChangeLog / ChangeLog rows flushed into the caller's unit of work, stamped with its sequence number
# status: pilot

TABLE_NUMBERS: dict[str, int] = {
    "characters": 3,
    "character_states": 4,
    "matrices": 5,
    "cells": 6,
    "cells_x_media": 7,
    "annotations": 9,
    "taxa": 10,
    "characters_x_media": 16,
    "matrix_taxa_order": 24,
    "matrix_character_order": 25,
    "cell_notes": 29,
    "cells_x_bibliographic_references": 41,
    "character_rules": 54,
    "character_rule_actions": 55,
    "partitions": 59,
    "characters_x_partitions": 60,
    "taxa_x_partitions": 61,
    "cell_batch_log": 72,
}


@dataclass(frozen=True)
class LoggedTable:
    table_num: int
    fields: tuple[str, ...]
    # fields that locate a row within its (matrix, taxon, character) triple
    identity: tuple[str, ...]


CELL_TABLES: dict[type, LoggedTable] = {
    models.Cell: LoggedTable(
        TABLE_NUMBERS["cells"],
        ("state_id", "is_npa", "is_uncertain", "start_value", "end_value"),
        ("state_id", "is_npa"),
    ),
    models.CellsXMedium: LoggedTable(
        TABLE_NUMBERS["cells_x_media"],
        ("media_id", "set_by_automation"),
        ("media_id",),
    ),
    models.CellNote: LoggedTable(
        TABLE_NUMBERS["cell_notes"],
        ("notes", "status"),
        (),
    ),
    models.CellsXBibliographicReference: LoggedTable(
        TABLE_NUMBERS["cells_x_bibliographic_references"],
        ("reference_id", "pp", "notes"),
        ("reference_id",),
    ),
}

MODELS_BY_TABLE_NUM: dict[int, type] = {table.table_num: model for model, table in CELL_TABLES.items()}

_SEQUENCE_CLAIMS = "matrix_sequence_claims"
_matrices = models.Matrix.__table__


def claim_sequence(db: Session, matrix_id: int) -> int:
    """Return the matrix sequence number stamped on this transaction's log rows.

    The first claim in a transaction bumps ``matrices.sync_seq``, which holds
    the matrix row lock until commit. Writers therefore commit in sequence
    order, and every row at or below a committed sequence number is visible to
    a reader that has seen that number.
    """

    claims = db.info.setdefault(_SEQUENCE_CLAIMS, {})
    if matrix_id not in claims:
        db.execute(update(_matrices).where(_matrices.c.id == matrix_id).values(sync_seq=_matrices.c.sync_seq + 1))
        claims[matrix_id] = db.execute(select(_matrices.c.sync_seq).where(_matrices.c.id == matrix_id)).scalar_one()
    return claims[matrix_id]


def sync_cursor(db: Session, matrix_id: int) -> int:
    """Return the highest sequence number a poll may report.

    Later writes in the same transaction claim a new number above it.
    """

    db.info.get(_SEQUENCE_CLAIMS, {}).pop(matrix_id, None)
    return db.execute(select(_matrices.c.sync_seq).where(_matrices.c.id == matrix_id)).scalar_one()


@event.listens_for(Session, "after_transaction_end")
def _release_claims(session, transaction):
    if transaction.parent is None:
        session.info.pop(_SEQUENCE_CLAIMS, None)


def logged_table(model: type) -> LoggedTable:
    try:
        return CELL_TABLES[model]
    except KeyError as exc:
        raise TypeError(f"{model.__name__} is not a logged cell table") from exc


def snapshot_of(row: Any) -> dict[str, Any]:
    table = logged_table(type(row))
    return {name: getattr(row, name) for name in table.fields}


def record_cell_change(
    db: Session,
    *,
    change_type: str,
    table_num: int,
    matrix_id: int,
    taxon_id: int,
    character_id: int,
    user_id: int,
    changed_on: float,
    state_id: int | None = None,
    snapshot: dict[str, Any] | None = None,
) -> models.CellChangeLog:
    """Append one audit row describing an elementary cell-level mutation."""

    entry = models.CellChangeLog(
        change_type=change_type,
        table_num=table_num,
        user_id=user_id,
        changed_on=changed_on,
        matrix_id=matrix_id,
        seq=claim_sequence(db, matrix_id),
        character_id=character_id,
        taxon_id=taxon_id,
        state_id=state_id,
        snapshot=snapshot or {},
    )
    db.add(entry)
    db.flush()
    return entry


def _record_row(db: Session, change_type: str, row: Any, snapshot: dict[str, Any], *, user_id: int, now: float):
    return record_cell_change(
        db,
        change_type=change_type,
        table_num=logged_table(type(row)).table_num,
        matrix_id=row.matrix_id,
        taxon_id=row.taxon_id,
        character_id=row.character_id,
        state_id=getattr(row, "state_id", None),
        user_id=user_id,
        changed_on=now,
        snapshot=snapshot,
    )


def insert_logged(db: Session, row: Any, *, user_id: int, now: float) -> Any:
    if hasattr(row, "created_on") and row.created_on is None:
        row.created_on = now
    if hasattr(row, "last_modified_on") and row.last_modified_on is None:
        row.last_modified_on = now
    db.add(row)
    db.flush()
    _record_row(db, "I", row, snapshot_of(row), user_id=user_id, now=now)
    return row


def update_logged(db: Session, row: Any, changes: dict[str, Any], *, user_id: int, now: float) -> bool:
    """Apply ``changes`` to ``row``.

    The log entry holds every logged field as it was before the update, so an
    undo can both locate the row and restore it. Returns ``False`` and writes
    nothing when no value differs.
    """

    table = logged_table(type(row))
    for name in changes:
        if name not in table.fields:
            raise ValueError(f"{name} is not a logged field")
        if name in table.identity:
            raise ValueError(f"{name} identifies the row and cannot be updated")
    previous = snapshot_of(row)
    changed = False
    for name, value in changes.items():
        if getattr(row, name) != value:
            setattr(row, name, value)
            changed = True
    if not changed:
        return False
    if hasattr(row, "last_modified_on"):
        row.last_modified_on = now
    db.flush()
    _record_row(db, "U", row, previous, user_id=user_id, now=now)
    return True


def delete_logged(db: Session, row: Any, *, user_id: int, now: float) -> None:
    _record_row(db, "D", row, snapshot_of(row), user_id=user_id, now=now)
    db.delete(row)
    db.flush()


def record_check(
    db: Session,
    *,
    matrix_id: int,
    taxon_id: int,
    character_id: int,
    user_id: int,
    now: float,
) -> models.CellChangeLog:
    return record_cell_change(
        db,
        change_type="C",
        table_num=TABLE_NUMBERS["cells"],
        matrix_id=matrix_id,
        taxon_id=taxon_id,
        character_id=character_id,
        user_id=user_id,
        changed_on=now,
    )


def record_change(
    db: Session,
    table: str,
    row_id: int,
    *,
    matrix_id: int,
    user_id: int | None,
    now: float,
    change_type: str = "U",
) -> models.ChangeLog:
    """Log a change to a matrix-level, character, taxon or partition row.

    Project-level rows are logged against the matrix they were changed from.
    """

    entry = models.ChangeLog(
        table_num=TABLE_NUMBERS[table],
        row_id=row_id,
        change_type=change_type,
        user_id=user_id,
        logged_on=now,
        matrix_id=matrix_id,
        seq=claim_sequence(db, matrix_id),
    )
    db.add(entry)
    db.flush()
    return entry
