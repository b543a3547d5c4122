"""Sequence based change feed for polling editor clients."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

from .. import changelog, models
from . import cell_comments, results
from .editor import MatrixEditor
from .matrix_data import character_placements, character_record, project_partitions, taxon_placements, taxon_record

# purpose: let concurrent editors converge by re-reading cells others touched since a sync cursor
# inputs: engine handle, the cursor returned by the client's previous poll
# outputs: placeholders for deletions plus current values for touched cells and metadata
# status: pilot

_TABLES = changelog.TABLE_NUMBERS


def _current_rows(editor: MatrixEditor, model, pairs: set[tuple[int, int]]) -> list:
    if not pairs:
        return []
    rows = (
        editor.db.query(model)
        .filter(
            model.matrix_id == editor.matrix_id,
            model.taxon_id.in_({taxon_id for taxon_id, _ in pairs}),
            model.character_id.in_({character_id for _, character_id in pairs}),
        )
        .order_by(model.id)
        .all()
    )
    return [row for row in rows if (row.taxon_id, row.character_id) in pairs]


def fetch_changes(editor: MatrixEditor, since: int) -> dict[str, Any]:
    """Report what other users committed after the cursor ``since``.

    Inserts and updates are not replayed; the current value of every touched
    cell is read back instead, so a repeated poll with the same ``since``
    yields the same state. The returned ``ts`` is the matrix sequence number
    read before the log rows and becomes the client's next ``since``. Rows
    are ordered by commit, not by wall clock, so an edit written before a poll
    but committed after it is reported by the next poll.
    """

    db = editor.db
    ts = changelog.sync_cursor(db, editor.matrix_id)
    entries = (
        db.query(models.CellChangeLog)
        .filter(
            models.CellChangeLog.matrix_id == editor.matrix_id,
            models.CellChangeLog.seq > since,
            models.CellChangeLog.seq <= ts,
            models.CellChangeLog.user_id != editor.user_id,
            models.CellChangeLog.change_type.in_(("I", "U", "D")),
        )
        .order_by(models.CellChangeLog.seq, models.CellChangeLog.id)
        .all()
    )

    touched: dict[int, set[tuple[int, int]]] = defaultdict(set)
    deleted: dict[int, set[tuple[int, int]]] = defaultdict(set)
    for entry in entries:
        pair = (entry.taxon_id, entry.character_id)
        touched[entry.table_num].add(pair)
        if entry.change_type == "D":
            deleted[entry.table_num].add(pair)

    cell_pairs = touched[_TABLES["cells"]]
    cells = [results.deleted_cell(t, c) for t, c in sorted(deleted[_TABLES["cells"]])]
    cells.extend(results.compact_cells(db, _current_rows(editor, models.Cell, cell_pairs)))

    media_pairs = touched[_TABLES["cells_x_media"]]
    media: list[dict[str, Any]] = [
        {"taxon_id": t, "character_id": c} for t, c in sorted(deleted[_TABLES["cells_x_media"]])
    ]
    media.extend(results.cell_media_result(db, link) for link in _current_rows(editor, models.CellsXMedium, media_pairs))

    note_pairs = touched[_TABLES["cell_notes"]]
    current_notes = {(note.taxon_id, note.character_id): note for note in _current_rows(editor, models.CellNote, note_pairs)}
    notes = []
    for t, c in sorted(note_pairs):
        note = current_notes.get((t, c))
        notes.append(results.note_result(note) if note else {"taxon_id": t, "character_id": c, "notes": "", "status": 0})

    citation_pairs = touched[_TABLES["cells_x_bibliographic_references"]]
    citations: list[dict[str, Any]] = [
        {"taxon_id": t, "character_id": c} for t, c in sorted(deleted[_TABLES["cells_x_bibliographic_references"]])
    ]
    citations.extend(
        results.citation_result(link)
        for link in _current_rows(editor, models.CellsXBibliographicReference, citation_pairs)
    )

    comment_pairs = touched[_TABLES["annotations"]]
    totals = (
        cell_comments.comment_counts(editor, {t for t, _ in comment_pairs}, {c for _, c in comment_pairs})
        if comment_pairs
        else {}
    )
    comment_counts = [
        {"taxon_id": t, "character_id": c, "count": totals.get(t, {}).get(c, 0)} for t, c in sorted(comment_pairs)
    ]

    metadata: dict[int, set[int]] = defaultdict(set)
    for table_num, row_id in db.query(models.ChangeLog.table_num, models.ChangeLog.row_id).filter(
        models.ChangeLog.matrix_id == editor.matrix_id,
        models.ChangeLog.seq > since,
        models.ChangeLog.seq <= ts,
        models.ChangeLog.user_id != editor.user_id,
    ):
        metadata[table_num].add(row_id)

    changed_characters = [
        character_record(editor, placement)
        for placement in character_placements(editor, metadata[_TABLES["characters"]])
    ]
    changed_taxa = [taxon_record(placement) for placement in taxon_placements(editor, metadata[_TABLES["taxa"]])]

    all_pairs = set().union(*touched.values()) if touched else set()
    character_ids = {c for _, c in all_pairs} | {record["id"] for record in changed_characters}
    taxa_ids = {t for t, _ in all_pairs} | {record["id"] for record in changed_taxa}

    response: dict[str, Any] = {
        "ts": ts,
        "cells": cells,
        "cell_media": media,
        "cell_notes": notes,
        "cell_citations": citations,
        "cell_comment_counts": comment_counts,
        "character_ids": sorted(character_ids),
        "taxa_ids": sorted(taxa_ids),
        "characters": changed_characters,
        "taxa": changed_taxa,
    }
    if metadata[_TABLES["partitions"]]:
        response["partitions"] = project_partitions(editor)
    if editor.matrix_id in metadata[_TABLES["matrices"]]:
        response["order"] = {
            "characters": [placement.character_id for placement in character_placements(editor)],
            "taxa": [placement.taxon_id for placement in taxon_placements(editor)],
        }
        response["options"] = editor.options()
    return response
