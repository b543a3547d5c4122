"""Read-side snapshots, cell history and searches for the matrix editor."""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Any, Iterable

from .. import changelog, models, rbac
from . import cell_comments, results, rules, scores
from .editor import MatrixEditor
from .errors import UserError

# purpose: serve matrix, cell and search snapshots for editor clients
# status: pilot

NOTE_STATUS_LABELS = {0: "New", 1: "In progress", 2: "Complete"}


def character_record(editor: MatrixEditor, placement: models.MatrixCharacterOrder) -> dict[str, Any]:
    character = placement.character
    media = (
        editor.db.query(models.CharactersXMedium)
        .filter(models.CharactersXMedium.character_id == character.id)
        .order_by(models.CharactersXMedium.id)
        .all()
    )
    return {
        "id": character.id,
        "name": character.name,
        "description": character.description or "",
        "type": character.type,
        "ordering": character.ordering,
        "position": placement.position,
        "states": [{"id": state.id, "num": state.num, "name": state.name} for state in character.states],
        "media": [{"link_id": link.id, "state_id": link.state_id, "media_id": link.media_id} for link in media],
    }


def taxon_record(placement: models.MatrixTaxaOrder) -> dict[str, Any]:
    taxon = placement.taxon
    return {
        "id": taxon.id,
        "name": taxon.display_name,
        "genus": taxon.genus,
        "specific_epithet": taxon.specific_epithet,
        "subspecific_epithet": taxon.subspecific_epithet,
        "notes": taxon.notes or "",
        "access": taxon.access,
        "position": placement.position,
        "matrix_notes": placement.notes or "",
        "user_id": placement.user_id,
        "group_id": placement.group_id,
        "added_by_id": placement.added_by_id,
    }


def partition_record(db, partition: models.Partition) -> dict[str, Any]:
    character_ids = [
        character_id
        for (character_id,) in db.query(models.CharactersXPartition.character_id)
        .filter(models.CharactersXPartition.partition_id == partition.id)
        .order_by(models.CharactersXPartition.id)
        .all()
    ]
    taxa_ids = [
        taxon_id
        for (taxon_id,) in db.query(models.TaxaXPartition.taxon_id)
        .filter(models.TaxaXPartition.partition_id == partition.id)
        .order_by(models.TaxaXPartition.id)
        .all()
    ]
    return {
        "id": partition.id,
        "name": partition.name,
        "description": partition.description or "",
        "character_ids": character_ids,
        "taxa_ids": taxa_ids,
    }


def character_placements(editor: MatrixEditor, character_ids: Iterable[int] | None = None) -> list[models.MatrixCharacterOrder]:
    query = editor.db.query(models.MatrixCharacterOrder).filter(models.MatrixCharacterOrder.matrix_id == editor.matrix_id)
    if character_ids is not None:
        query = query.filter(models.MatrixCharacterOrder.character_id.in_(set(character_ids)))
    return query.order_by(models.MatrixCharacterOrder.position).all()


def taxon_placements(editor: MatrixEditor, taxa_ids: Iterable[int] | None = None) -> list[models.MatrixTaxaOrder]:
    query = editor.db.query(models.MatrixTaxaOrder).filter(models.MatrixTaxaOrder.matrix_id == editor.matrix_id)
    if taxa_ids is not None:
        query = query.filter(models.MatrixTaxaOrder.taxon_id.in_(set(taxa_ids)))
    return query.order_by(models.MatrixTaxaOrder.position).all()


def project_partitions(editor: MatrixEditor, partition_ids: Iterable[int] | None = None) -> list[dict[str, Any]]:
    query = editor.db.query(models.Partition).filter(models.Partition.project_id == editor.project.id)
    if partition_ids is not None:
        query = query.filter(models.Partition.id.in_(set(partition_ids)))
    return [partition_record(editor.db, partition) for partition in query.order_by(models.Partition.id).all()]


def get_matrix_data(editor: MatrixEditor) -> dict[str, Any]:
    """Return everything a client needs to render the matrix grid."""

    matrix = editor.matrix
    return {
        "ts": editor.now(),
        "matrix": {"id": matrix.id, "title": matrix.title, "type": matrix.type},
        "options": editor.options(),
        "characters": [character_record(editor, placement) for placement in character_placements(editor)],
        "taxa": [taxon_record(placement) for placement in taxon_placements(editor)],
        "partitions": project_partitions(editor),
        "character_rules": rules.get_character_rules(editor),
        "user": {
            "user_id": editor.user_id,
            "is_admin": rbac.is_admin_like(editor),
            "readonly": editor.readonly,
            "allowed_actions": sorted(rbac.allowable_actions(editor)),
            "available_groups": sorted(rbac.user_group_ids(editor)),
        },
    }


def fetch_cells_data(editor: MatrixEditor, taxa_ids: list[int], character_ids: list[int]) -> dict[str, Any]:
    db = editor.db
    index = scores.load_cells(editor, taxa_ids, character_ids)
    cells = [cell for pair in sorted(index) for cell in index[pair].values()]
    notes = (
        db.query(models.CellNote)
        .filter(
            models.CellNote.matrix_id == editor.matrix_id,
            models.CellNote.taxon_id.in_(set(taxa_ids)),
            models.CellNote.character_id.in_(set(character_ids)),
        )
        .order_by(models.CellNote.id)
        .all()
    )
    media = (
        db.query(models.CellsXMedium)
        .filter(
            models.CellsXMedium.matrix_id == editor.matrix_id,
            models.CellsXMedium.taxon_id.in_(set(taxa_ids)),
            models.CellsXMedium.character_id.in_(set(character_ids)),
        )
        .order_by(models.CellsXMedium.id)
        .all()
    )
    return {
        "cells": results.compact_cells(db, cells),
        "notes": [results.note_result(note) for note in notes],
        "media": [results.cell_media_result(db, link) for link in media],
    }


def _ids_in_range(placements: list, start: int, end: int, attribute: str) -> set[int]:
    return {getattr(placement, attribute) for placement in placements if start <= placement.position <= end}


def get_cell_counts(
    editor: MatrixEditor,
    start_character_num: int,
    end_character_num: int,
    start_taxon_num: int,
    end_taxon_num: int,
) -> dict[str, Any]:
    character_ids = _ids_in_range(character_placements(editor), start_character_num, end_character_num, "character_id")
    taxa_ids = _ids_in_range(taxon_placements(editor), start_taxon_num, end_taxon_num, "taxon_id")
    citation_counts: dict[int, dict[int, int]] = defaultdict(dict)
    comment_counts: dict[int, dict[int, int]] = {}
    updates: dict[int, dict[int, float]] = defaultdict(dict)
    if character_ids and taxa_ids:
        citations = Counter(
            editor.db.query(
                models.CellsXBibliographicReference.taxon_id,
                models.CellsXBibliographicReference.character_id,
            )
            .filter(
                models.CellsXBibliographicReference.matrix_id == editor.matrix_id,
                models.CellsXBibliographicReference.taxon_id.in_(taxa_ids),
                models.CellsXBibliographicReference.character_id.in_(character_ids),
            )
            .all()
        )
        for (taxon_id, character_id), count in citations.items():
            citation_counts[taxon_id][character_id] = count
        for taxon_id, character_id, changed_on in editor.db.query(
            models.CellChangeLog.taxon_id,
            models.CellChangeLog.character_id,
            models.CellChangeLog.changed_on,
        ).filter(
            models.CellChangeLog.matrix_id == editor.matrix_id,
            models.CellChangeLog.taxon_id.in_(taxa_ids),
            models.CellChangeLog.character_id.in_(character_ids),
        ):
            if changed_on > updates[taxon_id].get(character_id, 0):
                updates[taxon_id][character_id] = changed_on
        comment_counts = cell_comments.comment_counts(editor, taxa_ids, character_ids)
    return {
        "counts": {
            "updates": dict(updates),
            "citation_counts": dict(citation_counts),
            "comment_counts": comment_counts,
        }
    }


def _score_name(db, entry: models.CellChangeLog, snapshot: dict[str, Any]) -> str:
    if entry.state_id:
        state = db.get(models.CharacterState, entry.state_id)
        if state is not None:
            return f"[{state.num}] {state.name}"
        return f"state {entry.state_id}"
    if snapshot.get("is_npa"):
        return "NPA"
    parts = []
    if snapshot.get("start_value") is not None:
        parts.append(f"Start: {snapshot['start_value']}")
    if snapshot.get("end_value") is not None:
        parts.append(f"End: {snapshot['end_value']}")
    return " ".join(parts) or "-"


def describe_change(db, entry: models.CellChangeLog) -> str:
    snapshot = entry.snapshot or {}
    tables = changelog.TABLE_NUMBERS
    match entry.table_num, entry.change_type:
        case (num, "C") if num == tables["cells"]:
            return "Checked cell"
        case (num, "D") if num == tables["cells"]:
            return f"Removed score {_score_name(db, entry, snapshot)}"
        case (num, _) if num == tables["cells"]:
            return f"Set score to {_score_name(db, entry, snapshot)}"
        case (num, "I") if num == tables["cells_x_media"]:
            return f"Added media M{snapshot.get('media_id')}"
        case (num, "D") if num == tables["cells_x_media"]:
            return f"Remove media M{snapshot.get('media_id')}"
        case (num, _) if num == tables["cells_x_media"]:
            return f"Changed media to M{snapshot.get('media_id')}"
        case (num, "D") if num == tables["cell_notes"]:
            status = NOTE_STATUS_LABELS.get(snapshot.get("status"), "?")
            return f"Removed cell notes and status; final notes were: '{snapshot.get('notes', '')}' Final status was: {status}"
        case (num, _) if num == tables["cell_notes"]:
            status = NOTE_STATUS_LABELS.get(snapshot.get("status"), "?")
            return f"Set cell notes to: '{snapshot.get('notes', '')}' Set status to: {status}"
        case (num, "I") if num == tables["cells_x_bibliographic_references"]:
            return "Insert cell citation"
        case (num, "D") if num == tables["cells_x_bibliographic_references"]:
            return "Removed cell citation"
        case (num, _) if num == tables["cells_x_bibliographic_references"]:
            return "Update cell citation"
        case (num, _) if num == tables["annotations"]:
            return f"Commented: '{snapshot.get('comment', '')}'"
        case _:
            return "Unknown Change"


def get_cell_changes(editor: MatrixEditor, taxon_id: int, character_id: int) -> dict[str, Any]:
    """Return the history of one cell, newest first."""

    db = editor.db
    entries = (
        db.query(models.CellChangeLog)
        .filter(
            models.CellChangeLog.matrix_id == editor.matrix_id,
            models.CellChangeLog.taxon_id == taxon_id,
            models.CellChangeLog.character_id == character_id,
        )
        .order_by(models.CellChangeLog.changed_on.desc(), models.CellChangeLog.id.desc())
        .all()
    )
    users: dict[int, models.User | None] = {}
    changes = []
    for entry in entries:
        if entry.user_id not in users:
            users[entry.user_id] = db.get(models.User, entry.user_id)
        user = users[entry.user_id]
        changes.append(
            {
                "id": entry.id,
                "change_type": entry.change_type,
                "user_id": entry.user_id,
                "user_name": (user.full_name or user.email) if user else "",
                "changed_on": entry.changed_on,
                "description": describe_change(db, entry),
            }
        )
    return {"changes": changes}


def _partition_ids(editor: MatrixEditor, partition_id: int | None) -> tuple[set[int] | None, set[int] | None]:
    if not partition_id:
        return None, None
    partition = editor.db.get(models.Partition, partition_id)
    if partition is None or partition.project_id != editor.project.id:
        raise UserError("Invalid Partition id")
    record = partition_record(editor.db, partition)
    return set(record["taxa_ids"]), set(record["character_ids"])


def _search_scope(editor: MatrixEditor, partition_id: int | None) -> tuple[list[int], list[int]]:
    """Matrix taxa and characters, in position order, limited to a partition."""

    partition_taxa, partition_characters = _partition_ids(editor, partition_id)
    taxa = scores.matrix_taxon_ids(editor)
    characters = scores.matrix_character_ids(editor)
    if partition_taxa is not None:
        taxa = [taxon_id for taxon_id in taxa if taxon_id in partition_taxa]
        characters = [character_id for character_id in characters if character_id in partition_characters]
    return taxa, characters


def _pairs(db, model, matrix_id: int) -> set[tuple[int, int]]:
    return {
        (taxon_id, character_id)
        for taxon_id, character_id in db.query(model.taxon_id, model.character_id).filter(model.matrix_id == matrix_id)
    }


def search_cells(
    editor: MatrixEditor,
    partition_id: int | None = None,
    taxon_id: int | None = None,
    *,
    unscored: bool = False,
    scored: bool = False,
    undocumented: bool = False,
    npa: bool = False,
    polymorphic: bool = False,
    unimaged: bool = False,
) -> dict[str, Any]:
    """Find cells matching one limitation, ordered by character then taxon position."""

    db = editor.db
    taxa, characters = _search_scope(editor, partition_id)
    if taxon_id:
        taxa = [candidate for candidate in taxa if candidate == taxon_id]
    index = scores.load_cells(editor, taxa, characters)
    imaged = _pairs(db, models.CellsXMedium, editor.matrix_id)
    cited = _pairs(db, models.CellsXBibliographicReference, editor.matrix_id)
    noted = {
        (note.taxon_id, note.character_id)
        for note in db.query(models.CellNote).filter(models.CellNote.matrix_id == editor.matrix_id)
        if note.notes
    }

    def _documented(pair: tuple[int, int]) -> bool:
        return pair in imaged or pair in noted or pair in cited

    if scored and undocumented and unimaged:
        def matches(pair, cells):
            return any(key > 0 for key in cells) and not _documented(pair)
    elif undocumented and unimaged:
        def matches(pair, cells):
            return bool(cells) and not _documented(pair)
    elif unscored:
        def matches(pair, cells):
            return not cells
    elif npa:
        def matches(pair, cells):
            return scores.NPA_STATE in cells
    elif unimaged:
        def matches(pair, cells):
            return pair not in imaged
    elif polymorphic:
        def matches(pair, cells):
            return len(cells) > 1 and any(key <= 0 for key in cells)
    else:
        raise UserError("Invalid search option")

    found = []
    for character_id in characters:
        for candidate in taxa:
            pair = (candidate, character_id)
            if matches(pair, index.get(pair) or {}):
                found.append({"character_id": character_id, "taxon_id": candidate})
    return {"results": found}


def search_taxa(editor: MatrixEditor, partition_id: int | None = None, *, unscored: bool = False, npa: bool = False) -> dict[str, Any]:
    taxa, characters = _search_scope(editor, partition_id)
    index = scores.load_cells(editor, taxa, characters)
    if unscored:
        found = [taxon_id for taxon_id in taxa if any(not index.get((taxon_id, c)) for c in characters)]
    elif npa:
        found = [taxon_id for taxon_id in taxa if any(scores.NPA_STATE in (index.get((taxon_id, c)) or {}) for c in characters)]
    else:
        raise UserError("Invalid search option")
    return {"results": [{"taxon_id": taxon_id} for taxon_id in found]}


def search_characters(
    editor: MatrixEditor,
    partition_id: int | None = None,
    *,
    unscored: bool = False,
    unused_media: bool = False,
    npa: bool = False,
) -> dict[str, Any]:
    taxa, characters = _search_scope(editor, partition_id)
    index = scores.load_cells(editor, taxa, characters)
    if unscored:
        found = [{"character_id": c} for c in characters if any(not index.get((t, c)) for t in taxa)]
    elif npa:
        found = [{"character_id": c} for c in characters if any(scores.NPA_STATE in (index.get((t, c)) or {}) for t in taxa)]
    elif unused_media:
        used = defaultdict(set)
        for character_id, media_id in editor.db.query(models.CellsXMedium.character_id, models.CellsXMedium.media_id).filter(
            models.CellsXMedium.matrix_id == editor.matrix_id
        ):
            used[character_id].add(media_id)
        character_media = defaultdict(set)
        for character_id, media_id in editor.db.query(models.CharactersXMedium.character_id, models.CharactersXMedium.media_id).filter(
            models.CharactersXMedium.character_id.in_(characters)
        ):
            character_media[character_id].add(media_id)
        found = []
        for character_id in characters:
            unused = sorted(character_media[character_id] - used[character_id])
            if unused:
                found.append({"character_id": character_id, "media_list": "".join(f"; M{media_id}" for media_id in unused)})
    else:
        raise UserError("Invalid search option")
    return {"results": found}
