"""Cell scoring, notes, media and citation mutations."""

from __future__ import annotations

from typing import Any, Iterable

from .. import changelog, models, rbac
from . import media_automation, results, rules, scores
from .batches import ROW_BATCH, COLUMN_BATCH, BatchRecorder, CellBatchType, describe_scope, validate_batch_mode
from .editor import MatrixEditor
from .errors import UserError

# purpose: diff-based cell writes with rule cascades, media automation and batch logging
# inputs: engine handle plus taxa, characters and requested values
# outputs: compact cell records and a notify flag for peer sync
# status: pilot


NOTE_STATUSES = (0, 1, 2)


def _require_scope(taxa_ids: list[int], character_ids: list[int]) -> None:
    if not taxa_ids:
        raise UserError("Please specify at least one taxon")
    if not character_ids:
        raise UserError("Please specify at least one character")


def _ensure_scoring_enabled(editor: MatrixEditor) -> None:
    if editor.option("DISABLE_SCORING") == 1:
        raise UserError("Scoring has been disabled by the project administrator")


def _load_characters(editor: MatrixEditor, character_ids: Iterable[int]) -> dict[int, models.Character]:
    ids = set(character_ids)
    rows = editor.db.query(models.Character).filter(models.Character.id.in_(ids)).all()
    return {character.id: character for character in rows}


def _pair_cells(editor: MatrixEditor, pairs: set[tuple[int, int]]) -> list[dict[str, Any]]:
    """Placeholders for every pair followed by the pair's current cells."""

    if not pairs:
        return []
    index = scores.load_cells(editor, {t for t, _ in pairs}, {c for _, c in pairs})
    placeholders = [results.deleted_cell(taxon_id, character_id) for taxon_id, character_id in sorted(pairs)]
    current = [cell for pair in sorted(pairs) for cell in (index.get(pair) or {}).values()]
    return placeholders + results.compact_cells(editor.db, current)


def _scope_mode(batch_mode: int | bool, taxa_ids: list[int]) -> int:
    if isinstance(batch_mode, bool):
        return ROW_BATCH if len(taxa_ids) == 1 else COLUMN_BATCH
    return batch_mode


def _validate_state_ids(
    editor: MatrixEditor,
    characters: dict[int, models.Character],
    state_ids: list[int],
    uncertain: bool,
) -> None:
    if scores.NPA_STATE in state_ids and len(state_ids) > 1:
        raise UserError("Invalid state combination for cells")
    if uncertain:
        if len(state_ids) < 2:
            raise UserError("Single cells cannot be uncertain")
        if scores.NPA_STATE in state_ids:
            raise UserError('Uncertain cells not include "NPA" and additional states')
    if len(characters) > 1:
        if len(state_ids) > 1:
            raise UserError("Invalid state combination for multiple characters")
        if state_ids and state_ids[0] > 0:
            raise UserError("Cannot set a specific state for multiple characters")
    elif characters:
        (character,) = characters.values()
        allowed = {scores.NPA_STATE, scores.NO_STATE} | {state.id for state in character.states}
        if any(state_id not in allowed for state_id in state_ids):
            raise UserError("Invalid state ID for character")
    for character in characters.values():
        if character.type != 0 and any(state_id > 0 for state_id in state_ids):
            raise UserError("Continuous characters cannot have states")


def _media_updates(
    editor: MatrixEditor,
    taxa_ids: Iterable[int],
    character_ids: Iterable[int],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    if editor.option("ENABLE_CELL_MEDIA_AUTOMATION") != 1:
        return [], []
    added, deleted = media_automation.sync_view_media(editor, taxa_ids, character_ids)
    return [results.cell_media_result(editor.db, link) for link in added], deleted


def set_cell_states(
    editor: MatrixEditor,
    taxa_ids: list[int],
    character_ids: list[int],
    state_ids: list[int],
    batch_mode: int = 0,
    uncertain: bool = False,
) -> dict[str, Any]:
    """Make the scores of every requested cell equal ``state_ids``.

    The stored and requested state keys are diffed per cell so repeating a call
    writes nothing. Inserted scores feed the rule cascade and the view-based
    media automation when the matrix enables them.
    """

    _require_scope(taxa_ids, character_ids)
    _ensure_scoring_enabled(editor)
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to set states in this matrix")
    validate_batch_mode(batch_mode)
    state_ids = [int(state_id) for state_id in dict.fromkeys(state_ids)]
    characters = _load_characters(editor, character_ids)
    _validate_state_ids(editor, characters, state_ids, uncertain)
    rbac.ensure_can_edit_taxa(editor, taxa_ids)
    rbac.ensure_can_edit_characters(editor, character_ids)

    batch = BatchRecorder.open(editor, CellBatchType.SET_SCORES) if batch_mode else None
    requested = set(state_ids)
    index = scores.load_cells(editor, taxa_ids, character_ids)
    changed_pairs: set[tuple[int, int]] = set()
    inserted: list[models.Cell] = []
    for taxon_id in dict.fromkeys(taxa_ids):
        for character_id in dict.fromkeys(character_ids):
            pair = (taxon_id, character_id)
            current = index.get(pair) or {}
            for key in set(current) - requested:
                scores.delete_score(editor, current[key])
                changed_pairs.add(pair)
            for key in state_ids:
                if key in current:
                    if scores.update_score(editor, current[key], is_uncertain=bool(uncertain)):
                        changed_pairs.add(pair)
                    continue
                inserted.append(scores.insert_score(editor, taxon_id, character_id, key, uncertain=uncertain))
                changed_pairs.add(pair)

    affected_characters = set(character_ids)
    if inserted and editor.option("APPLY_CHARACTERS_WHILE_SCORING") == 1:
        cascade = rules.apply_state_rules(editor, inserted)
        changed_pairs.update((cell.taxon_id, cell.character_id) for cell in cascade.cells)
        changed_pairs.update(cascade.deleted)
        affected_characters.update(cell.character_id for cell in cascade.cells)

    added_media, deleted_media = [], []
    if changed_pairs:
        added_media, deleted_media = _media_updates(editor, taxa_ids, affected_characters)

    if batch is not None:
        batch.finalize(
            "Batch scoring added to " + describe_scope(editor, batch_mode, taxa_ids, character_ids),
            changed=bool(changed_pairs or added_media or deleted_media),
        )
    return {
        "ts": editor.now(),
        "cells": _pair_cells(editor, changed_pairs),
        "deleted_cell_media": deleted_media,
        "added_cell_media": added_media,
        "notify": bool(changed_pairs or added_media or deleted_media),
    }


def _to_number(value: Any, message: str) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise UserError(message)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise UserError(message) from exc


def set_cell_continuous_values(
    editor: MatrixEditor,
    taxa_ids: list[int],
    character_ids: list[int],
    start_value: Any,
    end_value: Any,
    batch_mode: int = 0,
) -> dict[str, Any]:
    _require_scope(taxa_ids, character_ids)
    _ensure_scoring_enabled(editor)
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to set states in this matrix")
    validate_batch_mode(batch_mode)

    characters = _load_characters(editor, character_ids)
    if len(characters) != len(set(character_ids)):
        raise UserError("Invalid character ID")
    if any(character.type == 0 for character in characters.values()):
        raise UserError("Discrete characters cannot have continuous values")

    start = _to_number(start_value, "Start value is not a number")
    end = _to_number(end_value, "End value is not a number")
    if start is None and end is not None:
        raise UserError("Start value is not a number")
    if start is not None and end is not None and start > end:
        raise UserError("Start value cannot be greater than end value")
    rbac.ensure_can_edit_taxa(editor, taxa_ids)
    rbac.ensure_can_edit_characters(editor, character_ids)

    index = scores.load_cells(editor, taxa_ids, character_ids)
    for taxon_id in taxa_ids:
        for character_id in character_ids:
            if len(index.get((taxon_id, character_id)) or {}) > 1:
                raise UserError("Selected Continuous scores have more than one value")

    batch = BatchRecorder.open(editor, CellBatchType.SET_SCORES) if batch_mode else None
    changed_pairs: set[tuple[int, int]] = set()
    for taxon_id in dict.fromkeys(taxa_ids):
        for character_id in dict.fromkeys(character_ids):
            pair = (taxon_id, character_id)
            existing = list((index.get(pair) or {}).values())
            cell = existing[0] if existing else None
            if start is None:
                if cell is not None:
                    scores.delete_score(editor, cell)
                    changed_pairs.add(pair)
                continue
            if cell is not None and cell.state_key == scores.NO_STATE:
                if scores.update_score(editor, cell, start_value=start, end_value=end):
                    changed_pairs.add(pair)
                continue
            if cell is not None:
                scores.delete_score(editor, cell)
            scores.insert_score(editor, taxon_id, character_id, scores.NO_STATE, start_value=start, end_value=end)
            changed_pairs.add(pair)

    if batch is not None:
        batch.finalize(
            "Batch scoring added to " + describe_scope(editor, batch_mode, taxa_ids, character_ids),
            changed=bool(changed_pairs),
        )
    return {
        "ts": editor.now(),
        "cells": _pair_cells(editor, changed_pairs),
        "deleted_cell_media": [],
        "added_cell_media": [],
        "notify": bool(changed_pairs),
    }


def _matrix_placement(editor: MatrixEditor, taxon_id: int) -> models.MatrixTaxaOrder | None:
    return (
        editor.db.query(models.MatrixTaxaOrder)
        .filter(
            models.MatrixTaxaOrder.matrix_id == editor.matrix_id,
            models.MatrixTaxaOrder.taxon_id == taxon_id,
        )
        .first()
    )


def _notes_by_pair(editor: MatrixEditor, taxa_ids: Iterable[int], character_ids: Iterable[int]) -> dict[tuple[int, int], models.CellNote]:
    rows = (
        editor.db.query(models.CellNote)
        .filter(
            models.CellNote.matrix_id == editor.matrix_id,
            models.CellNote.taxon_id.in_(set(taxa_ids)),
            models.CellNote.character_id.in_(set(character_ids)),
        )
        .all()
    )
    return {(note.taxon_id, note.character_id): note for note in rows}


def copy_cell_scores(
    editor: MatrixEditor,
    source_taxon_id: int,
    dest_taxon_id: int,
    character_ids: list[int],
    batch_mode: bool = False,
    copy_notes: bool = False,
) -> dict[str, Any]:
    """Make the destination taxon's cells mirror the source taxon's cells."""

    if not character_ids:
        raise UserError("Please specify at least one character")
    _ensure_scoring_enabled(editor)
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to set states in this matrix")
    source_placement = _matrix_placement(editor, source_taxon_id)
    dest_placement = _matrix_placement(editor, dest_taxon_id)
    if source_placement is None or dest_placement is None:
        raise UserError("Taxa is not in this matrix")
    rbac.ensure_can_edit_taxa(editor, [dest_taxon_id])
    rbac.ensure_can_edit_characters(editor, character_ids)

    batch = BatchRecorder.open(editor, CellBatchType.COPY_SCORES) if batch_mode else None
    index = scores.load_cells(editor, [source_taxon_id, dest_taxon_id], character_ids)
    changed_pairs: set[tuple[int, int]] = set()
    for character_id in dict.fromkeys(character_ids):
        pair = (dest_taxon_id, character_id)
        source = index.get((source_taxon_id, character_id)) or {}
        dest = index.get(pair) or {}
        for key in set(dest) - set(source):
            scores.delete_score(editor, dest[key])
            changed_pairs.add(pair)
        for key, source_cell in source.items():
            values = {
                "is_uncertain": bool(source_cell.is_uncertain),
                "start_value": source_cell.start_value,
                "end_value": source_cell.end_value,
            }
            if key in dest:
                if scores.update_score(editor, dest[key], **values):
                    changed_pairs.add(pair)
                continue
            scores.insert_score(
                editor,
                dest_taxon_id,
                character_id,
                key,
                uncertain=values["is_uncertain"],
                start_value=values["start_value"],
                end_value=values["end_value"],
            )
            changed_pairs.add(pair)

    notes: list[dict[str, Any]] = []
    if copy_notes:
        existing = _notes_by_pair(editor, [source_taxon_id, dest_taxon_id], character_ids)
        for character_id in dict.fromkeys(character_ids):
            source_note = existing.get((source_taxon_id, character_id))
            dest_note = existing.get((dest_taxon_id, character_id))
            if source_note is None:
                if dest_note is not None:
                    changelog.delete_logged(editor.db, dest_note, user_id=editor.user_id, now=editor.now())
                    notes.append({"taxon_id": dest_taxon_id, "character_id": character_id, "notes": "", "status": 0})
                continue
            if dest_note is None:
                dest_note = changelog.insert_logged(
                    editor.db,
                    models.CellNote(
                        matrix_id=editor.matrix_id,
                        taxon_id=dest_taxon_id,
                        character_id=character_id,
                        user_id=editor.user_id,
                        notes=source_note.notes,
                        status=source_note.status,
                    ),
                    user_id=editor.user_id,
                    now=editor.now(),
                )
            elif not changelog.update_logged(
                editor.db,
                dest_note,
                {"notes": source_note.notes, "status": source_note.status},
                user_id=editor.user_id,
                now=editor.now(),
            ):
                continue
            notes.append(results.note_result(dest_note))

    if batch is not None:
        source_taxon = source_placement.taxon
        dest_taxon = dest_placement.taxon
        batch.finalize(
            f"Copy from {source_taxon.display_name} taxon row to {dest_taxon.display_name} taxon row",
            changed=bool(changed_pairs or notes),
        )
    return {
        "ts": editor.now(),
        "cells": _pair_cells(editor, changed_pairs),
        "notes": notes,
        "notify": bool(changed_pairs or notes),
    }


def set_cell_notes(
    editor: MatrixEditor,
    taxa_ids: list[int],
    character_ids: list[int],
    notes: str | None,
    status: int | None,
    batch_mode: int = 0,
) -> dict[str, Any]:
    _require_scope(taxa_ids, character_ids)
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to modify cell notes in this matrix")
    validate_batch_mode(batch_mode)
    if status is not None and status not in NOTE_STATUSES:
        raise UserError("Invalid note status")
    rbac.ensure_can_edit_taxa(editor, taxa_ids)
    rbac.ensure_can_edit_characters(editor, character_ids)

    batch = BatchRecorder.open(editor, CellBatchType.CELL_NOTES) if batch_mode else None
    existing = _notes_by_pair(editor, taxa_ids, character_ids)
    updated: list[dict[str, Any]] = []
    for taxon_id in dict.fromkeys(taxa_ids):
        for character_id in dict.fromkeys(character_ids):
            note = existing.get((taxon_id, character_id))
            if note is None:
                note = changelog.insert_logged(
                    editor.db,
                    models.CellNote(
                        matrix_id=editor.matrix_id,
                        taxon_id=taxon_id,
                        character_id=character_id,
                        user_id=editor.user_id,
                        notes=notes or "",
                        status=status or 0,
                    ),
                    user_id=editor.user_id,
                    now=editor.now(),
                )
                updated.append(results.note_result(note))
                continue
            changes: dict[str, Any] = {}
            if notes is not None:
                changes["notes"] = notes
            if status is not None:
                changes["status"] = status
            if changelog.update_logged(editor.db, note, changes, user_id=editor.user_id, now=editor.now()):
                updated.append(results.note_result(note))

    if batch is not None:
        batch.finalize(
            "Updated notes on " + describe_scope(editor, batch_mode, taxa_ids, character_ids),
            changed=bool(updated),
        )
    return {"ts": editor.now(), "notes": updated, "notify": bool(updated)}


def _ensure_project_media(editor: MatrixEditor, media_ids: Iterable[int]) -> None:
    for media_id in media_ids:
        media_file = editor.db.get(models.MediaFile, media_id)
        if media_file is None or media_file.project_id != editor.project.id:
            raise UserError("Media does not belong to this project")


def add_cell_media(
    editor: MatrixEditor,
    taxon_id: int,
    character_ids: list[int],
    media_ids: list[int],
    batch_mode: bool = False,
) -> dict[str, Any]:
    if not character_ids:
        raise UserError("Please specify at least one character")
    if not media_ids:
        raise UserError("Please specify at least one media")
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to add media to this matrix")
    rbac.ensure_can_edit_taxa(editor, [taxon_id])
    rbac.ensure_can_edit_characters(editor, character_ids)
    _ensure_project_media(editor, media_ids)

    batch = BatchRecorder.open(editor, CellBatchType.MEDIA_ADD) if batch_mode else None
    inserted: list[models.CellsXMedium] = []
    for character_id in dict.fromkeys(character_ids):
        for media_id in dict.fromkeys(media_ids):
            link = rules.attach_media(editor, taxon_id, character_id, media_id)
            if link is not None:
                inserted.append(link)
    if inserted and editor.option("APPLY_CHARACTERS_WHILE_SCORING") == 1:
        inserted.extend(rules.apply_media_rules(editor, inserted))

    if batch is not None:
        taxon = editor.db.get(models.Taxon, taxon_id)
        batch.finalize(
            f"{len(media_ids)} media added to {len(character_ids)} characters in {taxon.display_name} row",
            changed=bool(inserted),
        )
    return {
        "ts": editor.now(),
        "media": [results.cell_media_result(editor.db, link) for link in inserted],
        "notify": bool(inserted),
    }


def remove_cell_media(
    editor: MatrixEditor,
    taxon_id: int,
    character_id: int,
    link_id: int,
    transfer_citations: bool = False,
) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to remove media from this matrix")
    rbac.ensure_can_edit_taxa(editor, [taxon_id])
    link = editor.db.get(models.CellsXMedium, link_id)
    if (
        link is None
        or link.matrix_id != editor.matrix_id
        or link.taxon_id != taxon_id
        or link.character_id != character_id
    ):
        return {"ts": editor.now(), "link_id": link_id, "citations": [], "notify": False}

    citations: list[dict[str, Any]] = []
    if transfer_citations:
        reference_ids = [
            reference_id
            for (reference_id,) in editor.db.query(models.MediaFilesXBibliographicReference.reference_id)
            .filter(models.MediaFilesXBibliographicReference.media_id == link.media_id)
            .all()
        ]
        for reference_id in dict.fromkeys(reference_ids):
            citation = _find_citation(editor, taxon_id, character_id, reference_id)
            if citation is not None:
                continue
            citation = changelog.insert_logged(
                editor.db,
                models.CellsXBibliographicReference(
                    matrix_id=editor.matrix_id,
                    taxon_id=taxon_id,
                    character_id=character_id,
                    reference_id=reference_id,
                    user_id=editor.user_id,
                    pp="",
                    notes="",
                ),
                user_id=editor.user_id,
                now=editor.now(),
            )
            citations.append(results.citation_result(citation))

    changelog.delete_logged(editor.db, link, user_id=editor.user_id, now=editor.now())
    return {"ts": editor.now(), "link_id": link_id, "citations": citations, "notify": True}


def remove_cells_media(editor: MatrixEditor, taxon_id: int, character_ids: list[int]) -> dict[str, Any]:
    if not character_ids:
        raise UserError("Please specify at least one character")
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to remove media from this matrix")
    rbac.ensure_can_edit_taxa(editor, [taxon_id])
    rbac.ensure_can_edit_characters(editor, character_ids)

    batch = BatchRecorder.open(editor, CellBatchType.MEDIA_DELETE)
    links = (
        editor.db.query(models.CellsXMedium)
        .filter(
            models.CellsXMedium.matrix_id == editor.matrix_id,
            models.CellsXMedium.taxon_id == taxon_id,
            models.CellsXMedium.character_id.in_(set(character_ids)),
        )
        .order_by(models.CellsXMedium.id)
        .all()
    )
    removed = []
    for link in links:
        removed.append({"link_id": link.id, "taxon_id": link.taxon_id, "character_id": link.character_id, "media_id": link.media_id})
        changelog.delete_logged(editor.db, link, user_id=editor.user_id, now=editor.now())

    taxon = editor.db.get(models.Taxon, taxon_id)
    batch.finalize(
        f"All media deleted from {len(set(character_ids))} character(s) in {taxon.display_name} row",
        changed=bool(removed),
    )
    return {"ts": editor.now(), "deleted_cell_media": removed, "notify": bool(removed)}


def _find_citation(editor: MatrixEditor, taxon_id: int, character_id: int, reference_id: int):
    return (
        editor.db.query(models.CellsXBibliographicReference)
        .filter(
            models.CellsXBibliographicReference.matrix_id == editor.matrix_id,
            models.CellsXBibliographicReference.taxon_id == taxon_id,
            models.CellsXBibliographicReference.character_id == character_id,
            models.CellsXBibliographicReference.reference_id == reference_id,
        )
        .first()
    )


def add_cell_citations(
    editor: MatrixEditor,
    taxa_ids: list[int],
    character_ids: list[int],
    reference_id: int,
    pp: str | None = None,
    notes: str | None = None,
    batch_mode: bool = False,
) -> dict[str, Any]:
    _require_scope(taxa_ids, character_ids)
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to add citations to this matrix")
    reference = editor.db.get(models.BibliographicReference, reference_id)
    if reference is None or reference.project_id != editor.project.id:
        raise UserError("Citation does not belong to this project")
    rbac.ensure_can_edit_taxa(editor, taxa_ids)
    rbac.ensure_can_edit_characters(editor, character_ids)

    batch = BatchRecorder.open(editor, CellBatchType.ADD_CELL_CITATION) if batch_mode else None
    changed: list[dict[str, Any]] = []
    for taxon_id in dict.fromkeys(taxa_ids):
        for character_id in dict.fromkeys(character_ids):
            citation = _find_citation(editor, taxon_id, character_id, reference_id)
            if citation is None:
                citation = changelog.insert_logged(
                    editor.db,
                    models.CellsXBibliographicReference(
                        matrix_id=editor.matrix_id,
                        taxon_id=taxon_id,
                        character_id=character_id,
                        reference_id=reference_id,
                        user_id=editor.user_id,
                        pp=pp or "",
                        notes=notes or "",
                    ),
                    user_id=editor.user_id,
                    now=editor.now(),
                )
            elif not changelog.update_logged(
                editor.db,
                citation,
                {"pp": pp or "", "notes": notes or ""},
                user_id=editor.user_id,
                now=editor.now(),
            ):
                continue
            changed.append(results.citation_result(citation))

    if batch is not None:
        mode = _scope_mode(batch_mode, taxa_ids)
        batch.finalize(
            "Added cell citations to " + describe_scope(editor, mode, taxa_ids, character_ids),
            changed=bool(changed),
        )
    return {"ts": editor.now(), "citations": changed, "notify": bool(changed)}


def upsert_cell_citation(
    editor: MatrixEditor,
    link_id: int | None,
    taxon_id: int,
    character_id: int,
    reference_id: int,
    pp: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Edit the page and notes of an existing cell citation, or create it when ``link_id`` is unknown."""

    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to add citations for cells")
    reference = editor.db.get(models.BibliographicReference, reference_id)
    if reference is None or reference.project_id != editor.project.id:
        raise UserError("Citation does not exist")
    citation = editor.db.get(models.CellsXBibliographicReference, link_id) if link_id else None
    if citation is None:
        rbac.ensure_can_edit_taxa(editor, [taxon_id])
        rbac.ensure_can_edit_characters(editor, [character_id])
        citation = changelog.insert_logged(
            editor.db,
            models.CellsXBibliographicReference(
                matrix_id=editor.matrix_id,
                taxon_id=taxon_id,
                character_id=character_id,
                reference_id=reference_id,
                user_id=editor.user_id,
                pp=pp or "",
                notes=notes or "",
            ),
            user_id=editor.user_id,
            now=editor.now(),
        )
        changed = True
    else:
        if citation.matrix_id != editor.matrix_id:
            raise UserError("Citation is not for the specified matrix")
        if citation.taxon_id != taxon_id:
            raise UserError("Citation does not match the given taxon")
        if citation.character_id != character_id:
            raise UserError("Citation does not match the given character")
        if citation.reference_id != reference_id:
            raise UserError("Cell citation does not match the citation")
        rbac.ensure_can_edit_taxa(editor, [citation.taxon_id])
        rbac.ensure_can_edit_characters(editor, [citation.character_id])
        changed = changelog.update_logged(
            editor.db,
            citation,
            {"pp": pp or "", "notes": notes or ""},
            user_id=editor.user_id,
            now=editor.now(),
        )
    result = results.citation_result(citation)
    result["name"] = reference.title
    return {"ts": editor.now(), "citation": result, "notify": changed}


def remove_cell_citation(editor: MatrixEditor, link_id: int) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to remove citations from this matrix")
    citation = editor.db.get(models.CellsXBibliographicReference, link_id)
    if citation is None or citation.matrix_id != editor.matrix_id:
        return {"ts": editor.now(), "link_id": link_id, "notify": False}
    rbac.ensure_can_edit_taxa(editor, [citation.taxon_id])
    changelog.delete_logged(editor.db, citation, user_id=editor.user_id, now=editor.now())
    return {"ts": editor.now(), "link_id": link_id, "notify": True}


def get_cell_citations(editor: MatrixEditor, taxon_id: int, character_id: int) -> dict[str, Any]:
    rows = (
        editor.db.query(models.CellsXBibliographicReference, models.BibliographicReference)
        .join(
            models.BibliographicReference,
            models.BibliographicReference.id == models.CellsXBibliographicReference.reference_id,
        )
        .filter(
            models.CellsXBibliographicReference.matrix_id == editor.matrix_id,
            models.CellsXBibliographicReference.taxon_id == taxon_id,
            models.CellsXBibliographicReference.character_id == character_id,
        )
        .order_by(models.CellsXBibliographicReference.id)
        .all()
    )
    citations = []
    for link, reference in rows:
        citation = results.citation_result(link)
        citation["name"] = reference.title
        citations.append(citation)
    return {"citations": citations}


def log_cell_check(editor: MatrixEditor, taxa_ids: list[int], character_ids: list[int]) -> dict[str, Any]:
    """Mark cells as reviewed without changing them."""

    _require_scope(taxa_ids, character_ids)
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to modify cells this matrix")
    rbac.ensure_can_edit_taxa(editor, taxa_ids)
    rbac.ensure_can_edit_characters(editor, character_ids)
    now = editor.now()
    for taxon_id in dict.fromkeys(taxa_ids):
        for character_id in dict.fromkeys(character_ids):
            changelog.record_check(
                editor.db,
                matrix_id=editor.matrix_id,
                taxon_id=taxon_id,
                character_id=character_id,
                user_id=editor.user_id,
                now=now,
            )
    editor.db.flush()
    return {"ts": now, "notify": False}
