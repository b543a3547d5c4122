"""Taxon and character placement, taxon access and matrix options."""

from __future__ import annotations

import logging
import time
from typing import Any

from .. import changelog, models, rbac
from .editor import ADMIN_MATRIX_OPTIONS, MATRIX_OPTIONS, MatrixEditor
from .errors import ForbiddenError, UserError

# purpose: keep matrix placements dense and log every layout change for the change feed
# status: pilot

_logger = logging.getLogger(__name__)


def _renumber(placements: list) -> None:
    for position, placement in enumerate(placements, start=1):
        placement.position = position


def _move(placements: list, attribute: str, ids: list[int], index: int) -> None:
    """Place the selected rows right after position ``index`` keeping their order."""

    selected = set(ids)
    moving = [placement for placement in placements if getattr(placement, attribute) in selected]
    rest = [placement for placement in placements if getattr(placement, attribute) not in selected]
    before = [placement for placement in rest if placement.position <= index]
    after = [placement for placement in rest if placement.position > index]
    _renumber(before + moving + after)


def _taxon_placements(editor: MatrixEditor) -> list[models.MatrixTaxaOrder]:
    return (
        editor.db.query(models.MatrixTaxaOrder)
        .filter(models.MatrixTaxaOrder.matrix_id == editor.matrix_id)
        .order_by(models.MatrixTaxaOrder.position)
        .all()
    )


def _character_placements(editor: MatrixEditor) -> list[models.MatrixCharacterOrder]:
    return (
        editor.db.query(models.MatrixCharacterOrder)
        .filter(models.MatrixCharacterOrder.matrix_id == editor.matrix_id)
        .order_by(models.MatrixCharacterOrder.position)
        .all()
    )


def _log_matrix_change(editor: MatrixEditor) -> None:
    editor.matrix.last_modified_on = editor.now()
    changelog.record_change(
        editor.db,
        "matrices",
        editor.matrix_id,
        matrix_id=editor.matrix_id,
        user_id=editor.user_id,
        now=editor.now(),
    )


def _delete_cell_rows(editor: MatrixEditor, attribute: str, ids: set[int]) -> None:
    """Delete every logged cell row and comment of the matrix on the given taxa or characters."""

    db = editor.db
    for model in changelog.CELL_TABLES:
        rows = (
            db.query(model)
            .filter(model.matrix_id == editor.matrix_id, getattr(model, attribute).in_(ids))
            .order_by(model.id)
            .all()
        )
        for row in rows:
            changelog.delete_logged(db, row, user_id=editor.user_id, now=editor.now())
    db.query(models.CellComment).filter(
        models.CellComment.matrix_id == editor.matrix_id,
        getattr(models.CellComment, attribute).in_(ids),
    ).delete(synchronize_session=False)


def add_taxa_to_matrix(editor: MatrixEditor, taxa_ids: list[int], after_taxon_id: int | None = None) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addTaxon", "You are not allowed to add taxa")
    if not taxa_ids:
        raise UserError("No taxa was specified")
    requested = list(dict.fromkeys(taxa_ids))
    count = (
        editor.db.query(models.Taxon)
        .filter(models.Taxon.project_id == editor.project.id, models.Taxon.id.in_(requested))
        .count()
    )
    if count != len(requested):
        raise UserError("Taxa is not in this project")

    placements = _taxon_placements(editor)
    if after_taxon_id:
        anchor = next((placement for placement in placements if placement.taxon_id == after_taxon_id), None)
        if anchor is None:
            raise UserError("Insertion position is not valid")
        index = anchor.position
    else:
        index = 0

    present = {placement.taxon_id for placement in placements}
    added = []
    for taxon_id in requested:
        if taxon_id in present:
            continue
        placement = models.MatrixTaxaOrder(
            matrix_id=editor.matrix_id,
            taxon_id=taxon_id,
            position=0,
            added_by_id=editor.user_id,
            notes="",
        )
        editor.db.add(placement)
        added.append(placement)
    before = [placement for placement in placements if placement.position <= index]
    after = [placement for placement in placements if placement.position > index]
    _renumber(before + added + after)
    _log_matrix_change(editor)
    _logger.info("added %d taxa to matrix %s", len(added), editor.matrix_id)
    return {"taxa_ids": requested, "after_taxon_id": after_taxon_id, "notify": True}


def remove_taxa_from_matrix(editor: MatrixEditor, taxa_ids: list[int]) -> dict[str, Any]:
    rbac.ensure_admin_like(editor, "You must be an administrator to remove a taxon from this matrix")
    if not taxa_ids:
        raise UserError("Please select taxa to remove")

    db = editor.db
    _delete_cell_rows(editor, "taxon_id", set(taxa_ids))

    placements = _taxon_placements(editor)
    for placement in placements:
        if placement.taxon_id in taxa_ids:
            db.delete(placement)
    db.flush()
    _renumber([placement for placement in placements if placement.taxon_id not in taxa_ids])
    _log_matrix_change(editor)
    _logger.info("removed %d taxa from matrix %s", len(taxa_ids), editor.matrix_id)
    return {"taxa_ids": taxa_ids, "notify": True}


def reorder_taxa(editor: MatrixEditor, taxa_ids: list[int], index: int) -> dict[str, Any]:
    if not taxa_ids:
        raise UserError("No taxa were specified")
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to reorder this matrix")
    _move(_taxon_placements(editor), "taxon_id", taxa_ids, index)
    _log_matrix_change(editor)
    return {"taxa_ids": taxa_ids, "index": index, "notify": True}


def reorder_characters(editor: MatrixEditor, character_ids: list[int], index: int) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "reorderCharacters", "You are not allowed to reorder characters in this matrix")
    if not character_ids:
        raise UserError("Please specify at least one character")
    rbac.ensure_can_edit_characters(editor, character_ids)
    _move(_character_placements(editor), "character_id", character_ids, index)
    _log_matrix_change(editor)
    return {"character_ids": character_ids, "index": index, "notify": True}


def add_character(
    editor: MatrixEditor,
    name: str | None = None,
    character_type: int = 0,
    index: int | None = None,
) -> dict[str, Any]:
    """Create a project character and place it after position ``index``, or last."""

    rbac.ensure_can_do(editor, "addCharacter", "You are not allowed to add characters to this matrix")
    if not name:
        name = f"New character ({time.strftime('%A, %b %d, %Y, %I:%M:%S %p')})"
    # meristic characters only go into meristic matrices and vice versa
    if (character_type == 2) != (editor.matrix.type == 1):
        character_kind = "meristic" if character_type == 2 else "categorical"
        matrix_kind = "meristic" if editor.matrix.type == 1 else "categorical"
        raise UserError(f"Unable to add {character_kind} character to {matrix_kind} matrix")

    db = editor.db
    now = editor.now()
    character = models.Character(
        project_id=editor.project.id,
        user_id=editor.user_id,
        name=name,
        type=character_type,
        created_at=now,
        last_modified_on=now,
    )
    db.add(character)
    db.flush()

    placements = _character_placements(editor)
    if index is None or not 0 <= index <= len(placements):
        index = len(placements)
    placement = models.MatrixCharacterOrder(
        matrix_id=editor.matrix_id,
        character_id=character.id,
        position=0,
        user_id=editor.user_id,
    )
    db.add(placement)
    placements.insert(index, placement)
    _renumber(placements)
    changelog.record_change(
        db, "characters", character.id, matrix_id=editor.matrix_id, user_id=editor.user_id, now=now, change_type="I"
    )
    _log_matrix_change(editor)
    _logger.info("added character %s to matrix %s at position %d", character.id, editor.matrix_id, placement.position)
    return {
        "character": {
            "id": character.id,
            "name": name,
            "position": placement.position,
            "type": character_type,
            "user_id": editor.user_id,
            "last_changed_on": now,
        },
        "notify": True,
    }


def _drop_unplaced_characters(editor: MatrixEditor, character_ids: set[int]) -> set[int]:
    """Delete the characters no matrix places any more, with their rules, media and partition links."""

    db = editor.db
    placed = {
        character_id
        for (character_id,) in db.query(models.MatrixCharacterOrder.character_id).filter(
            models.MatrixCharacterOrder.character_id.in_(character_ids)
        )
    }
    dropped = character_ids - placed
    if not dropped:
        return dropped

    for rule in db.query(models.CharacterRule).filter(models.CharacterRule.character_id.in_(dropped)).all():
        db.delete(rule)
    targeted = db.query(models.CharacterRuleAction).filter(models.CharacterRuleAction.character_id.in_(dropped)).all()
    for action in targeted:
        db.delete(action)
    db.flush()
    emptied = {action.rule_id for action in targeted}
    for rule in db.query(models.CharacterRule).filter(models.CharacterRule.id.in_(emptied)).all():
        if not db.query(models.CharacterRuleAction).filter(models.CharacterRuleAction.rule_id == rule.id).count():
            db.delete(rule)
    db.query(models.CharactersXMedium).filter(models.CharactersXMedium.character_id.in_(dropped)).delete(
        synchronize_session=False
    )
    db.query(models.CharactersXPartition).filter(models.CharactersXPartition.character_id.in_(dropped)).delete(
        synchronize_session=False
    )
    for character in db.query(models.Character).filter(models.Character.id.in_(dropped)).all():
        db.delete(character)
        changelog.record_change(
            db,
            "characters",
            character.id,
            matrix_id=editor.matrix_id,
            user_id=editor.user_id,
            now=editor.now(),
            change_type="D",
        )
    return dropped


def remove_characters(editor: MatrixEditor, character_ids: list[int]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "deleteCharacter", "You are not allowed to delete characters")
    if not character_ids:
        raise UserError("Please specify at least one character")
    rbac.ensure_can_edit_characters(editor, character_ids)

    db = editor.db
    selected = set(character_ids)
    _delete_cell_rows(editor, "character_id", selected)
    placements = _character_placements(editor)
    for placement in placements:
        if placement.character_id in selected:
            db.delete(placement)
    db.flush()
    _renumber([placement for placement in placements if placement.character_id not in selected])
    dropped = _drop_unplaced_characters(editor, selected)
    _log_matrix_change(editor)
    _logger.info(
        "removed %d characters from matrix %s (%d deleted from the project)", len(selected), editor.matrix_id, len(dropped)
    )
    return {"character_ids": character_ids, "notify": True}


def set_taxa_notes(editor: MatrixEditor, taxa_ids: list[int], notes: str) -> dict[str, Any]:
    if not taxa_ids:
        raise UserError("You must specify taxa to modify the notes")
    rbac.ensure_can_do(editor, "editTaxon", "You are not allowed to modify taxa in this matrix")
    rbac.ensure_can_edit_taxa(editor, taxa_ids)
    for taxon in editor.db.query(models.Taxon).filter(models.Taxon.id.in_(set(taxa_ids))).all():
        taxon.notes = notes
        taxon.last_modified_on = editor.now()
        changelog.record_change(editor.db, "taxa", taxon.id, matrix_id=editor.matrix_id, user_id=editor.user_id, now=editor.now())
    editor.db.flush()
    return {"taxa_ids": taxa_ids, "notes": notes, "notify": True}


def set_taxa_access(
    editor: MatrixEditor,
    taxa_ids: list[int],
    user_id: int | None,
    group_id: int | None,
) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editTaxon", "You are not allowed to modify taxa in this matrix")
    if not rbac.is_admin_like(editor):
        raise ForbiddenError("You are not allowed to modify one or more of the selected taxa")
    if group_id is not None:
        group = editor.db.get(models.ProjectMemberGroup, group_id)
        if group is None or group.project_id != editor.project.id:
            raise UserError("Invalid group")
    for placement in _taxon_placements(editor):
        if placement.taxon_id in taxa_ids:
            placement.user_id = user_id or None
            placement.group_id = group_id or None
            changelog.record_change(editor.db, "taxa", placement.taxon_id, matrix_id=editor.matrix_id, user_id=editor.user_id, now=editor.now())
    editor.db.flush()
    return {"taxa_ids": taxa_ids, "user_id": user_id, "group_id": group_id, "notify": True}


def set_matrix_options(editor: MatrixEditor, options: dict[str, int]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "setMatrixOptions", "You are not allowed to modify the options of this matrix")
    current = dict(editor.matrix.other_options or {})
    for name, value in options.items():
        if name not in MATRIX_OPTIONS:
            raise UserError(f"Unknown matrix option {name}")
        value = int(value)
        if name in ADMIN_MATRIX_OPTIONS and editor.option(name) != value and not rbac.is_admin_like(editor):
            raise ForbiddenError("You must be an administrator to change this option")
        current[name] = value
    editor.matrix.other_options = current
    _log_matrix_change(editor)
    return {"options": editor.options(), "notify": True}
