"""Character rule cascades, violation checks and rule management."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from .. import changelog, models, rbac
from . import results, scores
from .editor import MatrixEditor
from .errors import UserError

# purpose: propagate scores and media from trigger characters to dependent characters
# inputs: engine handle, freshly inserted cells or cell media
# outputs: cascaded cells and media written through the logged write steps
# status: pilot

_logger = logging.getLogger(__name__)

SET_STATE = "SET_STATE"
ADD_MEDIA = "ADD_MEDIA"


@dataclass(frozen=True)
class SetState:
    character_id: int
    state_id: int | None


@dataclass(frozen=True)
class AddMedia:
    character_id: int


RuleAction = SetState | AddMedia


@dataclass(frozen=True)
class Rule:
    rule_id: int
    action_id: int
    character_id: int
    state_id: int | None
    action: RuleAction

    def triggered_by(self, state_key: int) -> bool:
        if self.state_id is None:
            return state_key <= 0
        return self.state_id == state_key


def to_action(row: models.CharacterRuleAction) -> RuleAction:
    match row.action:
        case "SET_STATE":
            return SetState(character_id=row.character_id, state_id=row.state_id)
        case "ADD_MEDIA":
            return AddMedia(character_id=row.character_id)
        case _:
            raise UserError("Unknown character rule action")


def load_rules(editor: MatrixEditor, trigger_character_ids: Iterable[int] | None = None) -> list[Rule]:
    """Return rules whose trigger and action characters both belong to the matrix."""

    matrix_characters = set(scores.matrix_character_ids(editor))
    query = (
        editor.db.query(models.CharacterRule, models.CharacterRuleAction)
        .join(models.CharacterRuleAction, models.CharacterRuleAction.rule_id == models.CharacterRule.id)
        .filter(models.CharacterRule.character_id.in_(matrix_characters))
    )
    if trigger_character_ids is not None:
        query = query.filter(models.CharacterRule.character_id.in_(set(trigger_character_ids)))
    rules = []
    for rule, action in query.order_by(models.CharacterRuleAction.id).all():
        if action.character_id not in matrix_characters:
            continue
        rules.append(
            Rule(
                rule_id=rule.id,
                action_id=action.id,
                character_id=rule.character_id,
                state_id=rule.state_id,
                action=to_action(action),
            )
        )
    return rules


@dataclass
class CascadeResult:
    cells: list[models.Cell] = field(default_factory=list)
    deleted: list[tuple[int, int]] = field(default_factory=list)


def _satisfies(cells: dict[int, models.Cell], action: SetState) -> bool:
    target_key = action.state_id or scores.NO_STATE
    return list(cells) == [target_key]


def apply_state_rules(editor: MatrixEditor, inserted: list[models.Cell]) -> CascadeResult:
    """Cascade SET_STATE actions for freshly inserted scores, one level deep."""

    result = CascadeResult()
    if not inserted:
        return result
    rules = [rule for rule in load_rules(editor, {cell.character_id for cell in inserted}) if isinstance(rule.action, SetState)]
    if not rules:
        return result
    overwrite = editor.option("ALLOW_OVERWRITING_BY_RULES") == 1
    existing = scores.load_cells(
        editor,
        {cell.taxon_id for cell in inserted},
        {rule.action.character_id for rule in rules},
    )
    for cell in inserted:
        for rule in rules:
            if rule.character_id != cell.character_id or not rule.triggered_by(cell.state_key):
                continue
            action = rule.action
            pair = (cell.taxon_id, action.character_id)
            current = existing.get(pair) or {}
            if current:
                if _satisfies(current, action):
                    continue
                if not overwrite:
                    continue
                for existing_cell in list(current.values()):
                    scores.delete_score(editor, existing_cell)
                result.deleted.append(pair)
            new_cell = scores.insert_score(
                editor,
                cell.taxon_id,
                action.character_id,
                action.state_id or scores.NO_STATE,
            )
            existing[pair] = {new_cell.state_key: new_cell}
            result.cells.append(new_cell)
    if result.cells:
        _logger.info("rule cascade added %d cells on matrix %s", len(result.cells), editor.matrix_id)
    return result


def _find_cell_media(editor: MatrixEditor, taxon_id: int, character_id: int, media_id: int):
    return (
        editor.db.query(models.CellsXMedium)
        .filter(
            models.CellsXMedium.matrix_id == editor.matrix_id,
            models.CellsXMedium.taxon_id == taxon_id,
            models.CellsXMedium.character_id == character_id,
            models.CellsXMedium.media_id == media_id,
        )
        .first()
    )


def attach_media(
    editor: MatrixEditor,
    taxon_id: int,
    character_id: int,
    media_id: int,
    *,
    automated: bool = False,
) -> models.CellsXMedium | None:
    """Create the cell media link if absent; return the new link or ``None``."""

    if _find_cell_media(editor, taxon_id, character_id, media_id) is not None:
        return None
    link = models.CellsXMedium(
        matrix_id=editor.matrix_id,
        taxon_id=taxon_id,
        character_id=character_id,
        media_id=media_id,
        user_id=editor.user_id,
        set_by_automation=automated,
    )
    return changelog.insert_logged(editor.db, link, user_id=editor.user_id, now=editor.now())


def apply_media_rules(editor: MatrixEditor, inserted: list[models.CellsXMedium]) -> list[models.CellsXMedium]:
    if not inserted:
        return []
    rules = [rule for rule in load_rules(editor, {link.character_id for link in inserted}) if isinstance(rule.action, AddMedia)]
    added: list[models.CellsXMedium] = []
    for link in inserted:
        for rule in rules:
            if rule.character_id != link.character_id:
                continue
            new_link = attach_media(editor, link.taxon_id, rule.action.character_id, link.media_id)
            if new_link is not None:
                added.append(new_link)
    return added


def _media_index(editor: MatrixEditor, taxa_ids: set[int] | None = None) -> dict[tuple[int, int], set[int]]:
    query = editor.db.query(models.CellsXMedium).filter(models.CellsXMedium.matrix_id == editor.matrix_id)
    if taxa_ids is not None:
        query = query.filter(models.CellsXMedium.taxon_id.in_(taxa_ids))
    index: dict[tuple[int, int], set[int]] = defaultdict(set)
    for link in query.all():
        index[(link.taxon_id, link.character_id)].add(link.media_id)
    return index


def _violations(editor: MatrixEditor, taxa_ids: set[int] | None = None) -> list[dict[str, Any]]:
    rules = load_rules(editor)
    if not rules:
        return []
    taxon_order = scores.matrix_taxon_ids(editor)
    if taxa_ids is not None:
        taxon_order = [taxon_id for taxon_id in taxon_order if taxon_id in taxa_ids]
    character_position = {character_id: index for index, character_id in enumerate(scores.matrix_character_ids(editor))}
    cells = scores.load_cells(
        editor,
        taxon_order,
        {rule.character_id for rule in rules} | {rule.action.character_id for rule in rules},
    )
    media = _media_index(editor, set(taxon_order))

    violations: list[dict[str, Any]] = []
    ordered_rules = sorted(rules, key=lambda rule: (character_position.get(rule.action.character_id, 0), rule.action_id))
    for rule in ordered_rules:
        for taxon_id in taxon_order:
            base = {
                "aid": rule.action_id,
                "tid": taxon_id,
                "rcid": rule.character_id,
                "acid": rule.action.character_id,
            }
            match rule.action:
                case SetState(character_id=action_character_id, state_id=target_state_id):
                    trigger_cells = cells.get((taxon_id, rule.character_id)) or {}
                    if not any(rule.triggered_by(key) for key in trigger_cells):
                        continue
                    if _satisfies(cells.get((taxon_id, action_character_id)) or {}, rule.action):
                        continue
                    violations.append({**base, "sid": target_state_id or 0})
                case AddMedia(character_id=action_character_id):
                    missing = media.get((taxon_id, rule.character_id), set()) - media.get((taxon_id, action_character_id), set())
                    for media_id in sorted(missing):
                        violations.append({**base, "sid": 0, "mid": media_id})
    return violations


def get_rule_violations(editor: MatrixEditor) -> dict[str, Any]:
    return {"violations": _violations(editor)}


def _fix(editor: MatrixEditor, violations: list[dict[str, Any]]) -> dict[str, Any]:
    rules = {rule.action_id: rule for rule in load_rules(editor)}
    changed_cells: list[models.Cell] = []
    deleted_pairs: list[tuple[int, int]] = []
    changed_media: list[models.CellsXMedium] = []
    seen: set[tuple[int, int, int | None]] = set()
    for violation in violations:
        action_id = int(violation["aid"])
        taxon_id = int(violation["tid"])
        media_id = violation.get("mid")
        key = (action_id, taxon_id, media_id)
        if key in seen:
            continue
        seen.add(key)
        rule = rules.get(action_id)
        if rule is None:
            raise UserError("Unknown character rule action")
        match rule.action:
            case SetState(character_id=action_character_id, state_id=target_state_id):
                current = scores.load_cells(editor, [taxon_id], [action_character_id]).get((taxon_id, action_character_id)) or {}
                if _satisfies(current, rule.action):
                    continue
                for cell in list(current.values()):
                    scores.delete_score(editor, cell)
                if current:
                    deleted_pairs.append((taxon_id, action_character_id))
                changed_cells.append(
                    scores.insert_score(editor, taxon_id, action_character_id, target_state_id or scores.NO_STATE)
                )
            case AddMedia(character_id=action_character_id):
                if media_id is not None:
                    media_ids = {int(media_id)}
                else:
                    media_ids = _media_index(editor, {taxon_id}).get((taxon_id, rule.character_id), set())
                for candidate in sorted(media_ids):
                    link = attach_media(editor, taxon_id, action_character_id, candidate)
                    if link is not None:
                        changed_media.append(link)

    cells = [results.deleted_cell(taxon_id, character_id) for taxon_id, character_id in deleted_pairs]
    cells.extend(results.compact_cells(editor.db, changed_cells))
    return {
        "ts": editor.now(),
        "cells": cells,
        "media": [results.cell_media_result(editor.db, link) for link in changed_media],
        "notify": bool(changed_cells or changed_media),
    }


def fix_rule_violations(editor: MatrixEditor, violations: list[dict[str, Any]]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to modify cells this matrix")
    if not violations:
        raise UserError("Please specify at least one violation")
    rbac.ensure_can_edit_taxa(editor, {int(violation["tid"]) for violation in violations})
    return _fix(editor, violations)


def fix_all_rule_violations(editor: MatrixEditor) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to modify cells this matrix")
    allowed = rbac.editable_taxon_ids(editor)
    if not allowed:
        raise UserError("You are not allowed to modify any of the taxa in this matrix")
    return _fix(editor, _violations(editor, allowed))


def get_character_rules(editor: MatrixEditor) -> list[dict[str, Any]]:
    grouped: dict[int, dict[str, Any]] = {}
    for rule in load_rules(editor):
        entry = grouped.setdefault(
            rule.rule_id,
            {"rule_id": rule.rule_id, "character_id": rule.character_id, "state_id": rule.state_id, "actions": []},
        )
        match rule.action:
            case SetState(character_id=character_id, state_id=state_id):
                entry["actions"].append(
                    {"action_id": rule.action_id, "action": SET_STATE, "character_id": character_id, "state_id": state_id}
                )
            case AddMedia(character_id=character_id):
                entry["actions"].append(
                    {"action_id": rule.action_id, "action": ADD_MEDIA, "character_id": character_id, "state_id": None}
                )
    return list(grouped.values())


def _check_state(editor: MatrixEditor, state_id: int | None, character_id: int, message: str) -> None:
    if state_id is None:
        return
    state = editor.db.get(models.CharacterState, state_id)
    if state is None or state.character_id != character_id:
        raise UserError(message)


def add_character_rule_action(
    editor: MatrixEditor,
    character_id: int,
    state_id: int | None,
    action_character_ids: list[int],
    action_state_id: int | None,
    action: str,
) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to add ontologies to this matrix")
    if action not in (SET_STATE, ADD_MEDIA):
        raise UserError("Unknown character rule action")
    if not action_character_ids:
        raise UserError("Please specify at least one character")
    if action_state_id and len(action_character_ids) > 1:
        raise UserError("You cannot add one state for numerous characters")
    rbac.ensure_can_edit_characters(editor, [character_id, *action_character_ids])
    _check_state(editor, state_id, character_id, "Invalid state for character")
    _check_state(editor, action_state_id, action_character_ids[0], "Invalid state for action character")
    if action == ADD_MEDIA:
        action_state_id = None

    db = editor.db
    rule_filter = [models.CharacterRule.character_id == character_id]
    rule_filter.append(models.CharacterRule.state_id.is_(None) if state_id is None else models.CharacterRule.state_id == state_id)
    rule = db.query(models.CharacterRule).filter(*rule_filter).first()
    if rule is None:
        rule = models.CharacterRule(character_id=character_id, state_id=state_id, user_id=editor.user_id, created_on=editor.now())
        db.add(rule)
        db.flush()

    action_ids = []
    for action_character_id in action_character_ids:
        row = (
            db.query(models.CharacterRuleAction)
            .filter(
                models.CharacterRuleAction.rule_id == rule.id,
                models.CharacterRuleAction.character_id == action_character_id,
                models.CharacterRuleAction.action == action,
            )
            .first()
        )
        if row is None:
            row = models.CharacterRuleAction(
                rule_id=rule.id,
                character_id=action_character_id,
                action=action,
                state_id=action_state_id,
                user_id=editor.user_id,
                created_on=editor.now(),
            )
            db.add(row)
        else:
            row.state_id = action_state_id
        db.flush()
        action_ids.append(row.id)

    changelog.record_change(db, "characters", character_id, matrix_id=editor.matrix_id, user_id=editor.user_id, now=editor.now())
    return {
        "ads": action_ids,
        "a": action,
        "cd": character_id,
        "sd": state_id,
        "acds": action_character_ids,
        "asd": action_state_id,
        "notify": True,
    }


def remove_character_rule_action(editor: MatrixEditor, character_id: int, action_id: int) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editCellData", "You are not allowed to remove ontologies to this matrix")
    db = editor.db
    character = db.get(models.Character, character_id)
    if character is None:
        raise UserError("The character does not exist")
    if character.project_id != editor.project.id:
        raise UserError("This character does not belong to this project")

    action = db.get(models.CharacterRuleAction, action_id)
    if action is not None:
        rule = db.get(models.CharacterRule, action.rule_id)
        if rule.character_id != character_id:
            raise UserError("This action does not belong to this character")
        db.delete(action)
        db.flush()
        remaining = db.query(models.CharacterRuleAction).filter(models.CharacterRuleAction.rule_id == rule.id).count()
        if remaining == 0:
            db.delete(rule)
            db.flush()
        changelog.record_change(db, "characters", character_id, matrix_id=editor.matrix_id, user_id=editor.user_id, now=editor.now())
    return {"action_id": action_id, "character_id": character_id, "notify": action is not None}
