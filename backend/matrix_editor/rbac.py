from __future__ import annotations

from typing import Iterable

from . import models
from .services.editor import MatrixEditor
from .services.errors import ForbiddenError

# purpose: centralize capability, taxon ownership and character checks for matrix editing
# status: pilot

FULL_USER_CAPABILITIES = frozenset(
    {
        "addCharacter",
        "editCharacter",
        "deleteCharacter",
        "addCharacterComment",
        "addCharacterState",
        "editCharacterState",
        "deleteCharacterState",
        "addCharacterMedia",
        "deleteCharacterMedia",
        "reorderCharacters",
        "addCharacterCitation",
        "deleteCharacterCitation",
        "addTaxon",
        "addTaxonMedia",
        "deleteTaxonMedia",
        "editCellData",
        "editTaxon",
        "addCellComment",
        "addCharacterToPartition",
        "addTaxonToPartition",
        "setMatrixOptions",
        "editPartition",
    }
)

OBSERVER_CAPABILITIES = frozenset({"addCharacterComment", "addCellComment"})

CHARACTER_ANNOTATOR_CAPABILITIES = frozenset(
    {
        "addCellComment",
        "addCharacterMedia",
        "deleteCharacterMedia",
        "addCharacterComment",
        "addCharacterCitation",
        "deleteCharacterCitation",
        "editCellData",
        "editTaxon",
        "addTaxonMedia",
        "deleteTaxonMedia",
        "addCharacterToPartition",
        "addTaxonToPartition",
        "editPartition",
    }
)

_MEMBERSHIP_CAPABILITIES: dict[int, frozenset[str]] = {
    0: FULL_USER_CAPABILITIES,
    1: OBSERVER_CAPABILITIES,
    2: CHARACTER_ANNOTATOR_CAPABILITIES,
}


def _membership(editor: MatrixEditor) -> models.ProjectMember | None:
    return (
        editor.db.query(models.ProjectMember)
        .filter(
            models.ProjectMember.project_id == editor.project.id,
            models.ProjectMember.user_id == editor.user_id,
        )
        .first()
    )


def is_project_member(db, project_id: int, user: models.User) -> bool:
    if user.is_admin:
        return True
    return (
        db.query(models.ProjectMember.id)
        .filter(models.ProjectMember.project_id == project_id, models.ProjectMember.user_id == user.id)
        .first()
        is not None
    )


def allowable_actions(editor: MatrixEditor) -> frozenset[str]:
    """Return the capabilities the acting user holds on the editor's project."""

    if editor._capabilities is not None:
        return editor._capabilities
    if editor.project.status > 0:
        capabilities = frozenset()
    elif editor.user.is_admin:
        capabilities = FULL_USER_CAPABILITIES
    else:
        membership = _membership(editor)
        if membership is None:
            capabilities = frozenset()
        else:
            capabilities = _MEMBERSHIP_CAPABILITIES.get(membership.membership_type, frozenset())
    editor._capabilities = capabilities
    return capabilities


def can_do(editor: MatrixEditor, action: str) -> bool:
    return action in allowable_actions(editor)


def ensure_can_do(editor: MatrixEditor, action: str, message: str) -> None:
    editor.ensure_writable()
    if not can_do(editor, action):
        raise ForbiddenError(message)


def is_admin_like(editor: MatrixEditor) -> bool:
    if editor.user.is_admin:
        return True
    return editor.user_id in (editor.project.user_id, editor.matrix.user_id)


def user_group_ids(editor: MatrixEditor) -> set[int]:
    membership = _membership(editor)
    if membership is None:
        return set()
    return {link.group_id for link in membership.groups}


def _placement_allows(
    placement: models.MatrixTaxaOrder,
    user_id: int,
    group_ids: set[int],
) -> bool:
    if placement.user_id is None and placement.group_id is None:
        return True
    if placement.user_id is not None and placement.user_id == user_id:
        return True
    return placement.group_id is not None and placement.group_id in group_ids


def editable_taxon_ids(editor: MatrixEditor) -> set[int]:
    """Return the matrix taxa whose cells the acting user may modify."""

    placements = (
        editor.db.query(models.MatrixTaxaOrder)
        .filter(models.MatrixTaxaOrder.matrix_id == editor.matrix_id)
        .all()
    )
    if editor.user.is_admin:
        return {placement.taxon_id for placement in placements}
    if _membership(editor) is None:
        return set()
    group_ids = user_group_ids(editor)
    return {
        placement.taxon_id
        for placement in placements
        if _placement_allows(placement, editor.user_id, group_ids)
    }


def can_edit_taxa(editor: MatrixEditor, taxa_ids: Iterable[int]) -> bool:
    requested = set(taxa_ids)
    return requested <= editable_taxon_ids(editor)


def ensure_can_edit_taxa(
    editor: MatrixEditor,
    taxa_ids: Iterable[int],
    message: str = "You are not allowed to modify the selected taxa",
) -> None:
    if not can_edit_taxa(editor, taxa_ids):
        raise ForbiddenError(message)


def can_edit_characters(editor: MatrixEditor, character_ids: Iterable[int]) -> bool:
    requested = set(character_ids)
    if not requested:
        return True
    count = (
        editor.db.query(models.MatrixCharacterOrder)
        .join(models.Character, models.Character.id == models.MatrixCharacterOrder.character_id)
        .filter(
            models.MatrixCharacterOrder.matrix_id == editor.matrix_id,
            models.MatrixCharacterOrder.character_id.in_(requested),
            models.Character.project_id == editor.project.id,
        )
        .count()
    )
    return count == len(requested)


def ensure_can_edit_characters(
    editor: MatrixEditor,
    character_ids: Iterable[int],
    message: str = "User does not have access to edit all characters",
) -> None:
    if not can_edit_characters(editor, character_ids):
        raise ForbiddenError(message)


def ensure_admin_like(editor: MatrixEditor, message: str) -> None:
    editor.ensure_writable()
    if not is_admin_like(editor):
        raise ForbiddenError(message)
