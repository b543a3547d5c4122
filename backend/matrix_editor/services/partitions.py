"""Partition management used to scope matrix searches."""

from __future__ import annotations

from typing import Any

from .. import changelog, models, rbac
from .editor import MatrixEditor
from .errors import UserError
from .matrix_data import partition_record

# purpose: named subsets of project taxa and characters
# status: pilot


def _partition(editor: MatrixEditor, partition_id: int) -> models.Partition:
    partition = editor.db.get(models.Partition, partition_id)
    if partition is None or partition.project_id != editor.project.id:
        raise UserError("Invalid Partition id")
    return partition


def _check_name_available(editor: MatrixEditor, name: str, partition_id: int | None = None) -> None:
    if not name or not name.strip():
        raise UserError("Partition name is required")
    query = editor.db.query(models.Partition).filter(
        models.Partition.project_id == editor.project.id,
        models.Partition.name == name,
    )
    if partition_id is not None:
        query = query.filter(models.Partition.id != partition_id)
    if query.first() is not None:
        raise UserError("Partition by the given name already exists")


def _log(editor: MatrixEditor, partition_id: int, change_type: str = "U") -> None:
    changelog.record_change(
        editor.db,
        "partitions",
        partition_id,
        matrix_id=editor.matrix_id,
        user_id=editor.user_id,
        now=editor.now(),
        change_type=change_type,
    )
    editor.db.flush()


def add_partition(editor: MatrixEditor, name: str, description: str | None = None) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editPartition", "You are not allowed to add partitions")
    _check_name_available(editor, name)
    partition = models.Partition(
        project_id=editor.project.id,
        user_id=editor.user_id,
        name=name,
        description=description or "",
    )
    editor.db.add(partition)
    editor.db.flush()
    _log(editor, partition.id, "I")
    return {**partition_record(editor.db, partition), "notify": True}


def edit_partition(editor: MatrixEditor, partition_id: int, name: str, description: str | None = None) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editPartition", "You are not allowed to modify partitions")
    partition = _partition(editor, partition_id)
    if partition.name != name:
        _check_name_available(editor, name, partition_id)
        partition.name = name
    partition.description = description or ""
    _log(editor, partition.id)
    return {**partition_record(editor.db, partition), "notify": True}


def copy_partition(editor: MatrixEditor, partition_id: int, name: str, description: str | None = None) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editPartition", "You are not allowed to copy partitions")
    _check_name_available(editor, name)
    members = partition_record(editor.db, _partition(editor, partition_id))
    db = editor.db
    partition = models.Partition(
        project_id=editor.project.id,
        user_id=editor.user_id,
        name=name,
        description=description or "",
    )
    db.add(partition)
    db.flush()
    db.add_all(
        models.CharactersXPartition(partition_id=partition.id, character_id=character_id)
        for character_id in members["character_ids"]
    )
    db.add_all(models.TaxaXPartition(partition_id=partition.id, taxon_id=taxon_id) for taxon_id in members["taxa_ids"])
    _log(editor, partition.id, "I")
    return {**partition_record(db, partition), "notify": True}


def remove_partition(editor: MatrixEditor, partition_id: int) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "editPartition", "You are not allowed to remove partitions")
    partition = _partition(editor, partition_id)
    db = editor.db
    db.query(models.CharactersXPartition).filter(models.CharactersXPartition.partition_id == partition.id).delete()
    db.query(models.TaxaXPartition).filter(models.TaxaXPartition.partition_id == partition.id).delete()
    db.delete(partition)
    _log(editor, partition_id, "D")
    return {"id": partition_id, "notify": True}


def add_characters_to_partition(editor: MatrixEditor, partition_id: int, character_ids: list[int]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addCharacterToPartition", "You are not allowed to modify partitions")
    partition = _partition(editor, partition_id)
    rbac.ensure_can_edit_characters(editor, character_ids)
    existing = {
        character_id
        for (character_id,) in editor.db.query(models.CharactersXPartition.character_id).filter(
            models.CharactersXPartition.partition_id == partition.id
        )
    }
    for character_id in dict.fromkeys(character_ids):
        if character_id not in existing:
            editor.db.add(models.CharactersXPartition(partition_id=partition.id, character_id=character_id))
    _log(editor, partition.id)
    return {**partition_record(editor.db, partition), "notify": True}


def add_taxa_to_partition(editor: MatrixEditor, partition_id: int, taxa_ids: list[int]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addTaxonToPartition", "You are not allowed to modify partitions")
    partition = _partition(editor, partition_id)
    count = (
        editor.db.query(models.Taxon)
        .filter(models.Taxon.project_id == editor.project.id, models.Taxon.id.in_(set(taxa_ids)))
        .count()
    )
    if count != len(set(taxa_ids)):
        raise UserError("Taxa is not in this project")
    existing = {
        taxon_id
        for (taxon_id,) in editor.db.query(models.TaxaXPartition.taxon_id).filter(
            models.TaxaXPartition.partition_id == partition.id
        )
    }
    for taxon_id in dict.fromkeys(taxa_ids):
        if taxon_id not in existing:
            editor.db.add(models.TaxaXPartition(partition_id=partition.id, taxon_id=taxon_id))
    _log(editor, partition.id)
    return {**partition_record(editor.db, partition), "notify": True}


def remove_characters_from_partition(editor: MatrixEditor, partition_id: int, character_ids: list[int]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addCharacterToPartition", "You are not allowed to modify partitions")
    partition = _partition(editor, partition_id)
    editor.db.query(models.CharactersXPartition).filter(
        models.CharactersXPartition.partition_id == partition.id,
        models.CharactersXPartition.character_id.in_(set(character_ids)),
    ).delete(synchronize_session=False)
    _log(editor, partition.id)
    return {**partition_record(editor.db, partition), "notify": True}


def remove_taxa_from_partition(editor: MatrixEditor, partition_id: int, taxa_ids: list[int]) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addTaxonToPartition", "You are not allowed to modify partitions")
    partition = _partition(editor, partition_id)
    editor.db.query(models.TaxaXPartition).filter(
        models.TaxaXPartition.partition_id == partition.id,
        models.TaxaXPartition.taxon_id.in_(set(taxa_ids)),
    ).delete(synchronize_session=False)
    _log(editor, partition.id)
    return {**partition_record(editor.db, partition), "notify": True}
