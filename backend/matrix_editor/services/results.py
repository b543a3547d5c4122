"""Compact record shapes returned to matrix editor clients."""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy.orm import Session

from .. import models

# purpose: keep the wire format of cells, cell media and notes in one place
# status: pilot


def character_types(db: Session, character_ids: Iterable[int]) -> dict[int, int]:
    ids = set(character_ids)
    if not ids:
        return {}
    rows = db.query(models.Character.id, models.Character.type).filter(models.Character.id.in_(ids)).all()
    return {character_id: character_type for character_id, character_type in rows}


def compact_cell(cell: models.Cell, character_type: int = 0) -> dict[str, Any]:
    result: dict[str, Any] = {
        "id": cell.id,
        "tid": cell.taxon_id,
        "cid": cell.character_id,
        "uid": cell.user_id,
        "c": int(cell.created_on or 0),
    }
    if cell.state_id:
        result["sid"] = cell.state_id
    if cell.is_npa:
        result["npa"] = 1
    if cell.is_uncertain:
        result["uct"] = 1
    if character_type:
        convert = float if character_type == 1 else int
        if cell.start_value is not None:
            result["sv"] = convert(cell.start_value)
        if cell.end_value is not None:
            result["ev"] = convert(cell.end_value)
    return result


def deleted_cell(taxon_id: int, character_id: int) -> dict[str, Any]:
    return {"id": 0, "tid": taxon_id, "cid": character_id}


def compact_cells(db: Session, cells: Iterable[models.Cell]) -> list[dict[str, Any]]:
    cells = list(cells)
    types = character_types(db, {cell.character_id for cell in cells})
    return [compact_cell(cell, types.get(cell.character_id, 0)) for cell in cells]


def media_rendition(media_file: models.MediaFile | None, size: str) -> Any:
    if media_file is None or not media_file.media:
        return None
    return media_file.media.get(size)


def cell_media_result(db: Session, link: models.CellsXMedium) -> dict[str, Any]:
    media_file = db.get(models.MediaFile, link.media_id)
    return {
        "link_id": link.id,
        "taxon_id": link.taxon_id,
        "character_id": link.character_id,
        "media_id": link.media_id,
        "set_by_automation": bool(link.set_by_automation),
        "icon": media_rendition(media_file, "icon"),
        "tiny": media_rendition(media_file, "tiny"),
    }


def note_result(note: models.CellNote) -> dict[str, Any]:
    return {
        "taxon_id": note.taxon_id,
        "character_id": note.character_id,
        "notes": note.notes,
        "status": note.status,
    }


def citation_result(link: models.CellsXBibliographicReference) -> dict[str, Any]:
    return {
        "link_id": link.id,
        "taxon_id": link.taxon_id,
        "character_id": link.character_id,
        "citation_id": link.reference_id,
        "pp": link.pp,
        "notes": link.notes,
    }
