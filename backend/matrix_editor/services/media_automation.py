"""View-based cell media automation."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Iterable

from .. import changelog, models, rbac
from . import results, rules, scores
from .batches import BatchRecorder, CellBatchType
from .editor import MatrixEditor
from .errors import UserError

# purpose: mirror character media onto taxa whose specimens share the same media view
# inputs: engine handle, affected taxa and characters
# outputs: automation-flagged cell media added or pruned
# status: pilot

_logger = logging.getLogger(__name__)

Justified = dict[tuple[int, int], set[int]]


def _taxon_media_by_view(editor: MatrixEditor, taxa_ids: set[int]) -> dict[int, dict[int, set[int]]]:
    """Map taxon id to ``{view id: media ids}`` through the taxon's specimens."""

    rows = (
        editor.db.query(models.TaxaXSpecimen.taxon_id, models.MediaFile.id, models.MediaFile.view_id)
        .join(models.MediaFile, models.MediaFile.specimen_id == models.TaxaXSpecimen.specimen_id)
        .filter(
            models.TaxaXSpecimen.taxon_id.in_(taxa_ids),
            models.MediaFile.project_id == editor.project.id,
            models.MediaFile.view_id.isnot(None),
        )
        .all()
    )
    media: dict[int, dict[int, set[int]]] = defaultdict(lambda: defaultdict(set))
    for taxon_id, media_id, view_id in rows:
        media[taxon_id][view_id].add(media_id)
    return media


def _character_views(editor: MatrixEditor, character_ids: set[int]) -> dict[int, list[tuple[int | None, int]]]:
    """Map character id to ``(state id, view id)`` pairs of its character media."""

    rows = (
        editor.db.query(models.CharactersXMedium.character_id, models.CharactersXMedium.state_id, models.MediaFile.view_id)
        .join(models.MediaFile, models.MediaFile.id == models.CharactersXMedium.media_id)
        .filter(
            models.CharactersXMedium.character_id.in_(character_ids),
            models.MediaFile.view_id.isnot(None),
        )
        .all()
    )
    views: dict[int, list[tuple[int | None, int]]] = defaultdict(list)
    for character_id, state_id, view_id in rows:
        views[character_id].append((state_id, view_id))
    return views


def justified_media(editor: MatrixEditor, taxa_ids: Iterable[int], character_ids: Iterable[int]) -> Justified:
    """Return ``(taxon, character) -> media ids`` that automation may attach."""

    taxa_ids = set(taxa_ids)
    character_ids = set(character_ids)
    justified: Justified = defaultdict(set)
    if not taxa_ids or not character_ids:
        return justified

    null_trigger_rules: list[rules.Rule] = []
    if editor.option("APPLY_CHARACTERS_WHILE_SCORING") == 1:
        null_trigger_rules = [
            rule
            for rule in rules.load_rules(editor)
            if isinstance(rule.action, rules.AddMedia)
            and rule.state_id is None
            and rule.action.character_id in character_ids
        ]
    source_characters = character_ids | {rule.character_id for rule in null_trigger_rules}

    taxon_media = _taxon_media_by_view(editor, taxa_ids)
    character_views = _character_views(editor, source_characters)
    cells = scores.load_cells(editor, taxa_ids, source_characters)

    def _scored_media(taxon_id: int, character_id: int) -> set[int]:
        keys = set(cells.get((taxon_id, character_id)) or {})
        by_view = taxon_media.get(taxon_id, {})
        media: set[int] = set()
        for state_id, view_id in character_views.get(character_id, []):
            if not keys:
                media |= by_view.get(view_id, set())
            elif state_id is not None and state_id in keys:
                media |= by_view.get(view_id, set())
        return media

    for taxon_id in taxa_ids:
        for character_id in character_ids:
            justified[(taxon_id, character_id)] |= _scored_media(taxon_id, character_id)
        for rule in null_trigger_rules:
            if (taxon_id, rule.character_id) in cells:
                justified[(taxon_id, rule.action.character_id)] |= _scored_media(taxon_id, rule.character_id)
    return justified


def sync_view_media(
    editor: MatrixEditor,
    taxa_ids: Iterable[int],
    character_ids: Iterable[int],
) -> tuple[list[models.CellsXMedium], list[dict[str, Any]]]:
    """Attach missing justified media and prune automation media that lost justification."""

    allowed = rbac.editable_taxon_ids(editor)
    taxa_ids = {taxon_id for taxon_id in taxa_ids if taxon_id in allowed}
    character_ids = set(character_ids)
    if not taxa_ids or not character_ids:
        return [], []

    justified = justified_media(editor, taxa_ids, character_ids)
    existing = (
        editor.db.query(models.CellsXMedium)
        .filter(
            models.CellsXMedium.matrix_id == editor.matrix_id,
            models.CellsXMedium.taxon_id.in_(taxa_ids),
            models.CellsXMedium.character_id.in_(character_ids),
        )
        .order_by(models.CellsXMedium.id)
        .all()
    )
    attached: dict[tuple[int, int], set[int]] = defaultdict(set)
    deleted: list[dict[str, Any]] = []
    for link in existing:
        pair = (link.taxon_id, link.character_id)
        if link.set_by_automation and link.media_id not in justified.get(pair, set()):
            deleted.append(
                {
                    "link_id": link.id,
                    "taxon_id": link.taxon_id,
                    "character_id": link.character_id,
                    "media_id": link.media_id,
                }
            )
            changelog.delete_logged(editor.db, link, user_id=editor.user_id, now=editor.now())
            continue
        attached[pair].add(link.media_id)

    added: list[models.CellsXMedium] = []
    for (taxon_id, character_id), media_ids in sorted(justified.items()):
        for media_id in sorted(media_ids - attached[(taxon_id, character_id)]):
            link = rules.attach_media(editor, taxon_id, character_id, media_id, automated=True)
            if link is not None:
                added.append(link)
    if added or deleted:
        _logger.info(
            "media automation on matrix %s added %d and pruned %d cell media",
            editor.matrix_id,
            len(added),
            len(deleted),
        )
    return added, deleted


def add_character_media(
    editor: MatrixEditor,
    character_id: int,
    state_id: int | None,
    media_ids: list[int],
) -> dict[str, Any]:
    rbac.ensure_can_do(editor, "addCharacterMedia", "You are not allowed to add media to characters")
    db = editor.db
    character = db.get(models.Character, character_id)
    if character is None or character.project_id != editor.project.id:
        raise UserError("Character ID was invalid")
    if state_id is not None:
        state = db.get(models.CharacterState, state_id)
        if state is None or state.character_id != character_id:
            raise UserError("State ID was invalid")
    if not media_ids:
        raise UserError("Please specify at least one media")

    automation = editor.option("ENABLE_CELL_MEDIA_AUTOMATION") == 1
    media_files = []
    for media_id in media_ids:
        media_file = db.get(models.MediaFile, media_id)
        if media_file is None or media_file.project_id != editor.project.id:
            raise UserError("Media does not belong to this project")
        if automation and media_file.view_id is None:
            raise UserError("Character media must have a Media View")
        media_files.append(media_file)

    character_media = []
    for media_file in media_files:
        query = db.query(models.CharactersXMedium).filter(
            models.CharactersXMedium.character_id == character_id,
            models.CharactersXMedium.media_id == media_file.id,
        )
        query = query.filter(
            models.CharactersXMedium.state_id.is_(None)
            if state_id is None
            else models.CharactersXMedium.state_id == state_id
        )
        link = query.first()
        if link is None:
            link = models.CharactersXMedium(
                character_id=character_id,
                state_id=state_id,
                media_id=media_file.id,
                user_id=editor.user_id,
                created_on=editor.now(),
            )
            db.add(link)
            db.flush()
        character_media.append(
            {"link_id": link.id, "character_id": character_id, "state_id": state_id, "media_id": media_file.id}
        )
    changelog.record_change(db, "characters", character_id, matrix_id=editor.matrix_id, user_id=editor.user_id, now=editor.now())

    added: list[models.CellsXMedium] = []
    deleted: list[dict[str, Any]] = []
    if automation:
        batch = BatchRecorder.open(editor, CellBatchType.MEDIA_AUTOMATION)
        added, deleted = sync_view_media(editor, scores.matrix_taxon_ids(editor), [character_id])
        batch.finalize(
            f"{len(added)} media added to {character.name} column",
            changed=bool(added or deleted),
        )
    return {
        "ts": editor.now(),
        "character_media": character_media,
        "added_cell_media": [results.cell_media_result(db, link) for link in added],
        "deleted_cell_media": deleted,
        "notify": True,
    }
