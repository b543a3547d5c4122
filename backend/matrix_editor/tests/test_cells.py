import pytest

from matrix_editor import models
from matrix_editor.services import cells, scores
from matrix_editor.services.errors import ForbiddenError, UserError


def _keys(db, matrix, taxon, character):
    rows = (
        db.query(models.Cell)
        .filter_by(matrix_id=matrix.id, taxon_id=taxon.id, character_id=character.id)
        .all()
    )
    return sorted(cell.state_key for cell in rows)


def test_set_cell_states_inserts_and_is_idempotent(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail = scene["characters"][0]
    taxon = scene["taxa"][0]
    present = tail.states[1]

    result = cells.set_cell_states(editor, [taxon.id], [tail.id], [present.id])
    assert result["notify"] is True
    assert {"id": 0, "tid": taxon.id, "cid": tail.id} in result["cells"]
    stored = [cell for cell in result["cells"] if cell["id"]]
    assert stored[0]["sid"] == present.id
    assert _keys(db, scene["matrix"], taxon, tail) == [present.id]

    again = cells.set_cell_states(editor, [taxon.id], [tail.id], [present.id])
    assert again["notify"] is False
    assert again["cells"] == []
    assert db.query(models.CellChangeLog).filter_by(change_type="I").count() == 1


def test_set_cell_states_replaces_polymorphic_score(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail = scene["characters"][0]
    taxon = scene["taxa"][0]
    absent, present = tail.states

    cells.set_cell_states(editor, [taxon.id], [tail.id], [absent.id, present.id], uncertain=True)
    assert _keys(db, scene["matrix"], taxon, tail) == sorted([absent.id, present.id])
    uncertain = db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=tail.id).all()
    assert all(cell.is_uncertain for cell in uncertain)

    cells.set_cell_states(editor, [taxon.id], [tail.id], [present.id])
    remaining = db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=tail.id).one()
    assert remaining.state_id == present.id
    assert remaining.is_uncertain is False


def test_set_cell_states_npa_and_dash_across_characters(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    character_ids = [character.id for character in scene["characters"]]
    taxa_ids = [taxon.id for taxon in scene["taxa"][:2]]

    cells.set_cell_states(editor, taxa_ids, character_ids, [scores.NPA_STATE], batch_mode=2)
    npa_cells = db.query(models.Cell).filter_by(matrix_id=scene["matrix"].id).all()
    assert len(npa_cells) == 6
    assert all(cell.is_npa and cell.state_id is None for cell in npa_cells)

    cells.set_cell_states(editor, taxa_ids, character_ids, [scores.NO_STATE])
    dash_cells = db.query(models.Cell).filter_by(matrix_id=scene["matrix"].id).all()
    assert len(dash_cells) == 6
    assert all(cell.state_key == scores.NO_STATE for cell in dash_cells)

    cleared = cells.set_cell_states(editor, taxa_ids, character_ids, [])
    assert cleared["notify"] is True
    assert db.query(models.Cell).filter_by(matrix_id=scene["matrix"].id).count() == 0


@pytest.mark.parametrize(
    "state_picker, uncertain, message",
    [
        (lambda states: [scores.NPA_STATE, states[0].id], False, "Invalid state combination for cells"),
        (lambda states: [states[0].id], True, "Single cells cannot be uncertain"),
        (lambda states: [9999], False, "Invalid state ID for character"),
    ],
)
def test_set_cell_states_rejects_invalid_combinations(scene, factory, state_picker, uncertain, message):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail = scene["characters"][0]
    with pytest.raises(UserError) as excinfo:
        cells.set_cell_states(editor, [scene["taxa"][0].id], [tail.id], state_picker(tail.states), uncertain=uncertain)
    assert excinfo.value.messages == [message]


def test_set_cell_states_rejects_specific_state_for_many_characters(scene, factory):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail, scales, _ = scene["characters"]
    with pytest.raises(UserError) as excinfo:
        cells.set_cell_states(editor, [scene["taxa"][0].id], [tail.id, scales.id], [tail.states[0].id])
    assert excinfo.value.messages == ["Cannot set a specific state for multiple characters"]


def test_set_cell_states_respects_disabled_scoring(scene, factory, db):
    scene["matrix"].other_options = {"DISABLE_SCORING": 1}
    db.commit()
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    with pytest.raises(UserError) as excinfo:
        cells.set_cell_states(editor, [scene["taxa"][0].id], [scene["characters"][0].id], [scores.NO_STATE])
    assert "disabled" in excinfo.value.messages[0]


def test_continuous_values_round_trip(scene, factory, db):
    project, matrix = scene["project"], scene["matrix"]
    length = factory.character(project, matrix, name="Snout length", character_type=1)
    db.commit()
    editor = factory.editor(project, matrix, scene["owner"])
    taxon = scene["taxa"][0]

    result = cells.set_cell_continuous_values(editor, [taxon.id], [length.id], "1.5", 2.5)
    stored = [cell for cell in result["cells"] if cell["id"]]
    assert stored[0]["sv"] == 1.5
    assert stored[0]["ev"] == 2.5

    cells.set_cell_continuous_values(editor, [taxon.id], [length.id], 3, None)
    cell = db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=length.id).one()
    assert (cell.start_value, cell.end_value) == (3.0, None)

    cells.set_cell_continuous_values(editor, [taxon.id], [length.id], None, None)
    assert db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=length.id).count() == 0


def test_continuous_values_replace_npa_score(scene, factory, db):
    project, matrix = scene["project"], scene["matrix"]
    length = factory.character(project, matrix, name="Snout length", character_type=1)
    db.commit()
    editor = factory.editor(project, matrix, scene["owner"])
    taxon = scene["taxa"][0]
    cells.set_cell_states(editor, [taxon.id], [length.id], [scores.NPA_STATE])

    cells.set_cell_continuous_values(editor, [taxon.id], [length.id], 4, 5)
    cell = db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=length.id).one()
    assert cell.is_npa is False
    assert cell.start_value == 4


@pytest.mark.parametrize(
    "start, end, message",
    [
        ("abc", None, "Start value is not a number"),
        (1, "xyz", "End value is not a number"),
        (5, 2, "Start value cannot be greater than end value"),
    ],
)
def test_continuous_values_validation(scene, factory, db, start, end, message):
    project, matrix = scene["project"], scene["matrix"]
    length = factory.character(project, matrix, name="Snout length", character_type=1)
    db.commit()
    editor = factory.editor(project, matrix, scene["owner"])
    with pytest.raises(UserError) as excinfo:
        cells.set_cell_continuous_values(editor, [scene["taxa"][0].id], [length.id], start, end)
    assert excinfo.value.messages == [message]


def test_continuous_values_reject_discrete_characters(scene, factory):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    with pytest.raises(UserError) as excinfo:
        cells.set_cell_continuous_values(editor, [scene["taxa"][0].id], [scene["characters"][0].id], 1, 2)
    assert excinfo.value.messages == ["Discrete characters cannot have continuous values"]


def test_copy_cell_scores_mirrors_source_row(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    source, dest, _ = scene["taxa"]
    tail, scales, crest = scene["characters"]
    cells.set_cell_states(editor, [source.id], [tail.id], [tail.states[1].id])
    cells.set_cell_states(editor, [source.id], [scales.id], [scores.NPA_STATE])
    cells.set_cell_states(editor, [dest.id], [crest.id], [crest.states[0].id])
    cells.set_cell_notes(editor, [source.id], [tail.id], "Checked on specimen", 1)

    result = cells.copy_cell_scores(
        editor, source.id, dest.id, [tail.id, scales.id, crest.id], batch_mode=True, copy_notes=True
    )
    assert result["notify"] is True
    assert _keys(db, scene["matrix"], dest, tail) == [tail.states[1].id]
    assert _keys(db, scene["matrix"], dest, scales) == [scores.NPA_STATE]
    assert _keys(db, scene["matrix"], dest, crest) == []
    assert result["notes"] == [
        {"taxon_id": dest.id, "character_id": tail.id, "notes": "Checked on specimen", "status": 1}
    ]
    batch = db.query(models.CellBatchLog).one()
    assert batch.description.startswith("Copy from Anolis carolinensis taxon row to Anolis sagrei")


def test_copy_cell_scores_requires_matrix_taxa(scene, factory, db):
    outsider = factory.taxon(scene["project"])
    db.commit()
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    with pytest.raises(UserError) as excinfo:
        cells.copy_cell_scores(editor, outsider.id, scene["taxa"][0].id, [scene["characters"][0].id])
    assert excinfo.value.messages == ["Taxa is not in this matrix"]


def test_set_cell_notes_creates_then_updates(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    taxon, tail = scene["taxa"][0], scene["characters"][0]

    created = cells.set_cell_notes(editor, [taxon.id], [tail.id], "First look", 0)
    assert created["notes"][0]["notes"] == "First look"

    updated = cells.set_cell_notes(editor, [taxon.id], [tail.id], None, 2)
    assert updated["notes"] == [{"taxon_id": taxon.id, "character_id": tail.id, "notes": "First look", "status": 2}]

    unchanged = cells.set_cell_notes(editor, [taxon.id], [tail.id], None, 2)
    assert unchanged["notify"] is False

    with pytest.raises(UserError):
        cells.set_cell_notes(editor, [taxon.id], [tail.id], "x", 7)


def test_cell_media_add_remove_and_transfer_citations(scene, factory, db):
    project = scene["project"]
    taxon, tail = scene["taxa"][0], scene["characters"][0]
    media_file = factory.media(project)
    reference = factory.reference(project)
    db.add(models.MediaFilesXBibliographicReference(media_id=media_file.id, reference_id=reference.id))
    db.commit()
    editor = factory.editor(project, scene["matrix"], scene["owner"])

    added = cells.add_cell_media(editor, taxon.id, [tail.id], [media_file.id])
    assert len(added["media"]) == 1
    link_id = added["media"][0]["link_id"]
    assert added["media"][0]["icon"] == {"url": "icon.jpg"}
    assert cells.add_cell_media(editor, taxon.id, [tail.id], [media_file.id])["notify"] is False

    removed = cells.remove_cell_media(editor, taxon.id, tail.id, link_id, transfer_citations=True)
    assert removed["notify"] is True
    assert removed["citations"][0]["citation_id"] == reference.id
    assert db.query(models.CellsXMedium).count() == 0

    missing = cells.remove_cell_media(editor, taxon.id, tail.id, link_id)
    assert missing["notify"] is False


def test_add_cell_media_rejects_foreign_media(scene, factory, db):
    other_project = factory.project(scene["owner"])
    foreign = factory.media(other_project)
    db.commit()
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    with pytest.raises(UserError) as excinfo:
        cells.add_cell_media(editor, scene["taxa"][0].id, [scene["characters"][0].id], [foreign.id])
    assert excinfo.value.messages == ["Media does not belong to this project"]


def test_remove_cells_media_records_batch(scene, factory, db):
    project = scene["project"]
    taxon = scene["taxa"][0]
    tail, scales, _ = scene["characters"]
    media_file = factory.media(project)
    db.commit()
    editor = factory.editor(project, scene["matrix"], scene["owner"])
    cells.add_cell_media(editor, taxon.id, [tail.id, scales.id], [media_file.id])

    result = cells.remove_cells_media(editor, taxon.id, [tail.id, scales.id])
    assert len(result["deleted_cell_media"]) == 2
    batch = db.query(models.CellBatchLog).one()
    assert batch.description == "All media deleted from 2 character(s) in Anolis carolinensis row"


def test_cell_citations_lifecycle(scene, factory, db):
    project = scene["project"]
    taxon, tail = scene["taxa"][0], scene["characters"][0]
    reference = factory.reference(project, title="Cope 1900")
    db.commit()
    editor = factory.editor(project, scene["matrix"], scene["owner"])

    added = cells.add_cell_citations(editor, [taxon.id], [tail.id], reference.id, "p. 12", "Fig. 3")
    assert added["citations"][0]["pp"] == "p. 12"
    listed = cells.get_cell_citations(editor, taxon.id, tail.id)["citations"]
    assert listed[0]["name"] == "Cope 1900"

    removed = cells.remove_cell_citation(editor, listed[0]["link_id"])
    assert removed["notify"] is True
    assert cells.get_cell_citations(editor, taxon.id, tail.id)["citations"] == []


def test_log_cell_check_writes_check_rows(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    taxa_ids = [taxon.id for taxon in scene["taxa"][:2]]
    result = cells.log_cell_check(editor, taxa_ids, [scene["characters"][0].id])
    assert result["notify"] is False
    assert db.query(models.CellChangeLog).filter_by(change_type="C").count() == 2
    assert db.query(models.Cell).count() == 0


def test_read_only_editor_rejects_writes(scene, factory):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"], readonly=True)
    with pytest.raises(ForbiddenError):
        cells.set_cell_states(editor, [scene["taxa"][0].id], [scene["characters"][0].id], [scores.NO_STATE])


def test_upsert_cell_citation_creates_then_edits(scene, factory, db):
    project = scene["project"]
    taxon, tail = scene["taxa"][1], scene["characters"][0]
    scales = scene["characters"][1]
    reference = factory.reference(project, title="Williams 1969")
    db.commit()
    editor = factory.editor(project, scene["matrix"], scene["owner"])

    created = cells.upsert_cell_citation(editor, None, taxon.id, tail.id, reference.id, "p. 4")
    db.commit()
    link_id = created["citation"]["link_id"]
    assert created["notify"] is True
    assert created["citation"]["name"] == "Williams 1969"

    edited = cells.upsert_cell_citation(editor, link_id, taxon.id, tail.id, reference.id, "p. 5", "Table 2")
    db.commit()
    assert edited["notify"] is True
    assert (edited["citation"]["link_id"], edited["citation"]["pp"], edited["citation"]["notes"]) == (link_id, "p. 5", "Table 2")
    assert db.query(models.CellsXBibliographicReference).count() == 1
    assert [entry.change_type for entry in db.query(models.CellChangeLog).order_by(models.CellChangeLog.id)] == ["I", "U"]

    unchanged = cells.upsert_cell_citation(editor, link_id, taxon.id, tail.id, reference.id, "p. 5", "Table 2")
    assert unchanged["notify"] is False

    with pytest.raises(UserError) as excinfo:
        cells.upsert_cell_citation(editor, link_id, taxon.id, scales.id, reference.id, "p. 5")
    assert excinfo.value.messages == ["Citation does not match the given character"]
    with pytest.raises(UserError) as excinfo:
        cells.upsert_cell_citation(editor, link_id, taxon.id, tail.id, reference.id + 100)
    assert excinfo.value.messages == ["Citation does not exist"]
