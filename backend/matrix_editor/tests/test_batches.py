import pytest

from matrix_editor import models
from matrix_editor.services import batches, cells, scores
from matrix_editor.services.errors import ForbiddenError, NotFoundError, UserError


def _keys(db, matrix, taxon, character):
    return sorted(
        cell.state_key
        for cell in db.query(models.Cell).filter_by(matrix_id=matrix.id, taxon_id=taxon.id, character_id=character.id)
    )


@pytest.fixture
def copied(scene, factory, db):
    """Score two rows, then copy the first over the second as a batch."""

    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail, scales, crest = scene["characters"]
    source, dest, _ = scene["taxa"]
    cells.set_cell_states(editor, [source.id], [tail.id], [tail.states[1].id])
    cells.set_cell_states(editor, [source.id], [scales.id], [scores.NPA_STATE])
    cells.set_cell_states(editor, [dest.id], [tail.id], [tail.states[0].id])
    cells.set_cell_states(editor, [dest.id], [crest.id], [crest.states[1].id])
    cells.set_cell_notes(editor, [source.id], [tail.id], "Tail regenerated", 1)
    db.commit()

    cells.copy_cell_scores(editor, source.id, dest.id, [tail.id, scales.id, crest.id], batch_mode=True, copy_notes=True)
    db.commit()
    batch = db.query(models.CellBatchLog).one()
    return {**scene, "editor": editor, "batch": batch, "source": source, "dest": dest}


def test_copy_batch_is_logged_with_description(copied, factory, db):
    tail, scales, crest = copied["characters"]
    dest = copied["dest"]
    assert _keys(db, copied["matrix"], dest, tail) == [tail.states[1].id]
    assert _keys(db, copied["matrix"], dest, scales) == [scores.NPA_STATE]
    assert _keys(db, copied["matrix"], dest, crest) == []

    logs = batches.get_cell_batch_logs(copied["editor"])
    assert logs == [
        {
            "id": copied["batch"].id,
            "r": False,
            "t": copied["batch"].started_on,
            "d": "Copy from Anolis carolinensis taxon row to Anolis sagrei taxon row by Mara Owner.",
        }
    ]
    assert copied["batch"].batch_type == batches.CellBatchType.COPY_SCORES


def test_undo_restores_destination_row(copied, db):
    tail, scales, crest = copied["characters"]
    dest = copied["dest"]

    result = batches.undo_cell_batch(copied["editor"], copied["batch"].id)
    db.commit()

    assert result["notify"] is True
    assert result["batch_id"] == copied["batch"].id
    assert _keys(db, copied["matrix"], dest, tail) == [tail.states[0].id]
    assert _keys(db, copied["matrix"], dest, scales) == []
    assert _keys(db, copied["matrix"], dest, crest) == [crest.states[1].id]
    assert db.query(models.CellNote).filter_by(taxon_id=dest.id).count() == 0
    assert {"id": 0, "tid": dest.id, "cid": tail.id} in result["cells"]
    assert {"taxon_id": dest.id, "character_id": tail.id, "notes": "", "status": 0} in result["notes"]

    # source row is untouched
    assert _keys(db, copied["matrix"], copied["source"], tail) == [tail.states[1].id]


def test_undo_twice_is_rejected(copied, db):
    batches.undo_cell_batch(copied["editor"], copied["batch"].id)
    db.commit()
    with pytest.raises(UserError) as excinfo:
        batches.undo_cell_batch(copied["editor"], copied["batch"].id)
    assert excinfo.value.messages == ["This batch has already been reverted"]


def test_undo_by_another_member_is_described(copied, factory, db):
    member = factory.user(full_name="Rita Member")
    factory.member(copied["project"], member)
    db.commit()
    member_editor = factory.editor(copied["project"], copied["matrix"], member)

    batches.undo_cell_batch(member_editor, copied["batch"].id)
    db.commit()

    (log,) = batches.get_cell_batch_logs(member_editor)
    assert log["r"] is True
    assert log["d"].endswith("by Mara Owner. This action was reverted by Rita Member.")


def test_undo_rejects_unknown_or_foreign_batches(copied, factory, db):
    with pytest.raises(NotFoundError):
        batches.undo_cell_batch(copied["editor"], 9999)

    other_matrix = factory.matrix(copied["project"])
    db.commit()
    other_editor = factory.editor(copied["project"], other_matrix, copied["owner"])
    with pytest.raises(UserError) as excinfo:
        batches.undo_cell_batch(other_editor, copied["batch"].id)
    assert excinfo.value.messages == ["Matrix id is not related to Batch"]


def test_observer_cannot_undo(copied, factory, db):
    observer = factory.user()
    factory.member(copied["project"], observer, membership_type=1)
    db.commit()
    with pytest.raises(ForbiddenError):
        batches.undo_cell_batch(factory.editor(copied["project"], copied["matrix"], observer), copied["batch"].id)


def test_no_batch_is_recorded_without_changes(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail = scene["characters"][0]
    taxa_ids = [taxon.id for taxon in scene["taxa"]]

    cells.set_cell_states(editor, taxa_ids, [tail.id], [tail.states[0].id], batch_mode=batches.COLUMN_BATCH)
    cells.set_cell_states(editor, taxa_ids, [tail.id], [tail.states[0].id], batch_mode=batches.COLUMN_BATCH)

    (log,) = batches.get_cell_batch_logs(editor)
    assert log["d"] == "Batch scoring added to 3 taxa in Tail column by Mara Owner."


def test_undo_batch_scoring_of_a_row(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    taxon = scene["taxa"][1]
    character_ids = [character.id for character in scene["characters"]]

    cells.set_cell_states(editor, [taxon.id], character_ids, [scores.NO_STATE], batch_mode=batches.ROW_BATCH)
    db.commit()
    batch = db.query(models.CellBatchLog).one()
    assert batch.description == "Batch scoring added to 3 characters in Anolis sagrei row"

    batches.undo_cell_batch(editor, batch.id)
    db.commit()
    assert db.query(models.Cell).filter_by(taxon_id=taxon.id).count() == 0


def test_describe_scope_rejects_unknown_mode(scene, factory):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    with pytest.raises(UserError):
        batches.validate_batch_mode(5)
    with pytest.raises(UserError):
        batches.describe_scope(editor, 0, [scene["taxa"][0].id], [scene["characters"][0].id])


def test_undo_restores_uncertain_flag_and_continuous_range(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail = scene["characters"][0]
    snout = factory.character(scene["project"], scene["matrix"], name="Snout length", character_type=1)
    taxon = scene["taxa"][1]
    db.commit()
    cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[0].id, tail.states[1].id], uncertain=True)
    cells.set_cell_continuous_values(editor, [taxon.id], [snout.id], 1.5, 2.5)
    db.commit()

    cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[0].id], batch_mode=batches.ROW_BATCH)
    db.commit()
    cells.set_cell_continuous_values(editor, [taxon.id], [snout.id], 3, 4, batch_mode=batches.ROW_BATCH)
    db.commit()

    def tail_cells():
        rows = db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=tail.id)
        return {cell.state_id: cell.is_uncertain for cell in rows}

    def snout_range():
        cell = db.query(models.Cell).filter_by(taxon_id=taxon.id, character_id=snout.id).one()
        return cell.start_value, cell.end_value

    assert tail_cells() == {tail.states[0].id: False}
    assert snout_range() == (3.0, 4.0)

    scoring, measuring = db.query(models.CellBatchLog).order_by(models.CellBatchLog.id).all()
    batches.undo_cell_batch(editor, measuring.id)
    batches.undo_cell_batch(editor, scoring.id)
    db.commit()

    assert tail_cells() == {tail.states[0].id: True, tail.states[1].id: True}
    assert snout_range() == (1.5, 2.5)
