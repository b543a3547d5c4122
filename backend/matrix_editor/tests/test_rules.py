import pytest

from matrix_editor import models
from matrix_editor.services import cells, rules, scores
from matrix_editor.services.errors import UserError


def _state_keys(db, matrix, taxon, character):
    return sorted(
        cell.state_key
        for cell in db.query(models.Cell).filter_by(matrix_id=matrix.id, taxon_id=taxon.id, character_id=character.id)
    )


@pytest.fixture
def ruled(scene, factory, db):
    """Tail=present implies Scales=present, with cascading switched on."""

    tail, scales, _ = scene["characters"]
    rule = factory.rule(tail, tail.states[1], scales, scales.states[1])
    scene["matrix"].other_options = {"APPLY_CHARACTERS_WHILE_SCORING": 1}
    db.commit()
    return {**scene, "rule": rule, "action": rule.actions[0]}


def test_scoring_trigger_cascades_target_state(ruled, factory, db):
    editor = factory.editor(ruled["project"], ruled["matrix"], ruled["owner"])
    tail, scales, _ = ruled["characters"]
    taxon = ruled["taxa"][2]

    result = cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[1].id])

    assert _state_keys(db, ruled["matrix"], taxon, scales) == [scales.states[1].id]
    cascaded = [cell for cell in result["cells"] if cell["id"] and cell["cid"] == scales.id]
    assert cascaded[0]["sid"] == scales.states[1].id
    assert "uct" not in cascaded[0]
    assert rules.get_rule_violations(editor) == {"violations": []}


def test_cascade_skipped_when_overwrite_disabled_and_reported_as_violation(ruled, factory, db):
    editor = factory.editor(ruled["project"], ruled["matrix"], ruled["owner"])
    tail, scales, _ = ruled["characters"]
    taxon = ruled["taxa"][2]
    cells.set_cell_states(editor, [taxon.id], [scales.id], [scales.states[0].id])

    cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[1].id])
    assert _state_keys(db, ruled["matrix"], taxon, scales) == [scales.states[0].id]

    # repeating the trigger score writes nothing
    repeat = cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[1].id])
    assert repeat["notify"] is False
    assert _state_keys(db, ruled["matrix"], taxon, scales) == [scales.states[0].id]

    violations = rules.get_rule_violations(editor)["violations"]
    assert violations == [
        {
            "aid": ruled["action"].id,
            "tid": taxon.id,
            "rcid": tail.id,
            "acid": scales.id,
            "sid": scales.states[1].id,
        }
    ]

    fixed = rules.fix_rule_violations(editor, violations)
    assert fixed["notify"] is True
    assert {"id": 0, "tid": taxon.id, "cid": scales.id} in fixed["cells"]
    assert _state_keys(db, ruled["matrix"], taxon, scales) == [scales.states[1].id]
    assert rules.get_rule_violations(editor)["violations"] == []
    assert rules.fix_rule_violations(editor, violations)["notify"] is False


def test_cascade_overwrites_when_allowed(ruled, factory, db):
    ruled["matrix"].other_options = {"APPLY_CHARACTERS_WHILE_SCORING": 1, "ALLOW_OVERWRITING_BY_RULES": 1}
    db.commit()
    editor = factory.editor(ruled["project"], ruled["matrix"], ruled["owner"])
    tail, scales, _ = ruled["characters"]
    taxon = ruled["taxa"][0]
    cells.set_cell_states(editor, [taxon.id], [scales.id], [scales.states[0].id, scores.NO_STATE])

    result = cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[1].id])
    assert _state_keys(db, ruled["matrix"], taxon, scales) == [scales.states[1].id]
    assert {"id": 0, "tid": taxon.id, "cid": scales.id} in result["cells"]


def test_cascade_is_off_without_option(scene, factory, db):
    tail, scales, _ = scene["characters"]
    factory.rule(tail, tail.states[1], scales, scales.states[1])
    db.commit()
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    taxon = scene["taxa"][0]

    cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[1].id])
    assert _state_keys(db, scene["matrix"], taxon, scales) == []
    assert len(rules.get_rule_violations(editor)["violations"]) == 1


def test_null_trigger_matches_dash_and_npa(scene, factory, db):
    tail, _, crest = scene["characters"]
    factory.rule(tail, None, crest, None)
    scene["matrix"].other_options = {"APPLY_CHARACTERS_WHILE_SCORING": 1}
    db.commit()
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    first, second, third = scene["taxa"]

    cells.set_cell_states(editor, [first.id], [tail.id], [scores.NPA_STATE])
    cells.set_cell_states(editor, [second.id], [tail.id], [scores.NO_STATE])
    cells.set_cell_states(editor, [third.id], [tail.id], [tail.states[0].id])

    assert _state_keys(db, scene["matrix"], first, crest) == [scores.NO_STATE]
    assert _state_keys(db, scene["matrix"], second, crest) == [scores.NO_STATE]
    assert _state_keys(db, scene["matrix"], third, crest) == []


def test_add_media_rule_copies_cell_media(scene, factory, db):
    tail, scales, _ = scene["characters"]
    rule = factory.rule(tail, None, scales, action="ADD_MEDIA")
    media_file = factory.media(scene["project"])
    db.commit()
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    taxon = scene["taxa"][0]

    cells.add_cell_media(editor, taxon.id, [tail.id], [media_file.id])
    violations = rules.get_rule_violations(editor)["violations"]
    assert violations == [
        {
            "aid": rule.actions[0].id,
            "tid": taxon.id,
            "rcid": tail.id,
            "acid": scales.id,
            "sid": 0,
            "mid": media_file.id,
        }
    ]

    fixed = rules.fix_all_rule_violations(editor)
    assert [media["character_id"] for media in fixed["media"]] == [scales.id]
    assert rules.get_rule_violations(editor)["violations"] == []

    scene["matrix"].other_options = {"APPLY_CHARACTERS_WHILE_SCORING": 1}
    db.flush()
    second = scene["taxa"][1]
    added = cells.add_cell_media(editor, second.id, [tail.id], [media_file.id])
    assert sorted(media["character_id"] for media in added["media"]) == sorted([tail.id, scales.id])


def test_fix_all_rule_violations_limits_to_editable_taxa(ruled, factory, db):
    editor = factory.editor(ruled["project"], ruled["matrix"], ruled["owner"])
    tail, scales, _ = ruled["characters"]
    ruled["matrix"].other_options = {}
    db.commit()
    cells.set_cell_states(editor, [t.id for t in ruled["taxa"]], [tail.id], [tail.states[1].id])

    owned_elsewhere = ruled["taxa"][0]
    placement = db.query(models.MatrixTaxaOrder).filter_by(taxon_id=owned_elsewhere.id).one()
    placement.user_id = factory.user().id
    member = factory.user()
    factory.member(ruled["project"], member)
    db.commit()

    member_editor = factory.editor(ruled["project"], ruled["matrix"], member)
    result = rules.fix_all_rule_violations(member_editor)
    fixed_taxa = {cell["tid"] for cell in result["cells"] if cell["id"]}
    assert fixed_taxa == {ruled["taxa"][1].id, ruled["taxa"][2].id}
    remaining = rules.get_rule_violations(editor)["violations"]
    assert [violation["tid"] for violation in remaining] == [owned_elsewhere.id]


def test_rule_management_round_trip(scene, factory, db):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail, scales, crest = scene["characters"]

    created = rules.add_character_rule_action(
        editor, tail.id, tail.states[1].id, [scales.id, crest.id], None, rules.SET_STATE
    )
    assert created["a"] == "SET_STATE"
    assert len(created["ads"]) == 2

    listed = rules.get_character_rules(editor)
    assert len(listed) == 1
    assert [action["character_id"] for action in listed[0]["actions"]] == [scales.id, crest.id]

    rules.remove_character_rule_action(editor, tail.id, created["ads"][0])
    assert [action["character_id"] for action in rules.get_character_rules(editor)[0]["actions"]] == [crest.id]
    rules.remove_character_rule_action(editor, tail.id, created["ads"][1])
    assert rules.get_character_rules(editor) == []
    assert db.query(models.CharacterRule).count() == 0
    assert db.query(models.ChangeLog).filter_by(row_id=tail.id).count() == 3


def test_rule_management_validation(scene, factory):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    tail, scales, crest = scene["characters"]

    with pytest.raises(UserError) as excinfo:
        rules.add_character_rule_action(editor, tail.id, None, [scales.id, crest.id], scales.states[0].id, rules.SET_STATE)
    assert excinfo.value.messages == ["You cannot add one state for numerous characters"]

    with pytest.raises(UserError) as excinfo:
        rules.add_character_rule_action(editor, tail.id, scales.states[0].id, [scales.id], None, rules.SET_STATE)
    assert excinfo.value.messages == ["Invalid state for character"]

    with pytest.raises(UserError) as excinfo:
        rules.add_character_rule_action(editor, tail.id, None, [scales.id], tail.states[0].id, rules.SET_STATE)
    assert excinfo.value.messages == ["Invalid state for action character"]

    with pytest.raises(UserError) as excinfo:
        rules.add_character_rule_action(editor, tail.id, None, [scales.id], None, "DELETE_STATE")
    assert excinfo.value.messages == ["Unknown character rule action"]

    created = rules.add_character_rule_action(editor, tail.id, None, [scales.id], None, rules.SET_STATE)
    with pytest.raises(UserError) as excinfo:
        rules.remove_character_rule_action(editor, scales.id, created["ads"][0])
    assert excinfo.value.messages == ["This action does not belong to this character"]


def test_fix_rule_violations_requires_input(scene, factory):
    editor = factory.editor(scene["project"], scene["matrix"], scene["owner"])
    with pytest.raises(UserError) as excinfo:
        rules.fix_rule_violations(editor, [])
    assert excinfo.value.messages == ["Please specify at least one violation"]


def test_cascade_logs_separate_inserts_for_trigger_and_target(ruled, factory, db):
    editor = factory.editor(ruled["project"], ruled["matrix"], ruled["owner"])
    tail, scales, _ = ruled["characters"]
    taxon = ruled["taxa"][1]

    cells.set_cell_states(editor, [taxon.id], [tail.id], [tail.states[1].id])
    db.commit()

    inserts = (
        db.query(models.CellChangeLog)
        .filter_by(matrix_id=ruled["matrix"].id, taxon_id=taxon.id, change_type="I")
        .order_by(models.CellChangeLog.id)
        .all()
    )
    assert [(entry.character_id, entry.state_id) for entry in inserts] == [
        (tail.id, tail.states[1].id),
        (scales.id, scales.states[1].id),
    ]
    assert inserts[0].id != inserts[1].id
    # one unit of work shares one feed sequence number
    assert inserts[0].seq == inserts[1].seq
