import pytest
from sqlalchemy.orm import sessionmaker

from matrix_editor.services import cell_comments, cells, change_feed, matrix_layout, partitions, scores
from matrix_editor.services.editor import open_editor


@pytest.fixture
def peers(scene, factory, db):
    member = factory.user(full_name="Rita Member")
    factory.member(scene["project"], member)
    db.commit()
    return {
        **scene,
        "mine": factory.editor(scene["project"], scene["matrix"], scene["owner"]),
        "theirs": factory.editor(scene["project"], scene["matrix"], member),
    }


def test_feed_reports_other_users_cells_only(peers):
    tail, scales, _ = peers["characters"]
    first, second, _ = peers["taxa"]
    cells.set_cell_states(peers["theirs"], [first.id], [tail.id], [tail.states[1].id])
    cells.set_cell_states(peers["mine"], [second.id], [scales.id], [scores.NPA_STATE])

    feed = change_feed.fetch_changes(peers["mine"], 0)

    stored = [cell for cell in feed["cells"] if cell["id"]]
    assert [(cell["tid"], cell["cid"], cell["sid"]) for cell in stored] == [(first.id, tail.id, tail.states[1].id)]
    assert feed["taxa_ids"] == [first.id]
    assert feed["character_ids"] == [tail.id]
    assert "partitions" not in feed
    assert "order" not in feed

    again = change_feed.fetch_changes(peers["mine"], feed["ts"])
    assert again["cells"] == []
    assert again["taxa_ids"] == []


def test_feed_reports_current_value_and_deletions(peers):
    tail = peers["characters"][0]
    taxon = peers["taxa"][2]
    cells.set_cell_states(peers["theirs"], [taxon.id], [tail.id], [tail.states[0].id])
    cells.set_cell_states(peers["theirs"], [taxon.id], [tail.id], [tail.states[1].id])

    feed = change_feed.fetch_changes(peers["mine"], 0)
    assert feed["cells"][0] == {"id": 0, "tid": taxon.id, "cid": tail.id}
    assert [cell["sid"] for cell in feed["cells"][1:]] == [tail.states[1].id]

    cells.set_cell_states(peers["theirs"], [taxon.id], [tail.id], [])
    cleared = change_feed.fetch_changes(peers["mine"], feed["ts"])
    assert cleared["cells"] == [{"id": 0, "tid": taxon.id, "cid": tail.id}]


def test_feed_reports_notes_media_and_citations(peers, factory, db):
    tail, scales, _ = peers["characters"]
    taxon = peers["taxa"][0]
    media_file = factory.media(peers["project"])
    reference = factory.reference(peers["project"])
    db.commit()

    cells.set_cell_notes(peers["theirs"], [taxon.id], [tail.id], "Check holotype", 2)
    cells.add_cell_media(peers["theirs"], taxon.id, [scales.id], [media_file.id])
    cells.add_cell_citations(peers["theirs"], [taxon.id], [tail.id], reference.id, pp="12")

    feed = change_feed.fetch_changes(peers["mine"], 0)
    assert feed["cell_notes"] == [{"taxon_id": taxon.id, "character_id": tail.id, "notes": "Check holotype", "status": 2}]
    assert [media["media_id"] for media in feed["cell_media"]] == [media_file.id]
    assert [(citation["citation_id"], citation["pp"]) for citation in feed["cell_citations"]] == [(reference.id, "12")]
    assert feed["character_ids"] == sorted([tail.id, scales.id])


def test_feed_reports_partitions_and_layout(peers):
    tail, scales, crest = peers["characters"]
    created = partitions.add_partition(peers["theirs"], "Cranial")
    partitions.add_characters_to_partition(peers["theirs"], created["id"], [crest.id])
    matrix_layout.reorder_characters(peers["theirs"], [crest.id], 0)

    feed = change_feed.fetch_changes(peers["mine"], 0)
    assert [partition["name"] for partition in feed["partitions"]] == ["Cranial"]
    assert feed["partitions"][0]["character_ids"] == [crest.id]
    assert feed["order"]["characters"] == [crest.id, tail.id, scales.id]
    assert feed["options"]["DISABLE_SCORING"] == 0


def test_feed_reports_taxon_metadata(peers):
    taxon = peers["taxa"][1]
    matrix_layout.set_taxa_notes(peers["theirs"], [taxon.id], "Juvenile only")

    feed = change_feed.fetch_changes(peers["mine"], 0)
    assert [record["id"] for record in feed["taxa"]] == [taxon.id]
    assert feed["taxa"][0]["notes"] == "Juvenile only"
    assert feed["taxa_ids"] == [taxon.id]


def test_feed_reports_edit_committed_after_a_poll(peers, db):
    tail, scales, _ = peers["characters"]
    first, second, _ = peers["taxa"]
    cells.set_cell_states(peers["theirs"], [first.id], [tail.id], [tail.states[0].id])
    db.commit()

    reader_db = sessionmaker(bind=db.get_bind(), autoflush=False)()
    try:
        reader = open_editor(reader_db, peers["project"].id, peers["matrix"].id, peers["owner"].id)

        # flushed before the poll, committed after it
        cells.set_cell_states(peers["theirs"], [second.id], [scales.id], [scales.states[1].id])
        before = change_feed.fetch_changes(reader, 0)
        reader_db.rollback()
        assert [(cell["tid"], cell["cid"]) for cell in before["cells"] if cell["id"]] == [(first.id, tail.id)]

        db.commit()
        after = change_feed.fetch_changes(reader, before["ts"])
        assert [(cell["tid"], cell["cid"], cell["sid"]) for cell in after["cells"] if cell["id"]] == [
            (second.id, scales.id, scales.states[1].id)
        ]
        assert after["ts"] > before["ts"]
    finally:
        reader_db.close()


def test_repeated_poll_with_the_same_cursor_is_stable(peers, db):
    tail, scales, _ = peers["characters"]
    taxon = peers["taxa"][0]
    cells.set_cell_states(peers["theirs"], [taxon.id], [tail.id], [tail.states[1].id])
    cells.set_cell_notes(peers["theirs"], [taxon.id], [scales.id], "Keeled", 1)
    db.commit()

    first = change_feed.fetch_changes(peers["mine"], 0)
    second = change_feed.fetch_changes(peers["mine"], 0)
    assert second == first
    assert [cell["tid"] for cell in first["cells"] if cell["id"]] == [taxon.id]

    assert change_feed.fetch_changes(peers["mine"], first["ts"])["cells"] == []


def test_feed_reports_comment_counts(peers, db):
    tail = peers["characters"][0]
    taxon = peers["taxa"][2]
    cell_comments.add_cell_comment(peers["theirs"], taxon.id, tail.id, "Photo is blurry")
    cell_comments.add_cell_comment(peers["mine"], taxon.id, tail.id, "Will rescan")
    db.commit()

    feed = change_feed.fetch_changes(peers["mine"], 0)
    assert feed["cell_comment_counts"] == [{"taxon_id": taxon.id, "character_id": tail.id, "count": 2}]
