import pytest

from clipsync.errors import NotFound, ValidationFailed
from clipsync.models.clip import ClipChange, ClipKind
from clipsync.models.devices import Identity
from clipsync.services.merge import APPLIED, CONFLICT, MergeEngine, apply_change
from clipsync.services.tiering import ImageTieringPolicy

from conftest import TickClock, png_bytes, png_data_url

ME = Identity(owner_id="u1", device_id="laptop")
INLINE = ImageTieringPolicy(object_store=None)


def _apply(current, now=1_000, **fields):
    return apply_change(current, ClipChange(**fields), ME, now, INLINE)


def test_creation_derives_kind_and_summary():
    result = _apply(None, id="c1", content="https://example.com", clientUpdatedAt=100)
    record = result.record

    assert result.status == APPLIED
    assert record.kind == ClipKind.LINK
    assert record.summary == "https://example.com"
    assert record.ownerId == "u1"
    assert record.originDeviceId == "laptop"
    assert record.createdAt == record.serverUpdatedAt == 1_000


def test_missing_client_timestamp_defaults_to_now():
    record = _apply(None, now=5_000, id="c1", content="x").record
    assert record.clientUpdatedAt == 5_000


def test_omitted_fields_are_kept_and_null_clears():
    first = _apply(None, id="c1", content="hello", sourceUrl="https://e.com", isFavorite=True,
                   clientUpdatedAt=100).record

    kept = _apply(first, now=2_000, id="c1", clientUpdatedAt=110).record
    assert kept.sourceUrl == "https://e.com"
    assert kept.isFavorite is True
    assert kept.content == "hello"

    cleared = _apply(kept, now=3_000, id="c1", sourceUrl=None, clientUpdatedAt=120).record
    assert cleared.sourceUrl is None
    assert cleared.kind == ClipKind.TEXT
    assert cleared.isFavorite is True


def test_stale_change_is_a_conflict_and_returns_the_stored_record():
    stored = _apply(None, id="c1", content="original", clientUpdatedAt=100).record
    before = stored.model_dump_json()

    result = _apply(stored, now=2_000, id="c1", content="stale", clientUpdatedAt=90)

    assert result.status == CONFLICT
    assert result.record is stored
    assert result.record.model_dump_json() == before


def test_equal_timestamps_are_accepted_and_idempotent():
    stored = _apply(None, id="c1", content="v1", tags=["a"], clientUpdatedAt=100).record
    again = _apply(stored, now=2_000, id="c1", content="v1", tags=["a"], clientUpdatedAt=100)
    twice = _apply(again.record, now=3_000, id="c1", content="v1", tags=["a"], clientUpdatedAt=100)

    assert again.status == twice.status == APPLIED
    ignore = {"serverUpdatedAt"}
    assert again.record.model_dump(exclude=ignore) == twice.record.model_dump(exclude=ignore)


def test_server_timestamp_strictly_increases_even_with_a_stalled_clock():
    stored = _apply(None, now=5_000, id="c1", content="v1", clientUpdatedAt=100).record
    updated = _apply(stored, now=4_000, id="c1", content="v2", clientUpdatedAt=200).record
    assert updated.serverUpdatedAt == 5_001
    assert updated.createdAt == stored.createdAt


def test_explicit_kind_and_summary_win():
    record = _apply(None, id="c1", content="print(1)", kind="html", summary="Snippet").record
    assert record.kind == ClipKind.HTML
    assert record.summary == "Snippet"


def test_tags_are_replaced_wholesale_and_normalized():
    stored = _apply(None, id="c1", content="x", tags=["Work", "work", "  Deep   Focus "]).record
    assert stored.tags == ["Work", "Deep Focus"]

    untouched = _apply(stored, now=2_000, id="c1", content="y").record
    assert untouched.tags == ["Work", "Deep Focus"]

    replaced = _apply(untouched, now=3_000, id="c1", tags=[]).record
    assert replaced.tags == []


def test_image_null_clears_payload_and_preview():
    data_url = png_data_url(png_bytes())
    stored = _apply(None, id="c1", imageDataUrl=data_url, imagePreview=data_url).record
    assert stored.kind == ClipKind.IMAGE
    assert stored.summary == "Image"
    assert stored.imagePayload.storage == "inline"

    kept = _apply(stored, now=2_000, id="c1", isFavorite=True).record
    assert kept.imagePayload == stored.imagePayload

    cleared = _apply(kept, now=3_000, id="c1", imageDataUrl=None, content="now text").record
    assert cleared.imagePayload is None
    assert cleared.imagePreview is None
    assert cleared.kind == ClipKind.TEXT


@pytest.mark.parametrize("fields,code", [
    ({"id": "c1", "sourceUrl": "javascript:alert(1)"}, "INVALID_URL"),
    ({"id": "c1", "kind": "image", "content": "no image"}, "INVALID_IMAGE"),
    ({"content": "no id"}, "INVALID_CHANGE"),
])
def test_invalid_changes_raise(fields, code):
    with pytest.raises(ValidationFailed) as excinfo:
        _apply(None, **fields)
    assert excinfo.value.code == code


def test_device_attribution_follows_the_writer():
    record = _apply(None, id="c1", content="x", deviceId="phone").record
    assert record.originDeviceId == "phone"


# ==================== ENGINE ON REDIS ====================

@pytest.fixture
def engine(store, images):
    return MergeEngine(store, images, clock=TickClock(start=10_000))


def test_conflict_then_newer_write(engine, store):
    device_a = Identity("u1", "device-a")
    device_b = Identity("u1", "device-b")

    created = engine.apply(device_a, ClipChange(id="r1", content="from A", clientUpdatedAt=100))
    assert created.status == APPLIED

    stale = engine.apply(device_b, ClipChange(id="r1", content="from B", clientUpdatedAt=90))
    assert stale.status == CONFLICT
    assert stale.record.content == "from A"
    assert store.get_clip("u1", "r1").content == "from A"

    newer = engine.apply(device_b, ClipChange(id="r1", content="from B", clientUpdatedAt=200))
    assert newer.status == APPLIED
    assert newer.record.content == "from B"
    assert newer.record.serverUpdatedAt > created.record.serverUpdatedAt
    assert newer.record.originDeviceId == "device-b"


def test_engine_links_tags_and_keeps_first_display_name(engine, store):
    engine.apply(ME, ClipChange(id="c1", content="one", tags=["Work"]))
    result = engine.apply(ME, ClipChange(id="c2", content="two", tags=["WORK", "home"]))

    assert result.record.tags == ["home", "Work"]
    assert store.get_clip("u1", "c2").tags == ["home", "Work"]
    names = {t.name: t.clipCount for t in store.list_tags("u1")}
    assert names == {"Work": 2, "home": 1}


def test_engine_must_exist(engine):
    with pytest.raises(NotFound):
        engine.apply(ME, ClipChange(id="missing", content="x"), must_exist=True)


def test_owners_are_isolated(engine, store):
    engine.apply(ME, ClipChange(id="c1", content="mine"))
    other = Identity("u2", "tablet")
    result = engine.apply(other, ClipChange(id="c1", content="theirs"))

    assert result.status == APPLIED
    assert store.get_clip("u1", "c1").content == "mine"
    assert store.get_clip("u2", "c1").content == "theirs"
