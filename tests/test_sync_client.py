import httpx
import pytest

from clipsync.config import DeviceConfig
from clipsync.database.local_store import LocalStore
from clipsync.models.clip import ClipChange
from clipsync.services.sync_client import SyncClient, SyncState


class FixedClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _device(tmp_path, name, http, clock=None) -> SyncClient:
    config = DeviceConfig(apiBase="http://testserver", userId="u1", deviceId=name)
    store = LocalStore(tmp_path / name / "clips.json")
    return SyncClient(config, store, http=http, clock=clock or FixedClock())


@pytest.fixture
def laptop(tmp_path, client):
    return _device(tmp_path, "laptop", client)


@pytest.fixture
def phone(tmp_path, client):
    return _device(tmp_path, "phone", client)


def test_clips_travel_between_devices(laptop, phone):
    record = laptop.create(ClipChange(content="shared note", tags=["Work"]))
    assert laptop.pending == 1

    assert laptop.sync()
    assert laptop.pending == 0
    assert laptop.store.get(record.id).ownerId == "u1"

    assert phone.sync()
    mirrored = phone.store.get(record.id)
    assert mirrored.content == "shared note"
    assert mirrored.tags == ["Work"]
    assert mirrored.originDeviceId == "laptop"


def test_conflicting_push_adopts_the_server_copy(laptop, phone):
    laptop.create(ClipChange(id="r1", content="from laptop", clientUpdatedAt=100))
    laptop.sync()

    phone.create(ClipChange(id="r1", content="from phone", clientUpdatedAt=90))
    report = phone.push()

    assert [r.id for r in report.conflicts] == ["r1"]
    assert phone.pending == 0
    assert phone.store.get("r1").content == "from laptop"


def test_pull_resumes_from_the_stored_cursor(laptop, phone):
    for i in range(3):
        laptop.create(ClipChange(content=f"clip {i}"))
    laptop.sync()

    assert phone.pull() == 3
    assert phone.state.cursor is not None
    assert phone.pull() == 0

    reloaded = SyncState.load(phone.state_path)
    assert reloaded.cursor == phone.state.cursor


def test_pull_does_not_overwrite_unpushed_local_edits(laptop, phone):
    record = laptop.create(ClipChange(content="edited twice"))
    laptop.sync()
    phone.sync()

    phone.set_favorite(record.id, True)
    laptop.delete(record.id)
    laptop.sync()

    phone.pull()
    local = phone.store.get(record.id)
    assert local.isFavorite
    assert not local.isDeleted
    assert phone.pending == 1


def test_invalid_change_is_dropped_and_the_rest_applied(laptop):
    good = laptop.create(ClipChange(content="fine"))
    laptop.enqueue({"id": "bad", "sourceUrl": "javascript:alert(1)", "clientUpdatedAt": 5})

    report = laptop.push()

    assert [e["id"] for e in report.dropped] == ["bad"]
    assert [r.id for r in report.applied] == [good.id]
    assert laptop.pending == 0


def test_network_failure_keeps_the_outbox_and_backs_off(tmp_path):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(refuse))
    clock = FixedClock()
    device = _device(tmp_path, "offline", http, clock)
    device.create(ClipChange(content="queued"))

    assert device.sync() is False
    assert device.pending == 1
    assert device.state.failures == 1
    assert device.state.nextAttemptAt == clock.now + 2.0

    # skipped while backing off
    assert device.sync() is False
    assert device.state.failures == 1

    clock.now += 2.0
    device.sync()
    assert device.state.failures == 2
    assert device.state.nextAttemptAt == clock.now + 4.0

    persisted = SyncState.load(device.state_path)
    assert len(persisted.outbox) == 1


def test_server_errors_are_transient(tmp_path):
    http = httpx.Client(
        base_url="http://testserver",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")),
    )
    device = _device(tmp_path, "flaky", http)
    device.create(ClipChange(content="queued"))

    assert device.sync() is False
    assert device.pending == 1
    assert device.state.failures == 1


def test_requests_carry_device_identity(tmp_path):
    seen = []

    def record(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "data": {"changes": [], "nextSince": None, "hasMore": False}})

    http = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(record))
    device = _device(tmp_path, "tablet", http)
    device.config.sessionToken = "tok"

    device.pull()

    request = seen[0]
    assert request.url.path == "/v1/sync/pull"
    assert request.headers["x-user-id"] == "u1"
    assert request.headers["x-device-id"] == "tablet"
    assert request.headers["authorization"] == "Bearer tok"


def test_fetch_image_from_object_storage(laptop, phone):
    from conftest import noise_png, png_data_url

    data = noise_png()
    record = laptop.create(ClipChange(imageDataUrl=png_data_url(data)))
    laptop.sync()
    phone.sync()

    mirrored = phone.store.get(record.id)
    assert mirrored.imagePayload.storage == "object"
    assert phone.fetch_image(mirrored) == data


@pytest.mark.parametrize("status,code", [
    (401, "INVALID_SESSION"),
    (401, "IDENTITY_REQUIRED"),
    (403, "FORBIDDEN"),
    (429, "RATE_LIMITED"),
])
def test_request_level_rejection_keeps_the_outbox(tmp_path, status, code):
    http = httpx.Client(
        base_url="http://testserver",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(status, json={"ok": False, "code": code, "message": "expired"})
        ),
    )
    device = _device(tmp_path, "stale-session", http)
    first = device.create(ClipChange(content="one"))
    second = device.create(ClipChange(content="two"))

    assert device.sync(force=True) is False

    assert device.pending == 2
    assert [e["id"] for e in SyncState.load(device.state_path).outbox] == [first.id, second.id]
    assert device.store.get(first.id) is not None


def test_push_after_a_session_rejection_sends_everything(tmp_path, client):
    answers = iter([httpx.Response(401, json={"ok": False, "code": "INVALID_SESSION", "message": "expired"})])

    def first_refused(request):
        return next(answers)

    refused = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(first_refused))
    device = _device(tmp_path, "laptop", refused)
    record = device.create(ClipChange(content="kept through the outage"))
    assert device.sync(force=True) is False

    device.http = client
    assert device.sync(force=True)
    assert device.pending == 0
    assert client.get(f"/v1/clips/{record.id}", headers={"x-user-id": "u1", "x-device-id": "laptop"}).status_code == 200


def test_server_rejection_of_one_change_keeps_the_rest_of_the_batch(laptop, monkeypatch):
    good = laptop.create(ClipChange(content="fine"))
    laptop.enqueue({"id": "bad", "sourceUrl": "ftp://nope", "clientUpdatedAt": 5})
    later = laptop.create(ClipChange(content="also fine"))

    requests = []
    send = laptop._send

    def counting_send(method, path, **kwargs):
        requests.append(path)
        return send(method, path, **kwargs)

    monkeypatch.setattr(laptop, "_send", counting_send)
    report = laptop.push()

    assert requests == ["/sync/push"]
    assert [r.id for r in report.applied] == [good.id, later.id]
    assert [e["id"] for e in report.dropped] == ["bad"]
    assert laptop.pending == 0
    assert laptop.store.get(good.id).ownerId == "u1"
