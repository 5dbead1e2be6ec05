import hashlib

import pytest

from clipsync.errors import CapacityError, ValidationFailed
from clipsync.services.tiering import ImageTieringPolicy
from clipsync.utils.content import parse_data_url, to_data_url

from conftest import noise_png, png_bytes, png_data_url


def _assert_one_tier(payload):
    assert (payload.dataUrl is None) != (payload.objectKey is None)


def test_small_images_are_inlined(images):
    data = png_bytes()
    payload, preview = images.store(png_data_url(data))

    assert payload.storage == "inline"
    assert parse_data_url(payload.dataUrl) == ("image/png", data)
    assert payload.sha256 == hashlib.sha256(data).hexdigest()
    assert payload.byteLength == len(data)
    assert preview is None
    _assert_one_tier(payload)


def test_large_images_go_to_object_storage_with_a_preview(images, object_store):
    data = noise_png()
    assert len(data) > images.inline_threshold

    payload, preview = images.store(png_data_url(data))

    assert payload.storage == "object"
    assert payload.dataUrl is None
    assert object_store.get(payload.objectKey) == data
    assert payload.sha256 in payload.objectKey
    assert preview is not None and preview.startswith("data:image/")
    _assert_one_tier(payload)


def test_object_writes_are_idempotent(images, object_store):
    data = noise_png()
    first, _ = images.store(png_data_url(data))
    second, _ = images.store(png_data_url(data))

    assert first.objectKey == second.objectKey
    stored = [p for p in object_store.base_dir.rglob("*") if p.is_file()]
    assert len(stored) == 1


def test_without_object_store_everything_is_inline():
    policy = ImageTieringPolicy(object_store=None, inline_threshold=16)
    payload, _ = policy.store(png_data_url(noise_png((64, 64))))
    assert payload.storage == "inline"
    _assert_one_tier(payload)


def test_supplied_preview_is_kept(images):
    preview = png_data_url(png_bytes((4, 4)))
    _, kept = images.store(png_data_url(noise_png()), preview)
    assert kept == preview


@pytest.mark.parametrize("value,code", [
    ("not a data url", "INVALID_IMAGE"),
    (to_data_url("text/plain", b"hello"), "INVALID_IMAGE"),
    ("data:image/png;base64,", "INVALID_IMAGE"),
])
def test_bad_images_are_rejected(images, value, code):
    with pytest.raises(ValidationFailed) as excinfo:
        images.store(value)
    assert excinfo.value.code == code


def test_oversized_images_are_rejected():
    policy = ImageTieringPolicy(object_store=None, max_image_bytes=100)
    with pytest.raises(CapacityError) as excinfo:
        policy.store(png_data_url(noise_png((32, 32))))
    assert excinfo.value.code == "IMAGE_TOO_LARGE"
    assert excinfo.value.status == 413
    assert excinfo.value.attempted_bytes > 100
