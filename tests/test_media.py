from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_jpeg

from backend.fieldcheck import FieldCheckApp
from backend.fieldcheck.config import Settings
from backend.fieldcheck.errors import ExternalServiceFailure, InvalidArgument, NotFound
from backend.fieldcheck.media import (
    LocalObjectStorage,
    MediaStore,
    UploadedFile,
    build_object_key,
    sanitize_filename,
)
from backend.fieldcheck.models import CheckpointStatus, Equipment, MediaStorage, MediaType, User


class FlakyStorage(LocalObjectStorage):
    fail_deletes = False

    def delete(self, key: str) -> None:
        if self.fail_deletes:
            raise ExternalServiceFailure(f"Failed to delete object {key}")
        super().delete(key)


@pytest.fixture()
def checkpoint_id(seeded_app: FieldCheckApp, technician: User, boom_lift: Equipment) -> int:
    inspection = seeded_app.inspections.get_or_create(equipment_id=boom_lift.id, technician=technician)
    checkpoint = seeded_app.database.list_checkpoints_for_inspection(inspection.id)[0]
    seeded_app.inspections.update_checkpoint(checkpoint_id=checkpoint.id, status=CheckpointStatus.ACTION_REQUIRED)
    return checkpoint.id


def test_object_key_layout() -> None:
    key = build_object_key(12, "my video (1).mp4", epoch_millis=1700000000000)

    assert key == "media/videos/12/1700000000000-my_video__1_.mp4"
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("C:\\photos\\gate ok.jpg") == "gate_ok.jpg"
    assert sanitize_filename("///") == "upload"


def test_photos_inline_videos_in_object_storage(seeded_app: FieldCheckApp, checkpoint_id: int) -> None:
    photo_bytes = make_jpeg()
    video_bytes = b"\x00\x00\x00\x18ftypmp42" * 8
    photo, video = seeded_app.media.upload(
        checkpoint_id,
        [
            UploadedFile("rail.jpg", photo_bytes, "image/jpeg"),
            UploadedFile("rail walk.mp4", video_bytes, "video/mp4"),
        ],
    )

    assert photo.type is MediaType.PHOTO and photo.storage is MediaStorage.INLINE
    assert photo.object_key is None
    assert video.type is MediaType.VIDEO and video.storage is MediaStorage.OBJECT
    assert video.object_key.startswith(f"media/videos/{checkpoint_id}/")
    assert video.object_key.endswith("-rail_walk.mp4")

    inline = seeded_app.media.fetch(photo.id)
    assert inline.data == photo_bytes and inline.redirect_url is None
    remote = seeded_app.media.fetch(video.id)
    assert remote.data is None
    assert remote.redirect_url == f"https://inspect.example.com/objects/{video.object_key}"
    assert seeded_app.media.read_bytes(video) == video_bytes


def test_upload_validation(seeded_app: FieldCheckApp, checkpoint_id: int, settings: Settings) -> None:
    with pytest.raises(InvalidArgument):
        seeded_app.media.upload(checkpoint_id, [])
    with pytest.raises(InvalidArgument):
        seeded_app.media.upload(checkpoint_id, [UploadedFile("notes.txt", b"hello", "text/plain")])
    with pytest.raises(InvalidArgument):
        seeded_app.media.upload(
            checkpoint_id, [UploadedFile(f"p{index}.jpg", b"x", "image/jpeg") for index in range(11)]
        )
    with pytest.raises(NotFound):
        seeded_app.media.store(9999, make_jpeg(), "image/jpeg", "orphan.jpg")

    strict = MediaStore(seeded_app.database, seeded_app.media.storage, settings.model_copy(update={"MAX_PHOTO_BYTES": 16}))
    with pytest.raises(InvalidArgument, match="exceeds maximum size"):
        strict.store(checkpoint_id, make_jpeg(), "image/jpeg", "big.jpg")
    assert seeded_app.database.list_media_for_checkpoint(checkpoint_id) == []


def test_store_object_registers_existing_key(seeded_app: FieldCheckApp, checkpoint_id: int) -> None:
    key = build_object_key(checkpoint_id, "direct.mp4")
    seeded_app.media.storage.put(key, b"\x00" * 64, "video/mp4")

    media = seeded_app.media.store_object(checkpoint_id, key, "video/mp4", "direct.mp4", 64)

    assert media.storage is MediaStorage.OBJECT and media.object_key == key
    with pytest.raises(InvalidArgument):
        seeded_app.media.store_object(checkpoint_id, "media/videos/999999/1-x.mp4", "video/mp4", "x.mp4", 1)


def test_object_storage_rejects_escaping_keys(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path / "bucket", "https://cdn.example.com")

    with pytest.raises(InvalidArgument):
        storage.put("../outside.bin", b"data", "application/octet-stream")
    with pytest.raises(ExternalServiceFailure):
        storage.get("media/missing.bin")
    storage.delete("media/missing.bin")


def test_failed_remote_delete_leaves_orphan_for_collection(
    tmp_path: Path, settings: Settings
) -> None:
    storage = FlakyStorage(tmp_path / "flaky", "https://cdn.example.com")
    app = FieldCheckApp.create(tmp_path / "flaky.db", settings=settings, storage=storage)
    app.seed_defaults()
    equipment = app.database.get_equipment_by_serial("JLG-2024-001")
    technician = app.database.get_user_by_email("tech@system.local")
    inspection = app.inspections.get_or_create(equipment_id=equipment.id, technician=technician)
    checkpoint = app.database.list_checkpoints_for_inspection(inspection.id)[0]
    video = app.media.store(checkpoint.id, b"\x1aE\xdf\xa3" * 32, "video/webm", "clip.webm")

    storage.fail_deletes = True
    app.media.delete(video.id)

    assert app.database.get_media(video.id) is None
    assert app.media.find_orphaned_objects() == [video.object_key]
    assert app.media.collect_garbage() == 0

    storage.fail_deletes = False
    assert app.media.collect_garbage() == 1
    assert storage.list_keys() == []


def test_delete_unknown_media(seeded_app: FieldCheckApp) -> None:
    with pytest.raises(NotFound):
        seeded_app.media.delete(4242)
