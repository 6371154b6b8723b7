from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence
from urllib.parse import quote

from .config import Settings
from .database import Database
from .errors import ExternalServiceFailure, InvalidArgument, NotFound
from .models import Media, MediaStorage, MediaType

logger = logging.getLogger(__name__)

ALLOWED_PHOTO_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")
ALLOWED_VIDEO_TYPES = ("video/mp4", "video/webm", "video/ogg", "video/quicktime")
OBJECT_KEY_PREFIX = "media/"
MAX_FILENAME_LENGTH = 255
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class ObjectStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> None: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def url_for(self, key: str) -> str: ...

    def list_keys(self, prefix: str = "") -> List[str]: ...


class LocalObjectStorage:
    """Bucket-like object storage rooted in a local directory."""

    def __init__(self, root: Path, base_url: str) -> None:
        self.root = root
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise ExternalServiceFailure(f"Failed to store object {key}") from exc

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ExternalServiceFailure(f"Failed to read object {key}") from exc

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ExternalServiceFailure(f"Failed to delete object {key}") from exc

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{quote(key)}"

    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.root.rglob("*"):
            if path.is_file():
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise InvalidArgument(f"Invalid object key: {key}")
        return path


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    mime_type: str


@dataclass
class MediaContent:
    media: Media
    data: Optional[bytes] = None
    redirect_url: Optional[str] = None


def sanitize_filename(filename: str) -> str:
    base = re.sub(r"^.*[\\/]", "", filename)
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base)[:MAX_FILENAME_LENGTH]
    return cleaned or "upload"


def build_object_key(checkpoint_id: int, filename: str, epoch_millis: Optional[int] = None) -> str:
    if epoch_millis is None:
        epoch_millis = int(time.time() * 1000)
    return f"{OBJECT_KEY_PREFIX}videos/{checkpoint_id}/{epoch_millis}-{sanitize_filename(filename)}"


def media_type_for(mime_type: str) -> MediaType:
    return MediaType.VIDEO if mime_type.startswith("video") else MediaType.PHOTO


@dataclass
class MediaStore:
    database: Database
    storage: ObjectStorage
    settings: Settings

    def upload(self, checkpoint_id: int, files: Sequence[UploadedFile]) -> List[Media]:
        if not files:
            raise InvalidArgument("No files provided")
        if len(files) > self.settings.MAX_FILES_PER_UPLOAD:
            raise InvalidArgument(f"Maximum {self.settings.MAX_FILES_PER_UPLOAD} files allowed per upload")
        for upload in files:
            self._validate(upload.mime_type, len(upload.content), upload.filename)
        return [self.store(checkpoint_id, upload.content, upload.mime_type, upload.filename) for upload in files]

    def store(self, checkpoint_id: int, content: bytes, mime_type: str, filename: str) -> Media:
        """Persist uploaded bytes: photos inline in the database, videos in object storage."""
        self._require_checkpoint(checkpoint_id)
        self._validate(mime_type, len(content), filename)
        media_type = media_type_for(mime_type)
        safe_name = sanitize_filename(filename)
        if media_type is MediaType.VIDEO:
            key = build_object_key(checkpoint_id, filename)
            self.storage.put(key, content, mime_type)
            return self.database.add_media(
                checkpoint_id=checkpoint_id,
                type=media_type,
                storage=MediaStorage.OBJECT,
                filename=safe_name,
                mime_type=mime_type,
                size=len(content),
                object_key=key,
            )
        return self.database.add_media(
            checkpoint_id=checkpoint_id,
            type=media_type,
            storage=MediaStorage.INLINE,
            filename=safe_name,
            mime_type=mime_type,
            size=len(content),
            data=content,
        )

    def store_object(self, checkpoint_id: int, object_key: str, mime_type: str, filename: str, size: int) -> Media:
        """Register an object that was uploaded straight to object storage."""
        self._require_checkpoint(checkpoint_id)
        if not object_key.startswith(f"{OBJECT_KEY_PREFIX}videos/{checkpoint_id}/"):
            raise InvalidArgument("Object key does not belong to this checkpoint")
        self._validate(mime_type, size, filename)
        return self.database.add_media(
            checkpoint_id=checkpoint_id,
            type=media_type_for(mime_type),
            storage=MediaStorage.OBJECT,
            filename=sanitize_filename(filename),
            mime_type=mime_type,
            size=size,
            object_key=object_key,
        )

    def get(self, media_id: int) -> Media:
        media = self.database.get_media(media_id)
        if not media:
            raise NotFound("Media not found")
        return media

    def fetch(self, media_id: int) -> MediaContent:
        media = self.get(media_id)
        if media.storage is MediaStorage.OBJECT and media.object_key:
            return MediaContent(media=media, redirect_url=self.storage.url_for(media.object_key))
        return MediaContent(media=media, data=self.database.get_media_data(media_id) or b"")

    def read_bytes(self, media: Media) -> bytes:
        """Raw bytes regardless of backend; a PDF cannot follow a redirect."""
        if media.storage is MediaStorage.OBJECT:
            if not media.object_key:
                raise NotFound(f"Media {media.id} has no object key")
            return self.storage.get(media.object_key)
        data = self.database.get_media_data(media.id)
        if data is None:
            raise NotFound(f"Media {media.id} has no stored data")
        return data

    def delete(self, media_id: int) -> None:
        media = self.get(media_id)
        self.release_objects([media])
        self.database.delete_media(media_id)

    def delete_for_checkpoint(self, checkpoint_id: int) -> int:
        media_items = self.database.list_media_for_checkpoint(checkpoint_id)
        for media in media_items:
            self.release_objects([media])
            self.database.delete_media(media.id)
        return len(media_items)

    def release_objects(self, media_items: Iterable[Media]) -> None:
        for media in media_items:
            if media.storage is not MediaStorage.OBJECT or not media.object_key:
                continue
            try:
                self.storage.delete(media.object_key)
            except ExternalServiceFailure:
                logger.warning("Failed to delete stored object %s for media %s", media.object_key, media.id, exc_info=True)

    def find_orphaned_objects(self) -> List[str]:
        referenced = self.database.list_object_keys()
        return [key for key in self.storage.list_keys(OBJECT_KEY_PREFIX) if key not in referenced]

    def collect_garbage(self) -> int:
        """Delete stored objects that no media row references any more."""
        removed = 0
        for key in self.find_orphaned_objects():
            try:
                self.storage.delete(key)
            except ExternalServiceFailure:
                logger.warning("Orphaned object %s could not be deleted", key, exc_info=True)
                continue
            removed += 1
        if removed:
            logger.info("Removed %d orphaned media objects", removed)
        return removed

    def _require_checkpoint(self, checkpoint_id: int) -> None:
        if not self.database.get_checkpoint(checkpoint_id):
            raise NotFound("Invalid checkpoint ID")

    def _validate(self, mime_type: str, size: int, filename: str) -> None:
        if mime_type in ALLOWED_VIDEO_TYPES:
            limit = self.settings.MAX_VIDEO_BYTES
        elif mime_type in ALLOWED_PHOTO_TYPES:
            limit = self.settings.MAX_PHOTO_BYTES
        else:
            raise InvalidArgument(f"File type {mime_type} is not allowed")
        if size > limit:
            raise InvalidArgument(f"File {filename} exceeds maximum size of {limit // (1024 * 1024)}MB")
