"""Three-tier evidence file storage.

evidence/originals/orig_{id}.{ext}   write-once, byte-for-byte captured evidence
photos/{id}.{ext}                    working copies (GPS-tagged, annotated)
thumbnails/thumb_{id}.jpg            display thumbnails
temp/                                transient staging, cleaned periodically

Nothing in this module deletes, moves or rewrites a file under originals/.
"""
import logging
import os
import stat
import time
from dataclasses import dataclass
from typing import List, Optional

import media_utils
from config import settings
from errors import OriginalWriteError, StorageError

logger = logging.getLogger(__name__)

DERIVATIVE_SUFFIXES = ("", "_annotated", "_measured")


@dataclass(frozen=True)
class StoragePaths:
    originals: str
    working: str
    thumbnails: str
    temp: str

    @classmethod
    def under(cls, root: str) -> "StoragePaths":
        return cls(
            originals=os.path.join(root, "evidence", "originals"),
            working=os.path.join(root, "photos"),
            thumbnails=os.path.join(root, "thumbnails"),
            temp=os.path.join(root, "temp"),
        )

    def all(self) -> List[str]:
        return [self.originals, self.working, self.thumbnails, self.temp]


@dataclass(frozen=True)
class FileInfo:
    exists: bool
    size: int = 0
    mtime: Optional[float] = None


def original_filename(item_id: str, ext: str) -> str:
    return f"orig_{item_id}.{ext.lstrip('.')}"


def working_filename(item_id: str, ext: str) -> str:
    return f"{item_id}.{ext.lstrip('.')}"


def thumbnail_filename(item_id: str) -> str:
    return f"thumb_{item_id}.jpg"


class ImmutableEvidenceStore:
    def __init__(self, root: Optional[str] = None, thumbnail_width: Optional[int] = None,
                 thumbnail_quality: Optional[int] = None):
        self.paths = StoragePaths.under(root or settings.STORAGE_ROOT)
        self.thumbnail_width = thumbnail_width or settings.THUMBNAIL_WIDTH
        self.thumbnail_quality = thumbnail_quality or settings.THUMBNAIL_QUALITY

    def ensure_directories(self) -> None:
        for directory in self.paths.all():
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Could not create {directory}: {e}") from e

    # Path builders

    def original_path(self, filename: str) -> str:
        return os.path.join(self.paths.originals, os.path.basename(filename))

    def working_path(self, filename: str) -> str:
        return os.path.join(self.paths.working, os.path.basename(filename))

    def thumbnail_path(self, item_id: str) -> str:
        return os.path.join(self.paths.thumbnails, thumbnail_filename(item_id))

    def temp_path(self, name: str) -> str:
        return os.path.join(self.paths.temp, os.path.basename(name))

    def is_original(self, path: str) -> bool:
        originals = os.path.realpath(self.paths.originals)
        return os.path.commonpath([originals, os.path.realpath(path)]) == originals

    # Originals: write once, read many

    def write_original(self, data: bytes, filename: str) -> str:
        """Write captured bytes to originals/ exactly once and mark read-only."""
        path = self.original_path(filename)
        try:
            os.makedirs(self.paths.originals, exist_ok=True)
        except OSError as e:
            raise OriginalWriteError(f"Could not create originals directory: {e}") from e

        try:
            with open(path, "xb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except FileExistsError as e:
            raise OriginalWriteError(f"Original already exists and is immutable: {filename}") from e
        except OSError as e:
            raise OriginalWriteError(f"Failed to write original {filename}: {e}") from e

        os.chmod(path, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
        logger.info(f"Original stored: {filename} ({len(data)} bytes)")
        return path

    def read_original(self, filename: str) -> bytes:
        path = self.original_path(filename)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Could not read original {filename}: {e}") from e

    # Working copies and thumbnails: mutable derivatives

    def write_working(self, data: bytes, filename: str) -> Optional[str]:
        path = self.working_path(filename)
        try:
            os.makedirs(self.paths.working, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.warning(f"Working copy write failed for {filename} (non-fatal): {e}")
            return None
        return path

    def derive_thumbnail(self, source_path: str, item_id: str, media_kind: str = "image") -> str:
        """Create thumb_{id}.jpg; on any failure return the source path instead."""
        dest = self.thumbnail_path(item_id)
        if os.path.exists(dest):
            return dest
        try:
            os.makedirs(self.paths.thumbnails, exist_ok=True)
            if media_kind == "video":
                return media_utils.create_video_thumbnail(
                    source_path, dest, self.thumbnail_width, self.thumbnail_quality
                )
            return media_utils.create_image_thumbnail(
                source_path, dest, self.thumbnail_width, self.thumbnail_quality
            )
        except Exception as e:
            logger.warning(f"Thumbnail generation failed for {item_id} (non-fatal): {e}")
            return source_path

    def delete_derivatives(self, working_name: str, item_id: str) -> List[str]:
        """Remove working copy variants and the thumbnail of one item."""
        stem, ext = os.path.splitext(os.path.basename(working_name))
        candidates = [self.working_path(f"{stem}{suffix}{ext}") for suffix in DERIVATIVE_SUFFIXES]
        candidates.append(self.thumbnail_path(item_id))

        removed = []
        for path in candidates:
            if self.is_original(path):
                logger.error(f"Refusing to delete inside originals/: {path}")
                continue
            if os.path.exists(path):
                try:
                    os.remove(path)
                    removed.append(path)
                except OSError as e:
                    logger.warning(f"Could not delete derivative {path} (non-fatal): {e}")
        return removed

    # Temp staging

    def write_temp(self, data: bytes, name: str) -> str:
        os.makedirs(self.paths.temp, exist_ok=True)
        path = self.temp_path(name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def discard_temp(self, path: str) -> None:
        if self.is_original(path):
            raise StorageError(f"Refusing to discard an original: {path}")
        if os.path.exists(path):
            os.remove(path)

    def cleanup_temp(self, max_age_hours: Optional[int] = None) -> int:
        max_age = (max_age_hours if max_age_hours is not None else settings.TEMP_MAX_AGE_HOURS) * 3600
        if not os.path.isdir(self.paths.temp):
            return 0
        cutoff = time.time() - max_age
        removed = 0
        for entry in os.scandir(self.paths.temp):
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                try:
                    os.remove(entry.path)
                    removed += 1
                except OSError as e:
                    logger.warning(f"Temp cleanup failed for {entry.path}: {e}")
        if removed:
            logger.info(f"Cleaned {removed} stale temp files")
        return removed

    # Inspection

    def file_info(self, path: str) -> FileInfo:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return FileInfo(exists=False)
        except OSError as e:
            logger.warning(f"stat failed for {path}: {e}")
            return FileInfo(exists=False)
        return FileInfo(exists=True, size=st.st_size, mtime=st.st_mtime)

    def storage_usage(self) -> dict:
        usage = {}
        for name, directory in (
            ("originals", self.paths.originals),
            ("working", self.paths.working),
            ("thumbnails", self.paths.thumbnails),
            ("temp", self.paths.temp),
        ):
            total = 0
            count = 0
            if os.path.isdir(directory):
                for entry in os.scandir(directory):
                    if entry.is_file():
                        total += entry.stat().st_size
                        count += 1
            usage[name] = {"files": count, "bytes": total}
        return usage
