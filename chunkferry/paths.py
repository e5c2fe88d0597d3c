"""Object path conventions.

Chunk objects:  {session_id}/{chunk_number}
Final objects:  {folder_path}/{YYYY}/{MM}/{DD}/{content_hash}/{file_name}

The content hash is always the second-to-last segment of a final path, so
the reconciler and delete-by-path can recover it without a catalog lookup.
"""

from __future__ import annotations

import posixpath
import re
from datetime import date

from pydantic import BaseModel

from .errors import InvalidArgumentError
from .types import FileHash, FileName

FINAL_PATH_PATTERN = re.compile(
    r"^(?P<folder>.+)/(?P<year>\d{4})/(?P<month>\d{2})/(?P<day>\d{2})"
    r"/(?P<hash>[a-zA-Z0-9_-]+)/(?P<name>[^/]+)$"
)


def chunk_path(session_id: str, chunk_number: int) -> str:
    """Store path of one chunk (1-based)."""
    return f"{session_id}/{chunk_number}"


def chunk_prefix(session_id: str) -> str:
    """Listing prefix covering every chunk of a session."""
    return f"{session_id}/"


def clean_folder_path(path: str) -> str:
    """Normalise a caller-supplied folder path and reject traversal.

    Raises:
        InvalidArgumentError: If the path is empty, absolute or escapes its root
    """
    if not path or not path.strip():
        raise InvalidArgumentError("Folder path must not be empty")
    if path.startswith("/") or path.startswith("\\"):
        raise InvalidArgumentError(f"Absolute folder paths are not allowed: {path}")

    cleaned = posixpath.normpath(path.replace("\\", "/"))
    if cleaned == "." or cleaned.startswith("/"):
        raise InvalidArgumentError(f"Invalid folder path: {path}")
    if ".." in cleaned.split("/"):
        raise InvalidArgumentError(f"Directory traversal is not allowed: {path}")
    return cleaned


def clean_file_name(name: str) -> str:
    """Validate an original file name (single segment, no traversal)."""
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise InvalidArgumentError(f"Invalid file name: {name!r}")
    return name


class FinalPath(BaseModel):
    """Deterministic location of a composed file.

    Format: {folder_path}/{YYYY}/{MM}/{DD}/{content_hash}/{file_name}
    Example: default/2025/08/12/abc123def456/file.txt
    """

    folder_path: str
    day: date
    content_hash: FileHash
    file_name: FileName

    def to_string(self) -> str:
        return "/".join(
            [
                self.folder_path,
                f"{self.day.year:04d}",
                f"{self.day.month:02d}",
                f"{self.day.day:02d}",
                self.content_hash,
                self.file_name,
            ]
        )

    @classmethod
    def build(
        cls, folder_path: str, content_hash: str, file_name: str, day: date
    ) -> FinalPath:
        return cls(
            folder_path=clean_folder_path(folder_path),
            day=day,
            content_hash=content_hash,
            file_name=clean_file_name(file_name),
        )

    @classmethod
    def from_string(cls, path: str) -> FinalPath:
        """Parse a final object path.

        Raises:
            InvalidArgumentError: If the path does not follow the final-path convention
        """
        match = FINAL_PATH_PATTERN.match(path)
        if not match:
            raise InvalidArgumentError(f"Not a final object path: {path}")

        # ValidationError is a ValueError too (bad date, over-long hash)
        try:
            return cls(
                folder_path=match.group("folder"),
                day=date(
                    int(match.group("year")),
                    int(match.group("month")),
                    int(match.group("day")),
                ),
                content_hash=match.group("hash"),
                file_name=match.group("name"),
            )
        except ValueError as e:
            raise InvalidArgumentError(f"Not a final object path: {path}") from e


def is_final_path(path: str) -> bool:
    """Whether a store path follows the final-object naming pattern."""
    try:
        FinalPath.from_string(path)
    except InvalidArgumentError:
        return False
    return True


def extract_hash(path: str) -> str | None:
    """Content hash embedded in a final path (second-to-last segment)."""
    parts = path.split("/")
    if len(parts) < 2 or not parts[-2]:
        return None
    return parts[-2]
