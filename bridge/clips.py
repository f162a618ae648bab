from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import quote

__all__ = [
    "VIDEO_EXTENSIONS",
    "ClipLibrary",
    "ClipRecord",
]

VIDEO_EXTENSIONS: tuple[str, ...] = (".avi", ".mp4")
DEFAULT_MAX_CLIPS = 5

log = logging.getLogger("bridge.clips")


@dataclass(slots=True)
class ClipRecord:
    """Representation of a single clip on disk."""

    name: str
    modified: float
    size_bytes: int


PruneCallback = Callable[[list[str], list[str]], None]


class ClipLibrary:
    """Flat directory of clips written by the board's recorder.

    Clip names are expected to start with a sortable timestamp, so reverse
    lexicographic order is newest first. Retention is applied whenever the
    directory is listed.
    """

    def __init__(
        self,
        root: Path,
        *,
        max_clips: int = DEFAULT_MAX_CLIPS,
        extensions: Iterable[str] = VIDEO_EXTENSIONS,
        on_pruned: PruneCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_clips < 0:
            raise ValueError("max_clips must not be negative")
        self.root = Path(root)
        self.max_clips = int(max_clips)
        self.extensions = tuple(extensions)
        self._on_pruned = on_pruned
        self._logger = logger or log

    def ensure_directory(self) -> None:
        if self.root.is_dir():
            return
        self.root.mkdir(parents=True, exist_ok=True)
        self._logger.info("Created clips directory at %s", self.root)

    def is_clip_name(self, name: str) -> bool:
        return name.endswith(self.extensions)

    def _clip_paths(self) -> list[Path]:
        paths: list[Path] = []
        for entry in self.root.iterdir():
            if not self.is_clip_name(entry.name):
                continue
            if not entry.is_file():
                continue
            paths.append(entry)
        return paths

    def scan(self) -> list[ClipRecord]:
        """Return a record for every clip currently in the directory.

        Raises ``OSError`` if the directory cannot be read.
        """
        records: list[ClipRecord] = []
        for path in self._clip_paths():
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            records.append(ClipRecord(name=path.name, modified=st.st_mtime, size_bytes=st.st_size))
        return records

    def prune_old_clips(self, max_count: int | None = None) -> list[str]:
        """Delete the oldest clips beyond ``max_count``; return the deleted names.

        Best effort: listing and delete failures are logged and skipped.
        """
        limit = self.max_clips if max_count is None else int(max_count)
        if limit < 0:
            raise ValueError("max_count must not be negative")

        try:
            records = self.scan()
        except OSError as exc:
            self._logger.error("Error pruning clips: %s", exc)
            return []

        if len(records) <= limit:
            return []

        # Oldest first
        records.sort(key=lambda record: (record.modified, record.name))
        extra = len(records) - limit

        deleted: list[str] = []
        for record in records[:extra]:
            try:
                (self.root / record.name).unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                self._logger.error("Failed to delete clip %s: %s", record.name, exc)
                continue
            deleted.append(record.name)
            self._logger.info("Pruned old clip: %s", record.name)
        return deleted

    def clip_names(self) -> list[str]:
        return sorted((path.name for path in self._clip_paths()), reverse=True)

    def list_clips(self) -> list[str]:
        """Apply retention, then return clip names newest first.

        ``on_pruned(deleted, remaining)`` runs when retention removed files.
        Blocking; call through ``asyncio.to_thread`` from the loop.
        """
        deleted = self.prune_old_clips()
        names = self.clip_names()
        if deleted and self._on_pruned is not None:
            self._on_pruned(deleted, names)
        return names

    @staticmethod
    def clip_url(name: str) -> str:
        return f"/clips/{quote(name, safe='')}"
