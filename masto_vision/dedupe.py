from __future__ import annotations

import json
import os
from pathlib import Path
from threading import Lock
from typing import Iterable

from .errors import StateError

DEFAULT_FILENAME = "already_parsed.json"


class ProcessedPostStore:
    """
    Set of status ids that have been fully handled, persisted as a JSON array.

    The lock is held only for in-memory reads and writes; ``persist`` snapshots
    the set under the lock and writes the file outside of it.
    """

    def __init__(self, path: str | Path, post_ids: Iterable[str] = ()) -> None:
        self._path = Path(path)
        self._ids: set[str] = {str(p) for p in post_ids}
        self._lock = Lock()

    @classmethod
    def load(cls, path: str | Path) -> "ProcessedPostStore":
        """
        Load the store from disk. A missing file is an empty store; anything that is
        not a JSON array of ids raises StateError.
        """
        p = Path(path)
        if not p.exists():
            return cls(p)

        try:
            raw_text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read processed posts file: {p}") from e

        try:
            data = json.loads(raw_text)
        except json.JSONDecodeError as e:
            raise StateError(f"Processed posts file is not valid JSON: {p}: {e}") from e

        if not isinstance(data, list):
            raise StateError(f"Processed posts file must contain a JSON array: {p}")

        ids: list[str] = []
        for item in data:
            if isinstance(item, bool) or not isinstance(item, (str, int)):
                raise StateError(f"Processed posts file contains a non-id entry: {item!r}")
            ids.append(str(item))

        return cls(p, ids)

    @property
    def path(self) -> Path:
        return self._path

    def contains(self, post_id: str) -> bool:
        with self._lock:
            return post_id in self._ids

    def mark_done(self, post_id: str) -> bool:
        """Add the id; returns False if it was already present."""
        with self._lock:
            if post_id in self._ids:
                return False
            self._ids.add(post_id)
            return True

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._ids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def persist(self) -> None:
        ids = self.snapshot()
        payload = json.dumps(ids, ensure_ascii=False)

        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            raise StateError(f"Failed to write processed posts file: {self._path}: {e}") from e
