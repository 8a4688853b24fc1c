"""
Key/value string storage used for best-effort local persistence.

Backend: a single JSON file (zero external dependencies), or an in-memory dict.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path

log = logging.getLogger(__name__)


class MemoryStorage:
    """Process-local store; nothing survives a restart."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class JsonFileStorage:
    """
    Stores every key in one JSON object on disk.

    Reads tolerate a missing or corrupt file (treated as empty); write failures
    are logged and reported through the return value, never raised.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load_raw(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as exc:
            log.warning("Storage file %s is corrupt or unreadable (%s); treating it as empty.", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            log.warning("Storage file %s does not hold an object; treating it as empty.", self.path)
            return {}
        return raw

    def _save_raw(self, data: dict[str, str]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            log.error("Could not write storage file %s: %s", self.path, exc)
            return False
        return True

    def get(self, key: str) -> str | None:
        value = self._load_raw().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> bool:
        data = self._load_raw()
        data[key] = value
        return self._save_raw(data)

    def remove(self, key: str) -> bool:
        data = self._load_raw()
        if key not in data:
            return False
        del data[key]
        return self._save_raw(data)
