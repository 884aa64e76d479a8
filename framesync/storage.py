"""Durable key/value storage backing the secret vault."""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    def get_item(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def remove_item(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local storage, mainly for tests and sandbox runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._items)


class FileKeyValueStore(KeyValueStore):
    """JSON-file persistence with atomic replacement on every write."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Storage file {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"Storage file {self._path} must contain a JSON object")
        return {str(key): str(value) for key, value in payload.items()}

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._load()
            items[key] = str(value)
            _atomic_write(self._path, json.dumps(items, indent=2, sort_keys=True))
        logger.debug("Persisted storage item", extra={"key": key, "path": str(self._path)})

    def remove_item(self, key: str) -> None:
        with self._lock:
            items = self._load()
            if items.pop(key, None) is None:
                return
            _atomic_write(self._path, json.dumps(items, indent=2, sort_keys=True))


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as f:
            f.write(content)
            f.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise


__all__ = ["KeyValueStore", "InMemoryKeyValueStore", "FileKeyValueStore"]
