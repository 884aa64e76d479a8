"""Append-only, hash-chained audit trail."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

DEFAULT_REDACT_FIELDS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "private_key",
    "credential",
)


@dataclass(frozen=True)
class AuditSettings:
    """Audit logging preferences loaded from the service configuration."""

    log_path: Path
    enabled: bool = True
    redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS


class AuditSink:
    """Protocol-like base class for audit sinks."""

    def write(self, payload: str) -> None:  # pragma: no cover - interface method
        raise NotImplementedError


class FileAuditSink(AuditSink):
    """Persist audit records to a JSONL file on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def bootstrap_hash(self) -> str:
        """Return the last stored hash from the log file, if any."""

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                last_line = ""
                for line in handle:
                    line = line.strip()
                    if line:
                        last_line = line
        except FileNotFoundError:
            return GENESIS_HASH
        except OSError as exc:  # pragma: no cover - unexpected filesystem failure
            logger.warning("Unable to read audit log %s: %s", self._path, exc)
            return GENESIS_HASH
        if not last_line:
            return GENESIS_HASH
        try:
            payload = json.loads(last_line)
        except json.JSONDecodeError:  # pragma: no cover - corrupted payload
            logger.error("Encountered invalid JSON in audit log %s", self._path)
            return GENESIS_HASH
        return str(payload.get("hash") or GENESIS_HASH)

    def write(self, payload: str) -> None:
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(payload)


def _canonical_payload(record: Mapping[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)


class AuditLogWriter:
    """Append-only audit writer that maintains a hash chain."""

    def __init__(
        self,
        *,
        file_sink: FileAuditSink,
        redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS,
        extra_sinks: Sequence[AuditSink] = (),
    ) -> None:
        self._file_sink = file_sink
        self._sinks = [file_sink, *extra_sinks]
        self._lock = threading.Lock()
        self._redact_keys = {self._normalise_key(field) for field in redact_fields}
        self._last_hash = file_sink.bootstrap_hash()

    @staticmethod
    def _normalise_key(key: str) -> str:
        return key.replace(" ", "").replace("-", "_").lower()

    def _redact(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            redacted: Dict[str, Any] = {}
            for key, item in value.items():
                norm_key = self._normalise_key(str(key))
                if any(field in norm_key for field in self._redact_keys):
                    redacted[str(key)] = "<redacted>"
                else:
                    redacted[str(key)] = self._redact(item)
            return redacted
        if isinstance(value, (list, tuple, set)):
            return [self._redact(item) for item in value]
        return value

    def log(self, action: str, actor: str, details: Mapping[str, Any] | None = None) -> str:
        """Append an audit record and return its hash."""

        if details is None:
            details = {}
        timestamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            base_record: Dict[str, Any] = {
                "timestamp": timestamp,
                "action": str(action),
                "actor": str(actor),
                "details": self._redact(dict(details)),
                "prev_hash": self._last_hash,
            }
            record_hash = sha256(_canonical_payload(base_record).encode("utf-8")).hexdigest()
            base_record["hash"] = record_hash
            payload = json.dumps(base_record, sort_keys=True, default=str) + "\n"
            for sink in self._sinks:
                try:
                    sink.write(payload)
                except OSError as exc:
                    logger.warning("Failed to write audit record via %s: %s", type(sink).__name__, exc)
            self._last_hash = record_hash
        return record_hash

    @property
    def log_path(self) -> Path:
        return self._file_sink.path

    @property
    def last_hash(self) -> str:
        return self._last_hash


def iter_audit_entries(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield parsed audit records from ``path``."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:  # pragma: no cover - corrupted entry
                    logger.warning("Skipping invalid audit record in %s", path)
    except FileNotFoundError:
        return


def read_audit_entries(
    path: Path,
    *,
    limit: Optional[int] = None,
    action: Optional[str] = None,
    actor: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """Return filtered audit entries from ``path`` respecting ``limit``."""

    action_norm = action.lower() if action else None
    actor_norm = actor.lower() if actor else None
    results: list[Dict[str, Any]] = []
    for entry in iter_audit_entries(path):
        if action_norm and str(entry.get("action", "")).lower() != action_norm:
            continue
        if actor_norm and str(entry.get("actor", "")).lower() != actor_norm:
            continue
        results.append(entry)
    if limit is not None:
        return results[-limit:] if limit > 0 else []
    return results


def verify_audit_chain(path: Path) -> Optional[int]:
    """Return the index of the first entry that breaks the hash chain.

    ``None`` means every record links to its predecessor and its stored hash
    matches its content.
    """

    previous = GENESIS_HASH
    for index, entry in enumerate(iter_audit_entries(path)):
        stored = entry.get("hash")
        body = {key: value for key, value in entry.items() if key != "hash"}
        if body.get("prev_hash") != previous:
            return index
        if sha256(_canonical_payload(body).encode("utf-8")).hexdigest() != stored:
            return index
        previous = str(stored)
    return None


_audit_registry: Dict[Path, AuditLogWriter] = {}
_registry_lock = threading.Lock()


def reset_audit_registry() -> None:
    """Reset the cached audit writers. Intended for tests only."""

    with _registry_lock:
        _audit_registry.clear()


def get_audit_logger(settings: Optional[AuditSettings]) -> Optional[AuditLogWriter]:
    """Return a cached :class:`AuditLogWriter` for ``settings``."""

    if settings is None or not settings.enabled:
        return None
    log_path = Path(settings.log_path)
    with _registry_lock:
        writer = _audit_registry.get(log_path)
        if writer is not None:
            return writer
        writer = AuditLogWriter(
            file_sink=FileAuditSink(log_path),
            redact_fields=settings.redact_fields,
        )
        _audit_registry[log_path] = writer
        return writer


__all__ = [
    "AuditLogWriter",
    "AuditSettings",
    "AuditSink",
    "FileAuditSink",
    "get_audit_logger",
    "iter_audit_entries",
    "read_audit_entries",
    "reset_audit_registry",
    "verify_audit_chain",
]
