"""Loading and validation of FrameSync configuration files."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Sequence

from framesync.audit import DEFAULT_REDACT_FIELDS, AuditSettings
from framesync.automation.models import to_money
from framesync.automation.permissions import DEFAULT_HIGH_VALUE_THRESHOLD
from framesync.telemetry import CommitPolicy
from framesync.vault.crypto import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS

logger = logging.getLogger(__name__)


@dataclass
class VaultConfig:
    path: Path = Path("framesync_vault.json")
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS


@dataclass
class PermissionConfig:
    """Grants of the user on whose behalf automated actions run."""

    user_id: str = "owner"
    grants: List[str] = field(default_factory=list)
    high_value_transfer_threshold: Decimal = DEFAULT_HIGH_VALUE_THRESHOLD
    require_unlocked_vault_for_high_risk: bool = True


@dataclass
class ExecutionConfig:
    dry_run: bool = False
    commit_credential_key: Optional[str] = None
    rules_file: Optional[Path] = None
    evaluation_interval_s: float = 0.0
    trigger_history_limit: int = 500
    commit: CommitPolicy = field(default_factory=CommitPolicy)


@dataclass
class AuthConfig:
    """Settings for session authentication in the web API."""

    secret_key: str
    users: Mapping[str, str]
    session_cookie_name: str = "framesync_session"
    https_only: bool = True


@dataclass
class SandboxLedgerConfig:
    """Seed balances for the in-memory account book."""

    accounts: Dict[str, Any] = field(default_factory=dict)
    goals: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FrameSyncConfig:
    vault: VaultConfig = field(default_factory=VaultConfig)
    permissions: PermissionConfig = field(default_factory=PermissionConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    audit: Optional[AuditSettings] = None
    auth: Optional[AuthConfig] = None
    sandbox: SandboxLedgerConfig = field(default_factory=SandboxLedgerConfig)
    debug: int = 1
    config_path: Optional[Path] = None


def _load_json(path: Path) -> Dict[str, Any]:
    """Return parsed JSON payload from ``path`` with helpful error messages."""

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _ensure_mapping(payload: Any, *, description: str) -> MutableMapping[str, Any]:
    """Return ``payload`` when it is a mapping, otherwise raise ``TypeError``."""

    if payload is None:
        return {}
    if isinstance(payload, MutableMapping):
        return payload
    if isinstance(payload, Mapping):
        return dict(payload)
    raise TypeError(f"{description} must be a JSON object, not {type(payload).__name__}.")


def _resolve_path_relative_to(base: Path, candidate: Any) -> Path:
    """Return an absolute path for ``candidate`` relative to ``base`` when required."""

    path = Path(str(candidate)).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    else:
        path = path.resolve()
    return path


def _coerce_bool(value: Any, default: bool = False) -> bool:
    """Return a boolean for ``value`` supporting common string representations."""

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"", "default", "auto"}:
            return default
        if lowered in {"1", "true", "yes", "on", "enabled", "enable"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled", "disable"}:
            return False
    return bool(value)


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_vault(raw: Mapping[str, Any], base_dir: Path) -> VaultConfig:
    vault = VaultConfig(path=_resolve_path_relative_to(base_dir, raw.get("path", VaultConfig.path)))
    if "kdf_iterations" in raw:
        try:
            vault.kdf_iterations = int(raw["kdf_iterations"])
        except (TypeError, ValueError) as exc:
            raise ValueError("Vault 'kdf_iterations' must be an integer.") from exc
    return vault


def _parse_permissions(raw: Mapping[str, Any]) -> PermissionConfig:
    grants_raw = raw.get("grants", [])
    if isinstance(grants_raw, (str, bytes)) or not isinstance(grants_raw, Sequence):
        raise TypeError("Permission 'grants' must be an array of grant names.")
    permissions = PermissionConfig(
        user_id=str(raw.get("user_id") or "owner"),
        grants=[str(grant).strip() for grant in grants_raw if str(grant).strip()],
        require_unlocked_vault_for_high_risk=_coerce_bool(
            raw.get("require_unlocked_vault_for_high_risk"), True
        ),
    )
    if "high_value_transfer_threshold" in raw:
        permissions.high_value_transfer_threshold = to_money(raw["high_value_transfer_threshold"])
    return permissions


def _non_negative_float(raw: Mapping[str, Any], key: str, default: float) -> float:
    if key not in raw:
        return default
    try:
        value = float(raw[key])
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Execution '{key}' must be a number.") from exc
    if value < 0:
        raise ValueError(f"Execution '{key}' must not be negative.")
    return value


def _positive_int(raw: Mapping[str, Any], key: str, default: int) -> int:
    if key not in raw:
        return default
    try:
        value = int(raw[key])
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Execution '{key}' must be an integer.") from exc
    if value < 1:
        raise ValueError(f"Execution '{key}' must be at least 1.")
    return value


def _parse_execution(raw: Mapping[str, Any], base_dir: Path) -> ExecutionConfig:
    rules_file = raw.get("rules_file")
    credential_key = raw.get("commit_credential_key")
    return ExecutionConfig(
        dry_run=_coerce_bool(raw.get("dry_run"), False),
        commit_credential_key=str(credential_key) if credential_key else None,
        rules_file=_resolve_path_relative_to(base_dir, rules_file) if rules_file else None,
        evaluation_interval_s=_non_negative_float(raw, "evaluation_interval_s", 0.0),
        trigger_history_limit=_positive_int(raw, "trigger_history_limit", 500),
        commit=CommitPolicy.from_mapping(_ensure_mapping(raw.get("commit"), description="Execution 'commit'")),
    )


def _parse_audit(raw: Optional[Mapping[str, Any]], base_dir: Path) -> Optional[AuditSettings]:
    if not raw:
        return None
    log_path = raw.get("log_path")
    if not log_path:
        raise ValueError("Audit configuration requires a 'log_path'.")
    redact_fields = raw.get("redact_fields") or DEFAULT_REDACT_FIELDS
    return AuditSettings(
        log_path=_resolve_path_relative_to(base_dir, log_path),
        enabled=_coerce_bool(raw.get("enabled"), True),
        redact_fields=tuple(str(item) for item in redact_fields),
    )


def _parse_auth(auth_raw: Optional[Mapping[str, Any]]) -> Optional[AuthConfig]:
    if not auth_raw:
        return None
    secret_key = auth_raw.get("secret_key")
    if not secret_key:
        raise ValueError("Authentication configuration requires a 'secret_key'.")
    users_raw = auth_raw.get("users")
    if not users_raw:
        raise ValueError("Authentication configuration requires at least one user entry.")
    if isinstance(users_raw, Mapping):
        users = {str(username): str(password) for username, password in users_raw.items()}
    else:
        users = {}
        for entry in users_raw:
            if not isinstance(entry, Mapping):
                raise TypeError(
                    "Authentication 'users' entries must be objects with 'username' and 'password_hash'."
                )
            username = entry.get("username")
            password_hash = entry.get("password_hash")
            if not username or not password_hash:
                raise ValueError(
                    "Authentication 'users' entries must include both 'username' and 'password_hash'."
                )
            users[str(username)] = str(password_hash)
    return AuthConfig(
        secret_key=str(secret_key),
        users=users,
        session_cookie_name=str(auth_raw.get("session_cookie_name", "framesync_session")),
        https_only=_coerce_bool(auth_raw.get("https_only"), True),
    )


def _parse_sandbox(raw: Mapping[str, Any]) -> SandboxLedgerConfig:
    accounts = _ensure_mapping(raw.get("accounts"), description="Sandbox 'accounts'")
    goals = _ensure_mapping(raw.get("goals"), description="Sandbox 'goals'")
    for goal_id, goal in goals.items():
        if not isinstance(goal, Mapping) or "target_amount" not in goal:
            raise ValueError(f"Sandbox goal '{goal_id}' must be an object with a 'target_amount'.")
    return SandboxLedgerConfig(accounts=dict(accounts), goals=dict(goals))


def apply_environment_overrides(config: FrameSyncConfig, env: Optional[Mapping[str, str]] = None) -> FrameSyncConfig:
    """Apply ``FRAMESYNC_*`` environment variables on top of ``config``."""

    env = os.environ if env is None else env
    vault_path = env.get("FRAMESYNC_VAULT_PATH")
    if vault_path:
        config.vault.path = Path(vault_path).expanduser().resolve()
    iterations = _env_int(env.get("FRAMESYNC_KDF_ITERATIONS"))
    if iterations is not None:
        config.vault.kdf_iterations = iterations
    threshold = env.get("FRAMESYNC_HIGH_VALUE_THRESHOLD")
    if threshold:
        try:
            config.permissions.high_value_transfer_threshold = to_money(threshold)
        except ValueError:
            logger.warning("Ignoring invalid FRAMESYNC_HIGH_VALUE_THRESHOLD")
    dry_run = _env_bool(env.get("FRAMESYNC_DRY_RUN"))
    if dry_run is not None:
        config.execution.dry_run = dry_run
    audit_log = env.get("FRAMESYNC_AUDIT_LOG")
    if audit_log:
        redact = config.audit.redact_fields if config.audit else DEFAULT_REDACT_FIELDS
        config.audit = AuditSettings(log_path=Path(audit_log).expanduser().resolve(), redact_fields=redact)
    commit_timeout = _env_float(env.get("FRAMESYNC_COMMIT_TIMEOUT"))
    if commit_timeout is not None and commit_timeout > 0:
        config.execution.commit = replace(config.execution.commit, timeout_s=commit_timeout)
    debug = _env_int(env.get("FRAMESYNC_DEBUG"))
    if debug is not None:
        config.debug = debug
    return config


def validate_config(
    payload: Mapping[str, Any],
    *,
    source_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> FrameSyncConfig:
    """Validate and normalise a configuration payload."""

    base_dir = source_path.parent.resolve() if source_path else Path.cwd()
    payload = _ensure_mapping(payload, description="FrameSync configuration")
    config = FrameSyncConfig(
        vault=_parse_vault(_ensure_mapping(payload.get("vault"), description="'vault'"), base_dir),
        permissions=_parse_permissions(_ensure_mapping(payload.get("permissions"), description="'permissions'")),
        execution=_parse_execution(_ensure_mapping(payload.get("execution"), description="'execution'"), base_dir),
        audit=_parse_audit(_ensure_mapping(payload.get("audit"), description="'audit'"), base_dir),
        auth=_parse_auth(_ensure_mapping(payload.get("auth"), description="'auth'")),
        sandbox=_parse_sandbox(_ensure_mapping(payload.get("sandbox"), description="'sandbox'")),
        debug=int(payload.get("debug", 1)),
        config_path=source_path,
    )
    apply_environment_overrides(config, env)
    if config.vault.kdf_iterations < MIN_KDF_ITERATIONS:
        raise ValueError(f"Vault 'kdf_iterations' must be at least {MIN_KDF_ITERATIONS}.")
    return config


def load_config(path: Path | str, *, env: Optional[Mapping[str, str]] = None) -> FrameSyncConfig:
    """Load and validate a configuration file from disk."""

    resolved = Path(path).expanduser().resolve()
    payload = _load_json(resolved)
    return validate_config(
        _ensure_mapping(payload, description="FrameSync configuration"), source_path=resolved, env=env
    )


__all__ = [
    "AuthConfig",
    "ExecutionConfig",
    "FrameSyncConfig",
    "PermissionConfig",
    "SandboxLedgerConfig",
    "VaultConfig",
    "apply_environment_overrides",
    "load_config",
    "validate_config",
]
