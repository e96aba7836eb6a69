from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_API_URL = "http://localhost:3000/api/v1"


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class PortalSettings:
    api_url: str = DEFAULT_API_URL
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 8.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    audit_db_path: str = str(Path(__file__).resolve().parents[1] / "teleconsult-audit.sqlite")
    log_level: str = "INFO"
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_env(cls) -> PortalSettings:
        defaults = cls()
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        return cls(
            api_url=(os.getenv("TELECONSULT_API_URL") or defaults.api_url).rstrip("/"),
            timeout_seconds=_env_float("TELECONSULT_TIMEOUT_SECONDS", defaults.timeout_seconds),
            connect_timeout_seconds=_env_float(
                "TELECONSULT_CONNECT_TIMEOUT_SECONDS", defaults.connect_timeout_seconds
            ),
            max_attempts=max(1, _env_int("TELECONSULT_MAX_ATTEMPTS", defaults.max_attempts)),
            backoff_seconds=max(0.0, _env_float("TELECONSULT_BACKOFF_SECONDS", defaults.backoff_seconds)),
            audit_db_path=os.getenv("TELECONSULT_AUDIT_DB_PATH", defaults.audit_db_path),
            log_level=(os.getenv("TELECONSULT_LOG_LEVEL") or defaults.log_level).upper(),
            allowed_origins=[origin.strip() for origin in origins if origin.strip()],
        )
