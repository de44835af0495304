from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys

from dsm.domain.errors import ValidationError


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path
    exports_dir: Path


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "DealerSalesManager") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    exports = base / "exports"
    db = base / "sales.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)
    exports.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs, exports_dir=exports)


def _env_number(env: Mapping[str, str], name: str, default, cast):
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number. Received: {raw}") from exc
    if value < 0:
        raise ValidationError(f"{name} must be >= 0. Received: {raw}")
    return value


@dataclass(frozen=True)
class IntakeSettings:
    """Runtime settings for the intake workflow, read from DSM_* variables."""

    api_url: Optional[str] = None
    api_token: Optional[str] = None
    api_timeout: float = 10.0
    db_timeout: float = 5.0
    stock_retry_attempts: int = 3
    stock_retry_base_delay: float = 0.05
    customer_zone_id: int = 1
    stock_lock_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "IntakeSettings":
        env = os.environ if environ is None else environ
        attempts = _env_number(env, "DSM_STOCK_RETRY_ATTEMPTS", cls.stock_retry_attempts, int)
        if attempts < 1:
            raise ValidationError("DSM_STOCK_RETRY_ATTEMPTS must be >= 1.")
        return cls(
            api_url=(env.get("DSM_API_URL") or "").strip() or None,
            api_token=(env.get("DSM_API_TOKEN") or "").strip() or None,
            api_timeout=_env_number(env, "DSM_API_TIMEOUT", cls.api_timeout, float),
            db_timeout=_env_number(env, "DSM_DB_TIMEOUT", cls.db_timeout, float),
            stock_retry_attempts=attempts,
            stock_retry_base_delay=_env_number(env, "DSM_STOCK_RETRY_BASE_DELAY", cls.stock_retry_base_delay, float),
            customer_zone_id=_env_number(env, "DSM_CUSTOMER_ZONE_ID", cls.customer_zone_id, int),
            stock_lock_timeout=_env_number(env, "DSM_STOCK_LOCK_TIMEOUT", cls.stock_lock_timeout, float),
        )
