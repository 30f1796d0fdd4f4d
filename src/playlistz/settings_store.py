"""JSON persistence for library settings.

The store is tolerant of invalid/missing values so upgrades and partial or
corrupt writes degrade to safe defaults instead of aborting startup.
"""

from __future__ import annotations

import json
import logging
import math
import time
from contextlib import suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibrarySettings:
    """Persisted library settings; `db_path=None` means the per-user default."""

    db_path: str | None = None
    notice_poll_interval_s: float = 0.25
    notice_retention_s: float = 300.0
    fetch_timeout_s: float = 30.0
    load_concurrency: int = 4
    log_level: str = "INFO"


def _coerce_settings(data: dict[str, Any]) -> LibrarySettings:
    """Coerce an untyped JSON object into validated `LibrarySettings`."""

    def _positive_float(value: Any, default: float) -> float:
        if isinstance(value, bool):
            return default
        if isinstance(value, (int, float)):
            normalized = float(value)
            if math.isfinite(normalized) and normalized > 0:
                return normalized
        return default

    def _positive_int(value: Any, default: int) -> int:
        if isinstance(value, bool):
            return default
        if isinstance(value, int) and value > 0:
            return value
        return default

    def _str_or_default(value: Any, default: str) -> str:
        if isinstance(value, str):
            return value
        return default

    db_path = data.get("db_path")
    return LibrarySettings(
        db_path=db_path if isinstance(db_path, str) and db_path.strip() else None,
        notice_poll_interval_s=_positive_float(
            data.get("notice_poll_interval_s"), 0.25
        ),
        notice_retention_s=_positive_float(data.get("notice_retention_s"), 300.0),
        fetch_timeout_s=_positive_float(data.get("fetch_timeout_s"), 30.0),
        load_concurrency=_positive_int(data.get("load_concurrency"), 4),
        log_level=_str_or_default(data.get("log_level"), "INFO"),
    )


def load_settings_with_notice(path: Path) -> tuple[LibrarySettings, str | None]:
    """Load settings and return an optional user-facing notice."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Settings file missing at %s; using defaults.", path)
        return LibrarySettings(), None
    except OSError as exc:
        logger.warning(
            "Failed to read settings file %s: %s; using defaults.", path, exc
        )
        return (
            LibrarySettings(),
            "Settings were reset to defaults.\n"
            "Likely cause: settings file is unreadable due to permissions or IO issues.\n"
            f"Next step: verify access to '{path}' and retry.",
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Settings file at %s is invalid JSON; using defaults.", path)
        return (
            LibrarySettings(),
            "Settings were reset to defaults.\n"
            "Likely cause: settings file is corrupt or partially written.\n"
            f"Next step: remove or repair '{path}' and retry.",
        )

    if not isinstance(data, dict):
        logger.warning(
            "Settings file at %s is not a JSON object; using defaults.", path
        )
        return (
            LibrarySettings(),
            "Settings were reset to defaults.\n"
            "Likely cause: settings file format is invalid for this version.\n"
            f"Next step: remove '{path}' and retry.",
        )

    return _coerce_settings(data), None


def load_settings(path: Path) -> LibrarySettings:
    settings, _notice = load_settings_with_notice(path)
    return settings


def save_settings(path: Path, settings: LibrarySettings) -> None:
    """Persist settings atomically to disk via write-then-replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
    payload = json.dumps(asdict(settings), indent=2, sort_keys=True)
    delay_s = 0.02
    try:
        for attempt in range(4):
            tmp_path.write_text(payload, encoding="utf-8")
            try:
                tmp_path.replace(path)
                return
            except OSError as exc:
                if not _is_retryable_windows_replace_error(exc) or attempt >= 3:
                    raise
                time.sleep(delay_s)
                delay_s = min(0.25, delay_s * 2.0)
    finally:
        with suppress(OSError):
            tmp_path.unlink()


def _is_retryable_windows_replace_error(exc: OSError) -> bool:
    """Return whether an atomic replace failure is likely transient on Windows."""
    winerror = getattr(exc, "winerror", None)
    if winerror in {32, 5, 2}:
        return True
    errno = getattr(exc, "errno", None)
    if errno in {13, 16}:
        return True
    text = str(exc).lower()
    return "used by another process" in text or "permission denied" in text
