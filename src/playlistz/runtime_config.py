"""Runtime configuration normalization helpers.

These helpers keep CLI flag interpretation deterministic across entrypoints.
"""

from __future__ import annotations

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def resolve_log_level(*, verbose: bool, quiet: bool, default: str = "INFO") -> str:
    """Resolve effective log level from CLI flags.

    Precedence is deterministic: --quiet overrides --verbose, and either flag
    overrides the configured default.
    """
    if quiet:
        return "WARNING"
    if verbose:
        return "DEBUG"
    return normalize_log_level(default)


def normalize_log_level(value: str) -> str:
    """Normalize a persisted level name; unknown names fall back to INFO."""
    normalized = value.strip().upper()
    if normalized in LOG_LEVELS:
        return normalized
    return "INFO"
