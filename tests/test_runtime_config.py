"""Tests for runtime config precedence behavior."""

from __future__ import annotations

from playlistz.cli import build_parser
from playlistz.runtime_config import normalize_log_level, resolve_log_level


def test_resolve_log_level_precedence_matrix() -> None:
    assert resolve_log_level(verbose=False, quiet=False) == "INFO"
    assert resolve_log_level(verbose=True, quiet=False) == "DEBUG"
    assert resolve_log_level(verbose=False, quiet=True) == "WARNING"
    assert resolve_log_level(verbose=True, quiet=True) == "WARNING"


def test_configured_default_applies_without_flags() -> None:
    assert resolve_log_level(verbose=False, quiet=False, default="error") == "ERROR"
    assert resolve_log_level(verbose=True, quiet=False, default="ERROR") == "DEBUG"


def test_normalize_log_level_falls_back_to_info() -> None:
    assert normalize_log_level(" warning ") == "WARNING"
    assert normalize_log_level("loud") == "INFO"


def test_parser_flags_feed_log_resolution() -> None:
    args = build_parser().parse_args(["--verbose", "--quiet", "list"])
    assert resolve_log_level(verbose=args.verbose, quiet=args.quiet) == "WARNING"
