"""Tests for the playlistz command-line interface."""

from __future__ import annotations

import asyncio
import json

import pytest

import playlistz.cli as cli_module
from playlistz import __version__
from playlistz.services.fake_broadcast import LocalBroadcastBus
from playlistz.services.library import PlaylistLibrary
from playlistz.services.object_store import reset_store_cache


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point settings and logs at tmp_path and keep root logging untouched."""
    captured: dict[str, object] = {}

    def fake_setup_logging(*, log_dir, level, log_file):
        captured["log_dir"] = log_dir
        captured["level"] = level
        captured["log_file"] = log_file
        return log_dir / "playlistz.log"

    monkeypatch.setattr(cli_module, "settings_path", lambda: tmp_path / "settings.json")
    monkeypatch.setattr(cli_module, "log_dir", lambda: tmp_path / "logs")
    monkeypatch.setattr(cli_module, "setup_logging", fake_setup_logging)
    return captured


def _seed(db_path) -> None:
    async def _exercise() -> None:
        library = await PlaylistLibrary.open(
            db_path, channel=LocalBroadcastBus().channel()
        )
        await library.create_playlist("Mix", playlist_id="p1")
        await library.add_song_to_playlist("p1", b"audio", "tune.mp3")
        await library.aclose()

    asyncio.run(_exercise())
    reset_store_cache()


def test_parser_requires_a_command() -> None:
    parser = cli_module.build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args([])
    args = parser.parse_args(["--verbose", "import", "bundle", "--no-load"])
    assert args.command == "import"
    assert args.source == "bundle"
    assert args.no_load is True


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit):
        cli_module.build_parser().parse_args(["--version"])
    assert __version__ in capsys.readouterr().out


def test_export_import_list(tmp_path, cli_env, capsys) -> None:
    source_db = tmp_path / "source.sqlite"
    target_db = tmp_path / "target.sqlite"
    bundle_dir = tmp_path / "bundle"
    _seed(source_db)

    assert cli_module.main(["--db", str(source_db), "export", "p1", str(bundle_dir)]) == 0
    manifest = json.loads((bundle_dir / "playlist.json").read_text(encoding="utf-8"))
    assert manifest["playlist"]["rev"] == 1
    assert (bundle_dir / "tune.mp3").read_bytes() == b"audio"

    assert cli_module.main(["--db", str(target_db), "import", str(bundle_dir)]) == 0
    out = capsys.readouterr().out
    assert "Imported 'Mix' rev 1 with 1 song(s)." in out
    assert "Loaded 1 payload(s), 0 failed." in out

    assert cli_module.main(["--db", str(target_db), "import", str(bundle_dir)]) == 0
    assert "nothing to import" in capsys.readouterr().out

    assert cli_module.main(["--db", str(target_db), "list"]) == 0
    out = capsys.readouterr().out
    assert "Playlists" in out
    assert "Mix" in out


def test_import_without_load_then_load(tmp_path, cli_env, capsys) -> None:
    source_db = tmp_path / "source.sqlite"
    target_db = tmp_path / "target.sqlite"
    bundle_dir = tmp_path / "bundle"
    _seed(source_db)
    assert cli_module.main(["--db", str(source_db), "export", "p1", str(bundle_dir)]) == 0

    args = ["--db", str(target_db), "import", str(bundle_dir), "--no-load"]
    assert cli_module.main(args) == 0
    assert "Loaded" not in capsys.readouterr().out

    (bundle_dir / "tune.mp3").unlink()
    assert cli_module.main(["--db", str(target_db), "load", "p1", str(bundle_dir)]) == 2
    assert "0 payload(s), 1 failed" in capsys.readouterr().out


def test_errors_return_nonzero(tmp_path, cli_env, capsys) -> None:
    db = str(tmp_path / "library.sqlite")

    assert cli_module.main(["--db", db, "import", str(tmp_path / "missing")]) == 1
    assert "Error: Cannot read bundle file" in capsys.readouterr().err

    assert cli_module.main(["--db", db, "export", "nope", str(tmp_path / "out")]) == 1
    assert "Error: Playlist nope does not exist." in capsys.readouterr().err


def test_log_level_and_file_flags(tmp_path, cli_env) -> None:
    db = str(tmp_path / "library.sqlite")
    log_file = tmp_path / "cli.log"

    args = ["--verbose", "--quiet", "--log-file", str(log_file), "--db", db, "list"]
    assert cli_module.main(args) == 0
    assert cli_env["level"] == "WARNING"
    assert cli_env["log_file"] == log_file

    (tmp_path / "settings.json").write_text('{"log_level": "debug"}', encoding="utf-8")
    assert cli_module.main(["--db", db, "list"]) == 0
    assert cli_env["level"] == "DEBUG"
    assert cli_env["log_file"] is None


def test_settings_notice_is_printed(tmp_path, cli_env, capsys) -> None:
    (tmp_path / "settings.json").write_text("{broken", encoding="utf-8")
    assert cli_module.main(["--db", str(tmp_path / "library.sqlite"), "list"]) == 0
    assert "Settings were reset to defaults." in capsys.readouterr().err


def test_unexpected_errors_hit_safety_net(tmp_path, cli_env, monkeypatch, capsys) -> None:
    def fail_setup_logging(**kwargs):
        del kwargs
        raise OSError("cannot open log")

    monkeypatch.setattr(cli_module, "setup_logging", fail_setup_logging)

    assert cli_module.main(["--db", str(tmp_path / "library.sqlite"), "list"]) == 1
    assert "Unexpected error." in capsys.readouterr().err


def test_source_selects_fetcher(tmp_path) -> None:
    settings = cli_module.LibrarySettings(fetch_timeout_s=3.0)
    http = cli_module._fetcher_for("https://cdn.example.test/p1", settings)
    local = cli_module._fetcher_for(str(tmp_path), settings)
    assert isinstance(http, cli_module.HttpFetcher)
    assert isinstance(local, cli_module.FileFetcher)
    assert local.base_dir == tmp_path
