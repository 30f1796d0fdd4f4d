"""Command-line interface for playlistz."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections import Counter
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress
from rich.table import Table

from . import __version__
from .errors import BundleFormatError, PayloadFetchFailed, PlaylistzError
from .logging_utils import setup_logging
from .models import SONGS, Song
from .paths import log_dir, resolve_db_path, settings_path
from .runtime_config import resolve_log_level
from .services.bundle import (
    BUNDLE_FILENAME,
    parse_bundle_json,
    read_bundle_file,
    write_bundle_dir,
)
from .services.library import PlaylistLibrary
from .services.payload_fetch import FileFetcher, HttpFetcher
from .services.payload_loader import LoadProgress, PendingLoadResult
from .settings_store import LibrarySettings, load_settings_with_notice
from .utils.async_utils import run_blocking

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="playlistz", description="Manage a local playlist library."
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--quiet", action="store_true", help="Only show warnings and errors"
    )
    parser.add_argument("--log-file", help="Write logs to a file path")
    parser.add_argument("--db", help="Library database path (overrides settings)")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="List playlists in the library")
    import_cmd = commands.add_parser(
        "import", help="Import a bundle (directory or URL containing playlist.json)"
    )
    import_cmd.add_argument("source", help="Bundle directory or http(s) base URL")
    import_cmd.add_argument(
        "--no-load",
        action="store_true",
        help="Only merge metadata; leave payloads pending",
    )
    export_cmd = commands.add_parser(
        "export", help="Export a playlist (bumps its revision) to a directory"
    )
    export_cmd.add_argument("playlist_id")
    export_cmd.add_argument("directory", help="Target directory")
    load_cmd = commands.add_parser(
        "load", help="Load pending payloads of a playlist from a bundle source"
    )
    load_cmd.add_argument("playlist_id")
    load_cmd.add_argument("source", help="Bundle directory or http(s) base URL")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()
    try:
        settings, notice = load_settings_with_notice(settings_path())
        level = resolve_log_level(
            verbose=args.verbose, quiet=args.quiet, default=settings.log_level
        )
        setup_logging(
            log_dir=log_dir(),
            level=level,
            log_file=Path(args.log_file) if args.log_file else None,
        )
        if notice:
            print(notice, file=sys.stderr)
        library_path = resolve_db_path(args.db, settings.db_path)
        logger.info("Starting playlistz %s against %s", args.command, library_path)
        return asyncio.run(_run_command(args, library_path, settings, console))
    except PlaylistzError as exc:
        logger.error("%s", exc, extra={"details": exc.details})
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # pragma: no cover - top-level safety net
        logger.exception("Unhandled error: %s", exc)
        print("Unexpected error. Re-run with --verbose for details.", file=sys.stderr)
        return 1


async def _run_command(
    args: argparse.Namespace,
    library_path: Path,
    settings: LibrarySettings,
    console: Console,
) -> int:
    fetcher: FileFetcher | HttpFetcher | None = None
    if args.command in ("import", "load"):
        fetcher = _fetcher_for(args.source, settings)
    library = await PlaylistLibrary.open(
        library_path, fetcher=fetcher, settings=settings
    )
    try:
        if args.command == "list":
            await _list_playlists(library, console)
        elif args.command == "import":
            assert fetcher is not None
            await _import_bundle(library, fetcher, args.no_load, console)
        elif args.command == "export":
            await _export_playlist(
                library, args.playlist_id, Path(args.directory), console
            )
        elif args.command == "load":
            result = await _load_pending(library, args.playlist_id, console)
            console.print(
                f"Loaded {result.loaded} payload(s), {result.failed} failed."
            )
            if result.failed:
                return 2
        return 0
    finally:
        await library.aclose()
        await library.store.close()


async def _list_playlists(library: PlaylistLibrary, console: Console) -> None:
    playlists = await library.list_playlists()
    songs = await library.store.get_all(SONGS, include_payloads=False)
    pending = Counter(
        song.playlist_id
        for song in songs
        if isinstance(song, Song) and song.needs_payload_load
    )
    table = Table(title="Playlists")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Songs", justify="right")
    table.add_column("Rev", justify="right")
    table.add_column("Pending", justify="right")
    for playlist in playlists:
        table.add_row(
            playlist.id,
            playlist.title,
            str(len(playlist.song_ids)),
            str(playlist.rev),
            str(pending.get(playlist.id, 0)),
        )
    console.print(table)


def _fetcher_for(source: str, settings: LibrarySettings) -> FileFetcher | HttpFetcher:
    if source.startswith(("http://", "https://")):
        return HttpFetcher(source, timeout_s=settings.fetch_timeout_s)
    return FileFetcher(Path(source).expanduser())


async def _import_bundle(
    library: PlaylistLibrary,
    fetcher: FileFetcher | HttpFetcher,
    no_load: bool,
    console: Console,
) -> None:
    if isinstance(fetcher, FileFetcher):
        bundle = await run_blocking(read_bundle_file, fetcher.base_dir)
    else:
        try:
            raw = await fetcher.fetch(BUNDLE_FILENAME)
        except PayloadFetchFailed as exc:
            raise BundleFormatError(
                f"Cannot fetch bundle file: {exc}", details=exc.details
            ) from exc
        bundle = parse_bundle_json(raw, source=BUNDLE_FILENAME)
    result = await library.import_bundle(bundle)
    if not result.changed:
        console.print(
            f"Playlist {result.playlist.title!r} is already at rev "
            f"{result.playlist.rev}; nothing to import."
        )
        return
    console.print(
        f"Imported {result.playlist.title!r} rev {result.playlist.rev} "
        f"with {len(result.songs)} song(s)."
    )
    if no_load:
        return
    loaded = await _load_pending(library, result.playlist.id, console)
    console.print(f"Loaded {loaded.loaded} payload(s), {loaded.failed} failed.")


async def _load_pending(
    library: PlaylistLibrary, playlist_id: str, console: Console
) -> PendingLoadResult:
    with Progress(console=console, transient=True) as progress:
        task_id = progress.add_task("Checking payloads", total=None)

        def _on_progress(update: LoadProgress) -> None:
            label = escape(update.title) if update.title else "payloads"
            progress.update(
                task_id,
                description=f"Loading {label}",
                completed=update.current,
                total=update.total,
            )

        return await library.load_pending(playlist_id, on_progress=_on_progress)


async def _export_playlist(
    library: PlaylistLibrary, playlist_id: str, directory: Path, console: Console
) -> None:
    exported = await library.export_bundle(playlist_id)
    written = await run_blocking(write_bundle_dir, exported, directory)
    console.print(
        f"Exported {exported.bundle.playlist.title!r} rev "
        f"{exported.bundle.playlist.rev} ({len(written)} file(s)) to {directory}"
    )


if __name__ == "__main__":
    raise SystemExit(main())
