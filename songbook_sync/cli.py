"""
Command-line interface for songbook-sync.

This module implements the CLI using Click, exposing the engine's public
API for inspection and maintenance. rich-click is used for the help colors.

Commands:
    songbook songs                      All songs the role may read
    songbook collection <id>            Songs of one collection
    songbook page                       One page of the legacy partition
    songbook page --all                 Walk every page
    songbook search <term>              Search title, number and lyrics
    songbook song <number>              One song by number
    songbook collections                Collection metadata
    songbook refresh [--force]          Refresh the cache
    songbook clear-cache                Wipe cache and sync metadata
    songbook reset                      Emergency reset (wipe + forced refresh)
    songbook stats                      Cache statistics

Global options:
    --config <path>                     songbook.yaml to use
    --role <role>                       Actor role (guest, user, premium, admin, superadmin)
    --log-dir <path>                    Also write log files there
    --verbose                           Show debug output

Configuration:
    songbook.yaml in the current directory is optional; without it the
    engine runs on defaults (and offline unless SONGBOOK_DATABASE_URL is set).
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import rich_click as click
from tqdm import tqdm

# Configure rich-click for better help formatting
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100

from songbook_sync import __version__
from songbook_sync.context import SongbookContext
from songbook_sync.core import (
    ConfigError,
    SongbookSyncError,
    get_logger,
    load_config,
    setup_logging,
    shutdown_logging,
)
from songbook_sync.core.logger import format_source_message
from songbook_sync.models import ActorRole, Song, SongsResult


logger = get_logger(__name__)

T = TypeVar("T")


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    metavar="<songbook.yaml>",
    help="Configuration file (default: ./songbook.yaml if present)"
)
@click.option(
    "--role",
    type=click.Choice(ActorRole.names(), case_sensitive=False),
    default="guest",
    show_default=True,
    help="Actor role used for access checks"
)
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    metavar="<dir>",
    help="Write sync_full/sync_errors/degraded_reads logs to this directory"
)
@click.option(
    "--verbose",
    is_flag=True,
    help="Show debug output"
)
@click.version_option(__version__, prog_name="songbook")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    role: str,
    log_dir: Optional[Path],
    verbose: bool
) -> None:
    """
    songbook: offline-first song cache.

    Reads songs from the remote database when reachable, from the local
    cache otherwise, and from the bundled snapshot as a last resort.

    \b
    EXAMPLES:
        songbook songs --limit 10
        songbook --role premium collection LPMI
        songbook page --size 20 --cursor 40
        songbook refresh --force
    """
    setup_logging(log_dir, verbose=verbose)
    ctx.call_on_close(shutdown_logging)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        logger.error(f"Configuration error: {e.message}")
        if e.details:
            logger.debug(f"Details: {e.details}")
        sys.exit(1)

    ctx.obj = {"config": config, "role": role}


def _run(ctx: click.Context, operation: Callable[[SongbookContext], Awaitable[T]]) -> T:
    """
    Run one async operation inside a started SongbookContext.

    Exits with status 1 on engine errors instead of printing a traceback.
    """

    async def _main() -> T:
        async with SongbookContext(ctx.obj["config"]) as songbook:
            return await operation(songbook)

    try:
        return asyncio.run(_main())
    except SongbookSyncError as e:
        logger.error(e.message)
        logger.debug(f"Details: {e.details}")
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted", err=True)
        sys.exit(130)


def _print_song_line(song: Song) -> None:
    scope = f" [{song.collection_id}]" if song.collection_id else ""
    click.echo(f"{song.number:>5}  {song.title}{scope}")


def _print_result(operation: str, result: SongsResult, limit: int | None) -> None:
    songs = result.songs if limit is None else result.songs[:limit]
    for song in songs:
        _print_song_line(song)
    if limit is not None and len(result.songs) > limit:
        click.echo(f"  ... {len(result.songs) - limit} more")
    logger.info(format_source_message(operation, result.source.value, len(result.songs)))
    if not result.is_online:
        logger.warning("Remote store not reachable, showing offline data")


@cli.command()
@click.option("--limit", type=int, default=None, help="Show at most this many songs")
@click.pass_context
def songs(ctx: click.Context, limit: Optional[int]) -> None:
    """List every song the role may read."""
    role = ctx.obj["role"]
    result = _run(ctx, lambda songbook: songbook.get_all_songs(role))
    _print_result("songs", result, limit)
    if result.active_collections:
        logger.info(
            f"Collections: {', '.join(result.active_collections)} "
            f"({result.collection_count} songs), legacy: {result.legacy_count} songs"
        )


@cli.command()
@click.argument("collection_id")
@click.option("--limit", type=int, default=None, help="Show at most this many songs")
@click.option("--retries", type=int, default=1, show_default=True, help="Attempts while empty")
@click.pass_context
def collection(ctx: click.Context, collection_id: str, limit: Optional[int], retries: int) -> None:
    """List the songs of one collection."""
    role = ctx.obj["role"]
    result = _run(
        ctx,
        lambda songbook: songbook.get_collection_with_retry(collection_id, role, max(1, retries))
    )
    _print_result(f"collection {collection_id}", result, limit)


@cli.command()
@click.option("--size", "page_size", type=click.IntRange(min=1), default=20, show_default=True)
@click.option("--cursor", type=str, default=None, help="next_cursor of the previous page")
@click.option("--all", "walk_all", is_flag=True, help="Walk every page and print a summary")
@click.pass_context
def page(ctx: click.Context, page_size: int, cursor: Optional[str], walk_all: bool) -> None:
    """Page through the legacy song partition in key order."""
    role = ctx.obj["role"]

    if not walk_all:
        result = _run(ctx, lambda songbook: songbook.get_paginated_songs(page_size, cursor, role))
        for song in result.songs:
            _print_song_line(song)
        if result.has_more:
            click.echo(f"Next cursor: {result.next_cursor}")
        else:
            click.echo("Last page")
        return

    async def _walk(songbook: SongbookContext) -> tuple[int, int]:
        total = pages = 0
        next_cursor = cursor
        with tqdm(unit=" songs", desc="Paging") as progress:
            while True:
                result = await songbook.get_paginated_songs(page_size, next_cursor, role)
                pages += 1
                total += len(result.songs)
                progress.update(len(result.songs))
                if not result.has_more:
                    return total, pages
                next_cursor = result.next_cursor

    total, pages = _run(ctx, _walk)
    logger.info(f"Visited {total} songs in {pages} pages")


@cli.command()
@click.argument("term")
@click.pass_context
def search(ctx: click.Context, term: str) -> None:
    """Search titles, numbers and lyrics."""
    role = ctx.obj["role"]
    result = _run(ctx, lambda songbook: songbook.search_songs(term, role))
    for song in result.songs:
        _print_song_line(song)
    logger.info(f"{len(result.songs)} matches for '{result.term}'")
    for scope, count in sorted(result.counts_by_collection.items()):
        logger.info(f"  {scope}: {count}")


@cli.command()
@click.argument("number")
@click.pass_context
def song(ctx: click.Context, number: str) -> None:
    """Show one song with its verses."""
    role = ctx.obj["role"]
    lookup = _run(ctx, lambda songbook: songbook.get_song_by_number(number, role))
    if lookup.song is None:
        logger.error(f"Song {number} not found")
        sys.exit(1)

    click.echo(f"{lookup.song.number}. {lookup.song.title}  ({lookup.found_in})")
    for verse in lookup.song.verses:
        click.echo(f"\n[{verse.label}]\n{verse.lyrics}")


@cli.command()
@click.pass_context
def collections(ctx: click.Context) -> None:
    """List collections the role may read."""
    role = ctx.obj["role"]
    items = _run(ctx, lambda songbook: songbook.get_accessible_collections(role))
    for item in items:
        status = "" if item.is_active else f" ({item.status.value})"
        click.echo(f"{item.id:<24} {item.name}  [{item.access_level.name.lower()}]{status}")
    logger.info(f"{len(items)} collections")


@cli.command()
@click.option("--force", is_flag=True, help="Ignore change detection and content hashes")
@click.pass_context
def refresh(ctx: click.Context, force: bool) -> None:
    """Refresh the cache from the remote store."""
    role = ctx.obj["role"]
    if force:
        outcome = _run(ctx, lambda songbook: songbook.force_refresh(role))
    else:
        outcome = _run(ctx, lambda songbook: songbook.refresh(role))

    logger.info(
        f"Refresh {outcome.status.value}: {outcome.songs_fetched} songs fetched, "
        f"{outcome.entries_written} entries written"
    )
    if not outcome.succeeded:
        sys.exit(1)


@cli.command("clear-cache")
@click.confirmation_option(prompt="Wipe the local song cache?")
@click.pass_context
def clear_cache(ctx: click.Context) -> None:
    """Wipe every cache entry and all sync metadata."""
    _run(ctx, lambda songbook: songbook.clear_cache())
    logger.info("Cache cleared")


@cli.command()
@click.confirmation_option(prompt="Wipe the cache and re-download everything?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Emergency reset: wipe the cache, then force a refresh."""
    role = ctx.obj["role"]
    outcome = _run(ctx, lambda songbook: songbook.emergency_reset(role))
    logger.info(f"Reset {outcome.status.value}: {outcome.entries_written} entries written")
    if not outcome.succeeded:
        sys.exit(1)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show cache statistics."""
    statistics = _run(ctx, lambda songbook: songbook.get_cache_statistics())
    data = statistics.to_dict()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    logger.info("=" * 60)
    logger.info("CACHE STATISTICS")
    logger.info("=" * 60)
    for key, value in data.items():
        logger.info(f"{key.replace('_', ' ').capitalize():<22} {value}")
    logger.info("=" * 60)


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `songbook` from the command line.
    """
    cli()


if __name__ == "__main__":
    main()
