#!/usr/bin/env python3
"""Command line front end: play a stream with automatic recovery, manage cached playlists."""

import argparse
import asyncio
import datetime
import logging
import sys
import urllib.parse
from dataclasses import replace
from typing import List, Optional

from app_logging import setup_logging
from options import (
    cache_ttl_seconds,
    get_cache_db_path,
    load_config,
    save_config,
    session_config_from,
)
from playback_errors import ErrorClassification, describe_failure
from playback_session import Phase, PlaybackSession, SessionStatus
from playlist import ParseError, PlaylistCache, PlaylistFetchError, load_playlist
from providers import ProviderError, XtreamCodesClient, XtreamCodesConfig
from schedulers import AsyncioScheduler
from stream_utils import InputValidationError
from vlc_engine import VlcPlaybackEngine

_LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# play
# -----------------------------------------------------------------------------

def _print_status(status: SessionStatus) -> None:
    if status.phase is Phase.RECOVERING:
        print(f"Attempt {status.attempt_number}/{status.max_attempts}: retrying shortly...")
    elif status.phase is Phase.LOADING:
        print(f"Attempt {status.attempt_number}/{status.max_attempts}: {status.candidate_url}")


async def _play(args: argparse.Namespace, cfg: dict) -> int:
    loop = asyncio.get_running_loop()
    done: asyncio.Future = loop.create_future()

    config = session_config_from(cfg)
    overrides = {}
    if args.max_attempts is not None:
        overrides["max_attempts"] = args.max_attempts
    if args.timeout is not None:
        overrides["load_timeout"] = args.timeout
    if overrides:
        try:
            config = replace(config, **overrides)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    def finish(code: int) -> None:
        if not done.done():
            done.set_result(code)

    def on_success() -> None:
        print("Playing.")
        if args.duration:
            loop.call_later(args.duration, finish, 0)

    def on_failure(classification: ErrorClassification, attempts: int) -> None:
        print(describe_failure(classification, attempts), file=sys.stderr)
        finish(1)

    preflight = bool(cfg.get("preflight_check", True)) and not args.no_preflight
    engine = VlcPlaybackEngine(preflight=preflight)
    session = PlaybackSession(
        engine,
        AsyncioScheduler(loop),
        config,
        on_success=on_success,
        on_terminal_failure=on_failure,
        on_status=_print_status,
    )
    try:
        session.start(args.url)
    except InputValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        session.close()
        return 1
    try:
        return await done
    finally:
        session.close()


# -----------------------------------------------------------------------------
# playlists
# -----------------------------------------------------------------------------

def _open_cache(cfg: dict) -> PlaylistCache:
    return PlaylistCache(get_cache_db_path(), ttl_seconds=cache_ttl_seconds(cfg))


def _remember_source(cfg: dict, source: str) -> None:
    playlists: List[str] = list(cfg.get("playlists") or [])
    if source not in playlists:
        playlists.append(source)
        cfg["playlists"] = playlists
        save_config(cfg)


def _cmd_load(args: argparse.Namespace, cfg: dict) -> int:
    channels = load_playlist(args.source, timeout=args.timeout)
    cache = _open_cache(cfg)
    try:
        result = cache.save(channels, args.tag)
    finally:
        cache.close()
    _remember_source(cfg, args.source)
    print(f"Saved {result.count} channels as '{result.tag}'.")
    return 0


def _cmd_xtream(args: argparse.Namespace, cfg: dict) -> int:
    client = XtreamCodesClient(XtreamCodesConfig(base_url=args.host, username=args.username, password=args.password))
    channels = client.login()
    tag = args.tag or urllib.parse.urlparse(client.host).netloc or "xtream"
    cache = _open_cache(cfg)
    try:
        result = cache.save(channels, tag)
    finally:
        cache.close()
    print(f"{client.describe()}: saved {result.count} channels as '{result.tag}'.")
    return 0


def _cmd_list(args: argparse.Namespace, cfg: dict) -> int:
    cache = _open_cache(cfg)
    try:
        entries = cache.list_playlists()
    finally:
        cache.close()
    if not entries:
        print("No cached playlists.")
        return 0
    for entry in entries:
        saved = datetime.datetime.fromtimestamp(float(entry["timestamp"])).strftime("%Y-%m-%d %H:%M")
        flag = " (expired)" if entry["is_expired"] else ""
        print(f"{entry['tag']}\t{entry['count']} channels\tsaved {saved}{flag}")
    return 0


def _cmd_channels(args: argparse.Namespace, cfg: dict) -> int:
    cache = _open_cache(cfg)
    try:
        cached = cache.load(args.tag)
    finally:
        cache.close()
    if cached is None:
        print(f"No cached playlist named '{args.tag}'.", file=sys.stderr)
        return 1
    if cached.is_expired:
        print(f"Warning: playlist '{cached.tag}' is older than the cache TTL; reload it.", file=sys.stderr)
    for ch in cached.channels:
        group = f"[{ch.group}] " if ch.group else ""
        print(f"{group}{ch.name}\t{ch.url}")
    return 0


# -----------------------------------------------------------------------------
# entry point
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="iptv-player", description="Resilient IPTV stream player")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    play = sub.add_parser("play", help="Play a stream URL, recovering from failures")
    play.add_argument("url")
    play.add_argument("--timeout", type=float, help="Seconds to wait for each attempt to start")
    play.add_argument("--max-attempts", type=int, help="Total attempts before giving up")
    play.add_argument("--no-preflight", action="store_true", help="Skip the HTTP reachability check")
    play.add_argument("--duration", type=float, help="Stop after playing this many seconds")

    load = sub.add_parser("load", help="Load an M3U playlist (file, URL or direct stream) into the cache")
    load.add_argument("source")
    load.add_argument("--tag", default="default")
    load.add_argument("--timeout", type=int, default=30)

    xtream = sub.add_parser("xtream", help="Log in to an Xtream Codes panel and cache its live channels")
    xtream.add_argument("host")
    xtream.add_argument("username")
    xtream.add_argument("password")
    xtream.add_argument("--tag")

    sub.add_parser("list", help="List cached playlists")

    channels = sub.add_parser("channels", help="Show the channels of a cached playlist")
    channels.add_argument("tag", nargs="?", default="default")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=True if args.debug else None)
    cfg = load_config()

    try:
        if args.command == "play":
            return asyncio.run(_play(args, cfg))
        handlers = {
            "load": _cmd_load,
            "xtream": _cmd_xtream,
            "list": _cmd_list,
            "channels": _cmd_channels,
        }
        return handlers[args.command](args, cfg)
    except (ParseError, PlaylistFetchError, ProviderError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
