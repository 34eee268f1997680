"""Command-line entry point running ingest, profile enrichment and the local API."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

import uvicorn

from pymac.api import create_app
from pymac.config import DEFAULT_SETTINGS_PATH, Settings, SettingsError
from pymac.ingest import LogFileTransport, TelemetryIngest
from pymac.models import parse_steam_id64
from pymac.persistence import PersistenceError, StorageUnavailableError, VerdictStore
from pymac.reputation import ReputationCache, SteamWebClient
from pymac.roster import RosterManager
from pymac.service import RosterService


logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Track players in the current match and your verdicts on them")
    parser.add_argument(
        "--settings",
        type=Path,
        default=DEFAULT_SETTINGS_PATH,
        help="Settings JSON file (created on preference changes)",
    )
    parser.add_argument("--console-log", type=Path, default=None, help="Game console.log to follow")
    parser.add_argument("--db", type=Path, default=None, help="Verdict database path")
    parser.add_argument("--port", type=int, default=None, help="Port for the local API")
    parser.add_argument("--api-key", default=None, help="Steam Web API key")
    parser.add_argument("--self-id", default=None, help="Your own SteamID64 or SteamID3")
    parser.add_argument(
        "--import-playerlist",
        type=Path,
        default=None,
        help="Import a legacy playerlist.json before starting",
    )
    parser.add_argument("--no-api", action="store_true", help="Do not start the local API server")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def _resolve_settings(args: argparse.Namespace) -> Settings:
    try:
        settings = Settings.load(args.settings)
    except SettingsError as exc:
        raise SystemExit(f"pymac: cannot start, {exc}") from exc
    if args.console_log is not None:
        settings.console_log = args.console_log
    if args.db is not None:
        settings.db_path = args.db
    if args.port is not None:
        settings.port = args.port
    if args.api_key:
        settings.steam_api_key = args.api_key
    if args.self_id:
        try:
            settings.self_steam_id = parse_steam_id64(args.self_id)
        except ValueError as exc:
            raise SystemExit(f"pymac: invalid --self-id: {exc}") from exc
    return settings


def _open_store(settings: Settings) -> VerdictStore:
    try:
        return VerdictStore.open(settings.db_path)
    except StorageUnavailableError as exc:
        raise SystemExit(f"pymac: cannot start, {exc}") from exc


async def _serve(settings: Settings, roster: RosterManager, *, settings_path: Path, with_api: bool, log_level: str) -> None:
    client = SteamWebClient(settings.steam_api_key, timeout=settings.fetch_timeout)
    cache = ReputationCache(
        client,
        concurrency=settings.fetch_concurrency,
        rate_per_sec=settings.fetch_rate,
        timeout=settings.fetch_timeout,
    )
    ingest = None
    if settings.console_log is not None:
        ingest = TelemetryIngest(LogFileTransport(settings.console_log))
    else:
        logger.warning("No console log configured; the roster will only change through the API")
    if not cache.has_credential:
        logger.warning("No Steam Web API key set; profile lookups are disabled until one is provided")
    service = RosterService(
        roster,
        cache,
        ingest,
        retry_cooldown=settings.retry_cooldown,
        friends_api_usage=settings.friends_api_usage,
    )
    try:
        if with_api:
            app = create_app(service, settings=settings, settings_path=settings_path)
            config = uvicorn.Config(app, host="127.0.0.1", port=settings.port, log_level=log_level.lower())
            server = uvicorn.Server(config)
            runner = asyncio.ensure_future(service.run())
            try:
                await server.serve()
            finally:
                service.stop()
                await runner
        else:
            await service.run()
    finally:
        await service.close()
        await client.aclose()


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = _resolve_settings(args)
    store = _open_store(settings)

    if args.import_playerlist:
        try:
            store.import_playerlist(args.import_playerlist)
        except (OSError, ValueError, PersistenceError) as exc:
            logger.error("Playerlist import from %s failed: %s", args.import_playerlist, exc)

    roster = RosterManager(store, self_steam_id=settings.self_steam_id)
    try:
        roster.load()
    except PersistenceError as exc:
        raise SystemExit(f"pymac: cannot read stored verdicts, {exc}") from exc

    try:
        asyncio.run(
            _serve(
                settings,
                roster,
                settings_path=args.settings,
                with_api=not args.no_api,
                log_level=args.log_level,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
