# Atmo Sync - Main Orchestrator
# Runs the OpenAQ synchronization loops until interrupted.

# Load environment variables FIRST (before any other imports)
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import logging
import signal
import sys

from collector.openaq_fetcher import MissingApiKeyError, OpenAQClient
from config import ConfigError, SyncSettings
from core.sync_service import SyncError, SyncService
from database import Store, StoreError

logger = logging.getLogger("main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Atmo Sync - OpenAQ synchronization engine")
    parser.add_argument("--once", action="store_true", help="Run a single sync cycle and exit")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP read API (sync runs inside)")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host for --serve")
    parser.add_argument("--port", type=int, default=8000, help="Bind port for --serve")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def _install_signal_handlers(service: SyncService) -> bool:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except (NotImplementedError, RuntimeError):
            return False
    return True


async def run_once(settings: SyncSettings) -> int:
    """Load reference data, refresh measurements once, print the summary."""
    store = Store(settings.database_path)
    try:
        async with OpenAQClient(settings) as client:
            service = SyncService(settings, store, client)
            try:
                await service.load_stations()
                await service.load_parameters()
            except Exception as exc:
                logger.error("Reference data load failed: %s", exc)
                return 1
            try:
                summary = await service.refresh_measurements()
            except (SyncError, StoreError) as exc:
                logger.error("Measurement refresh failed: %s", exc)
                return 1
    finally:
        store.close()

    print(f"\n{'─'*60}")
    print("  Atmo Sync - cycle summary")
    print(f"{'─'*60}")
    print(f"  Stations:      {summary.stations_total}")
    print(f"  Updated:       {summary.stations_updated}")
    print(f"  Empty:         {summary.stations_empty}")
    print(f"  Failed:        {summary.stations_failed}")
    print(f"  Measurements:  {summary.measurements_stored}")
    print(f"{'─'*60}\n")
    return 0


async def run_forever(settings: SyncSettings) -> int:
    store = Store(settings.database_path)
    async with OpenAQClient(settings) as client:
        service = SyncService(settings, store, client)
        if not _install_signal_handlers(service):
            logger.debug("Signal handlers unavailable, relying on KeyboardInterrupt")
        await service.bootstrap()
        logger.info("Sync engine running. Press Ctrl+C to stop.")
        try:
            await service.run()
        finally:
            store.close()
    logger.info("Sync engine stopped")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if args.serve:
        import uvicorn
        from web_server import app
        uvicorn.run(app, host=args.host, port=args.port)
        return 0

    try:
        settings = SyncSettings.from_env()
        if args.once:
            return asyncio.run(run_once(settings))
        return asyncio.run(run_forever(settings))
    except (ConfigError, MissingApiKeyError) as exc:
        logger.error("Cannot start: %s", exc)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
