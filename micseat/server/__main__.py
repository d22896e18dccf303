from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from micseat.shared.protocol import (
    DEFAULT_ADMIN_PORT,
    DEFAULT_MAX_MIC_SLOTS,
    DEFAULT_TCP_PORT,
)

from micseat.server.admin_api import AdminServer
from micseat.server.control_server import ControlServer
from micseat.server.session_manager import SessionManager

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mic admission room server")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the control server")
    parser.add_argument("--tcp-port", type=int, default=DEFAULT_TCP_PORT, help="TCP control port")
    parser.add_argument("--room", default="main", help="Name of the hosted room")
    parser.add_argument(
        "--max-mic-slots",
        type=int,
        default=DEFAULT_MAX_MIC_SLOTS,
        help="Initial number of mic slots published in room metadata",
    )
    parser.add_argument("--admin-host", default="127.0.0.1", help="Host for the admin API server")
    parser.add_argument("--admin-port", type=int, default=DEFAULT_ADMIN_PORT, help="Port for the admin API server")
    parser.add_argument("--admin-token", type=str, default=None, help="Optional bearer token required by the admin API")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--pre-shared-key", type=str, default=None, help="Optional pre-shared key required for clients")
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args)

    session_manager = SessionManager(args.room, max_mic_slots=args.max_mic_slots)
    control_server = ControlServer(
        args.host,
        args.tcp_port,
        session_manager,
        pre_shared_key=args.pre_shared_key,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    shutdown_requested = False
    shutdown_reason = "Server shutting down"

    def trigger_shutdown(source: str, reason: Optional[str] = None) -> bool:
        nonlocal shutdown_requested, shutdown_reason
        if shutdown_requested:
            logger.debug("Shutdown already in progress (source=%s)", source)
            return False
        shutdown_requested = True
        if reason:
            shutdown_reason = reason
        logger.info("%s initiated shutdown", source)
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()
        return True

    async def request_shutdown() -> bool:
        return trigger_shutdown("Admin API", "Server shutting down by administrator")

    admin_server = AdminServer(
        session_manager,
        host=args.admin_host,
        port=args.admin_port,
        bearer_token=args.admin_token,
        kick_handler=control_server.force_disconnect,
        shutdown_handler=request_shutdown,
    )

    def _signal_handler() -> None:
        trigger_shutdown("Shutdown signal")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await control_server.start()
    await admin_server.start()
    logger.info("Room %s ready with %s mic slots", args.room, args.max_mic_slots)

    heartbeat_task = asyncio.create_task(session_manager.heartbeat_watcher())

    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    try:
        await session_manager.disconnect_all(reason=shutdown_reason)
    except Exception:
        logger.exception("Failed to disconnect participants during shutdown")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        pass

    try:
        await control_server.stop()
    except Exception:
        logger.exception("Error stopping control server")

    try:
        await admin_server.stop()
    except Exception:
        logger.exception("Error stopping admin server")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
