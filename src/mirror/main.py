"""
Mirror service entry point: loads configuration, opens the database,
and runs the sync scheduler until SIGTERM / SIGINT.

Runs as a long-lived systemd service under the ``tg-mirror`` user.

Key behaviours:
    - Loads configuration from ``/etc/tg-mirror/settings.toml``
      (``TG_MIRROR_CONFIG`` overrides the path).
    - All Telegram access goes through ``ReadOnlyTelegramClient``.
    - Encrypted session files are decrypted into tmpfs only for the
      lifetime of a connection.
    - Every pass, recovery attempt and session rejection is audited.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from mirror.clock import SystemClock
from mirror.connections import ConnectionRegistry
from mirror.engine import SyncEngine
from mirror.peers import PeerResolver
from mirror.remote import TelethonRemote
from mirror.scheduler import Scheduler
from mirror.store import MirrorStore
from mirror.watermark import ChannelWatermarkResync
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_secret

logger = logging.getLogger("mirror.main")

_DEFAULT_CONFIG_PATH = Path(os.environ.get("TG_MIRROR_CONFIG", "/etc/tg-mirror/settings.toml"))

MIRROR_DEFAULTS: Dict[str, Any] = {
    "sync_interval_seconds": 60.0,
    "scheduled_history_limit": 50,
    "on_demand_history_limit": 100,
    "history_delay_seconds": 1.0,
    "watermark_lookback": 50,
    "request_timeout_seconds": 30.0,
    "max_live_connections": 1,
    "encrypted_sessions": True,
    "audit_log_path": "/var/log/tg-mirror/audit.log",
}

_shutdown_event: Optional[asyncio.Event] = None
_loop: Optional[asyncio.AbstractEventLoop] = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load settings from a TOML file and fill in ``[mirror]`` defaults.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If a required section is missing.
        ValueError: If a numeric setting is out of range.
    """
    config = toml.load(path)

    for section in ("database",):
        if section not in config:
            raise KeyError(f"Missing required config key: {section}")

    mirror_config = dict(MIRROR_DEFAULTS)
    mirror_config.update(config.get("mirror", {}))
    for key in (
        "sync_interval_seconds",
        "scheduled_history_limit",
        "on_demand_history_limit",
        "watermark_lookback",
        "request_timeout_seconds",
        "max_live_connections",
    ):
        if float(mirror_config[key]) <= 0:
            raise ValueError(f"mirror.{key} must be positive, got {mirror_config[key]!r}")
    if float(mirror_config["history_delay_seconds"]) < 0:
        raise ValueError("mirror.history_delay_seconds must not be negative")

    config["mirror"] = mirror_config
    return config


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler: sets the shutdown event so the service exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    if _shutdown_event is not None and _loop is not None:
        _loop.call_soon_threadsafe(_shutdown_event.set)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config_path: Path = _DEFAULT_CONFIG_PATH) -> None:
    """Top-level async entry point for the mirror service."""
    global _shutdown_event, _loop
    _shutdown_event = asyncio.Event()
    _loop = asyncio.get_running_loop()

    config = load_config(config_path)
    mirror_config = config["mirror"]

    session_key: Optional[str] = None
    if mirror_config["encrypted_sessions"]:
        session_key = get_secret("session_encryption_key")

    pool = None
    audit = None
    registry = None
    try:
        pool = await get_connection_pool(config["database"])
        await init_database(pool)
        if not await health_check(pool):
            raise RuntimeError("Database health check failed at startup")

        store = MirrorStore(pool)
        audit = AuditLogger(pool, Path(mirror_config["audit_log_path"]))

        remote = TelethonRemote(
            session_key=session_key,
            request_timeout=float(mirror_config["request_timeout_seconds"]),
        )
        registry = ConnectionRegistry(remote, max_live=int(mirror_config["max_live_connections"]))
        clock = SystemClock()
        resolver = PeerResolver(remote)
        engine = SyncEngine(
            remote,
            store,
            resolver=resolver,
            history_delay=float(mirror_config["history_delay_seconds"]),
            clock=clock,
        )
        resync = ChannelWatermarkResync(
            resolver,
            store,
            lookback=int(mirror_config["watermark_lookback"]),
        )
        scheduler = Scheduler(
            remote,
            store,
            registry,
            engine,
            resync,
            audit=audit,
            clock=clock,
            sync_interval=float(mirror_config["sync_interval_seconds"]),
            scheduled_history_limit=int(mirror_config["scheduled_history_limit"]),
            on_demand_history_limit=int(mirror_config["on_demand_history_limit"]),
        )

        await audit.log("startup", {"sync_interval_seconds": mirror_config["sync_interval_seconds"]})
        scheduler.start()
        await _shutdown_event.wait()
        await scheduler.stop()
        await audit.log("shutdown", {})
    finally:
        if registry is not None:
            try:
                await registry.close()
            except Exception:
                logger.exception("Failed to close remote sessions")
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Mirror shut down cleanly.")


def run() -> None:
    """Synchronous entry point (console script or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # Telethon is chatty at INFO.
    logging.getLogger("telethon").setLevel(logging.WARNING)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main())


if __name__ == "__main__":
    run()
