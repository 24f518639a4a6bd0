#!/usr/bin/env python3
"""allowlist-sync - Keep an AWS managed prefix list pointed at your external IP

Resolves the current public IPv4 address on a fixed interval and keeps exactly
one entry, marked by its description, in an EC2 managed prefix list. Security
groups that reference the list stay reachable from a dynamic address. On
SIGTERM/SIGINT the entry is removed before the process exits.

AWS credentials are taken from the standard boto3 credential chain. See
`allowlist_sync.config` for the environment variables.

Exit codes:
    0   Clean shutdown, owned entries removed
    1   Startup or configuration failure
    3   Shutdown cleanup failed; manual cleanup may be needed
    4   SYNC_MODE=once and the cycle failed
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from typing import Any, Mapping, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError

from allowlist_sync.access_list import AccessListClient, PrefixListProvider, RetryConfig
from allowlist_sync.config import Settings, SyncMode
from allowlist_sync.engine import DuplicatePolicy, EngineState, ReconciliationEngine
from allowlist_sync.errors import AllowlistSyncError, ConfigError
from allowlist_sync.notify import create_notifier
from allowlist_sync.resolver import (
    ConsensusPolicy,
    ExternalIPResolver,
    StaticProbe,
    build_probes,
)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_CLEANUP_FAILED = 3
EXIT_CYCLE_FAILED = 4

logger = logging.getLogger("allowlist_sync")

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# =============================================================================
# Wiring
# =============================================================================


def create_ec2_client(settings: Settings) -> Any:
    """Build an EC2 client from the ambient credential chain.

    botocore's own retries are disabled so `RetryConfig` is the only attempt ceiling.
    """
    boto_config = BotoConfig(
        connect_timeout=5,
        read_timeout=15,
        retries={"max_attempts": 0},
    )
    kwargs = {"config": boto_config}
    if settings.aws_region:
        kwargs["region_name"] = settings.aws_region
    return boto3.client("ec2", **kwargs)


def create_resolver(settings: Settings) -> ExternalIPResolver:
    if settings.external_ip:
        return ExternalIPResolver([StaticProbe(settings.external_ip)])
    try:
        probes = build_probes(settings.ip_probes, settings.ip_probe_timeout_seconds)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return ExternalIPResolver(probes, ConsensusPolicy(settings.ip_consensus))


def create_engine(settings: Settings, ec2_client: Any) -> ReconciliationEngine:
    provider = PrefixListProvider(settings.prefix_list_id, ec2_client)
    client = AccessListClient(
        provider,
        RetryConfig(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        ),
    )
    return ReconciliationEngine(
        resolver=create_resolver(settings),
        client=client,
        tag=settings.entry_description,
        interval_seconds=settings.poll_interval_seconds,
        duplicate_policy=DuplicatePolicy(settings.duplicate_policy),
        notifier=create_notifier(settings.notify_webhook_url),
    )


def verify_access_list(engine: ReconciliationEngine) -> None:
    """Fail fast on a missing or non-IPv4 list."""
    info = engine.client.describe()
    logger.info(f"Prefix list: {info}")
    if info.address_family != "IPv4":
        raise ConfigError(
            f"Prefix list {info.list_id} has address family {info.address_family}; "
            "only IPv4 lists are supported"
        )


def install_signal_handlers(engine: ReconciliationEngine) -> None:
    """Route termination signals to the engine's shutdown path."""

    def handle(signum, frame):
        engine.request_shutdown(f"received {signal.Signals(signum).name}")

    for name in ("SIGTERM", "SIGINT", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, handle)


# =============================================================================
# Main
# =============================================================================


def main(environ: Optional[Mapping[str, str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    environ = os.environ if environ is None else environ
    setup_logging(environ.get("LOG_LEVEL", "INFO"))

    try:
        settings = Settings.load(environ)
        logging.getLogger().setLevel(settings.log_level)
        engine = create_engine(settings, create_ec2_client(settings))
        verify_access_list(engine)
    except (AllowlistSyncError, BotoCoreError) as e:
        logger.error(f"Startup failed: {e}")
        return EXIT_STARTUP_FAILURE

    logger.info(f"allowlist-sync: {settings.prefix_list_id} tagged '{settings.entry_description}'")
    logger.info(f"Sync mode: {settings.sync_mode.value}")
    logger.info(f"Duplicate policy: {settings.duplicate_policy}")
    if settings.external_ip:
        logger.info(f"External IP override: {settings.external_ip}")
    else:
        logger.info(
            f"IP probes: {', '.join(p.name for p in engine.resolver.probes)} "
            f"({settings.ip_consensus})"
        )

    install_signal_handlers(engine)

    if settings.sync_mode == SyncMode.ONCE:
        outcomes = engine.run(max_cycles=1, cleanup_on_exit=False)
        if engine.cleanup_failed:
            logger.error("Shutdown cleanup failed; remove the tagged entries manually")
            return EXIT_CLEANUP_FAILED
        if any(not o.ok for o in outcomes):
            return EXIT_CYCLE_FAILED
        return EXIT_OK

    try:
        if settings.sync_mode == SyncMode.CLEANUP:
            engine.cleanup()
        else:
            engine.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        engine.cleanup()
        return EXIT_CLEANUP_FAILED if engine.cleanup_failed else EXIT_STARTUP_FAILURE

    if engine.cleanup_failed or engine.state != EngineState.STOPPED:
        logger.error("Shutdown cleanup failed; remove the tagged entries manually")
        return EXIT_CLEANUP_FAILED
    logger.info("Shutdown complete")
    return EXIT_OK


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
