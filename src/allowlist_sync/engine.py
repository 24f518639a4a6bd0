"""Reconciliation engine.

Each cycle resolves the external IP, reads the owned entries fresh from the
control plane, and applies the single mutation that makes the list hold
exactly one owned entry for that IP. On shutdown every owned entry is removed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from allowlist_sync.access_list import AccessListClient, ManagedEntry
from allowlist_sync.errors import AllowlistSyncError, ShutdownCleanupError
from allowlist_sync.notify import Notifier, NullNotifier
from allowlist_sync.resolver import ExternalIPResolver

logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class EngineState(Enum):
    STARTING = "starting"
    CONVERGING = "converging"
    STEADY = "steady"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


class DuplicatePolicy(Enum):
    """Which owned entry survives when more than one is found.

    KEEP_NEWEST:   Keep the most recently created entry.
    KEEP_MATCHING: Keep an entry that already holds the current IP, otherwise
                   the most recently created one.
    REMOVE_ALL:    Remove every owned entry and add a fresh one.
    """

    KEEP_NEWEST = "keep-newest"
    KEEP_MATCHING = "keep-matching"
    REMOVE_ALL = "remove-all"


# =============================================================================
# Outcomes
# =============================================================================


class ReconciliationOutcome:
    ok = True


@dataclass(frozen=True)
class NoChange(ReconciliationOutcome):
    cidr: str = ""

    def __str__(self) -> str:
        return f"No change ({self.cidr})" if self.cidr else "No change"


@dataclass(frozen=True)
class Added(ReconciliationOutcome):
    cidr: str

    def __str__(self) -> str:
        return f"Added {self.cidr}"


@dataclass(frozen=True)
class Updated(ReconciliationOutcome):
    old: str
    new: str

    def __str__(self) -> str:
        return f"Updated {self.old} -> {self.new}"


@dataclass(frozen=True)
class Removed(ReconciliationOutcome):
    cidr: str

    def __str__(self) -> str:
        return f"Removed {self.cidr}"


@dataclass(frozen=True)
class Consolidated(ReconciliationOutcome):
    """More than one owned entry was found and reduced to one."""

    removed: Tuple[str, ...]
    result: ReconciliationOutcome

    def __str__(self) -> str:
        return f"Consolidated duplicates (removed {', '.join(self.removed)}); {self.result}"


@dataclass(frozen=True)
class Skipped(ReconciliationOutcome):
    reason: str

    def __str__(self) -> str:
        return f"Skipped: {self.reason}"


@dataclass(frozen=True)
class Failed(ReconciliationOutcome):
    reason: str
    ok = False

    def __str__(self) -> str:
        return f"Failed: {self.reason}"


# =============================================================================
# Engine
# =============================================================================


class ReconciliationEngine:
    def __init__(
        self,
        *,
        resolver: ExternalIPResolver,
        client: AccessListClient,
        tag: str,
        interval_seconds: float = 60,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.KEEP_NEWEST,
        notifier: Optional[Notifier] = None,
        wake_interval_seconds: float = 1.0,
    ):
        self.resolver = resolver
        self.client = client
        self.tag = tag
        self.interval_seconds = interval_seconds
        self.duplicate_policy = duplicate_policy
        self.notifier = notifier or NullNotifier()
        self.state = EngineState.STARTING
        self.cleanup_failed = False
        self.wake_interval_seconds = wake_interval_seconds
        self._shutdown_requested = False
        self._shutdown_reason = ""

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def request_shutdown(self, reason: str = "") -> None:
        """Ask the loop to stop. Safe to call from a signal handler, repeatedly.

        Only a flag is set: no lock is taken and nothing is logged. A mutation
        already sent to the control plane is allowed to finish; the flag is
        checked between cycle steps and once per wake interval while sleeping.
        """
        if self.state == EngineState.STOPPED or self._shutdown_requested:
            return
        self._shutdown_reason = reason
        self._shutdown_requested = True

    # -------------------------------------------------------------------------
    # Polling loop
    # -------------------------------------------------------------------------

    def run(
        self, max_cycles: Optional[int] = None, cleanup_on_exit: bool = True
    ) -> List[ReconciliationOutcome]:
        """Reconcile every `interval_seconds` until shutdown is requested.

        Returns the cleanup outcomes, or the outcome of the last cycle when
        `cleanup_on_exit` is False. A shutdown request always ends in cleanup,
        even with `cleanup_on_exit` False.
        """
        if self.state == EngineState.STOPPED:
            return []

        self.state = EngineState.CONVERGING
        logger.info(
            f"Sleeping {self.interval_seconds} seconds between external IP checks."
        )

        last: List[ReconciliationOutcome] = []
        cycles = 0
        while not self.shutdown_requested:
            last = [self.reconcile_once()]
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if self._sleep(self.interval_seconds):
                break

        if self.shutdown_requested:
            reason = f" ({self._shutdown_reason})" if self._shutdown_reason else ""
            logger.info(f"Shutdown requested{reason}")
        elif not cleanup_on_exit:
            self.state = EngineState.STOPPED
            return last
        return self.cleanup()

    def _sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True as soon as shutdown is requested."""
        deadline = time.monotonic() + seconds
        while not self.shutdown_requested:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(remaining, self.wake_interval_seconds))
        return True

    # -------------------------------------------------------------------------
    # Single cycle
    # -------------------------------------------------------------------------

    def reconcile_once(self) -> ReconciliationOutcome:
        """Run one resolve -> fetch -> diff -> apply pass."""
        try:
            outcome = self._reconcile()
        except AllowlistSyncError as e:
            outcome = Failed(str(e))

        if outcome.ok:
            converged = not isinstance(outcome, Skipped)
            if converged and self.state in (EngineState.STARTING, EngineState.CONVERGING):
                self.state = EngineState.STEADY
            logger.info(f"Reconciliation: {outcome}")
        else:
            logger.warning(f"Reconciliation: {outcome}")

        if isinstance(outcome, Consolidated):
            self._notify_change(outcome.result)
        else:
            self._notify_change(outcome)
        return outcome

    def _reconcile(self) -> ReconciliationOutcome:
        ip = self.resolver.resolve()
        desired = f"{ip}/32"
        if self.shutdown_requested:
            return Skipped("shutdown requested")

        owned = self.client.fetch_owned_entries(self.tag)
        if self.shutdown_requested:
            return Skipped("shutdown requested")

        if len(owned) > 1:
            return self._consolidate(owned, desired)
        return self._converge(owned, desired)

    def _converge(self, owned: List[ManagedEntry], desired: str) -> ReconciliationOutcome:
        if not owned:
            self.client.add(desired, self.tag)
            return Added(desired)

        entry = owned[0]
        if entry.cidr == desired:
            return NoChange(desired)

        self.client.update(entry, desired)
        return Updated(entry.cidr, desired)

    def _consolidate(self, owned: List[ManagedEntry], desired: str) -> ReconciliationOutcome:
        logger.warning(
            f"Found {len(owned)} entries tagged '{self.tag}' "
            f"({', '.join(e.cidr for e in owned)}); consolidating"
        )
        keep = self._choose_survivor(owned, desired)
        removed: List[str] = []
        for entry in owned:
            if keep is not None and entry.cidr == keep.cidr:
                continue
            self.client.remove(entry)
            removed.append(entry.cidr)

        # Removals bumped the list version; converge from fresh state.
        remaining = self.client.fetch_owned_entries(self.tag)
        if len(remaining) > 1:
            return Failed(f"{len(remaining)} tagged entries remain after consolidation")
        return Consolidated(tuple(removed), self._converge(remaining, desired))

    def _choose_survivor(
        self, owned: List[ManagedEntry], desired: str
    ) -> Optional[ManagedEntry]:
        if self.duplicate_policy == DuplicatePolicy.REMOVE_ALL:
            return None
        if self.duplicate_policy == DuplicatePolicy.KEEP_MATCHING:
            for entry in owned:
                if entry.cidr == desired:
                    return entry
        return self.client.order_by_age(owned)[-1]

    def _notify_change(self, outcome: ReconciliationOutcome) -> None:
        if isinstance(outcome, Added):
            self.notifier.notify("External IP registered", f"Allowed {outcome.cidr}")
        elif isinstance(outcome, Updated):
            self.notifier.notify(
                "External IP changed", f"Replaced {outcome.old} with {outcome.new}"
            )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def cleanup(self) -> List[ReconciliationOutcome]:
        """Remove every owned entry, continuing past individual failures."""
        if self.state == EngineState.STOPPED:
            return []

        self.state = EngineState.SHUTTING_DOWN
        logger.info(f"Cleaning up entries tagged '{self.tag}'...")
        outcomes: List[ReconciliationOutcome] = []
        failed_cidrs: List[str] = []

        try:
            owned = self.client.fetch_owned_entries(self.tag)
        except AllowlistSyncError as e:
            owned = []
            outcomes.append(Failed(f"could not list entries: {e}"))

        for entry in owned:
            try:
                self.client.remove(entry)
            except AllowlistSyncError as e:
                logger.error(f"Failed to remove {entry.cidr}: {e}")
                failed_cidrs.append(entry.cidr)
                outcomes.append(Failed(f"remove {entry.cidr}: {e}"))
                continue
            logger.info(f"Removed {entry.cidr}")
            outcomes.append(Removed(entry.cidr))

        failures = [o for o in outcomes if not o.ok]
        self.cleanup_failed = bool(failures)
        if failures:
            error = ShutdownCleanupError(failed_cidrs, [o.reason for o in failures])
            logger.error(str(error))
            self.notifier.notify("Cleanup failed", str(error), urgent=True)
        elif not owned:
            logger.info("No tagged entries to remove")

        self.state = EngineState.STOPPED
        return outcomes
