"""Shared test doubles: an in-memory versioned access list and a scripted resolver."""

from ipaddress import IPv4Address
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from allowlist_sync.access_list import (
    AccessListClient,
    AccessListInfo,
    AccessListProvider,
    ManagedEntry,
    RetryConfig,
)
from allowlist_sync.engine import ReconciliationEngine
from allowlist_sync.errors import (
    AccessListNotFoundError,
    ConflictError,
    ResolutionError,
    VersionConflictError,
)

# =============================================================================
# In-memory Access List
# =============================================================================


class InMemoryAccessList(AccessListProvider):
    """Versioned list with call tracking and scripted failures.

    `fail_next[operation]` holds exceptions raised, in order, by the next
    calls of that operation ("list_entries", "add_entry", "replace_entry",
    "remove_entry") before the real work happens.
    """

    def __init__(
        self,
        entries: Optional[Sequence[Tuple[str, str]]] = None,
        max_entries: int = 10,
        address_family: str = "IPv4",
    ):
        self.version = 1
        self.max_entries = max_entries
        self.address_family = address_family
        self.exists = True
        self._entries: Dict[str, str] = {}
        self._history: Dict[int, Dict[str, str]] = {1: {}}
        for cidr, description in entries or []:
            self._commit(lambda e, c=cidr, d=description: e.__setitem__(c, d))
        self.calls: List[Tuple] = []
        self.fail_next: Dict[str, List[Exception]] = {}

    @property
    def name(self) -> str:
        return "in-memory"

    def entries(self) -> Dict[str, str]:
        return dict(self._entries)

    def owned(self, tag: str) -> List[str]:
        return sorted(c for c, d in self._entries.items() if d == tag)

    def mutation_calls(self) -> List[Tuple]:
        return [c for c in self.calls if c[0] != "list_entries"]

    def _maybe_fail(self, operation: str) -> None:
        pending = self.fail_next.get(operation)
        if pending:
            raise pending.pop(0)
        if not self.exists:
            raise AccessListNotFoundError("Prefix list 'pl-12345678' not found")

    def _commit(self, change) -> int:
        entries = dict(self._entries)
        change(entries)
        self.version += 1
        self._entries = entries
        self._history[self.version] = dict(entries)
        return self.version

    def _check_version(self, version: int) -> None:
        if version != self.version:
            raise VersionConflictError(
                f"version {version} is stale (current {self.version})",
                code="PrefixListVersionMismatch",
            )

    def describe(self) -> AccessListInfo:
        if not self.exists:
            raise AccessListNotFoundError("Prefix list 'pl-12345678' not found")
        return AccessListInfo(
            list_id="pl-12345678",
            name="home",
            version=self.version,
            max_entries=self.max_entries,
            address_family=self.address_family,
            state="modify-complete",
        )

    def list_entries(self) -> List[ManagedEntry]:
        self.calls.append(("list_entries",))
        self._maybe_fail("list_entries")
        return [
            ManagedEntry(cidr=c, description=d, resource_version=self.version)
            for c, d in self._entries.items()
        ]

    def add_entry(self, cidr: str, description: str, version: int) -> int:
        self.calls.append(("add_entry", cidr, description, version))
        self._maybe_fail("add_entry")
        self._check_version(version)
        if cidr in self._entries:
            raise ConflictError(f"{cidr} already exists", code="InvalidPrefixListModification")
        return self._commit(lambda e: e.__setitem__(cidr, description))

    def replace_entry(self, old_cidr: str, new_cidr: str, description: str, version: int) -> int:
        self.calls.append(("replace_entry", old_cidr, new_cidr, description, version))
        self._maybe_fail("replace_entry")
        self._check_version(version)
        if old_cidr not in self._entries or new_cidr in self._entries:
            raise ConflictError("invalid modification", code="InvalidPrefixListModification")

        def change(e):
            del e[old_cidr]
            e[new_cidr] = description

        return self._commit(change)

    def remove_entry(self, cidr: str, version: int) -> int:
        self.calls.append(("remove_entry", cidr, version))
        self._maybe_fail("remove_entry")
        self._check_version(version)
        if cidr not in self._entries:
            raise ConflictError(f"{cidr} is not on the list", code="InvalidPrefixListModification")
        return self._commit(lambda e: e.pop(cidr))

    def creation_order(self, entries: List[ManagedEntry]) -> List[ManagedEntry]:
        def first_seen(entry: ManagedEntry) -> int:
            for version in sorted(self._history):
                if entry.cidr in self._history[version]:
                    return version
            return self.version

        return sorted(entries, key=first_seen)


class ScriptedResolver:
    """Returns the queued addresses in order; `None` raises ResolutionError."""

    def __init__(self, addresses: Sequence[Optional[str]]):
        self._addresses = list(addresses)
        self.calls = 0

    def resolve(self) -> IPv4Address:
        self.calls += 1
        value = self._addresses.pop(0) if len(self._addresses) > 1 else self._addresses[0]
        if value is None:
            raise ResolutionError("all 3 IP probe(s) failed")
        return IPv4Address(value)


def make_engine(
    access_list: InMemoryAccessList,
    addresses: Sequence[Optional[str]],
    tag: str = "doorman",
    **kwargs,
) -> ReconciliationEngine:
    client = AccessListClient(
        access_list,
        RetryConfig(max_attempts=kwargs.pop("max_attempts", 5), jitter=False),
        sleep=lambda _: None,
    )
    return ReconciliationEngine(
        resolver=ScriptedResolver(addresses),
        client=client,
        tag=tag,
        interval_seconds=kwargs.pop("interval_seconds", 60),
        **kwargs,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def access_list() -> InMemoryAccessList:
    return InMemoryAccessList()


@pytest.fixture
def client(access_list: InMemoryAccessList) -> AccessListClient:
    return AccessListClient(
        access_list, RetryConfig(max_attempts=3, jitter=False), sleep=lambda _: None
    )
