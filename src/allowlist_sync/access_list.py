"""Access-list control plane.

`AccessListProvider` exposes the raw operations of one list resource (list,
add, replace, remove, each guarded by the list version). `PrefixListProvider`
implements them against an EC2 managed prefix list. `AccessListClient` layers
ownership filtering, idempotency checks and bounded retries on top.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from allowlist_sync.errors import (
    AccessListNotFoundError,
    ConflictError,
    ControlPlaneError,
    QuotaExceededError,
    RetryExhaustedError,
    TransientError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ManagedEntry:
    """One CIDR entry of the access list.

    `resource_version` is the list version the entry was read at; mutations
    must present the current version. `created_version` is only known after
    `AccessListProvider.creation_order`.
    """

    cidr: str
    description: str
    resource_version: int
    created_version: Optional[int] = None


@dataclass(frozen=True)
class AccessListInfo:
    list_id: str
    name: str
    version: int
    max_entries: int
    address_family: str
    state: str = ""

    def __str__(self) -> str:
        return (
            f"ID: {self.list_id} ({self.name}) version {self.version}; "
            f"family: {self.address_family}; max entries: {self.max_entries}"
        )


# =============================================================================
# Provider Interface and Implementations
# =============================================================================


class AccessListProvider(ABC):
    """Abstract base class for access-list backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def describe(self) -> AccessListInfo:
        """Return metadata of the list, including its current version."""
        pass

    @abstractmethod
    def list_entries(self) -> List[ManagedEntry]:
        """Return every entry of the list, stamped with the current version."""
        pass

    @abstractmethod
    def add_entry(self, cidr: str, description: str, version: int) -> int:
        """Add an entry. Returns the new list version."""
        pass

    @abstractmethod
    def replace_entry(self, old_cidr: str, new_cidr: str, description: str, version: int) -> int:
        """Atomically swap one entry for another. Returns the new list version."""
        pass

    @abstractmethod
    def remove_entry(self, cidr: str, version: int) -> int:
        """Remove an entry. Returns the new list version."""
        pass

    def creation_order(self, entries: List[ManagedEntry]) -> List[ManagedEntry]:
        """Order entries from oldest to newest. Default: keep server order."""
        return list(entries)


class PrefixListProvider(AccessListProvider):
    """EC2 managed prefix list provider implementation."""

    NOT_FOUND_CODES = {
        "InvalidPrefixListID.NotFound",
        "InvalidPrefixListId.NotFound",
        "InvalidPrefixListID.Malformed",
        "InvalidPrefixListId.Malformed",
    }
    VERSION_CONFLICT_CODES = {"PrefixListVersionMismatch"}
    QUOTA_CODES = {"PrefixListMaxEntriesExceeded", "PrefixListEntriesLimitExceeded"}
    CONFLICT_CODES = {
        "InvalidPrefixListModification",
        "DuplicateEntry",
        "InvalidParameterValue",
        "IdempotentParameterMismatch",
    }
    TRANSIENT_CODES = {
        "IncorrectState",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
        "RequestTimeoutException",
        "RequestExpired",
    }
    CONNECTION_ERRORS = (
        EndpointConnectionError,
        ConnectionClosedError,
        ConnectTimeoutError,
        ReadTimeoutError,
    )

    def __init__(self, list_id: str, ec2_client: Any, history_lookback: int = 20):
        self.list_id = list_id
        self._ec2 = ec2_client
        self._history_lookback = history_lookback

    @property
    def name(self) -> str:
        return "EC2 managed prefix list"

    def describe(self) -> AccessListInfo:
        result = self._call(
            "describe_managed_prefix_lists", PrefixListIds=[self.list_id]
        )
        prefix_lists = result.get("PrefixLists") or []
        if not prefix_lists:
            raise AccessListNotFoundError(f"Prefix list '{self.list_id}' not found")
        if len(prefix_lists) > 1 or result.get("NextToken"):
            raise ControlPlaneError(f"Got too many prefix lists for '{self.list_id}'")

        pl = prefix_lists[0]
        return AccessListInfo(
            list_id=pl.get("PrefixListId", self.list_id),
            name=pl.get("PrefixListName", ""),
            version=int(pl.get("Version", 0)),
            max_entries=int(pl.get("MaxEntries", 0)),
            address_family=pl.get("AddressFamily", ""),
            state=pl.get("State", ""),
        )

    def list_entries(self) -> List[ManagedEntry]:
        version = self.describe().version
        return [
            ManagedEntry(cidr=cidr, description=description, resource_version=version)
            for cidr, description in self._entries_at(version)
        ]

    def add_entry(self, cidr: str, description: str, version: int) -> int:
        return self._modify(
            version,
            AddEntries=[{"Cidr": cidr, "Description": description}],
        )

    def replace_entry(self, old_cidr: str, new_cidr: str, description: str, version: int) -> int:
        return self._modify(
            version,
            AddEntries=[{"Cidr": new_cidr, "Description": description}],
            RemoveEntries=[{"Cidr": old_cidr}],
        )

    def remove_entry(self, cidr: str, version: int) -> int:
        return self._modify(version, RemoveEntries=[{"Cidr": cidr}])

    def creation_order(self, entries: List[ManagedEntry]) -> List[ManagedEntry]:
        """Order entries by the oldest list version that still contains them.

        Walks back through at most `history_lookback` previous versions. Entries
        present at the edge of the look-back window tie and keep server order.
        """
        if len(entries) < 2:
            return list(entries)

        current = max(e.resource_version for e in entries)
        first_seen: Dict[str, int] = {e.cidr: current for e in entries}
        pending = set(first_seen)
        oldest = max(1, current - self._history_lookback)

        for version in range(current - 1, oldest - 1, -1):
            if not pending:
                break
            try:
                present = {cidr for cidr, _ in self._entries_at(version)}
            except ControlPlaneError as e:
                logger.debug(f"Stopped walking prefix list history at version {version}: {e}")
                break
            for cidr in list(pending):
                if cidr in present:
                    first_seen[cidr] = version
                else:
                    pending.discard(cidr)

        dated = [dataclasses.replace(e, created_version=first_seen[e.cidr]) for e in entries]
        return sorted(dated, key=lambda e: e.created_version)

    def _entries_at(self, version: int) -> List[tuple]:
        entries: List[tuple] = []
        try:
            paginator = self._ec2.get_paginator("get_managed_prefix_list_entries")
            for page in paginator.paginate(PrefixListId=self.list_id, TargetVersion=version):
                for entry in page.get("Entries", []):
                    entries.append((entry["Cidr"], entry.get("Description", "")))
        except ClientError as e:
            raise self._translate(e, "get_managed_prefix_list_entries") from e
        except self.CONNECTION_ERRORS as e:
            raise TransientError(f"get_managed_prefix_list_entries: {e}", cause=e) from e
        except BotoCoreError as e:
            raise ControlPlaneError(f"get_managed_prefix_list_entries: {e}", cause=e) from e
        return entries

    def _modify(self, version: int, **changes: Any) -> int:
        # Identical requests share a token, so EC2 applies a resent one at most once.
        fingerprint = json.dumps([self.list_id, version, changes], sort_keys=True)
        token = "allowlist-sync-" + hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:40]
        result = self._call(
            "modify_managed_prefix_list",
            PrefixListId=self.list_id,
            CurrentVersion=version,
            ClientToken=token,
            **changes,
        )
        prefix_list = result.get("PrefixList") or {}
        return int(prefix_list.get("Version", version + 1))

    def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return getattr(self._ec2, operation)(**kwargs)
        except ClientError as e:
            raise self._translate(e, operation) from e
        except self.CONNECTION_ERRORS as e:
            raise TransientError(f"{operation}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise ControlPlaneError(f"{operation}: {e}", cause=e) from e

    def _translate(self, error: ClientError, operation: str) -> ControlPlaneError:
        error_info = error.response.get("Error", {})
        code = error_info.get("Code", "Unknown")
        message = f"{operation} failed [{code}]: {error_info.get('Message', '')}".rstrip(": ")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)

        if code in self.NOT_FOUND_CODES:
            return AccessListNotFoundError(message, code=code)
        if code in self.VERSION_CONFLICT_CODES:
            return VersionConflictError(message, code=code)
        if code in self.QUOTA_CODES:
            return QuotaExceededError(message, code=code)
        if code in self.CONFLICT_CODES:
            return ConflictError(message, code=code)
        if code in self.TRANSIENT_CODES or status >= 500:
            return TransientError(message, code=code)
        return ControlPlaneError(message, code=code)


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass
class RetryConfig:
    """Bounded exponential backoff with full jitter.

    Attributes:
        max_attempts: Total attempts per operation, including the first one
        base_delay: Delay before the second attempt (seconds)
        max_delay: Upper bound of a single delay (seconds)
        exponential_base: Growth factor per attempt
        jitter: Draw the delay uniformly from [0, delay]
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 20.0
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


# =============================================================================
# Client
# =============================================================================


class AccessListClient:
    def __init__(
        self,
        provider: AccessListProvider,
        retry: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.retry = retry or RetryConfig()
        self._sleep = sleep

    def describe(self) -> AccessListInfo:
        return self.provider.describe()

    def fetch_owned_entries(self, tag: str) -> List[ManagedEntry]:
        """Return the entries whose description is exactly `tag`, read fresh."""
        return [e for e in self.provider.list_entries() if e.description == tag]

    def order_by_age(self, entries: List[ManagedEntry]) -> List[ManagedEntry]:
        return self.provider.creation_order(entries)

    def add(self, cidr: str, tag: str) -> ManagedEntry:
        def attempt(_: int) -> ManagedEntry:
            entries = self.provider.list_entries()
            for entry in entries:
                if entry.cidr != cidr:
                    continue
                if entry.description == tag:
                    # An earlier attempt landed even though its response was lost.
                    return entry
                raise ConflictError(
                    f"{cidr} is already on the list with description '{entry.description}'"
                )

            info = self.provider.describe()
            if info.max_entries and len(entries) >= info.max_entries:
                raise QuotaExceededError(
                    f"list {info.list_id} is full ({len(entries)}/{info.max_entries} entries)"
                )
            version = entries[0].resource_version if entries else info.version
            new_version = self.provider.add_entry(cidr, tag, version)
            return ManagedEntry(cidr=cidr, description=tag, resource_version=new_version)

        return self._with_retry(f"add {cidr}", attempt)

    def update(self, entry: ManagedEntry, new_cidr: str) -> ManagedEntry:
        def attempt(number: int) -> ManagedEntry:
            version = entry.resource_version
            if number > 0:
                owned = {e.cidr: e for e in self.fetch_owned_entries(entry.description)}
                if new_cidr in owned and entry.cidr not in owned:
                    return owned[new_cidr]
                if entry.cidr not in owned:
                    raise ConflictError(f"{entry.cidr} disappeared before it could be replaced")
                version = owned[entry.cidr].resource_version
            new_version = self.provider.replace_entry(
                entry.cidr, new_cidr, entry.description, version
            )
            return ManagedEntry(
                cidr=new_cidr, description=entry.description, resource_version=new_version
            )

        return self._with_retry(f"update {entry.cidr} -> {new_cidr}", attempt)

    def remove(self, entry: ManagedEntry) -> None:
        """Remove `entry`. An entry that is already gone counts as removed."""

        def is_gone() -> bool:
            return all(e.cidr != entry.cidr for e in self.provider.list_entries())

        def attempt(_: int) -> None:
            # Earlier removals in the same pass bump the list version.
            current = [e for e in self.provider.list_entries() if e.cidr == entry.cidr]
            if not current:
                logger.debug(f"{entry.cidr} already removed")
                return
            if current[0].description != entry.description:
                raise ConflictError(
                    f"{entry.cidr} now has description '{current[0].description}'; not removing"
                )
            try:
                self.provider.remove_entry(entry.cidr, current[0].resource_version)
            except ConflictError:
                if is_gone():
                    logger.debug(f"{entry.cidr} already removed")
                    return
                raise

        self._with_retry(f"remove {entry.cidr}", attempt)

    def _with_retry(self, action: str, attempt: Callable[[int], T]) -> T:
        last_error: Optional[ControlPlaneError] = None
        max_attempts = max(1, self.retry.max_attempts)
        for number in range(max_attempts):
            try:
                return attempt(number)
            except (TransientError, VersionConflictError) as e:
                last_error = e
                if number + 1 >= max_attempts:
                    break
                delay = self.retry.get_delay(number)
                logger.warning(
                    f"{action}: attempt {number + 1}/{max_attempts} failed ({e}); "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
        raise RetryExhaustedError(action, max_attempts, last_error)
