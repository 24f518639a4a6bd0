"""External IP detection.

Each probe asks one public service for the caller's IPv4 address. The resolver
runs every probe concurrently, waits for all of them and combines the answers
with a consensus policy.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from ipaddress import IPv4Address
from typing import List, Optional, Sequence, Tuple

import requests

from allowlist_sync.errors import ProbeError, ResolutionError

logger = logging.getLogger(__name__)

BUILTIN_PROBES = {
    "ipify": "https://api.ipify.org",
    "icanhazip": "https://ipv4.icanhazip.com",
    "aws": "https://checkip.amazonaws.com",
    "ifconfig": "https://ifconfig.me/ip",
    "ident": "https://v4.ident.me",
}

ProbeResult = Tuple[str, Optional[IPv4Address]]


class ConsensusPolicy(Enum):
    """How answers from several probes are combined.

    MAJORITY:  Every probe is queried; failures are ignored and the most
               reported address wins. A tie for first place is an error.
    FIRST:     The first successful probe, in configured order, wins.
    UNANIMOUS: Every successful probe must report the same address.
    """

    MAJORITY = "majority"
    FIRST = "first"
    UNANIMOUS = "unanimous"


# =============================================================================
# Probes
# =============================================================================


class IPProbe(ABC):
    """Abstract base class for external IP probes."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the probe name for logging."""
        pass

    @abstractmethod
    def probe(self) -> IPv4Address:
        """Return the public IPv4 address as seen by this probe."""
        pass


class HTTPProbe(IPProbe):
    """Reads a plain-text IPv4 address from an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout_seconds: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self._name = name
        self._url = url
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return self._url

    def probe(self) -> IPv4Address:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProbeError(self._name, "request failed", e) from e
        return parse_public_ipv4(self._name, response.text)


class StaticProbe(IPProbe):
    """Always reports a fixed, operator supplied address."""

    def __init__(self, address: str):
        self._address = IPv4Address(address)

    @property
    def name(self) -> str:
        return "static"

    def probe(self) -> IPv4Address:
        return self._address


def parse_public_ipv4(probe_name: str, text: str) -> IPv4Address:
    value = (text or "").strip()
    try:
        address = IPv4Address(value)
    except ValueError as e:
        raise ProbeError(probe_name, f"returned a non-IPv4 answer '{value[:64]}'", e) from e
    if not address.is_global:
        raise ProbeError(probe_name, f"returned a non-public address {address}")
    return address


def build_probes(names: Sequence[str], timeout_seconds: float = 5.0) -> List[IPProbe]:
    """Create probes from built-in names or raw http(s) URLs.

    An empty `names` selects every built-in probe.
    """
    selected = list(names) or list(BUILTIN_PROBES)
    probes: List[IPProbe] = []
    for item in selected:
        if item in BUILTIN_PROBES:
            probes.append(HTTPProbe(item, BUILTIN_PROBES[item], timeout_seconds))
        elif item.startswith(("http://", "https://")):
            probes.append(HTTPProbe(item, item, timeout_seconds))
        else:
            raise ValueError(
                f"Unknown IP probe '{item}'. Use a URL or one of: {', '.join(BUILTIN_PROBES)}"
            )
    return probes


# =============================================================================
# Consensus
# =============================================================================


def combine(results: Sequence[ProbeResult], policy: ConsensusPolicy) -> IPv4Address:
    """Combine ordered probe results into a single address.

    `results` holds one `(probe_name, address)` pair per probe, in configured
    order, with `None` for probes that failed.
    """
    answers = [(name, address) for name, address in results if address is not None]
    if not answers:
        raise ResolutionError(f"all {len(results)} IP probe(s) failed")

    if policy == ConsensusPolicy.FIRST:
        return answers[0][1]

    votes = Counter(address for _, address in answers)
    if policy == ConsensusPolicy.UNANIMOUS:
        if len(votes) > 1:
            raise ResolutionError(f"IP probes disagree: {_describe(answers)}")
        return answers[0][1]

    ranked = votes.most_common()
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        raise ResolutionError(f"no majority among IP probes: {_describe(answers)}")
    return ranked[0][0]


def _describe(answers: Sequence[ProbeResult]) -> str:
    return ", ".join(f"{name}={address}" for name, address in answers)


# =============================================================================
# Resolver
# =============================================================================


class ExternalIPResolver:
    def __init__(
        self,
        probes: Sequence[IPProbe],
        policy: ConsensusPolicy = ConsensusPolicy.MAJORITY,
        max_workers: Optional[int] = None,
    ):
        if not probes:
            raise ValueError("At least one IP probe is required")
        self.probes = list(probes)
        self.policy = policy
        self._max_workers = max_workers or len(self.probes)

    def resolve(self) -> IPv4Address:
        """Query every probe concurrently and return the agreed address.

        Raises:
            ResolutionError: No probe succeeded, or the answers are inconsistent
                under the configured policy.
        """
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="ip-probe"
        ) as pool:
            futures = [pool.submit(self._run_probe, probe) for probe in self.probes]
            results = [future.result() for future in futures]

        address = combine(results, self.policy)
        logger.debug(f"Resolved external IP {address} ({self.policy.value})")
        return address

    def _run_probe(self, probe: IPProbe) -> ProbeResult:
        try:
            address = probe.probe()
        except ResolutionError as e:
            logger.debug(f"IP probe failed: {e}")
            return probe.name, None
        logger.debug(f"IP probe '{probe.name}' reported {address}")
        return probe.name, address
