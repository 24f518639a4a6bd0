"""Runtime configuration.

Settings are read from environment variables. `CONFIG_PATH` may point at a
YAML file whose keys are the lower-case variable names; environment variables
win over the file.

    Access list:
        PREFIX_LIST_ID             Managed prefix list to keep in sync (required)
        ENTRY_DESCRIPTION          Description that marks entries owned by this agent (required)
        AWS_REGION                 Region of the prefix list (default: boto3 credential chain)

    Runtime:
        SYNC_MODE                  "watch", "once" or "cleanup" (default: watch)
        POLL_INTERVAL_SECONDS      Poll interval in watch mode (default: 60, minimum: 10)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
        DUPLICATE_POLICY           "keep-newest", "keep-matching" or "remove-all"
                                   (default: keep-newest)

    External IP detection:
        IP_PROBES                  Comma-separated probe names or URLs (default: all built-ins)
        IP_CONSENSUS               "majority", "first" or "unanimous" (default: majority)
        IP_PROBE_TIMEOUT_SECONDS   Per-probe timeout (default: 5)
        EXTERNAL_IP                Skip probing and always use this address

    Retries:
        RETRY_MAX_ATTEMPTS         Attempts per mutation and cycle (default: 5)
        RETRY_BASE_DELAY_SECONDS   First backoff step (default: 1.0)
        RETRY_MAX_DELAY_SECONDS    Backoff ceiling (default: 20.0)

    Notifications:
        NOTIFY_WEBHOOK_URL         POST a JSON message on IP changes and failed cleanup
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from allowlist_sync.errors import ConfigError

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL_SECONDS = 10
MAX_DESCRIPTION_LENGTH = 255

PREFIX_LIST_ID_RE = re.compile(r"\A(?i:pl-([0-9a-z]{8}|[0-9a-z]{17}))\Z")

SETTING_NAMES = (
    "PREFIX_LIST_ID",
    "ENTRY_DESCRIPTION",
    "AWS_REGION",
    "SYNC_MODE",
    "POLL_INTERVAL_SECONDS",
    "LOG_LEVEL",
    "DUPLICATE_POLICY",
    "IP_PROBES",
    "IP_CONSENSUS",
    "IP_PROBE_TIMEOUT_SECONDS",
    "EXTERNAL_IP",
    "RETRY_MAX_ATTEMPTS",
    "RETRY_BASE_DELAY_SECONDS",
    "RETRY_MAX_DELAY_SECONDS",
    "NOTIFY_WEBHOOK_URL",
)


class SyncMode(Enum):
    WATCH = "watch"
    ONCE = "once"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class Settings:
    prefix_list_id: str
    entry_description: str
    aws_region: str = ""
    sync_mode: SyncMode = SyncMode.WATCH
    poll_interval_seconds: int = 60
    log_level: str = "INFO"
    duplicate_policy: str = "keep-newest"
    ip_probes: List[str] = field(default_factory=list)
    ip_consensus: str = "majority"
    ip_probe_timeout_seconds: float = 5.0
    external_ip: str = ""
    retry_max_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 20.0
    notify_webhook_url: str = ""

    @classmethod
    def load(cls, environ: Mapping[str, str]) -> "Settings":
        """Build settings from `environ`, layered over the optional YAML file."""
        raw: Dict[str, str] = {}
        config_path = (environ.get("CONFIG_PATH") or "").strip()
        if config_path:
            raw.update(load_config_file(config_path))
        for name in SETTING_NAMES:
            value = environ.get(name)
            if value is not None and value.strip() != "":
                raw[name] = value.strip()
        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, str]) -> "Settings":
        errors: List[str] = []

        prefix_list_id = raw.get("PREFIX_LIST_ID", "")
        if not prefix_list_id:
            errors.append("PREFIX_LIST_ID is required")
        elif not PREFIX_LIST_ID_RE.match(prefix_list_id):
            errors.append(
                f"PREFIX_LIST_ID '{prefix_list_id}' is invalid; "
                "expected format is 'pl-1234567890abcdef0'"
            )

        entry_description = raw.get("ENTRY_DESCRIPTION", "")
        if not entry_description:
            errors.append("ENTRY_DESCRIPTION is required")
        elif len(entry_description) > MAX_DESCRIPTION_LENGTH:
            errors.append(f"ENTRY_DESCRIPTION must be at most {MAX_DESCRIPTION_LENGTH} characters")

        sync_mode = SyncMode.WATCH
        mode_value = raw.get("SYNC_MODE", "watch").lower()
        try:
            sync_mode = SyncMode(mode_value)
        except ValueError:
            errors.append(f"Invalid SYNC_MODE: {mode_value}. Use 'watch', 'once' or 'cleanup'")

        log_level = raw.get("LOG_LEVEL", "INFO").upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            errors.append(f"Invalid LOG_LEVEL: {log_level}")

        duplicate_policy = raw.get("DUPLICATE_POLICY", "keep-newest").lower()
        if duplicate_policy not in {"keep-newest", "keep-matching", "remove-all"}:
            errors.append(
                f"Invalid DUPLICATE_POLICY: {duplicate_policy}. "
                "Use 'keep-newest', 'keep-matching' or 'remove-all'"
            )

        ip_consensus = raw.get("IP_CONSENSUS", "majority").lower()
        if ip_consensus not in {"majority", "first", "unanimous"}:
            errors.append(
                f"Invalid IP_CONSENSUS: {ip_consensus}. Use 'majority', 'first' or 'unanimous'"
            )

        external_ip = raw.get("EXTERNAL_IP", "")
        if external_ip:
            try:
                ipaddress.IPv4Address(external_ip)
            except ValueError as e:
                errors.append(f"EXTERNAL_IP must be an IPv4 address: {e}")

        poll_interval = _parse_number(raw, "POLL_INTERVAL_SECONDS", 60, int, errors)
        if poll_interval is not None and poll_interval <= 0:
            errors.append("POLL_INTERVAL_SECONDS must be positive")
        elif poll_interval is not None and poll_interval < MIN_POLL_INTERVAL_SECONDS:
            logger.warning(
                f"POLL_INTERVAL_SECONDS={poll_interval} is below the minimum; "
                f"using {MIN_POLL_INTERVAL_SECONDS}s"
            )
            poll_interval = MIN_POLL_INTERVAL_SECONDS

        probe_timeout = _parse_number(raw, "IP_PROBE_TIMEOUT_SECONDS", 5.0, float, errors)
        if probe_timeout is not None and probe_timeout <= 0:
            errors.append("IP_PROBE_TIMEOUT_SECONDS must be positive")

        max_attempts = _parse_number(raw, "RETRY_MAX_ATTEMPTS", 5, int, errors)
        if max_attempts is not None and max_attempts < 1:
            errors.append("RETRY_MAX_ATTEMPTS must be at least 1")

        base_delay = _parse_number(raw, "RETRY_BASE_DELAY_SECONDS", 1.0, float, errors)
        max_delay = _parse_number(raw, "RETRY_MAX_DELAY_SECONDS", 20.0, float, errors)
        for name, value in (
            ("RETRY_BASE_DELAY_SECONDS", base_delay),
            ("RETRY_MAX_DELAY_SECONDS", max_delay),
        ):
            if value is not None and value < 0:
                errors.append(f"{name} must not be negative")

        if errors:
            raise ConfigError("; ".join(errors))

        return cls(
            prefix_list_id=prefix_list_id,
            entry_description=entry_description,
            aws_region=raw.get("AWS_REGION", ""),
            sync_mode=sync_mode,
            poll_interval_seconds=poll_interval,
            log_level=log_level,
            duplicate_policy=duplicate_policy,
            ip_probes=_parse_list(raw.get("IP_PROBES", "")),
            ip_consensus=ip_consensus,
            ip_probe_timeout_seconds=probe_timeout,
            external_ip=external_ip,
            retry_max_attempts=max_attempts,
            retry_base_delay_seconds=base_delay,
            retry_max_delay_seconds=max_delay,
            notify_webhook_url=raw.get("NOTIFY_WEBHOOK_URL", ""),
        )


# =============================================================================
# Config File
# =============================================================================


def load_config_file(config_path: str) -> Dict[str, str]:
    """Read settings from a YAML mapping, returning upper-case setting names.

    Unknown keys are ignored with a warning. List values (e.g. `ip_probes`) are
    joined into the comma-separated form used by the environment variables.
    """
    path = Path(config_path)
    if not path.is_file():
        raise ConfigError(f"Config file {config_path} does not exist")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}", e) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    settings: Dict[str, str] = {}
    for key, value in data.items():
        name = str(key).strip().upper()
        if name not in SETTING_NAMES:
            logger.warning(f"Ignoring unknown setting '{key}' in {config_path}")
            continue
        if value is None:
            continue
        settings[name] = _stringify(value)
    return settings


# =============================================================================
# Utility Functions
# =============================================================================


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(v).strip() for v in value)
    return str(value).strip()


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_number(raw: Mapping[str, str], name: str, default, kind, errors: List[str]) -> Optional[Any]:
    value = raw.get(name)
    if value is None or value == "":
        return default
    try:
        return kind(value)
    except ValueError:
        errors.append(f"{name} must be a number, got '{value}'")
        return None
