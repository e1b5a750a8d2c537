"""Configuration loading helpers for the ledgersync service."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from ledgersync.clients.ledger_client import DEFAULT_KOIOS_URL, LedgerApiSettings
from ledgersync.common.parallel import DEFAULT_CONCURRENCY, MAX_ENV_CONCURRENCY
from ledgersync.common.retry import RetryPolicy


DEFAULT_CONFIG_PATH = Path("ledgersync/config.yaml")
FALLBACK_CONFIG_PATH = Path("ledgersync/config.example.yaml")

DEFAULT_LEASE_SECONDS = 15 * 60


@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    min_connections: int = 1
    max_connections: int = 10


@dataclass
class RetryConfig:
    max_attempts: int = 4
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 8.0
    max_retry_after_seconds: float = 300.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            max_retry_after=self.max_retry_after_seconds,
        ).normalized()


@dataclass
class LedgerApiConfig:
    base_url: str = DEFAULT_KOIOS_URL
    api_key: Optional[str] = None
    timeout_seconds: float = 20.0
    quota_header: str = "x-ratelimit-remaining"
    quota_floor: int = 0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def to_settings(self) -> LedgerApiSettings:
        return LedgerApiSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            timeout_seconds=self.timeout_seconds,
            quota_header=self.quota_header,
            retry=self.retry.to_policy(),
        )


@dataclass
class JobsConfig:
    instance_id: Optional[str] = None
    lease_seconds: float = float(DEFAULT_LEASE_SECONDS)
    renew_leases: bool = True
    fanout_concurrency: int = DEFAULT_CONCURRENCY
    delegation_concurrency: int = 2
    epoch_backfill_concurrency: int = 2
    min_voting_power: int = 1
    include_delegation_snapshot: bool = False

    def normalized(self) -> "JobsConfig":
        lease = _maybe_float(self.lease_seconds, float(DEFAULT_LEASE_SECONDS)) or float(DEFAULT_LEASE_SECONDS)
        if lease <= 0:
            lease = float(DEFAULT_LEASE_SECONDS)
        fanout = _maybe_int(self.fanout_concurrency, DEFAULT_CONCURRENCY) or DEFAULT_CONCURRENCY
        if not 1 <= fanout <= MAX_ENV_CONCURRENCY:
            fanout = DEFAULT_CONCURRENCY
        delegation = max(1, _maybe_int(self.delegation_concurrency, 2) or 2)
        epoch_backfill = max(1, _maybe_int(self.epoch_backfill_concurrency, 2) or 2)
        min_power = max(0, _maybe_int(self.min_voting_power, 1) or 0)
        instance = (self.instance_id or "").strip() or None
        return JobsConfig(
            instance_id=instance,
            lease_seconds=lease,
            renew_leases=bool(self.renew_leases),
            fanout_concurrency=fanout,
            delegation_concurrency=delegation,
            epoch_backfill_concurrency=epoch_backfill,
            min_voting_power=min_power,
            include_delegation_snapshot=bool(self.include_delegation_snapshot),
        )

    def resolved_instance_id(self, env: Mapping[str, str] | None = None) -> str:
        env = os.environ if env is None else env
        return self.instance_id or env.get("HOSTNAME") or socket.gethostname() or "api-instance"


@dataclass
class LedgerSyncConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ledger: LedgerApiConfig = field(default_factory=LedgerApiConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerSyncConfig":
        database_data = data.get("database", {}) or {}
        database_url_raw = database_data.get("url") or database_data.get("dsn")
        min_connections = _maybe_int(database_data.get("min_connections"), 1) or 1
        max_connections = _maybe_int(database_data.get("max_connections"), 10) or 10
        database = DatabaseConfig(
            url=str(database_url_raw).strip() if database_url_raw else None,
            min_connections=max(1, min_connections),
            max_connections=max(1, max_connections),
        )

        ledger_defaults = LedgerApiConfig()
        ledger_data = data.get("ledger", {}) or {}
        retry_data = ledger_data.get("retry", {}) or {}
        retry_defaults = RetryConfig()
        retry = RetryConfig(
            max_attempts=_maybe_int(retry_data.get("max_attempts"), retry_defaults.max_attempts)
            or retry_defaults.max_attempts,
            base_delay_seconds=_maybe_float(retry_data.get("base_delay_seconds"), retry_defaults.base_delay_seconds)
            or retry_defaults.base_delay_seconds,
            max_delay_seconds=_maybe_float(retry_data.get("max_delay_seconds"), retry_defaults.max_delay_seconds)
            or retry_defaults.max_delay_seconds,
            max_retry_after_seconds=_maybe_float(
                retry_data.get("max_retry_after_seconds"), retry_defaults.max_retry_after_seconds
            )
            or retry_defaults.max_retry_after_seconds,
        )
        timeout_value = _maybe_float(ledger_data.get("timeout_seconds"), ledger_defaults.timeout_seconds)
        if timeout_value is None or timeout_value <= 0:
            timeout_value = ledger_defaults.timeout_seconds
        quota_floor = _maybe_int(ledger_data.get("quota_floor"), ledger_defaults.quota_floor)
        ledger = LedgerApiConfig(
            base_url=str(ledger_data.get("base_url") or ledger_defaults.base_url).strip(),
            api_key=ledger_data.get("api_key") or None,
            timeout_seconds=timeout_value,
            quota_header=str(ledger_data.get("quota_header") or ledger_defaults.quota_header).strip(),
            quota_floor=max(0, quota_floor or 0),
            retry=retry,
        )

        jobs_data = data.get("jobs", {}) or {}
        jobs_defaults = JobsConfig()
        jobs = JobsConfig(
            instance_id=jobs_data.get("instance_id"),
            lease_seconds=jobs_data.get("lease_seconds", jobs_defaults.lease_seconds),
            renew_leases=_maybe_bool(jobs_data.get("renew_leases"), jobs_defaults.renew_leases),
            fanout_concurrency=jobs_data.get("fanout_concurrency", jobs_defaults.fanout_concurrency),
            delegation_concurrency=jobs_data.get("delegation_concurrency", jobs_defaults.delegation_concurrency),
            epoch_backfill_concurrency=jobs_data.get(
                "epoch_backfill_concurrency",
                jobs_defaults.epoch_backfill_concurrency,
            ),
            min_voting_power=jobs_data.get("min_voting_power", jobs_defaults.min_voting_power),
            include_delegation_snapshot=_maybe_bool(
                jobs_data.get("include_delegation_snapshot"),
                jobs_defaults.include_delegation_snapshot,
            ),
        ).normalized()

        return cls(database=database, ledger=ledger, jobs=jobs)

    def apply_env_overrides(self, env: Mapping[str, str]) -> None:
        database_url = env.get("DATABASE_URL")
        if database_url and not self.database.url:
            self.database.url = database_url

        base_url = env.get("KOIOS_API_URL")
        if base_url:
            self.ledger.base_url = base_url.strip()
        api_key = env.get("KOIOS_API_KEY")
        if api_key:
            self.ledger.api_key = api_key.strip()
        timeout_ms = _maybe_float(env.get("KOIOS_TIMEOUT"), None)
        if timeout_ms is not None and timeout_ms > 0:
            self.ledger.timeout_seconds = timeout_ms / 1000.0

        concurrency = _maybe_int(env.get("VOTER_SYNC_CONCURRENCY"), None)
        if concurrency is not None and 1 <= concurrency <= MAX_ENV_CONCURRENCY:
            self.jobs.fanout_concurrency = concurrency

        lease = _maybe_float(env.get("LEDGERSYNC_LOCK_LEASE_SECONDS"), None)
        if lease is not None and lease > 0:
            self.jobs.lease_seconds = lease

        instance_id = env.get("LEDGERSYNC_INSTANCE_ID")
        if instance_id and instance_id.strip():
            self.jobs.instance_id = instance_id.strip()


def load_config(path: str | Path | None = None, *, env: Mapping[str, str] | None = None) -> LedgerSyncConfig:
    env = env or os.environ

    candidate_paths: list[Path] = []
    if path:
        candidate_paths.append(Path(path))
    elif env.get("LEDGERSYNC_CONFIG_PATH"):
        candidate_paths.append(Path(env["LEDGERSYNC_CONFIG_PATH"]))

    candidate_paths.extend([DEFAULT_CONFIG_PATH, FALLBACK_CONFIG_PATH])

    config_data: dict[str, Any] = {}
    for candidate in candidate_paths:
        if candidate and candidate.exists():
            with candidate.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            config_data = loaded if isinstance(loaded, dict) else {}
            break

    config = LedgerSyncConfig.from_dict(config_data)
    config.apply_env_overrides(env)
    return config


def _maybe_float(value: Any, default: Optional[float]) -> Optional[float]:
    if value in {None, "", "None"}:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _maybe_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value in {None, "", "None"}:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _maybe_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


__all__ = [
    "LedgerSyncConfig",
    "DatabaseConfig",
    "LedgerApiConfig",
    "RetryConfig",
    "JobsConfig",
    "load_config",
]
