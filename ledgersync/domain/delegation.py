"""Delegation state, change log entries and history replay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, Iterable, Mapping, Optional

DREP_DELEGATION_ACTION = "delegation_drep"

_DREP_ID_KEYS = ("delegated_drep", "drep_id", "drep")


@dataclass(frozen=True)
class DelegationObservation:
    stake_address: str
    drep_id: str
    amount: Optional[int]
    epoch_no: Optional[int]


@dataclass
class DelegationState:
    stake_address: str
    drep_id: Optional[str]
    amount: Optional[int] = None
    delegated_epoch: Optional[int] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class DelegationChangeEvent:
    stake_address: str
    from_drep_id: Optional[str]
    to_drep_id: Optional[str]
    delegated_epoch: Optional[int]
    amount: Optional[int] = None
    source_tx_hash: Optional[str] = None

    def dedupe_key(self) -> Optional[tuple[str, str]]:
        # Only replayed history carries a source transaction; observed diffs always append.
        if not self.source_tx_hash:
            return None
        return (self.stake_address, self.source_tx_hash)


@dataclass
class BackfillCursor:
    job_name: str
    last_stake_address: Optional[str] = None
    processed_count: int = 0
    total_count: int = 0
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.completed_at is not None

    def remaining(self, addresses: Iterable[str], known: Collection[str] = ()) -> list[str]:
        """Addresses still to replay, in sort order.

        Everything after the cursor is pending. Addresses at or before it are
        pending only when no state row exists for them yet, which happens when
        they first showed up after the cursor had already moved past them.
        """

        ordered = sorted(set(addresses))
        if self.last_stake_address is None:
            return ordered
        return [
            address
            for address in ordered
            if address > self.last_stake_address or address not in known
        ]

    def advance(self, stake_address: str) -> None:
        self.processed_count += 1
        if self.last_stake_address is None or stake_address > self.last_stake_address:
            self.last_stake_address = stake_address


@dataclass
class ReplayedHistory:
    changes: list[DelegationChangeEvent] = field(default_factory=list)
    latest_drep_id: Optional[str] = None
    latest_epoch: Optional[int] = None


def extract_drep_id(entry: Mapping[str, Any]) -> Optional[str]:
    for source in (entry, entry.get("info")):
        if not isinstance(source, Mapping):
            continue
        for key in _DREP_ID_KEYS:
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def is_drep_delegation(entry: Mapping[str, Any]) -> bool:
    action = entry.get("action_type")
    return isinstance(action, str) and DREP_DELEGATION_ACTION in action


def _sort_key(entry: Mapping[str, Any]) -> tuple[int, int, int, int]:
    def _value(name: str) -> int:
        raw = entry.get(name)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return -1
        return int(raw)

    return (_value("epoch_no"), _value("epoch_slot"), _value("absolute_slot"), _value("block_time"))


def replay_history(
    stake_address: str,
    entries: Iterable[Mapping[str, Any]],
    *,
    tx_drep_ids: Mapping[str, str] | None = None,
) -> ReplayedHistory:
    """Rebuild one address's drep transitions from its account update history.

    Entries are ordered by epoch, intra-epoch slot, absolute slot and block
    time. Repeated delegations to the same drep produce no transition.
    ``tx_drep_ids`` resolves entries whose payload omits the drep id.
    """

    resolved = tx_drep_ids or {}
    replayed = ReplayedHistory()
    for entry in sorted(entries, key=_sort_key):
        if not is_drep_delegation(entry):
            continue
        raw_hash = entry.get("tx_hash")
        tx_hash = raw_hash if isinstance(raw_hash, str) and raw_hash else None
        drep_id = extract_drep_id(entry)
        if drep_id is None and tx_hash is not None:
            drep_id = resolved.get(tx_hash)
        if not drep_id or drep_id == replayed.latest_drep_id:
            continue
        epoch = entry.get("epoch_no")
        epoch_no = epoch if isinstance(epoch, int) and not isinstance(epoch, bool) else None
        replayed.changes.append(
            DelegationChangeEvent(
                stake_address=stake_address,
                from_drep_id=replayed.latest_drep_id,
                to_drep_id=drep_id,
                delegated_epoch=epoch_no,
                source_tx_hash=tx_hash,
            )
        )
        replayed.latest_drep_id = drep_id
        replayed.latest_epoch = epoch_no
    return replayed


def drep_id_from_tx_certificates(tx: Mapping[str, Any], stake_address: str) -> Optional[str]:
    """Find the drep a vote-delegation certificate in ``tx`` points ``stake_address`` at."""

    certificates = tx.get("certificates") or []
    if not isinstance(certificates, list):
        return None
    for certificate in certificates:
        if not isinstance(certificate, Mapping):
            continue
        cert_type = certificate.get("type")
        if not isinstance(cert_type, str) or "vote_delegation" not in cert_type.lower():
            continue
        info = certificate.get("info")
        if not isinstance(info, Mapping):
            continue
        cert_stake = info.get("stake_address") or info.get("stake_addr")
        if isinstance(cert_stake, str) and cert_stake and cert_stake != stake_address:
            continue
        for key in ("drep_id", "delegated_drep", "drep"):
            value = info.get(key)
            if isinstance(value, str) and value:
                return value
        for value in info.values():
            if isinstance(value, str) and value.startswith("drep"):
                return value
    return None


__all__ = [
    "BackfillCursor",
    "DelegationChangeEvent",
    "DelegationObservation",
    "DelegationState",
    "ReplayedHistory",
    "drep_id_from_tx_certificates",
    "extract_drep_id",
    "is_drep_delegation",
    "replay_history",
]
