from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from ledgersync.common.cache import LookupCache
from ledgersync.domain.delegation import BackfillCursor, DelegationState, replay_history
from ledgersync.domain.epoch import DrepRecord
from ledgersync.services.delegation_tracker import (
    BACKFILL_JOB_NAME,
    SYNC_STATE_JOB_NAME,
    DelegationChangeTracker,
)
from ledgersync.services.drep_inventory import DrepInventoryService
from ledgersync.tests.fakes import (
    InMemoryDelegationRepository,
    InMemoryDrepRepository,
    StubLedgerClient,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _dreps() -> InMemoryDrepRepository:
    return InMemoryDrepRepository(
        [
            DrepRecord(drep_id="drep1alice", voting_power=100),
            DrepRecord(drep_id="drep1bob", voting_power=50),
            DrepRecord(drep_id="drep1dormant", voting_power=0),
        ]
    )


def _tracker(
    ledger: StubLedgerClient,
    delegations: InMemoryDelegationRepository,
    dreps: InMemoryDrepRepository | None = None,
    **kwargs: Any,
) -> DelegationChangeTracker:
    dreps = dreps if dreps is not None else _dreps()
    inventory = DrepInventoryService(ledger_client=ledger, repository=dreps, concurrency=2)
    return DelegationChangeTracker(
        ledger_client=ledger,
        dreps=dreps,
        delegations=delegations,
        inventory=inventory,
        concurrency=2,
        clock=lambda: NOW,
        **kwargs,
    )


def _delegation(tx_hash: str, epoch_no: int, slot: int, drep_id: str | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "action_type": "delegation_drep",
        "tx_hash": tx_hash,
        "epoch_no": epoch_no,
        "epoch_slot": slot,
        "absolute_slot": epoch_no * 432000 + slot,
        "block_time": 1_600_000_000 + epoch_no * 432000 + slot,
    }
    if drep_id is not None:
        entry["info"] = {"drep_id": drep_id}
    return entry


def _state_rows(repository: InMemoryDelegationRepository) -> set[tuple]:
    return {
        (state.stake_address, state.drep_id, state.amount, state.delegated_epoch)
        for state in repository.states.values()
    }


def _event_rows(repository: InMemoryDelegationRepository) -> list[tuple]:
    return sorted(
        (event.stake_address, event.from_drep_id or "", event.to_drep_id or "", event.delegated_epoch or -1, event.amount or 0)
        for event in repository.events
    )


@pytest.mark.asyncio
async def test_new_address_history_is_replayed_to_the_observed_drep() -> None:
    ledger = StubLedgerClient(
        current_epoch=500,
        delegators={
            "drep1alice": [{"stake_address": "stake1u1", "amount": "1000", "epoch_no": 480}],
            "drep1bob": [{"stake_address": "stake1u2", "amount": "5"}],
        },
        history={
            "stake1u1": [
                _delegation("tx2", 470, 5),
                {"action_type": "registration", "tx_hash": "tx0", "epoch_no": 440},
                _delegation("tx1", 450, 100, drep_id="drep1bob"),
            ],
        },
        transactions={
            "tx2": {
                "tx_hash": "tx2",
                "certificates": [
                    {"type": "vote_delegation", "info": {"stake_address": "stake1u1", "drep_id": "drep1alice"}},
                ],
            },
        },
    )
    delegations = InMemoryDelegationRepository()

    result = await _tracker(ledger, delegations).sync(LookupCache())

    assert ledger.calls_named("tx_info") == [["tx2"]]
    assert ledger.calls_named("drep_delegators") == ["drep1alice", "drep1bob"]

    history = delegations.list_changes("stake1u1")
    assert [(event.from_drep_id, event.to_drep_id, event.delegated_epoch) for event in history] == [
        (None, "drep1bob", 450),
        ("drep1bob", "drep1alice", 470),
    ]
    assert delegations.states["stake1u1"].drep_id == "drep1alice"
    assert delegations.states["stake1u1"].amount == 1000
    assert delegations.states["stake1u1"].delegated_epoch == 480

    # No on-chain history: the diff phase records the first delegation.
    fresh = delegations.list_changes("stake1u2")
    assert [(event.from_drep_id, event.to_drep_id, event.delegated_epoch) for event in fresh] == [
        (None, "drep1bob", 499),
    ]
    assert delegations.states["stake1u2"].drep_id == "drep1bob"

    assert result.dreps_considered == 2
    assert result.delegators_observed == 2
    assert result.backfilled_addresses == 2
    assert result.changes_recorded == 3
    assert result.backfill_completed is True
    assert delegations.cursors[BACKFILL_JOB_NAME].completed
    assert delegations.cursors[BACKFILL_JOB_NAME].last_stake_address is None
    assert delegations.sync_state[SYNC_STATE_JOB_NAME] == 500


@pytest.mark.asyncio
async def test_known_addresses_are_diffed_without_history_fetch() -> None:
    ledger = StubLedgerClient(
        current_epoch=500,
        delegators={
            "drep1alice": [
                {"stake_address": "stake1same", "amount": "1000", "epoch_no": 480},
                {"stake_address": "stake1moved", "amount": "5", "epoch_no": 495},
            ],
        },
    )
    delegations = InMemoryDelegationRepository()
    delegations.cursors[BACKFILL_JOB_NAME] = BackfillCursor(job_name=BACKFILL_JOB_NAME, completed_at=NOW)
    delegations.states["stake1same"] = DelegationState("stake1same", "drep1alice", 1000, 480)
    delegations.states["stake1moved"] = DelegationState("stake1moved", "drep1bob", 5, 490)

    result = await _tracker(ledger, delegations).sync()

    assert ledger.calls_named("account_update_history") == []
    assert delegations.list_changes("stake1same") == []
    moved = delegations.list_changes("stake1moved")
    assert len(moved) == 1
    assert (moved[0].from_drep_id, moved[0].to_drep_id, moved[0].delegated_epoch) == ("drep1bob", "drep1alice", 495)
    assert delegations.states["stake1moved"].drep_id == "drep1alice"
    assert result.changes_recorded == 1
    assert result.states_upserted == 1


@pytest.mark.asyncio
async def test_amount_change_updates_state_without_change_event() -> None:
    ledger = StubLedgerClient(
        delegators={"drep1alice": [{"stake_address": "stake1a", "amount": "2500", "epoch_no": 480}]},
    )
    delegations = InMemoryDelegationRepository()
    delegations.cursors[BACKFILL_JOB_NAME] = BackfillCursor(job_name=BACKFILL_JOB_NAME, completed_at=NOW)
    delegations.states["stake1a"] = DelegationState("stake1a", "drep1alice", 1000, 480)

    result = await _tracker(ledger, delegations).sync()

    assert delegations.events == []
    assert delegations.states["stake1a"].amount == 2500
    assert result.states_upserted == 1


def _resume_fixture() -> StubLedgerClient:
    return StubLedgerClient(
        current_epoch=500,
        delegators={
            "drep1alice": [
                {"stake_address": "stake1a", "amount": "10", "epoch_no": 490},
                {"stake_address": "stake1c", "amount": "30", "epoch_no": 491},
                {"stake_address": "stake1e", "amount": "50", "epoch_no": 492},
            ],
            "drep1bob": [
                {"stake_address": "stake1b", "amount": "20", "epoch_no": 493},
                {"stake_address": "stake1d", "amount": "40"},
            ],
        },
        history={
            "stake1a": [_delegation("ta1", 400, 1, "drep1bob"), _delegation("ta2", 450, 1, "drep1alice")],
            "stake1b": [_delegation("tb1", 410, 7, "drep1bob")],
            "stake1c": [_delegation("tc1", 420, 3, "drep1alice"), _delegation("tc2", 420, 9, "drep1alice")],
            "stake1e": [_delegation("te1", 430, 2, "drep1bob"), _delegation("te2", 480, 2, "drep1alice")],
        },
    )


@pytest.mark.asyncio
async def test_resumed_backfill_matches_uninterrupted_run() -> None:
    uninterrupted = InMemoryDelegationRepository()
    await _tracker(_resume_fixture(), uninterrupted).sync()

    interrupted = InMemoryDelegationRepository(fail_on_progress_call=3)
    with pytest.raises(RuntimeError, match="connection lost"):
        await _tracker(_resume_fixture(), interrupted).sync()

    cursor = interrupted.cursors[BACKFILL_JOB_NAME]
    assert cursor.last_stake_address == "stake1b"
    assert cursor.processed_count == 2
    assert cursor.error_message == "connection lost"
    assert not cursor.completed

    resumed_ledger = _resume_fixture()
    result = await _tracker(resumed_ledger, interrupted).sync()

    assert resumed_ledger.calls_named("account_update_history") == [["stake1c", "stake1d", "stake1e"]]
    assert result.backfill_completed is True
    assert interrupted.cursors[BACKFILL_JOB_NAME].processed_count == 5
    assert interrupted.cursors[BACKFILL_JOB_NAME].error_message is None
    assert _state_rows(interrupted) == _state_rows(uninterrupted)
    assert _event_rows(interrupted) == _event_rows(uninterrupted)


@pytest.mark.asyncio
async def test_failed_drep_fetch_is_retried_once_and_blocks_completion() -> None:
    ledger = StubLedgerClient(
        delegators={"drep1alice": [{"stake_address": "stake1a", "amount": "10", "epoch_no": 490}]},
        failing_dreps=["drep1bob"],
    )
    delegations = InMemoryDelegationRepository()

    result = await _tracker(ledger, delegations).sync()

    assert ledger.calls_named("drep_delegators").count("drep1bob") == 2
    assert [failure.id for failure in result.failed] == ["drep1bob"]
    assert delegations.states["stake1a"].drep_id == "drep1alice"
    assert result.backfill_completed is False
    assert not delegations.cursors[BACKFILL_JOB_NAME].completed
    assert SYNC_STATE_JOB_NAME not in delegations.sync_state


@pytest.mark.asyncio
async def test_quota_floor_defers_backfill_and_diff() -> None:
    ledger = StubLedgerClient(
        delegators={"drep1alice": [{"stake_address": "stake1a", "amount": "10"}]},
        remaining_quota=3,
    )
    delegations = InMemoryDelegationRepository()

    result = await _tracker(ledger, delegations, quota_floor=5).sync()

    assert result.deferred == 1
    assert ledger.calls_named("account_update_history") == []
    assert delegations.states == {}
    assert delegations.events == []
    assert SYNC_STATE_JOB_NAME not in delegations.sync_state


@pytest.mark.asyncio
async def test_duplicate_address_keeps_last_drep_in_id_order() -> None:
    ledger = StubLedgerClient(
        delegators={
            "drep1alice": [{"stake_address": "stake1dup", "amount": "10"}],
            "drep1bob": [{"stake_address": "stake1dup", "amount": "10"}],
        },
    )
    delegations = InMemoryDelegationRepository()

    result = await _tracker(ledger, delegations).sync()

    assert result.delegators_observed == 1
    assert delegations.states["stake1dup"].drep_id == "drep1bob"


@pytest.mark.asyncio
async def test_empty_inventory_is_synced_before_fan_out() -> None:
    ledger = StubLedgerClient(
        drep_ids=["drep1alice"],
        drep_info={"drep1alice": {"drep_id": "drep1alice", "amount": "10"}},
    )
    dreps = InMemoryDrepRepository()

    result = await _tracker(ledger, InMemoryDelegationRepository(), dreps).sync()

    assert result.dreps_considered == 1
    assert ledger.calls_named("drep_delegators") == ["drep1alice"]


def test_replay_orders_by_epoch_then_slot_and_skips_repeats() -> None:
    replayed = replay_history(
        "stake1x",
        [
            _delegation("t3", 420, 9, "drep1c"),
            _delegation("t1", 410, 1, "drep1a"),
            _delegation("t2", 420, 3, "drep1a"),
        ],
    )

    assert [(event.from_drep_id, event.to_drep_id) for event in replayed.changes] == [
        (None, "drep1a"),
        ("drep1a", "drep1c"),
    ]
    assert replayed.latest_drep_id == "drep1c"
    assert replayed.latest_epoch == 420


@pytest.mark.asyncio
async def test_drep_gaining_power_after_registration_is_fanned_out() -> None:
    ledger = StubLedgerClient(
        current_epoch=499,
        drep_ids=["drep1new", "drep1old"],
        drep_info={
            "drep1new": {"drep_id": "drep1new", "amount": "0"},
            "drep1old": {"drep_id": "drep1old", "amount": "10"},
        },
        delegators={"drep1new": [{"stake_address": "stake1x", "amount": "5000000"}]},
    )
    dreps = InMemoryDrepRepository([DrepRecord(drep_id="drep1old", voting_power=10)])
    inventory = DrepInventoryService(ledger_client=ledger, repository=dreps, concurrency=2)

    await inventory.sync_inventory()
    assert dreps.records["drep1new"].voting_power == 0

    # Delegations arrive during the following epoch.
    ledger.drep_info["drep1new"] = {"drep_id": "drep1new", "amount": "5000000"}
    await inventory.sync_inventory()
    assert dreps.records["drep1new"].voting_power == 5_000_000

    delegations = InMemoryDelegationRepository()
    result = await _tracker(ledger, delegations, dreps).sync()

    assert result.dreps_considered == 2
    assert delegations.states["stake1x"].drep_id == "drep1new"


@pytest.mark.asyncio
async def test_repeat_flips_within_an_epoch_each_append_a_change() -> None:
    delegations = InMemoryDelegationRepository()
    delegations.cursors[BACKFILL_JOB_NAME] = BackfillCursor(job_name=BACKFILL_JOB_NAME, completed_at=NOW)
    delegations.states["stake1x"] = DelegationState("stake1x", "drep1alice", 10, 480)

    inserted_per_cycle = []
    for drep_id in ["drep1bob", "drep1alice", "drep1bob"]:
        ledger = StubLedgerClient(current_epoch=500, delegators={drep_id: [{"stake_address": "stake1x", "amount": "10"}]})
        result = await _tracker(ledger, delegations).sync()
        inserted_per_cycle.append(result.changes_recorded)

    assert inserted_per_cycle == [1, 1, 1]
    changes = delegations.list_changes("stake1x")
    assert [(change.from_drep_id, change.to_drep_id, change.delegated_epoch) for change in changes] == [
        ("drep1alice", "drep1bob", 499),
        ("drep1bob", "drep1alice", 499),
        ("drep1alice", "drep1bob", 499),
    ]
    assert delegations.states["stake1x"].drep_id == changes[-1].to_drep_id


def test_replayed_changes_carry_their_source_transaction() -> None:
    replayed = replay_history("stake1x", [_delegation("t1", 410, 1, "drep1a"), _delegation("t2", 410, 5, "drep1b")])

    assert [event.source_tx_hash for event in replayed.changes] == ["t1", "t2"]
    assert [event.dedupe_key() for event in replayed.changes] == [("stake1x", "t1"), ("stake1x", "t2")]
