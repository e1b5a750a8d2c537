"""Ratification arithmetic over stored proposal ledger snapshots.

All sums stay in ``int``. Percentages are produced once, at the end, as
``Decimal`` values truncated to two places, so every caller sees the same
digits; floats only appear in :meth:`TallyResult.as_dict`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from ledgersync.common.numeric import truncated_percent
from ledgersync.domain.governance import (
    CommitteeVote,
    GovernanceActionType,
    ProposalLedgerSnapshot,
    StakeBuckets,
    VoteChoice,
    VoterClass,
    thresholds_for,
)

logger = logging.getLogger(__name__)

SPO_TRANSITION_EPOCH = 534
SPO_TRANSITION_PROPOSAL_ID = "gov_action1pvv5wmjqhwa4u85vu9f4ydmzu2mgt8n7et967ph2urhx53r70xusqnmm525"
DEFAULT_COMMITTEE_SIZE = 7
MIN_ELIGIBLE_COMMITTEE_SIZE = 7

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class TallyBreakdown:
    """Effective buckets after a formula decided where each raw bucket goes."""

    yes: int
    no: int
    abstain: int
    not_voted: int
    denominator: int
    distribution_base: int
    clamped_residual: Optional[int] = None


@dataclass
class TallyResult:
    voter_class: VoterClass
    formula: str
    yes: int
    no: int
    abstain: int
    not_voted: int
    denominator: int
    yes_percent: Optional[Decimal]
    no_percent: Optional[Decimal]
    abstain_percent: Optional[Decimal]
    not_voted_percent: Optional[Decimal]
    has_votes: bool
    clamped_residual: Optional[int] = None
    committee_size: Optional[int] = None
    committee_valid: Optional[bool] = None

    def as_dict(self) -> dict[str, object]:
        def _float(value: Optional[Decimal]) -> Optional[float]:
            return float(value) if value is not None else None

        return {
            "voter_class": self.voter_class.value,
            "formula": self.formula,
            "yes": str(self.yes),
            "no": str(self.no),
            "abstain": str(self.abstain),
            "not_voted": str(self.not_voted),
            "denominator": str(self.denominator),
            "yes_percent": _float(self.yes_percent),
            "no_percent": _float(self.no_percent),
            "abstain_percent": _float(self.abstain_percent),
            "not_voted_percent": _float(self.not_voted_percent),
            "clamped_residual": str(self.clamped_residual) if self.clamped_residual is not None else None,
            "committee_size": self.committee_size,
            "committee_valid": self.committee_valid,
        }


@dataclass
class ClassOutcome:
    voter_class: VoterClass
    threshold: Optional[Decimal]
    tally: Optional[TallyResult]
    passed: Optional[bool]

    @property
    def participates(self) -> bool:
        return self.threshold is not None


@dataclass
class ProposalOutcome:
    proposal_id: str
    action_type: Optional[GovernanceActionType]
    passed: bool
    classes: dict[VoterClass, ClassOutcome] = field(default_factory=dict)


def _clamp(residual: int) -> tuple[int, Optional[int]]:
    if residual >= 0:
        return residual, None
    return 0, residual


# Formula strategies -------------------------------------------------------


class StakeFormula:
    name = "stake"

    def apply(self, buckets: StakeBuckets, action_type: Optional[GovernanceActionType]) -> TallyBreakdown:
        raise NotImplementedError


class DrepFormula(StakeFormula):
    """Delegated stake with an inactive bucket; non-voters count as "no"."""

    name = "drep"

    def apply(self, buckets: StakeBuckets, action_type: Optional[GovernanceActionType]) -> TallyBreakdown:
        not_voted, clamped = _clamp(
            buckets.total
            - buckets.yes
            - buckets.no
            - buckets.abstain
            - buckets.always_abstain
            - buckets.always_no_confidence
            - buckets.inactive
        )
        if action_type is GovernanceActionType.NO_CONFIDENCE:
            yes = buckets.yes + buckets.always_no_confidence
            no = buckets.no + not_voted
        else:
            yes = buckets.yes
            no = buckets.no + buckets.always_no_confidence + not_voted
        abstain = buckets.abstain + buckets.always_abstain
        return TallyBreakdown(
            yes=yes,
            no=no,
            abstain=abstain,
            not_voted=not_voted,
            denominator=yes + no,
            distribution_base=buckets.total - buckets.inactive,
            clamped_residual=clamped,
        )


class _SpoFormula(StakeFormula):
    @staticmethod
    def effective_total(buckets: StakeBuckets) -> tuple[int, int, Optional[int]]:
        """Return ``(effective_total, not_voted, clamped_residual)``."""

        if buckets.no_vote_power is not None:
            # Upstream no-vote power = explicit no + always-no-confidence + pure not-voted.
            effective_total = buckets.yes + buckets.no_vote_power + buckets.abstain + buckets.always_abstain
            residual = buckets.no_vote_power - buckets.no - buckets.always_no_confidence
        else:
            breakdown = (
                buckets.yes
                + buckets.no
                + buckets.abstain
                + buckets.always_abstain
                + buckets.always_no_confidence
            )
            effective_total = max(buckets.total, breakdown)
            residual = effective_total - breakdown
        not_voted, clamped = _clamp(residual)
        return effective_total, not_voted, clamped


class LegacySpoFormula(_SpoFormula):
    """Pre-transition pool formula: stake that did not vote is left out entirely."""

    name = "spo_legacy"

    def apply(self, buckets: StakeBuckets, action_type: Optional[GovernanceActionType]) -> TallyBreakdown:
        _, not_voted, clamped = self.effective_total(buckets)
        yes = buckets.yes
        no = buckets.no + buckets.always_no_confidence
        abstain = buckets.abstain + buckets.always_abstain
        return TallyBreakdown(
            yes=yes,
            no=no,
            abstain=abstain,
            not_voted=not_voted,
            denominator=yes + no,
            distribution_base=yes + no + abstain,
            clamped_residual=clamped,
        )


class TransitionSpoFormula(_SpoFormula):
    """Post-transition pool formula: stake that did not vote folds into "no"."""

    name = "spo_transition"

    def apply(self, buckets: StakeBuckets, action_type: Optional[GovernanceActionType]) -> TallyBreakdown:
        effective_total, not_voted, clamped = self.effective_total(buckets)
        if action_type is GovernanceActionType.HARD_FORK_INITIATION:
            yes = buckets.yes
            abstain = buckets.abstain
            counted_as_no = not_voted + buckets.always_no_confidence + buckets.always_abstain
        elif action_type is GovernanceActionType.NO_CONFIDENCE:
            yes = buckets.yes + buckets.always_no_confidence
            abstain = buckets.abstain + buckets.always_abstain
            counted_as_no = not_voted
        else:
            yes = buckets.yes
            abstain = buckets.abstain + buckets.always_abstain
            counted_as_no = not_voted + buckets.always_no_confidence
        no = buckets.no + counted_as_no
        return TallyBreakdown(
            yes=yes,
            no=no,
            abstain=abstain,
            not_voted=not_voted,
            denominator=effective_total - abstain,
            distribution_base=yes + no + abstain,
            clamped_residual=clamped,
        )


def select_spo_formula(proposal_id: str, submission_epoch: Optional[int]) -> _SpoFormula:
    if proposal_id == SPO_TRANSITION_PROPOSAL_ID:
        return TransitionSpoFormula()
    if submission_epoch is not None and submission_epoch >= SPO_TRANSITION_EPOCH:
        return TransitionSpoFormula()
    return LegacySpoFormula()


# Committee ----------------------------------------------------------------


def latest_committee_votes(votes: Iterable[CommitteeVote]) -> list[CommitteeVote]:
    """Keep one vote per member: the newest by vote time, else record time."""

    latest: dict[str, CommitteeVote] = {}
    for vote in votes:
        current = latest.get(vote.member_id)
        if current is None or _vote_time(vote) > _vote_time(current):
            latest[vote.member_id] = vote
    return list(latest.values())


def _vote_time(vote: CommitteeVote) -> datetime:
    stamp = vote.voted_at or vote.recorded_at
    if stamp is None:
        return _EARLIEST
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


def tally_committee(votes: Iterable[CommitteeVote], committee_size: Optional[int] = None) -> TallyResult:
    roster = committee_size if committee_size is not None else DEFAULT_COMMITTEE_SIZE
    counted = latest_committee_votes(votes)
    yes = sum(1 for vote in counted if vote.vote is VoteChoice.YES)
    no = sum(1 for vote in counted if vote.vote is VoteChoice.NO)
    abstain = sum(1 for vote in counted if vote.vote is VoteChoice.ABSTAIN)
    not_voted, clamped = _clamp(roster - yes - no - abstain)
    if clamped is not None:
        logger.debug("vote_tally.committee.clamped roster=%s votes=%s", roster, len(counted))
    denominator = roster - abstain
    return TallyResult(
        voter_class=VoterClass.CC,
        formula="committee",
        yes=yes,
        no=no,
        abstain=abstain,
        not_voted=not_voted,
        denominator=denominator,
        yes_percent=truncated_percent(yes, denominator),
        no_percent=truncated_percent(no, denominator),
        abstain_percent=truncated_percent(abstain, roster),
        not_voted_percent=truncated_percent(not_voted, roster),
        has_votes=bool(counted),
        clamped_residual=clamped,
        committee_size=roster,
        committee_valid=roster >= MIN_ELIGIBLE_COMMITTEE_SIZE,
    )


# Engine -------------------------------------------------------------------


class VoteTallyEngine:
    """Pure tallies and pass/fail evaluation for one proposal snapshot."""

    def tally(self, snapshot: ProposalLedgerSnapshot, voter_class: VoterClass) -> Optional[TallyResult]:
        if voter_class is VoterClass.CC:
            return tally_committee(snapshot.committee_votes, snapshot.committee_size)

        buckets = snapshot.drep if voter_class is VoterClass.DREP else snapshot.spo
        if buckets is None:
            return None
        if voter_class is VoterClass.DREP:
            formula: StakeFormula = DrepFormula()
        else:
            formula = select_spo_formula(snapshot.proposal_id, snapshot.submission_epoch)

        breakdown = formula.apply(buckets, snapshot.parsed_action_type)
        if breakdown.clamped_residual is not None:
            logger.debug(
                "vote_tally.residual_clamped proposal=%s class=%s residual=%s",
                snapshot.proposal_id,
                voter_class.value,
                breakdown.clamped_residual,
            )
        return TallyResult(
            voter_class=voter_class,
            formula=formula.name,
            yes=breakdown.yes,
            no=breakdown.no,
            abstain=breakdown.abstain,
            not_voted=breakdown.not_voted,
            denominator=breakdown.denominator,
            yes_percent=truncated_percent(breakdown.yes, breakdown.denominator),
            no_percent=truncated_percent(breakdown.no, breakdown.denominator),
            abstain_percent=truncated_percent(breakdown.abstain, breakdown.distribution_base),
            not_voted_percent=truncated_percent(breakdown.not_voted, breakdown.distribution_base),
            has_votes=(breakdown.yes + breakdown.no + breakdown.abstain) > 0,
            clamped_residual=breakdown.clamped_residual,
        )

    def evaluate(self, snapshot: ProposalLedgerSnapshot) -> ProposalOutcome:
        thresholds = thresholds_for(snapshot.action_type)
        classes: dict[VoterClass, ClassOutcome] = {}
        passed = True
        for voter_class in (VoterClass.CC, VoterClass.DREP, VoterClass.SPO):
            threshold = thresholds.for_class(voter_class)
            if threshold is None:
                classes[voter_class] = ClassOutcome(voter_class, None, None, None)
                continue
            tally = self.tally(snapshot, voter_class)
            class_passed = self._class_passes(tally, threshold)
            classes[voter_class] = ClassOutcome(voter_class, threshold, tally, class_passed)
            passed = passed and class_passed
        return ProposalOutcome(
            proposal_id=snapshot.proposal_id,
            action_type=snapshot.parsed_action_type,
            passed=passed,
            classes=classes,
        )

    @staticmethod
    def _class_passes(tally: Optional[TallyResult], threshold: Decimal) -> bool:
        if tally is None or not tally.has_votes or tally.yes_percent is None:
            return False
        if tally.committee_valid is False:
            return False
        return tally.yes_percent >= threshold * 100


__all__ = [
    "ClassOutcome",
    "DrepFormula",
    "LegacySpoFormula",
    "ProposalOutcome",
    "SPO_TRANSITION_EPOCH",
    "SPO_TRANSITION_PROPOSAL_ID",
    "TallyBreakdown",
    "TallyResult",
    "TransitionSpoFormula",
    "VoteTallyEngine",
    "latest_committee_votes",
    "select_spo_formula",
    "tally_committee",
]
