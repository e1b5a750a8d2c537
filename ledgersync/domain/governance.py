from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class GovernanceActionType(str, Enum):
    NO_CONFIDENCE = "NO_CONFIDENCE"
    UPDATE_COMMITTEE = "UPDATE_COMMITTEE"
    NEW_CONSTITUTION = "NEW_CONSTITUTION"
    HARD_FORK_INITIATION = "HARD_FORK_INITIATION"
    PROTOCOL_PARAMETER_CHANGE = "PROTOCOL_PARAMETER_CHANGE"
    TREASURY_WITHDRAWALS = "TREASURY_WITHDRAWALS"
    INFO_ACTION = "INFO_ACTION"

    @classmethod
    def parse(cls, value: object) -> Optional["GovernanceActionType"]:
        """Accept enum names as well as the ledger's CamelCase spellings."""

        if isinstance(value, GovernanceActionType):
            return value
        if not isinstance(value, str):
            return None
        key = re.sub(r"[^A-Z]", "", value.upper())
        return _ACTION_ALIASES.get(key)


_ACTION_ALIASES = {
    "NOCONFIDENCE": GovernanceActionType.NO_CONFIDENCE,
    "UPDATECOMMITTEE": GovernanceActionType.UPDATE_COMMITTEE,
    "NEWCOMMITTEE": GovernanceActionType.UPDATE_COMMITTEE,
    "NEWCONSTITUTION": GovernanceActionType.NEW_CONSTITUTION,
    "HARDFORKINITIATION": GovernanceActionType.HARD_FORK_INITIATION,
    "PROTOCOLPARAMETERCHANGE": GovernanceActionType.PROTOCOL_PARAMETER_CHANGE,
    "PARAMETERCHANGE": GovernanceActionType.PROTOCOL_PARAMETER_CHANGE,
    "TREASURYWITHDRAWALS": GovernanceActionType.TREASURY_WITHDRAWALS,
    "INFOACTION": GovernanceActionType.INFO_ACTION,
}


class VoterClass(str, Enum):
    DREP = "drep"
    SPO = "spo"
    CC = "cc"


class VoteChoice(str, Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class StakeBuckets(BaseModel):
    """Stake-weighted vote power for one voter class, in lovelace."""

    total: int = Field(default=0, ge=0)
    yes: int = Field(default=0, ge=0)
    no: int = Field(default=0, ge=0)
    abstain: int = Field(default=0, ge=0)
    always_abstain: int = Field(default=0, ge=0)
    always_no_confidence: int = Field(default=0, ge=0)
    inactive: int = Field(default=0, ge=0)
    # Upstream "no" total that already includes stake that did not vote.
    no_vote_power: Optional[int] = Field(default=None, ge=0)


class CommitteeVote(BaseModel):
    member_id: str
    vote: VoteChoice
    voted_at: Optional[datetime] = None
    recorded_at: Optional[datetime] = None


class ProposalLedgerSnapshot(BaseModel):
    proposal_id: str
    action_type: str
    submission_epoch: Optional[int] = None
    drep: Optional[StakeBuckets] = None
    spo: Optional[StakeBuckets] = None
    committee_votes: List[CommitteeVote] = Field(default_factory=list)
    committee_size: Optional[int] = Field(default=None, ge=0)

    @property
    def parsed_action_type(self) -> Optional[GovernanceActionType]:
        return GovernanceActionType.parse(self.action_type)


class ClassThresholds(BaseModel):
    cc: Optional[Decimal] = None
    drep: Optional[Decimal] = None
    spo: Optional[Decimal] = None

    def for_class(self, voter_class: VoterClass) -> Optional[Decimal]:
        return getattr(self, voter_class.value)


def _thresholds(cc: Optional[str], drep: Optional[str], spo: Optional[str]) -> ClassThresholds:
    return ClassThresholds(
        cc=Decimal(cc) if cc is not None else None,
        drep=Decimal(drep) if drep is not None else None,
        spo=Decimal(spo) if spo is not None else None,
    )


VOTING_THRESHOLDS: dict[GovernanceActionType, ClassThresholds] = {
    GovernanceActionType.NO_CONFIDENCE: _thresholds(None, "0.67", "0.51"),
    GovernanceActionType.UPDATE_COMMITTEE: _thresholds(None, "0.67", "0.51"),
    GovernanceActionType.NEW_CONSTITUTION: _thresholds("0.67", "0.75", None),
    GovernanceActionType.HARD_FORK_INITIATION: _thresholds("0.67", "0.60", "0.51"),
    GovernanceActionType.PROTOCOL_PARAMETER_CHANGE: _thresholds("0.67", "0.67", None),
    GovernanceActionType.TREASURY_WITHDRAWALS: _thresholds("0.67", "0.67", None),
    GovernanceActionType.INFO_ACTION: _thresholds("0.67", "1.0", "1.0"),
}


def thresholds_for(action_type: object) -> ClassThresholds:
    parsed = GovernanceActionType.parse(action_type)
    if parsed is None:
        return VOTING_THRESHOLDS[GovernanceActionType.INFO_ACTION]
    return VOTING_THRESHOLDS[parsed]


__all__ = [
    "ClassThresholds",
    "CommitteeVote",
    "GovernanceActionType",
    "ProposalLedgerSnapshot",
    "StakeBuckets",
    "VOTING_THRESHOLDS",
    "VoteChoice",
    "VoterClass",
    "thresholds_for",
]
