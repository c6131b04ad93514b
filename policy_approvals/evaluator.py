"""
Stage Evaluator

Pure functions deciding whether a stage is complete and whether it is
approved, given the stage's approval rule and its current decisions.

Majority and quorum rules use different thresholds for completion and
approval, so a stage can complete on a tie. Ties are not approved.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .decisions import ApprovalDecision, DecisionValue
from .templates import ApprovalRule, Stage

DEFAULT_QUORUM_PERCENTAGE = Decimal("60")


class StageStatus(Enum):
    """Derived status of a stage for reporting"""
    DRAFT = "Draft"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class DecisionTally:
    """Counts of decision values within a stage"""
    total: int
    pending: int
    approved: int
    rejected: int

    @property
    def responded(self) -> int:
        return self.approved + self.rejected


@dataclass(frozen=True)
class StageOutcome:
    complete: bool
    approved: bool


def tally(decisions: List[ApprovalDecision]) -> DecisionTally:
    values = [d.value for d in decisions]
    return DecisionTally(
        total=len(values),
        pending=values.count(DecisionValue.PENDING),
        approved=values.count(DecisionValue.APPROVED),
        rejected=values.count(DecisionValue.REJECTED)
    )


def majority_threshold(total: int) -> int:
    return math.ceil(total / 2)


def quorum_threshold(total: int, quorum_percentage: Optional[Decimal] = None) -> int:
    """Responses needed for a quorum; the stage's percentage wins over the default"""
    percentage = DEFAULT_QUORUM_PERCENTAGE if quorum_percentage is None else Decimal(str(quorum_percentage))
    return math.ceil(Decimal(total) * percentage / Decimal(100))


def is_stage_complete(rule: ApprovalRule, decisions: List[ApprovalDecision],
                      quorum_percentage: Optional[Decimal] = None) -> bool:
    counts = tally(decisions)

    if rule == ApprovalRule.ALL_MUST_APPROVE:
        return counts.pending == 0
    if rule == ApprovalRule.ANY_ONE_APPROVES:
        return counts.responded > 0
    if rule == ApprovalRule.MAJORITY_APPROVES:
        majority = majority_threshold(counts.total)
        return counts.approved >= majority or counts.rejected >= majority
    if rule == ApprovalRule.QUORUM_APPROVES:
        return counts.responded >= quorum_threshold(counts.total, quorum_percentage)
    raise ValueError(f"Unknown approval rule: {rule}")


def is_stage_approved(rule: ApprovalRule, decisions: List[ApprovalDecision]) -> bool:
    counts = tally(decisions)

    if rule == ApprovalRule.ALL_MUST_APPROVE:
        return counts.rejected == 0 and counts.approved == counts.total
    if rule == ApprovalRule.ANY_ONE_APPROVES:
        return counts.approved > 0
    if rule in (ApprovalRule.MAJORITY_APPROVES, ApprovalRule.QUORUM_APPROVES):
        # Strict comparison: a tie is not approved
        return counts.approved > counts.rejected
    raise ValueError(f"Unknown approval rule: {rule}")


def evaluate_stage(stage: Stage, decisions: List[ApprovalDecision]) -> StageOutcome:
    """Evaluate a stage definition against its decisions"""
    complete = is_stage_complete(stage.approval_rule, decisions, stage.quorum_percentage)
    approved = complete and is_stage_approved(stage.approval_rule, decisions)
    return StageOutcome(complete=complete, approved=approved)


def stage_status(decisions: List[ApprovalDecision]) -> StageStatus:
    decisions = [d for d in decisions if d.value != DecisionValue.SUPERSEDED]
    if not decisions:
        return StageStatus.DRAFT
    counts = tally(decisions)
    if counts.rejected:
        return StageStatus.REJECTED
    if counts.approved == counts.total:
        return StageStatus.APPROVED
    return StageStatus.PENDING_APPROVAL
