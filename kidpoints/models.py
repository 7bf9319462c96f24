"""
Domain records
==============

Immutable records produced by the portal core. Rows from the remote store are
mapped into these by the repositories; services never pass raw dicts upward.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from kidpoints.utils.ids import uniq_ids

OfferStatus = Literal["Offered", "Accepted", "Rejected", "Fulfilled", "Expired"]
RedemptionStatus = Literal["Pending", "Approved", "Rejected", "Fulfilled"]
RewardStatus = Literal["available", "pending", "completed"]
WalletSource = Literal["precomputed", "derived"]

RESERVING_OFFER_STATUSES = ("Accepted",)
RESERVING_REDEMPTION_STATUSES = ("Pending", "Approved")
COMPLETED_REDEMPTION_STATUSES = ("Approved", "Fulfilled")

LEDGER_TABLE = "child_points_ledger"
LEGACY_LEDGER_TABLE = "points_ledger"


@dataclass(frozen=True)
class FamilyScope:
    family_id: str


@dataclass(frozen=True)
class ChildIdentity:
    """
    canonical_id: child_profiles.id
    legacy_uid:   child_profiles.child_uid (pre-migration id, may equal canonical_id)
    """
    canonical_id: str
    legacy_uid: str
    family_id: str
    nickname: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def ids(self) -> List[str]:
        return uniq_ids([self.legacy_uid, self.canonical_id])

    @property
    def greeting_name(self) -> str:
        return self.nickname or self.display_name or "Super-Star"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "canonical_id": self.canonical_id,
            "legacy_uid": self.legacy_uid,
            "family_id": self.family_id,
            "nickname": self.nickname,
            "display_name": self.display_name,
        }


@dataclass(frozen=True)
class ChildSummary:
    """One row of a family's child listing (selection UI)."""
    id: str
    name: Optional[str] = None
    age: Optional[int] = None
    nickname: Optional[str] = None


@dataclass(frozen=True)
class LedgerEntry:
    """
    points:
        + positive => earned
        + negative => spent / removed
    """
    id: Optional[str]
    child_uid: str
    points: int
    reason: Optional[str]
    created_at: str
    # Table the row came from; ids are only unique within one table.
    source: str = LEDGER_TABLE

    @property
    def logical_key(self) -> Tuple[Any, ...]:
        if self.id:
            return ("id", self.source, str(self.id))
        return ("row", self.source, self.child_uid, self.created_at, self.reason or "", int(self.points))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_uid": self.child_uid,
            "points": int(self.points),
            "reason": self.reason,
            "created_at": self.created_at,
            "source": self.source,
        }


@dataclass(frozen=True)
class WalletSnapshot:
    earned_points: int
    reserved_points: int
    available_points: int
    source: WalletSource
    encouragement_points: int = 0
    # Lifetime points already paid out; only the rollup reports it.
    spent_points: int = 0

    @classmethod
    def build(
        cls,
        earned: int,
        reserved: int,
        source: WalletSource,
        encouragement: int = 0,
        spent: int = 0,
    ) -> "WalletSnapshot":
        earned = max(0, int(earned))
        reserved = max(0, int(reserved))
        return cls(
            earned_points=earned,
            reserved_points=reserved,
            available_points=max(0, earned - reserved),
            source=source,
            encouragement_points=max(0, int(encouragement)),
            spent_points=max(0, int(spent)),
        )

    def can_afford(self, cost: Optional[int]) -> bool:
        return self.available_points >= int(cost or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "earned_points": self.earned_points,
            "reserved_points": self.reserved_points,
            "available_points": self.available_points,
            "source": self.source,
            "encouragement_points": self.encouragement_points,
            "spent_points": self.spent_points,
        }


@dataclass(frozen=True)
class Reward:
    id: str
    title: str
    points_cost: int = 0
    description: Optional[str] = None


@dataclass(frozen=True)
class Offer:
    id: str
    status: str
    title: str
    points_cost: int = 0
    child_uid: Optional[str] = None
    family_id: Optional[str] = None
    reward_id: Optional[str] = None
    description: Optional[str] = None
    message: Optional[str] = None
    offered_at: Optional[str] = None
    decided_at: Optional[str] = None

    @property
    def reserves_points(self) -> bool:
        return self.status in RESERVING_OFFER_STATUSES


@dataclass(frozen=True)
class Redemption:
    id: str
    status: str
    reward_id: Optional[str] = None
    offer_id: Optional[str] = None
    reward_title: Optional[str] = None
    points_cost: Optional[int] = None
    created_at: Optional[str] = None
    reviewed_at: Optional[str] = None
    notes: Optional[str] = None

    @property
    def reserves_points(self) -> bool:
        return self.status in RESERVING_REDEMPTION_STATUSES


@dataclass(frozen=True)
class ClassifiedReward:
    reward: Reward
    status: RewardStatus


@dataclass(frozen=True)
class WalletBreakdown:
    daily: int = 0
    checklists: int = 0
    games: int = 0
    targets: int = 0
    wishlist: int = 0
    reward_encourage: int = 0
    reward_redemption: int = 0
    other: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "daily": self.daily,
            "checklists": self.checklists,
            "games": self.games,
            "targets": self.targets,
            "wishlist": self.wishlist,
            "reward_encourage": self.reward_encourage,
            "reward_redemption": self.reward_redemption,
            "other": self.other,
            "total": self.total,
        }


@dataclass(frozen=True)
class FamilyWalletRow:
    child_uid: str
    first_name: Optional[str]
    nick_name: Optional[str]
    wallet: WalletSnapshot


@dataclass(frozen=True)
class Notice:
    """Something the UI may toast: points landed, a redemption got approved."""
    kind: Literal["points", "redemption_approved"]
    message: str
    points: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)
