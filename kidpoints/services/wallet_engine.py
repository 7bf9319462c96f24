"""
Wallet Reconciliation Engine
============================

available = max(0, earned - reserved), whichever path produced the numbers.

Paths:
1) precomputed: vw_child_wallet_rollup row for the child. Trusted when it
   reports something (lifetime earned > 0 or available > 0). The row's own
   available_pts is taken as is; when it is missing, available is
   lifetime - reserved - spent. Earned is reported as available + reserved
   (the spendable balance) and lifetime spending as spent_points.
2) derived:
   earned   = positive points in vw_child_completed_targets_v2,
              else positive ledger entries when the view has no rows
   reserved = accepted offers (effective cost)
            + pending/approved redemptions (own cost, else catalog cost)

Encouragement points ride along on both paths and never change `available`.

The two paths are not cross-checked; a stale rollup wins if it is non-zero.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from kidpoints.models import (
    RESERVING_REDEMPTION_STATUSES,
    ChildIdentity,
    FamilyWalletRow,
    LedgerEntry,
    Offer,
    WalletBreakdown,
    WalletSnapshot,
)
from kidpoints.repositories.identity_repository import IdentityRepository
from kidpoints.repositories.points_repository import PointsRepository
from kidpoints.services.ledger_aggregator import LedgerAggregator
from kidpoints.services.reasons import encouragement_points, wallet_breakdown
from kidpoints.utils.chain import swallow, to_int
from kidpoints.utils.ids import clean

log = logging.getLogger("kidpoints.wallet")


def _present(row: Dict[str, Any], *cols: str) -> Optional[int]:
    for col in cols:
        if row.get(col) is not None:
            return to_int(row.get(col))
    return None


class WalletEngine:
    def __init__(self, points_repo: PointsRepository, aggregator: Optional[LedgerAggregator] = None) -> None:
        self.repo = points_repo
        self.aggregator = aggregator or LedgerAggregator(points_repo)

    # -----------------------------
    # Reserved
    # -----------------------------
    async def reserved_offers(self, identity: ChildIdentity) -> List[Offer]:
        offers = await swallow("reward_offers", self.repo.accepted_offers(identity.ids), [])
        return [o for o in offers if o.reserves_points]

    async def _reserved_redemption_points(self, identity: ChildIdentity) -> int:
        rows = await swallow("reward_redemptions", self.repo.open_redemptions(identity.ids), [])
        rows = [r for r in rows if r.get("status") in RESERVING_REDEMPTION_STATUSES]
        missing = [r.get("reward_id") for r in rows if r.get("points_cost") is None and r.get("reward_id")]
        catalog = {}
        if missing:
            catalog = await swallow("rewards_catalog", self.repo.catalog_by_ids(missing), {})

        total = 0
        for r in rows:
            if r.get("points_cost") is not None:
                total += to_int(r.get("points_cost"))
                continue
            reward = catalog.get(str(r.get("reward_id")))
            total += reward.points_cost if reward else 0
        return total

    async def reserved_points(self, identity: ChildIdentity) -> int:
        offers, redemptions = await asyncio.gather(
            self.reserved_offers(identity),
            self._reserved_redemption_points(identity),
        )
        return sum(o.points_cost for o in offers) + redemptions

    # -----------------------------
    # Earned
    # -----------------------------
    async def earned_points(self, identity: ChildIdentity, ledger: List[LedgerEntry]) -> int:
        completed = await swallow("vw_child_completed_targets_v2", self.repo.completed_points(identity.ids), [])
        if completed:
            return sum(p for p in completed if p > 0)
        return sum(e.points for e in ledger if e.points > 0)

    # -----------------------------
    # Snapshot
    # -----------------------------
    def _from_rollup(self, row: Optional[Dict[str, Any]], encouragement: int) -> Optional[WalletSnapshot]:
        if not row:
            return None
        lifetime = _present(row, "lifetime_earned_pts", "total_points", "earned_points") or 0
        reserved = max(0, _present(row, "reserved_pts", "reserved_points") or 0)
        spent = max(0, _present(row, "spent_total_pts", "spent_points") or 0)
        available = _present(row, "available_pts", "available_points")
        if available is None:
            available = lifetime - reserved - spent
        available = max(0, available)
        if lifetime <= 0 and available <= 0:
            return None
        # earned here is the spendable balance, so available = earned - reserved still holds.
        return WalletSnapshot.build(available + reserved, reserved, "precomputed", encouragement, spent=spent)

    async def derived_wallet(self, identity: ChildIdentity, ledger: List[LedgerEntry]) -> WalletSnapshot:
        earned, reserved = await asyncio.gather(
            self.earned_points(identity, ledger),
            self.reserved_points(identity),
        )
        return WalletSnapshot.build(earned, reserved, "derived", encouragement_points(ledger))

    async def compute_wallet(
        self,
        identity: ChildIdentity,
        ledger: Optional[List[LedgerEntry]] = None,
    ) -> WalletSnapshot:
        if ledger is None:
            ledger = await self.aggregator.load_for(identity)

        row = await swallow("vw_child_wallet_rollup", self.repo.wallet_rollup(identity.legacy_uid), None)
        snapshot = self._from_rollup(row, encouragement_points(ledger))
        if snapshot is not None:
            return snapshot

        log.debug("[wallet] no usable rollup for %s; deriving", identity.legacy_uid)
        return await self.derived_wallet(identity, ledger)

    def breakdown(self, ledger: List[LedgerEntry]) -> WalletBreakdown:
        return wallet_breakdown(ledger)

    # -----------------------------
    # Family roster
    # -----------------------------
    async def family_wallets(self, family_id: str, identity_repo: IdentityRepository) -> List[FamilyWalletRow]:
        profiles = await swallow("child_profiles", identity_repo.family_profiles(family_id), [])
        identities = [
            ChildIdentity(
                canonical_id=clean(p.get("id")) or clean(p.get("child_uid")),
                legacy_uid=clean(p.get("child_uid")) or clean(p.get("id")),
                family_id=family_id,
                nickname=p.get("nick_name"),
                display_name=p.get("first_name"),
            )
            for p in profiles
            if p.get("id") or p.get("child_uid")
        ]
        wallets = await asyncio.gather(*(self.compute_wallet(i) for i in identities))
        return [
            FamilyWalletRow(
                child_uid=i.legacy_uid,
                first_name=i.display_name,
                nick_name=i.nickname,
                wallet=w,
            )
            for i, w in zip(identities, wallets)
        ]
