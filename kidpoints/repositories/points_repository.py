"""
Points Repository (Supabase Adapter)
====================================

Purpose:
- Store-facing adapter for the child's points, offers, redemptions and the
  reward catalog.
- Every child-scoped read takes the id LIST (legacy + canonical), because
  rows written before the profile migration carry the legacy child_uid.

Tables / views:
1) child_points_ledger            id, child_uid, points, reason, created_at
2) points_ledger                  id, child_uid, delta, reason, created_at (older ledger)
3) vw_child_wallet_rollup         child_uid, lifetime_earned_pts, reserved_pts, available_pts, ...
4) vw_child_completed_targets_v2  child_uid, points
5) reward_offers                  id, child_uid, family_id, reward_id, status, points_cost,
                                  points_cost_override, effective_points_cost, ...
6) reward_redemptions             id, child_uid, reward_id, offer_id, status, points_cost, ...
7) rewards_catalog                id, family_id, title, description, points_cost, is_active

Procedures:
- api_child_ledger(p_child_uid)
- api_child_rewards_catalog(p_family_id)
- api_child_redemptions(p_child_uid)
- api_child_reward_offers_v2(p_child_uid) / api_child_reward_offers(p_child_uid)
- api_child_redeem_reward(p_child_uid, p_reward_id)
- api_child_accept_offer_v2(p_child_uid, p_offer_id)

Like the identity adapter, methods raise; callers decide on fallbacks.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from kidpoints.models import (
    LEDGER_TABLE,
    LEGACY_LEDGER_TABLE,
    RESERVING_OFFER_STATUSES,
    RESERVING_REDEMPTION_STATUSES,
    LedgerEntry,
    Offer,
    Redemption,
    Reward,
)
from kidpoints.utils.chain import rows_of, scalar_of, to_int
from kidpoints.utils.ids import clean, looks_like_uuid
from kidpoints.utils.logger import log_call

DEFAULT_TITLE = "Special Reward"


def _first_cost(*values: Any) -> Optional[int]:
    for v in values:
        if v is not None:
            return to_int(v)
    return None


class PointsRepository:
    def __init__(
        self,
        supabase_client: Any,
        *,
        table_ledger: str = LEDGER_TABLE,
        table_legacy_ledger: str = LEGACY_LEDGER_TABLE,
        view_rollup: str = "vw_child_wallet_rollup",
        view_completed: str = "vw_child_completed_targets_v2",
        table_offers: str = "reward_offers",
        table_redemptions: str = "reward_redemptions",
        table_catalog: str = "rewards_catalog",
    ) -> None:
        self.sb = supabase_client
        self.table_ledger = table_ledger
        self.table_legacy_ledger = table_legacy_ledger
        self.view_rollup = view_rollup
        self.view_completed = view_completed
        self.table_offers = table_offers
        self.table_redemptions = table_redemptions
        self.table_catalog = table_catalog

    async def _rpc(self, fn: str, params: Dict[str, Any]) -> Any:
        log_call("rpc", fn, params)
        return await self.sb.rpc(fn, params).execute()

    # -----------------------------
    # Ledger
    # -----------------------------
    async def ledger_via_rpc(self, legacy_uid: str) -> List[LedgerEntry]:
        res = await self._rpc("api_child_ledger", {"p_child_uid": legacy_uid})
        return [self._row_to_entry(r) for r in rows_of(res)]

    async def ledger_rows(self, ids: List[str], since: Optional[str] = None) -> List[LedgerEntry]:
        q = (
            self.sb.table(self.table_ledger)
            .select("id,child_uid,points,reason,created_at")
            .in_("child_uid", ids)
        )
        if since:
            q = q.gte("created_at", since)
        res = await q.order("created_at", desc=True).execute()
        return [self._row_to_entry(r) for r in rows_of(res)]

    async def legacy_ledger_rows(self, ids: List[str], since: Optional[str] = None) -> List[LedgerEntry]:
        q = (
            self.sb.table(self.table_legacy_ledger)
            .select("id,child_uid,delta,reason,created_at")
            .in_("child_uid", ids)
        )
        if since:
            q = q.gte("created_at", since)
        res = await q.order("created_at", desc=True).execute()
        return [self._row_to_entry(r, value_col="delta", source=LEGACY_LEDGER_TABLE) for r in rows_of(res)]

    # -----------------------------
    # Wallet sources
    # -----------------------------
    async def wallet_rollup(self, child_uid: str) -> Optional[Dict[str, Any]]:
        res = await (
            self.sb.table(self.view_rollup)
            .select("*")
            .eq("child_uid", child_uid)
            .maybe_single()
            .execute()
        )
        rows = rows_of(res)
        return rows[0] if rows else None

    async def completed_points(self, ids: List[str]) -> List[int]:
        res = await (
            self.sb.table(self.view_completed)
            .select("points,child_uid")
            .in_("child_uid", ids)
            .execute()
        )
        return [to_int(r.get("points")) for r in rows_of(res)]

    async def accepted_offers(self, ids: List[str]) -> List[Offer]:
        res = await (
            self.sb.table(self.table_offers)
            .select("id,child_uid,title,description,points_cost,points_cost_override,effective_points_cost,status")
            .in_("child_uid", ids)
            .in_("status", list(RESERVING_OFFER_STATUSES))
            .execute()
        )
        return [self.row_to_offer(r) for r in rows_of(res)]

    async def open_redemptions(self, ids: List[str]) -> List[Dict[str, Any]]:
        res = await (
            self.sb.table(self.table_redemptions)
            .select("id,reward_id,status,points_cost,child_uid")
            .in_("child_uid", ids)
            .in_("status", list(RESERVING_REDEMPTION_STATUSES))
            .execute()
        )
        return rows_of(res)

    # -----------------------------
    # Catalog
    # -----------------------------
    async def catalog_via_rpc(self, family_id: str) -> List[Reward]:
        res = await self._rpc("api_child_rewards_catalog", {"p_family_id": family_id})
        return [self._row_to_reward(r) for r in rows_of(res) if r.get("id")]

    async def catalog_rows(self, family_id: Optional[str]) -> List[Reward]:
        q = self.sb.table(self.table_catalog).select("id,title,description,points_cost,is_active,created_at")
        if family_id and looks_like_uuid(family_id):
            q = q.or_(f"family_id.eq.{family_id},family_id.is.null")
        else:
            q = q.is_("family_id", "null")
        res = await q.eq("is_active", True).order("created_at", desc=True).execute()
        return [self._row_to_reward(r) for r in rows_of(res)]

    async def catalog_by_ids(self, reward_ids: Iterable[str]) -> Dict[str, Reward]:
        ids = [i for i in dict.fromkeys(reward_ids) if i]
        if not ids:
            return {}
        res = await (
            self.sb.table(self.table_catalog)
            .select("id,title,description,points_cost")
            .in_("id", ids)
            .execute()
        )
        return {str(r["id"]): self._row_to_reward(r) for r in rows_of(res) if r.get("id")}

    # -----------------------------
    # Redemptions
    # -----------------------------
    async def redemptions_via_rpc(self, legacy_uid: str) -> List[Redemption]:
        res = await self._rpc("api_child_redemptions", {"p_child_uid": legacy_uid})
        return [self.row_to_redemption(r) for r in rows_of(res)]

    async def redemption_rows(self, ids: List[str]) -> List[Dict[str, Any]]:
        res = await (
            self.sb.table(self.table_redemptions)
            .select("id,reward_id,offer_id,status,created_at,reviewed_at,notes,child_uid,points_cost")
            .in_("child_uid", ids)
            .order("created_at", desc=True)
            .execute()
        )
        return rows_of(res)

    # -----------------------------
    # Offers
    # -----------------------------
    async def offers_via_rpc(self, legacy_uid: str, fn: str = "api_child_reward_offers_v2") -> List[Offer]:
        res = await self._rpc(fn, {"p_child_uid": legacy_uid})
        return [self.row_to_offer(r) for r in rows_of(res) if r.get("id")]

    async def offer_rows(self, ids: List[str], family_id: Optional[str] = None) -> List[Dict[str, Any]]:
        q = (
            self.sb.table(self.table_offers)
            .select(
                "id,family_id,child_uid,target_id,reward_id,custom_title,custom_description,message,"
                "points_cost_override,points_cost,effective_points_cost,status,offered_at,decided_at,title,description"
            )
            .in_("child_uid", ids)
        )
        if family_id:
            q = q.eq("family_id", family_id)
        res = await q.order("offered_at", desc=True).execute()
        return rows_of(res)

    async def offers_by_ids(self, offer_ids: Iterable[str]) -> Dict[str, Offer]:
        ids = [i for i in dict.fromkeys(offer_ids) if i]
        if not ids:
            return {}
        res = await (
            self.sb.table(self.table_offers)
            .select("id,reward_id,custom_title,title,status,points_cost,points_cost_override,effective_points_cost")
            .in_("id", ids)
            .execute()
        )
        return {str(r["id"]): self.row_to_offer(r) for r in rows_of(res) if r.get("id")}

    # -----------------------------
    # Commands (state transitions live in the store)
    # -----------------------------
    async def redeem_reward(self, child_uid: str, reward_id: str) -> Any:
        res = await self._rpc("api_child_redeem_reward", {"p_child_uid": child_uid, "p_reward_id": reward_id})
        return scalar_of(res)

    async def accept_offer(self, child_uid: str, offer_id: str) -> Any:
        res = await self._rpc("api_child_accept_offer_v2", {"p_child_uid": child_uid, "p_offer_id": offer_id})
        return scalar_of(res)

    # -----------------------------
    # Row mapping
    # -----------------------------
    @staticmethod
    def _row_to_entry(row: Dict[str, Any], value_col: str = "points", source: str = LEDGER_TABLE) -> LedgerEntry:
        raw_points = row.get(value_col)
        if raw_points is None:
            raw_points = row.get("delta") if value_col == "points" else row.get("points")
        rid = row.get("id")
        return LedgerEntry(
            id=str(rid) if rid not in (None, "") else None,
            child_uid=clean(row.get("child_uid")),
            points=to_int(raw_points),
            reason=row.get("reason"),
            created_at=str(row.get("created_at") or ""),
            source=source,
        )

    @staticmethod
    def _row_to_reward(row: Dict[str, Any]) -> Reward:
        return Reward(
            id=str(row.get("id")),
            title=str(row.get("title") or DEFAULT_TITLE),
            points_cost=to_int(row.get("points_cost")),
            description=row.get("description"),
        )

    @staticmethod
    def row_to_offer(row: Dict[str, Any], catalog: Optional[Reward] = None) -> Offer:
        cost = _first_cost(
            row.get("points_cost_override"),
            row.get("effective_points_cost"),
            row.get("points_cost"),
            catalog.points_cost if catalog else None,
        )
        title = row.get("custom_title") or row.get("title") or (catalog.title if catalog else None) or DEFAULT_TITLE
        description = row.get("custom_description") or row.get("description") or (
            catalog.description if catalog else None
        )
        return Offer(
            id=str(row.get("id")),
            status=str(row.get("status") or ""),
            title=str(title),
            points_cost=cost or 0,
            child_uid=row.get("child_uid"),
            family_id=row.get("family_id"),
            reward_id=row.get("reward_id"),
            description=description,
            message=row.get("message"),
            offered_at=row.get("offered_at"),
            decided_at=row.get("decided_at"),
        )

    @staticmethod
    def row_to_redemption(
        row: Dict[str, Any],
        catalog: Optional[Reward] = None,
        offer: Optional[Offer] = None,
    ) -> Redemption:
        title = row.get("reward_title") or (catalog.title if catalog else None) or (offer.title if offer else None)
        cost = _first_cost(
            row.get("points_cost"),
            catalog.points_cost if catalog else None,
            offer.points_cost if offer else None,
        )
        return Redemption(
            id=str(row.get("id")),
            status=str(row.get("status") or ""),
            reward_id=row.get("reward_id"),
            offer_id=row.get("offer_id"),
            reward_title=title or DEFAULT_TITLE,
            points_cost=cost,
            created_at=row.get("created_at"),
            reviewed_at=row.get("reviewed_at"),
            notes=row.get("notes"),
        )
