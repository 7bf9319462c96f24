"""
Offer / Redemption State Tracker
================================

Purpose:
- Load the reward catalog, the child's offers and redemptions (each through
  a procedure-first fallback chain)
- Classify every catalog reward as available / pending / completed
- Forward redeem / accept commands to the store
- Listen to the store's change feed and refresh once per event

Status transitions (Offered -> Accepted -> Fulfilled, Pending -> Approved ...)
happen in the store. Nothing here moves a status; it only reads and reacts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import httpx
from postgrest.exceptions import APIError

from kidpoints.exceptions import RewardActionError
from kidpoints.models import (
    COMPLETED_REDEMPTION_STATUSES,
    ChildIdentity,
    ClassifiedReward,
    Notice,
    Offer,
    Redemption,
    Reward,
    RewardStatus,
)
from kidpoints.repositories.points_repository import PointsRepository
from kidpoints.utils.chain import first_of, swallow, to_int

log = logging.getLogger("kidpoints.rewards")


# -----------------------------
# Classification (pure)
# -----------------------------
def _relates(reward: Reward, redemption: Redemption) -> bool:
    if redemption.reward_id and str(redemption.reward_id) == reward.id:
        return True
    return bool(redemption.reward_title) and redemption.reward_title == reward.title


def classify_reward(reward: Reward, redemptions: Iterable[Redemption]) -> RewardStatus:
    related = [r for r in redemptions if _relates(reward, r)]
    if any(r.status in COMPLETED_REDEMPTION_STATUSES for r in related):
        return "completed"
    if any(r.status == "Pending" for r in related):
        return "pending"
    return "available"


def classify_catalog(catalog: Iterable[Reward], redemptions: Iterable[Redemption]) -> List[ClassifiedReward]:
    redemptions = list(redemptions)
    return [ClassifiedReward(reward=r, status=classify_reward(r, redemptions)) for r in catalog]


def _check_result(result: Any, fallback: str) -> Any:
    if isinstance(result, dict) and result.get("ok") is False:
        raise RewardActionError(str(result.get("error") or fallback))
    return result


class RewardsTracker:
    def __init__(self, points_repo: PointsRepository) -> None:
        self.repo = points_repo

    # -----------------------------
    # Loaders
    # -----------------------------
    async def load_catalog(self, family_id: Optional[str]) -> List[Reward]:
        sources = []
        if family_id:
            sources.append(("api_child_rewards_catalog", lambda: self.repo.catalog_via_rpc(family_id)))
        sources.append(("rewards_catalog", lambda: self.repo.catalog_rows(family_id)))
        return await first_of(sources) or []

    async def _redemptions_from_tables(self, identity: ChildIdentity) -> List[Redemption]:
        rows = await self.repo.redemption_rows(identity.ids)
        if not rows:
            return []
        catalog, offers = await asyncio.gather(
            swallow("rewards_catalog", self.repo.catalog_by_ids(r.get("reward_id") for r in rows), {}),
            swallow("reward_offers", self.repo.offers_by_ids(r.get("offer_id") for r in rows), {}),
        )
        out = []
        for r in rows:
            offer = offers.get(str(r.get("offer_id")))
            reward_id = r.get("reward_id") or (offer.reward_id if offer else None)
            out.append(self.repo.row_to_redemption(r, catalog=catalog.get(str(reward_id)), offer=offer))
        return out

    async def load_redemptions(self, identity: ChildIdentity) -> List[Redemption]:
        return (
            await first_of(
                [
                    ("api_child_redemptions", lambda: self.repo.redemptions_via_rpc(identity.legacy_uid)),
                    ("reward_redemptions", lambda: self._redemptions_from_tables(identity)),
                ]
            )
            or []
        )

    async def _offers_from_tables(self, identity: ChildIdentity) -> List[Offer]:
        rows = await self.repo.offer_rows(identity.ids, identity.family_id or None)
        if not rows:
            return []
        catalog = await swallow("rewards_catalog", self.repo.catalog_by_ids(r.get("reward_id") for r in rows), {})
        return [self.repo.row_to_offer(r, catalog=catalog.get(str(r.get("reward_id")))) for r in rows]

    async def load_offers(self, identity: ChildIdentity) -> List[Offer]:
        return (
            await first_of(
                [
                    ("api_child_reward_offers_v2", lambda: self.repo.offers_via_rpc(identity.legacy_uid)),
                    (
                        "api_child_reward_offers",
                        lambda: self.repo.offers_via_rpc(identity.legacy_uid, fn="api_child_reward_offers"),
                    ),
                    ("reward_offers", lambda: self._offers_from_tables(identity)),
                ]
            )
            or []
        )

    # -----------------------------
    # Commands
    # -----------------------------
    async def redeem_reward(self, identity: ChildIdentity, reward_id: str) -> Any:
        try:
            result = await self.repo.redeem_reward(identity.legacy_uid, reward_id)
        except (APIError, httpx.HTTPError) as e:
            log.warning("[rewards] redeem failed reward=%s: %s", reward_id, e)
            raise RewardActionError(getattr(e, "message", None) or str(e)) from e
        log.info("[rewards] redeem requested child=%s reward=%s", identity.legacy_uid, reward_id)
        return _check_result(result, "Could not redeem this reward.")

    async def accept_offer(self, identity: ChildIdentity, offer_id: str) -> Any:
        try:
            result = await self.repo.accept_offer(identity.legacy_uid, offer_id)
        except (APIError, httpx.HTTPError) as e:
            log.warning("[rewards] accept failed offer=%s: %s", offer_id, e)
            raise RewardActionError(getattr(e, "message", None) or str(e)) from e
        log.info("[rewards] offer accepted child=%s offer=%s", identity.legacy_uid, offer_id)
        return _check_result(result, "Could not accept this offer.")


# -----------------------------
# Change feed
# -----------------------------
def normalize_payload(payload: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """(new_row, old_row) from either realtime payload shape."""
    payload = payload or {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    new = data.get("new") or data.get("record") or {}
    old = data.get("old") or data.get("old_record") or {}
    return new, old


class ChangeFeed:
    """
    One channel per child id. Every event schedules one refresh; events are
    not debounced or coalesced, and refreshes are never cancelled.
    """

    TABLE_LEDGER = "child_points_ledger"
    TABLE_OFFERS = "reward_offers"
    TABLE_REDEMPTIONS = "reward_redemptions"

    def __init__(
        self,
        client: Any,
        identity: ChildIdentity,
        on_refresh: Callable[[], Awaitable[Any]],
        on_notice: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        self.client = client
        self.identity = identity
        self.on_refresh = on_refresh
        self.on_notice = on_notice
        self.channels: List[Any] = []
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return bool(self.channels)

    async def start(self) -> None:
        if self.channels:
            return
        self._loop = asyncio.get_running_loop()
        for child_id in self.identity.ids:
            flt = f"child_uid=eq.{child_id}"
            channel = self.client.channel(f"child-portal-{child_id}")
            channel.on_postgres_changes(
                "INSERT",
                schema="public",
                table=self.TABLE_LEDGER,
                filter=flt,
                callback=lambda p: self.handle(self.TABLE_LEDGER, p),
            )
            channel.on_postgres_changes(
                "*",
                schema="public",
                table=self.TABLE_OFFERS,
                filter=flt,
                callback=lambda p: self.handle(self.TABLE_OFFERS, p),
            )
            channel.on_postgres_changes(
                "*",
                schema="public",
                table=self.TABLE_REDEMPTIONS,
                filter=flt,
                callback=lambda p: self.handle(self.TABLE_REDEMPTIONS, p),
            )
            await channel.subscribe()
            self.channels.append(channel)
        log.info("[feed] subscribed child=%s channels=%d", self.identity.canonical_id, len(self.channels))

    async def stop(self) -> None:
        channels, self.channels = self.channels, []
        for channel in channels:
            try:
                await self.client.remove_channel(channel)
            except Exception as e:
                log.warning("[feed] remove_channel failed: %s", e)

    def notice_for(self, table: str, new: Dict[str, Any], old: Dict[str, Any]) -> Optional[Notice]:
        if table == self.TABLE_LEDGER and new:
            pts = to_int(new.get("points"))
            reason = new.get("reason")
            message = f"{pts:+d} pts" + (f": {reason}" if reason else "")
            return Notice(kind="points", message=message, points=pts, meta={"reason": reason})
        if table == self.TABLE_REDEMPTIONS and new.get("status") == "Approved" and old.get("status") != "Approved":
            return Notice(
                kind="redemption_approved",
                message="Your redemption was approved!",
                meta={"redemption_id": new.get("id"), "reward_id": new.get("reward_id")},
            )
        return None

    def handle(self, table: str, payload: Optional[Dict[str, Any]]) -> None:
        new, old = normalize_payload(payload)
        notice = self.notice_for(table, new, old)
        if notice is not None and self.on_notice is not None:
            self.on_notice(notice)

        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._refresh(table))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh(self, table: str) -> None:
        try:
            await self.on_refresh()
        except Exception as e:
            log.warning("[feed] refresh after %s event failed: %s", table, e)

    async def drain(self) -> None:
        """Wait for every refresh scheduled so far."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending)
