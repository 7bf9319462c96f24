"""
Child Portal
============

Composes the resolver, session store, verifier, ledger, wallet and rewards
services into the flows a child-facing client runs:

    bootstrap(hints)  repair tiers -> resolve family -> load the remembered child,
                      else preselect a child for the login prompt
    login(...)        resolve -> verify secret -> remember -> load
    soft_refresh()    reload everything for the current identity
    redeem / accept   affordability check -> store command -> refresh

Loaded data lives in a PortalState that is replaced wholesale on every load;
two overlapping refreshes both complete and the later one wins.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Union

from pydantic import SecretStr

from kidpoints.db import require_supabase
from kidpoints.exceptions import ResolutionFailure, RewardActionError, VerificationFailure
from kidpoints.models import (
    ChildIdentity,
    ChildSummary,
    ClassifiedReward,
    FamilyScope,
    LedgerEntry,
    Notice,
    Offer,
    Redemption,
    Reward,
    WalletBreakdown,
    WalletSnapshot,
)
from kidpoints.repositories.identity_repository import IdentityRepository
from kidpoints.repositories.points_repository import PointsRepository
from kidpoints.schemas import IdentityHints, SecretMode
from kidpoints.services.identity_resolver import IdentityResolver
from kidpoints.services.ledger_aggregator import LedgerAggregator
from kidpoints.services.rewards_tracker import ChangeFeed, RewardsTracker, classify_catalog
from kidpoints.services.secret_verifier import SecretVerifier
from kidpoints.services.session_store import SessionStore, build_session_store
from kidpoints.services.wallet_engine import WalletEngine
from kidpoints.settings import Settings, settings as default_settings

log = logging.getLogger("kidpoints.portal")


@dataclass
class PortalState:
    identity: Optional[ChildIdentity] = None
    family: Optional[FamilyScope] = None
    wallet: Optional[WalletSnapshot] = None
    breakdown: Optional[WalletBreakdown] = None
    ledger: List[LedgerEntry] = field(default_factory=list)
    offers: List[Offer] = field(default_factory=list)
    redemptions: List[Redemption] = field(default_factory=list)
    rewards: List[ClassifiedReward] = field(default_factory=list)
    reserved_offers: List[Offer] = field(default_factory=list)
    children: List[ChildSummary] = field(default_factory=list)
    # Suggested child for the login prompt; never loaded or remembered.
    preselected: Optional[ChildIdentity] = None
    notices: List[Notice] = field(default_factory=list)
    needs_manual_entry: bool = False


class ChildPortal:
    def __init__(
        self,
        resolver: IdentityResolver,
        verifier: SecretVerifier,
        store: SessionStore,
        aggregator: LedgerAggregator,
        wallet: WalletEngine,
        rewards: RewardsTracker,
        *,
        client: Any = None,
        realtime_enabled: bool = True,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ) -> None:
        self.resolver = resolver
        self.verifier = verifier
        self.store = store
        self.aggregator = aggregator
        self.wallet = wallet
        self.rewards = rewards
        self.client = client
        self.realtime_enabled = realtime_enabled
        self.on_notice = on_notice
        self.state = PortalState()
        self.feed: Optional[ChangeFeed] = None

    # -----------------------------
    # Identity
    # -----------------------------
    def _remember(self, identity: ChildIdentity) -> None:
        self.store.remember(identity)
        log.info("[portal] remembered child=%s family=%s", identity.canonical_id, identity.family_id)

    def _require_identity(self) -> ChildIdentity:
        if self.state.identity is None:
            raise ResolutionFailure()
        return self.state.identity

    async def _manual_entry(
        self,
        family: Optional[FamilyScope],
        preselected: Optional[ChildIdentity] = None,
    ) -> PortalState:
        children = await self.resolver.list_children(family) if family else []
        self.state = PortalState(
            family=family,
            children=children,
            preselected=preselected,
            needs_manual_entry=True,
        )
        return self.state

    async def bootstrap(self, hints: Optional[IdentityHints] = None) -> PortalState:
        # Session tier must be repaired before anything reads it.
        self.store.repair()

        family = await self.resolver.resolve_family(hints)
        if family is None:
            log.info("[portal] no family; manual entry needed")
            return await self._manual_entry(None)
        self.store.remember_family(family.family_id)

        # Only a child that already logged in on this device is loaded here.
        # Any other pick (explicit hint, nickname, first listed) waits for login.
        remembered = await self.resolver.remembered_child(family)
        expanded = self.resolver.expand_hints(hints) or IdentityHints()
        if remembered is not None and not (expanded.child or expanded.nick):
            self._remember(remembered)
            return await self.load(remembered)

        preselected = await self.resolver.resolve_child(family, hints)
        if remembered is not None and preselected is not None and preselected.canonical_id == remembered.canonical_id:
            self._remember(remembered)
            return await self.load(remembered)

        if preselected is None:
            log.info("[portal] no child in family %s; manual entry needed", family.family_id)
        return await self._manual_entry(family, preselected)

    async def login(
        self,
        hints: IdentityHints,
        secret: Union[str, SecretStr],
        mode: SecretMode = "pin",
    ) -> PortalState:
        identity = await self.resolver.resolve(hints)
        if identity is None:
            raise ResolutionFailure()

        if not await self.verifier.verify(identity, secret, mode):
            raise VerificationFailure("Incorrect PIN." if mode == "pin" else "Incorrect password.")

        self._remember(identity)
        restart_feed = self.feed is not None and self.feed.identity != identity
        state = await self.load(identity)
        if restart_feed:
            await self.stop_live_updates()
            await self.start_live_updates()
        return state

    async def logout(self) -> None:
        await self.stop_live_updates()
        self.store.forget()
        self.state = PortalState(needs_manual_entry=True)

    # -----------------------------
    # Loading
    # -----------------------------
    async def load(self, identity: ChildIdentity) -> PortalState:
        ledger, older, offers, redemptions, catalog, reserved = await asyncio.gather(
            self.aggregator.load_for(identity),
            self.aggregator.load_legacy_ledger(identity),
            self.rewards.load_offers(identity),
            self.rewards.load_redemptions(identity),
            self.rewards.load_catalog(identity.family_id),
            self.wallet.reserved_offers(identity),
        )
        wallet = await self.wallet.compute_wallet(identity, ledger)

        self.state = PortalState(
            identity=identity,
            family=FamilyScope(identity.family_id) if identity.family_id else None,
            wallet=wallet,
            breakdown=self.wallet.breakdown([*ledger, *older]),
            ledger=ledger,
            offers=offers,
            redemptions=redemptions,
            rewards=classify_catalog(catalog, redemptions),
            reserved_offers=reserved,
            notices=self.state.notices,
        )
        log.info(
            "[portal] loaded child=%s available=%d source=%s",
            identity.canonical_id,
            wallet.available_points,
            wallet.source,
        )
        return self.state

    async def soft_refresh(self) -> PortalState:
        if self.state.identity is None:
            return self.state
        return await self.load(self.state.identity)

    # -----------------------------
    # Commands
    # -----------------------------
    async def redeem(self, reward: Reward) -> PortalState:
        identity = self._require_identity()
        wallet = self.state.wallet or await self.wallet.compute_wallet(identity)
        if not wallet.can_afford(reward.points_cost):
            raise RewardActionError(
                f"Not enough points yet: {reward.title} costs {reward.points_cost}, "
                f"you have {wallet.available_points}."
            )
        await self.rewards.redeem_reward(identity, reward.id)
        return await self.soft_refresh()

    async def accept(self, offer: Offer) -> PortalState:
        identity = self._require_identity()
        await self.rewards.accept_offer(identity, offer.id)
        return await self.soft_refresh()

    # -----------------------------
    # Live updates
    # -----------------------------
    def _push_notice(self, notice: Notice) -> None:
        self.state.notices.append(notice)
        if self.on_notice is not None:
            self.on_notice(notice)

    async def start_live_updates(self) -> bool:
        if not self.realtime_enabled or self.client is None or self.state.identity is None:
            return False
        if self.feed is None:
            self.feed = ChangeFeed(self.client, self.state.identity, self.soft_refresh, self._push_notice)
        await self.feed.start()
        return True

    async def stop_live_updates(self) -> None:
        if self.feed is None:
            return
        feed, self.feed = self.feed, None
        await feed.stop()


def create_portal(client: Any, cfg: Optional[Settings] = None, store: Optional[SessionStore] = None) -> ChildPortal:
    cfg = cfg or default_settings
    identity_repo = IdentityRepository(client)
    points_repo = PointsRepository(client)
    aggregator = LedgerAggregator(points_repo)
    store = store or build_session_store(cfg.state_path)
    return ChildPortal(
        resolver=IdentityResolver(identity_repo, store),
        verifier=SecretVerifier(identity_repo, timeout=cfg.verify_timeout),
        store=store,
        aggregator=aggregator,
        wallet=WalletEngine(points_repo, aggregator),
        rewards=RewardsTracker(points_repo),
        client=client,
        realtime_enabled=cfg.realtime_enabled,
    )


async def build_portal(cfg: Optional[Settings] = None) -> ChildPortal:
    """Portal wired to a live Supabase client. Raises StoreNotConfigured."""
    cfg = cfg or default_settings
    client = await require_supabase(cfg)
    return create_portal(client, cfg)
