import pytest
from postgrest.exceptions import APIError

from kidpoints.exceptions import RewardActionError
from kidpoints.models import Redemption, Reward
from kidpoints.repositories.points_repository import PointsRepository
from kidpoints.services.rewards_tracker import (
    ChangeFeed,
    RewardsTracker,
    classify_catalog,
    classify_reward,
    normalize_payload,
)

from conftest import CHILD_ID, CHILD_UID, FAMILY_ID, OTHER_FAMILY_ID

STICKER = Reward(id="W1", title="Sticker", points_cost=10)
ICE_CREAM = Reward(id="W2", title="Ice cream", points_cost=15)
MOVIE = Reward(id="W3", title="Movie night", points_cost=40)


def redemption(status, reward_id=None, title=None):
    return Redemption(id=f"R-{status}-{reward_id}-{title}", status=status, reward_id=reward_id, reward_title=title)


def test_classify_reward_by_id_and_title():
    redemptions = [
        redemption("Approved", reward_id="W1"),
        redemption("Pending", title="Ice cream"),
        redemption("Rejected", reward_id="W3"),
    ]

    assert classify_reward(STICKER, redemptions) == "completed"
    assert classify_reward(ICE_CREAM, redemptions) == "pending"
    assert classify_reward(MOVIE, redemptions) == "available"


def test_completed_beats_pending():
    redemptions = [redemption("Pending", reward_id="W1"), redemption("Fulfilled", title="Sticker")]

    assert classify_reward(STICKER, redemptions) == "completed"


def test_classify_catalog_keeps_catalog_order():
    classified = classify_catalog([MOVIE, STICKER], [redemption("Approved", reward_id="W1")])

    assert [(c.reward.id, c.status) for c in classified] == [("W3", "available"), ("W1", "completed")]


@pytest.mark.asyncio
async def test_catalog_prefers_procedure(sb):
    sb.rpcs["api_child_rewards_catalog"] = [{"id": "W1", "title": "Sticker", "points_cost": 10}]
    sb.tables["rewards_catalog"] = [{"id": "W9", "title": "Table row", "points_cost": 1, "is_active": True}]
    tracker = RewardsTracker(PointsRepository(sb))

    catalog = await tracker.load_catalog(FAMILY_ID)

    assert [r.id for r in catalog] == ["W1"]
    assert sb.table_calls("rewards_catalog") == []


@pytest.mark.asyncio
async def test_catalog_table_fallback_includes_shared_rewards(sb):
    sb.tables["rewards_catalog"] = [
        {"id": "W1", "family_id": FAMILY_ID, "title": "Sticker", "points_cost": 10, "is_active": True, "created_at": "2024-01-02"},
        {"id": "W2", "family_id": None, "title": "Ice cream", "points_cost": 15, "is_active": True, "created_at": "2024-01-03"},
        {"id": "W3", "family_id": OTHER_FAMILY_ID, "title": "Not ours", "points_cost": 5, "is_active": True, "created_at": "2024-01-04"},
        {"id": "W4", "family_id": FAMILY_ID, "title": "Retired", "points_cost": 5, "is_active": False, "created_at": "2024-01-05"},
    ]
    tracker = RewardsTracker(PointsRepository(sb))

    catalog = await tracker.load_catalog(FAMILY_ID)

    assert [r.id for r in catalog] == ["W2", "W1"]


@pytest.mark.asyncio
async def test_redemptions_table_fallback_joins_catalog_and_offers(sb, child):
    sb.tables["reward_redemptions"] = [
        {"id": "R1", "child_uid": CHILD_UID, "reward_id": "W1", "status": "Pending", "created_at": "2024-05-02"},
        {"id": "R2", "child_uid": CHILD_ID, "offer_id": "O1", "status": "Approved", "created_at": "2024-05-01"},
    ]
    sb.tables["rewards_catalog"] = [{"id": "W1", "title": "Sticker", "points_cost": 10}]
    sb.tables["reward_offers"] = [{"id": "O1", "custom_title": "Zoo trip", "points_cost_override": 80}]
    tracker = RewardsTracker(PointsRepository(sb))

    redemptions = await tracker.load_redemptions(child)

    assert [(r.id, r.reward_title, r.points_cost) for r in redemptions] == [
        ("R1", "Sticker", 10),
        ("R2", "Zoo trip", 80),
    ]


@pytest.mark.asyncio
async def test_offers_fall_back_from_v2_to_v1(sb, child):
    sb.rpcs["api_child_reward_offers"] = [
        {"id": "O1", "status": "Offered", "title": "Zoo trip", "effective_points_cost": 80},
    ]
    tracker = RewardsTracker(PointsRepository(sb))

    offers = await tracker.load_offers(child)

    assert [(o.id, o.title, o.points_cost) for o in offers] == [("O1", "Zoo trip", 80)]
    assert len(sb.rpc_calls("api_child_reward_offers_v2")) == 1
    assert sb.table_calls("reward_offers") == []


@pytest.mark.asyncio
async def test_offers_table_fallback_joins_catalog(sb, child):
    sb.tables["reward_offers"] = [
        {"id": "O1", "family_id": FAMILY_ID, "child_uid": CHILD_UID, "reward_id": "W1", "status": "Offered", "offered_at": "2024-05-01"},
        {"id": "O2", "family_id": OTHER_FAMILY_ID, "child_uid": CHILD_UID, "status": "Offered", "offered_at": "2024-05-02"},
    ]
    sb.tables["rewards_catalog"] = [{"id": "W1", "title": "Sticker", "points_cost": 10}]
    tracker = RewardsTracker(PointsRepository(sb))

    offers = await tracker.load_offers(child)

    assert [(o.id, o.title, o.points_cost) for o in offers] == [("O1", "Sticker", 10)]


@pytest.mark.asyncio
async def test_redeem_passes_result_through(sb, child):
    sb.rpcs["api_child_redeem_reward"] = {"ok": True, "redemption_id": "R9"}
    tracker = RewardsTracker(PointsRepository(sb))

    assert await tracker.redeem_reward(child, "W1") == {"ok": True, "redemption_id": "R9"}
    assert sb.rpc_calls("api_child_redeem_reward")[0][2] == {"p_child_uid": CHILD_UID, "p_reward_id": "W1"}


@pytest.mark.asyncio
async def test_refused_accept_raises(sb, child):
    sb.rpcs["api_child_accept_offer_v2"] = {"ok": False, "error": "Offer expired"}
    tracker = RewardsTracker(PointsRepository(sb))

    with pytest.raises(RewardActionError, match="Offer expired"):
        await tracker.accept_offer(child, "O1")


@pytest.mark.asyncio
async def test_store_error_on_redeem_raises(sb, child):
    sb.rpcs["api_child_redeem_reward"] = APIError({"message": "insufficient points", "code": "P0001"})
    tracker = RewardsTracker(PointsRepository(sb))

    with pytest.raises(RewardActionError, match="insufficient points"):
        await tracker.redeem_reward(child, "W1")


def test_normalize_payload_shapes():
    assert normalize_payload({"new": {"id": 1}, "old": {"id": 0}}) == ({"id": 1}, {"id": 0})
    assert normalize_payload({"data": {"record": {"id": 1}, "old_record": None}}) == ({"id": 1}, {})
    assert normalize_payload(None) == ({}, {})


class Recorder:
    def __init__(self):
        self.refreshes = 0
        self.notices = []

    async def refresh(self):
        self.refreshes += 1

    def notice(self, n):
        self.notices.append(n)


@pytest.mark.asyncio
async def test_feed_subscribes_per_child_id(sb, child):
    rec = Recorder()
    feed = ChangeFeed(sb, child, rec.refresh, rec.notice)

    await feed.start()

    assert len(sb.channels) == 2
    filters = {b["filter"] for ch in sb.channels for b in ch.bindings}
    assert filters == {f"child_uid=eq.{CHILD_UID}", f"child_uid=eq.{CHILD_ID}"}
    tables = {(b["table"], b["event"]) for b in sb.channels[0].bindings}
    assert tables == {("child_points_ledger", "INSERT"), ("reward_offers", "*"), ("reward_redemptions", "*")}
    assert all(ch.subscribed for ch in sb.channels)

    await feed.stop()
    assert sb.removed == sb.channels
    assert not feed.running


@pytest.mark.asyncio
async def test_each_event_triggers_one_refresh(sb, child):
    rec = Recorder()
    feed = ChangeFeed(sb, child, rec.refresh, rec.notice)
    await feed.start()
    channel = sb.channels[0]

    channel.emit("child_points_ledger", {"new": {"points": 5, "reason": "Star Catcher"}})
    channel.emit("reward_offers", {"new": {"status": "Offered"}}, event="UPDATE")
    channel.emit("reward_redemptions", {"data": {"record": {"status": "Pending"}}}, event="INSERT")
    await feed.drain()

    assert rec.refreshes == 3
    assert [n.message for n in rec.notices] == ["+5 pts: Star Catcher"]


@pytest.mark.asyncio
async def test_redemption_approval_notice(sb, child):
    rec = Recorder()
    feed = ChangeFeed(sb, child, rec.refresh, rec.notice)
    await feed.start()

    sb.channels[0].emit(
        "reward_redemptions",
        {"data": {"record": {"id": "R1", "status": "Approved"}, "old_record": {"id": "R1", "status": "Pending"}}},
        event="UPDATE",
    )
    await feed.drain()

    assert rec.refreshes == 1
    assert rec.notices[0].kind == "redemption_approved"
    assert rec.notices[0].message == "Your redemption was approved!"


@pytest.mark.asyncio
async def test_failing_refresh_does_not_break_the_feed(sb, child):
    calls = []

    async def refresh():
        calls.append(1)
        raise RuntimeError("offline")

    feed = ChangeFeed(sb, child, refresh)
    await feed.start()

    sb.channels[0].emit("reward_offers", {"new": {}}, event="DELETE")
    sb.channels[0].emit("reward_offers", {"new": {}}, event="DELETE")
    await feed.drain()

    assert len(calls) == 2
