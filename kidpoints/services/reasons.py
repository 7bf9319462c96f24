"""
Ledger reason classification.

Ledger rows carry a free-text `reason`. Two things hang off it:
- encouragement points (parent high-fives etc.) shown next to the wallet
- the per-category earnings breakdown

Both are pure functions over the text; nothing here talks to the store.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, Optional

from kidpoints.models import LedgerEntry, WalletBreakdown

ENCOURAGEMENT_PHRASES = (
    "high-five",
    "high five",
    "cheer bonus",
    "encourage",
    "parent bonus",
    "bonus from parent",
    "grown-up bonus",
)

GAME_KEYS = (
    "starcatcher",
    "mathsprint",
    "wordbuilder",
    "memorymatch",
    "jumpplatformer",
    "jumpinggame",
    "jumpgame",
    "quizgame",
    "trivia",
    "game",
)

# Game names whose words may appear apart ("sprint for math").
GAME_WORD_PAIRS = (
    ("math", "sprint"),
    ("word", "builder"),
    ("memory", "match"),
)

# Story-mode activities log their title as the reason; they pay out as targets.
STORY_KEYS = (
    "read 10 pages",
    "dusting adventure",
    "block city",
    "blue sky with rainbow",
    "quick forest painting",
    "draw a monkey",
)

_SQUASH_RX = re.compile(r"[\s\W_]+")


def _lower(reason: Optional[str]) -> str:
    return (reason or "").strip().lower()


def is_encouragement_reason(reason: Optional[str]) -> bool:
    text = _lower(reason)
    if not text:
        return False
    return any(p in text for p in ENCOURAGEMENT_PHRASES)


def is_debug_reason(reason: Optional[str]) -> bool:
    text = _lower(reason)
    return "rpc debug award" in text or text.startswith("debug")


def is_game_reason(reason: Optional[str]) -> bool:
    squashed = _SQUASH_RX.sub("", _lower(reason))
    if any(k in squashed for k in GAME_KEYS):
        return True
    return any(a in squashed and b in squashed for a, b in GAME_WORD_PAIRS)


def classify_reason(reason: Optional[str]) -> str:
    """First matching rule wins; wish rules run before the story titles."""
    text = _lower(reason)

    if is_game_reason(text):
        return "games"
    if "daily activity" in text:
        return "daily"
    if "checklist" in text:
        return "checklists"
    if "target" in text:
        return "targets"
    if "wishlist" in text or "wish" in text:
        return "wishlist"
    if any(k in text for k in STORY_KEYS):
        return "targets"
    if "encourage reward" in text or "encouragement reward" in text or text.startswith("encouragement:"):
        return "reward_encourage"
    if (
        "redemption reward" in text
        or text.startswith("reward redemption")
        or text.startswith("redeem reward")
    ):
        return "reward_redemption"
    return "other"


def encouragement_points(entries: Iterable[LedgerEntry]) -> int:
    return sum(e.points for e in entries if e.points > 0 and is_encouragement_reason(e.reason))


def wallet_breakdown(entries: Iterable[LedgerEntry]) -> WalletBreakdown:
    """Positive points per category. Debug awards are left out entirely."""
    buckets: Dict[str, int] = {
        "daily": 0,
        "checklists": 0,
        "games": 0,
        "targets": 0,
        "wishlist": 0,
        "reward_encourage": 0,
        "reward_redemption": 0,
        "other": 0,
    }
    for e in entries:
        if e.points <= 0 or is_debug_reason(e.reason):
            continue
        buckets[classify_reason(e.reason)] += e.points
    return WalletBreakdown(total=sum(buckets.values()), **buckets)
