"""
Ledger Aggregator
=================

The ledger exists twice: behind the api_child_ledger procedure (keyed by the
legacy uid) and in the child_points_ledger table (rows under either id).
Both are read concurrently and merged; a source that fails counts as empty.

The older points_ledger table (delta column) is a separate ledger. Its ids
can collide with child_points_ledger ids, so entries are keyed by table.
It feeds the recent-activity feed and the earnings breakdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from kidpoints.models import ChildIdentity, LedgerEntry
from kidpoints.repositories.points_repository import PointsRepository
from kidpoints.utils.chain import swallow
from kidpoints.utils.ids import uniq_ids

log = logging.getLogger("kidpoints.ledger")


def dedupe_entries(entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
    """Keep the first entry seen per logical key, order preserved."""
    seen = set()
    out: List[LedgerEntry] = []
    for e in entries:
        key = e.logical_key
        if key in seen:
            continue
        seen.add(key)
        out.append(e)
    return out


def newest_first(entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
    # ISO-8601 timestamps from the store sort lexically; sorted() is stable.
    return sorted(entries, key=lambda e: e.created_at or "", reverse=True)


class LedgerAggregator:
    def __init__(self, points_repo: PointsRepository) -> None:
        self.repo = points_repo

    async def load_ledger(self, legacy_uid: str, canonical_id: Optional[str] = None) -> List[LedgerEntry]:
        ids = uniq_ids([legacy_uid, canonical_id])
        if not ids:
            return []

        via_rpc, via_table = await asyncio.gather(
            swallow("api_child_ledger", self.repo.ledger_via_rpc(ids[0]), []),
            swallow("child_points_ledger", self.repo.ledger_rows(ids), []),
        )
        merged = dedupe_entries([*via_rpc, *via_table])
        log.debug(
            "[ledger] rpc=%d table=%d merged=%d",
            len(via_rpc),
            len(via_table),
            len(merged),
        )
        return newest_first(merged)

    async def load_for(self, identity: ChildIdentity) -> List[LedgerEntry]:
        return await self.load_ledger(identity.legacy_uid, identity.canonical_id)

    async def load_legacy_ledger(self, identity: ChildIdentity) -> List[LedgerEntry]:
        return await swallow("points_ledger", self.repo.legacy_ledger_rows(identity.ids), [])

    async def load_activity_since(self, identity: ChildIdentity, since: str) -> List[LedgerEntry]:
        """Recent activity across the current and the older points ledger."""
        ids = identity.ids
        current, older = await asyncio.gather(
            swallow("child_points_ledger", self.repo.ledger_rows(ids, since=since), []),
            swallow("points_ledger", self.repo.legacy_ledger_rows(ids, since=since), []),
        )
        return newest_first(dedupe_entries([*current, *older]))
