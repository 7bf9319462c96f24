"""
Store Healthcheck
=================

Purpose:
- Verify the procedures and tables the fallback chains rely on are reachable
  with the configured key
- Empty results are fine; only errors fail a check
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Tuple

from kidpoints.repositories.identity_repository import IdentityRepository
from kidpoints.repositories.points_repository import PointsRepository

PROBE_ID = "00000000-0000-4000-8000-000000000000"


async def store_healthcheck(identity_repo: IdentityRepository, points_repo: PointsRepository) -> Dict[str, Any]:
    probes: List[Tuple[str, Callable[[], Awaitable[Any]]]] = [
        ("family_by_code", lambda: identity_repo.family_by_code("__healthcheck__")),
        ("children", lambda: identity_repo.list_children(PROBE_ID)),
        ("profiles", lambda: identity_repo.child_profile(PROBE_ID)),
        ("ledger", lambda: points_repo.ledger_rows([PROBE_ID])),
        ("rollup", lambda: points_repo.wallet_rollup(PROBE_ID)),
        ("offers", lambda: points_repo.accepted_offers([PROBE_ID])),
        ("redemptions", lambda: points_repo.open_redemptions([PROBE_ID])),
        ("catalog", lambda: points_repo.catalog_rows(None)),
    ]

    checks: Dict[str, Any] = {name: False for name, _ in probes}

    for name, probe in probes:
        try:
            await probe()
            checks[name] = True
        except Exception as e:
            checks[f"{name}_error"] = str(e)

    ok = all(v is True for v in checks.values() if isinstance(v, bool))
    return {
        "ok": ok,
        "checks": checks,
    }
