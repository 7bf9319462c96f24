"""
Fallback chains
===============

Every read in the portal goes through an ordered list of sources. A source
that raises is logged and treated as empty; the chain stops at the first
source that yields something usable.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple, TypeVar

log = logging.getLogger("kidpoints.chain")

T = TypeVar("T")

Source = Tuple[str, Callable[[], Awaitable[Optional[T]]]]


async def swallow(label: str, awaitable: Awaitable[T], default: T) -> T:
    try:
        return await awaitable
    except Exception as e:
        log.warning("[%s] source unavailable: %s", label, e)
        return default


def _usable(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict, str)):
        return len(value) > 0
    return True


async def first_of(sources: Iterable[Source], accept: Callable[[Any], bool] = _usable) -> Optional[Any]:
    """Run sources in order; return the first accepted result, else None."""
    for label, run in sources:
        try:
            value = await run()
        except Exception as e:
            log.warning("[%s] source unavailable: %s", label, e)
            continue
        if accept(value):
            log.debug("[%s] resolved", label)
            return value
    return None


def rows_of(res: Any) -> List[dict]:
    """
    supabase-py responses: list for selects and most procedures, dict for
    maybe_single, None when maybe_single finds nothing.
    """
    data = getattr(res, "data", None)
    if not data:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    return []


def scalar_of(res: Any) -> Any:
    data = getattr(res, "data", None)
    if isinstance(data, list):
        return data[0] if data else None
    return data


def to_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default
