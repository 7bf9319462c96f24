"""
Identifier helpers
==================

Children are addressed by two ids: the canonical ``child_profiles.id`` and the
legacy ``child_uid`` kept from before the profile migration. Stored values come
in several historical shapes:

- a bare id string                      "3f0c...-..."
- a JSON-encoded record                 '{"id": "...", "child_uid": "..."}'
- an already decoded mapping            {"child_uid": "...", "nick_name": "Sam"}

``StoredIdentity`` models those shapes as a tagged union and
``parse_stored_identity`` is the single place that sniffs them.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Union

UUID_RX = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.I)
UUID_SEARCH_RX = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", re.I)
EMAIL_RX = re.compile(r"\S+@\S+\.\S+")


def clean(value: Any) -> str:
    return str(value if value is not None else "").strip()


def looks_like_uuid(value: Any) -> bool:
    return bool(UUID_RX.match(clean(value)))


def looks_like_email(value: Any) -> bool:
    return bool(EMAIL_RX.search(clean(value)))


def take_uuid(value: Any) -> Optional[str]:
    """
    Permissive UUID extraction.
    Accepts raw strings (UUID anywhere inside), JSON-encoded objects, and
    mappings carrying child_uid / id / uid.
    """
    if not value:
        return None
    if isinstance(value, str):
        s = value.strip()
        if s.startswith("{"):
            try:
                return take_uuid(json.loads(s))
            except ValueError:
                pass
        m = UUID_SEARCH_RX.search(s)
        return m.group(0) if m else None
    if isinstance(value, dict):
        for key in ("child_uid", "id", "uid"):
            found = take_uuid(value.get(key))
            if found:
                return found
        return None
    return take_uuid(str(value))


def uniq_ids(values: Iterable[Any]) -> List[str]:
    """Order-preserving de-dupe of non-empty ids, UUID-shaped or not."""
    out: List[str] = []
    for v in values:
        s = clean(v)
        if s and s not in out:
            out.append(s)
    return out


# -----------------------------
# Stored identity (tagged union)
# -----------------------------
@dataclass(frozen=True)
class RawIdentity:
    value: str


@dataclass(frozen=True)
class StructuredIdentity:
    id: str = ""
    child_uid: str = ""
    nick_name: Optional[str] = None
    first_name: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "child_uid": self.child_uid,
                "nick_name": self.nick_name,
                "first_name": self.first_name,
            }
        )


StoredIdentity = Union[RawIdentity, StructuredIdentity]


def parse_stored_identity(raw: Any) -> Optional[StoredIdentity]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return StructuredIdentity(
            id=clean(raw.get("id")),
            child_uid=clean(raw.get("child_uid") or raw.get("uid")),
            nick_name=raw.get("nick_name"),
            first_name=raw.get("first_name"),
        )
    s = clean(raw)
    if not s:
        return None
    if s.startswith("{"):
        try:
            decoded = json.loads(s)
        except ValueError:
            return RawIdentity(s)
        if isinstance(decoded, dict):
            return parse_stored_identity(decoded)
    return RawIdentity(s)


def normalize_identity(stored: Optional[StoredIdentity]) -> Optional[Tuple[str, str]]:
    """
    Returns (canonical, legacy) for a stored identity, or None when it is empty.
    A raw value names both forms until the store says otherwise.
    """
    if stored is None:
        return None
    if isinstance(stored, RawIdentity):
        value = take_uuid(stored.value) or stored.value
        return (value, value) if value else None
    canonical = take_uuid(stored.id) or stored.id
    legacy = take_uuid(stored.child_uid) or stored.child_uid
    canonical = canonical or legacy
    legacy = legacy or canonical
    if not canonical:
        return None
    return canonical, legacy
