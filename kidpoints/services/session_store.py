"""
Session Store (two tiers)
=========================

Purpose:
- Remember the resolved child/family across a session tier (dies with the
  process) and a durable tier (survives restarts).
- Repair the session tier from the durable one BEFORE anything renders:
  downstream readers look at the session tier only.

Design:
- Tiers are plain synchronous key/value stores, so repair() cannot be
  deferred past the caller's first read.
- Values may be bare id strings or small JSON records (older builds wrote
  one, newer builds the other). Everything read goes through
  parse_stored_identity / normalize_identity.
- No locks: the tiers are only touched from the event loop thread, and a
  divergence is fixed by the next read.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

from kidpoints.models import ChildIdentity
from kidpoints.utils.ids import (
    StoredIdentity,
    StructuredIdentity,
    normalize_identity,
    parse_stored_identity,
)

log = logging.getLogger("kidpoints.session")

# Session tier
SS_CHILD_UID = "child_uid"
SS_CHILD_ID = "child_id"

# Durable tier
LS_CHILD = "child_portal_child_id"
LS_FAMILY = "child_portal_family_id"
LS_CHILD_LEGACY = "LS_CHILD"


class KeyValueTier(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryTier:
    """Session-scoped tier."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileTier:
    """Durable tier backed by a small JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            log.warning("[session] unreadable durable state at %s: %s", self.path, e)
            return {}
        return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class SessionStore:
    def __init__(self, session: KeyValueTier, durable: KeyValueTier) -> None:
        self.session = session
        self.durable = durable

    # -----------------------------
    # Raw reads
    # -----------------------------
    def _durable_child(self) -> Optional[StoredIdentity]:
        return parse_stored_identity(self.durable.get_item(LS_CHILD)) or parse_stored_identity(
            self.durable.get_item(LS_CHILD_LEGACY)
        )

    def _session_ids(self) -> Optional[Tuple[str, str]]:
        by_uid = normalize_identity(parse_stored_identity(self.session.get_item(SS_CHILD_UID)))
        by_id = normalize_identity(parse_stored_identity(self.session.get_item(SS_CHILD_ID)))
        if by_uid and by_id:
            return by_id[0], by_uid[1]
        return by_uid or by_id

    # -----------------------------
    # Repair
    # -----------------------------
    def repair(self) -> bool:
        """
        Copy durable -> session when the session tier is empty.
        Returns True when a write happened.
        """
        if self.session.get_item(SS_CHILD_UID):
            return False
        raw = self.durable.get_item(LS_CHILD) or self.durable.get_item(LS_CHILD_LEGACY)
        if not raw:
            return False
        self.session.set_item(SS_CHILD_UID, raw)
        log.info("[session] repaired session tier from durable tier")
        return True

    def get(self) -> Optional[Tuple[str, str]]:
        """
        (canonical, legacy) ids of the remembered child, repairing whichever
        tier is missing or stale. None when neither tier knows a child.
        """
        self.repair()
        session_ids = self._session_ids()
        durable_ids = normalize_identity(self._durable_child())

        if session_ids and not durable_ids:
            self._write_durable_child(*session_ids)
            log.info("[session] repaired durable tier from session tier")
            return session_ids
        if session_ids and durable_ids:
            if not set(session_ids) & set(durable_ids):
                # Session tier holds the latest resolution in this process.
                self._write_durable_child(*session_ids)
                log.info("[session] durable tier diverged; rewritten from session tier")
                return session_ids
            # Same child; the durable record may know the other id form.
            canonical = session_ids[0] if session_ids[0] != session_ids[1] else durable_ids[0]
            legacy = session_ids[1] if session_ids[0] != session_ids[1] else durable_ids[1]
            return canonical, legacy
        return durable_ids

    def _write_durable_child(self, canonical: str, legacy: str) -> None:
        self.durable.set_item(LS_CHILD, StructuredIdentity(id=canonical, child_uid=legacy).to_json())

    def get_child_id(self) -> Optional[str]:
        ids = self.get()
        return ids[0] if ids else None

    def get_family_id(self) -> Optional[str]:
        value = (self.durable.get_item(LS_FAMILY) or "").strip()
        return value or None

    def stored_profile(self) -> Optional[StructuredIdentity]:
        stored = self._durable_child()
        return stored if isinstance(stored, StructuredIdentity) else None

    def needs_prompt(self) -> bool:
        return self.get() is None

    # -----------------------------
    # Writes
    # -----------------------------
    def set(self, identity: ChildIdentity) -> None:
        record = StructuredIdentity(
            id=identity.canonical_id,
            child_uid=identity.legacy_uid,
            nick_name=identity.nickname,
            first_name=identity.display_name,
        )
        self.session.set_item(SS_CHILD_ID, identity.canonical_id)
        self.session.set_item(SS_CHILD_UID, identity.legacy_uid)
        self.durable.set_item(LS_CHILD, record.to_json())
        if identity.family_id:
            self.durable.set_item(LS_FAMILY, identity.family_id)

    remember = set

    def remember_family(self, family_id: str) -> None:
        self.durable.set_item(LS_FAMILY, family_id)

    def forget(self) -> None:
        for key in (SS_CHILD_UID, SS_CHILD_ID):
            self.session.remove_item(key)
        for key in (LS_CHILD, LS_CHILD_LEGACY, LS_FAMILY):
            self.durable.remove_item(key)

    def forget_child(self) -> None:
        """Drop a remembered child the store no longer knows."""
        for key in (SS_CHILD_UID, SS_CHILD_ID):
            self.session.remove_item(key)
        for key in (LS_CHILD, LS_CHILD_LEGACY):
            self.durable.remove_item(key)


def build_session_store(state_path: Path) -> SessionStore:
    return SessionStore(MemoryTier(), JsonFileTier(state_path))


__all__ = [
    "KeyValueTier",
    "MemoryTier",
    "JsonFileTier",
    "SessionStore",
    "build_session_store",
    "SS_CHILD_UID",
    "SS_CHILD_ID",
    "LS_CHILD",
    "LS_FAMILY",
    "LS_CHILD_LEGACY",
]
