"""
Identity Repository (Supabase Adapter)
======================================

Purpose:
- Store-facing adapter for everything the portal needs to work out WHO is
  using it: family code exchange, nickname lookup, child id expansion, and
  the server-side secret check.
- Works against a supabase-py AsyncClient (or anything with the same
  table()/rpc() builder surface).

Procedures (SECURITY DEFINER, callable with the anon key):
- api_family_by_code(p_code)                     -> uuid | null
- api_family_for_child(p_child_uid)              -> uuid | null
- api_child_id_by_nickname(p_family_id, p_nick)  -> uuid | null
  (older deployments: p_family instead of p_family_id)
- api_children_list(p_family_id)                 -> [{id, name, age, nickname}]
- api_child_lookup(p_key)                        -> {id, child_uid?, family_id}
- api_child_auth_check(child_id, fid, clear, pin_mode) -> boolean
- api_child_set_secret / api_child_set_secret_by_uid   -> boolean

Methods raise on transport or API errors. Deciding what a failure means is
the caller's job.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError

from kidpoints.models import ChildSummary
from kidpoints.utils.chain import rows_of, scalar_of, to_int
from kidpoints.utils.ids import clean, looks_like_uuid
from kidpoints.utils.logger import log_call

STALE_SIGNATURE = "PGRST202"

PROFILE_COLUMNS = "id,child_uid,family_id,first_name,last_name,nick_name"


class IdentityRepository:
    def __init__(self, supabase_client: Any, *, table_profiles: str = "child_profiles") -> None:
        self.sb = supabase_client
        self.table_profiles = table_profiles

    async def _rpc(self, fn: str, params: Dict[str, Any]) -> Any:
        log_call("rpc", fn, params)
        return await self.sb.rpc(fn, params).execute()

    # -----------------------------
    # Family
    # -----------------------------
    async def family_by_code(self, code: str) -> Optional[str]:
        res = await self._rpc("api_family_by_code", {"p_code": clean(code)})
        value = scalar_of(res)
        return clean(value) or None

    async def family_for_child(self, child_uid: str) -> Optional[str]:
        res = await self._rpc("api_family_for_child", {"p_child_uid": clean(child_uid)})
        value = scalar_of(res)
        if isinstance(value, dict):
            value = value.get("family_id")
        return clean(value) or None

    # -----------------------------
    # Children
    # -----------------------------
    async def list_children(self, family_id: str) -> List[ChildSummary]:
        res = await self._rpc("api_children_list", {"p_family_id": family_id})
        return [self._row_to_child(r) for r in rows_of(res) if r.get("id")]

    async def child_id_by_nickname(self, family_id: str, nick: str) -> Optional[str]:
        nick = clean(nick)
        if not family_id or not nick:
            return None
        try:
            res = await self._rpc("api_child_id_by_nickname", {"p_family_id": family_id, "p_nick": nick})
        except APIError as e:
            # Schema cache still holds the pre-migration signature.
            if str(getattr(e, "code", "")) != STALE_SIGNATURE:
                raise
            res = await self._rpc("api_child_id_by_nickname", {"p_family": family_id, "p_nick": nick})
        return clean(scalar_of(res)) or None

    async def lookup_child(self, key: str) -> Optional[Dict[str, Any]]:
        res = await self._rpc("api_child_lookup", {"p_key": clean(key)})
        rows = rows_of(res)
        if not rows or not rows[0].get("id"):
            return None
        return rows[0]

    async def child_profile(self, key: str) -> Optional[Dict[str, Any]]:
        """Profile row matching either id form. Only UUID keys are sent to the filter."""
        key = clean(key)
        if not looks_like_uuid(key):
            return None
        res = await (
            self.sb.table(self.table_profiles)
            .select(PROFILE_COLUMNS)
            .or_(f"id.eq.{key},child_uid.eq.{key}")
            .limit(1)
            .execute()
        )
        rows = rows_of(res)
        return rows[0] if rows else None

    async def family_profiles(self, family_id: str) -> List[Dict[str, Any]]:
        res = await (
            self.sb.table(self.table_profiles)
            .select(PROFILE_COLUMNS)
            .eq("family_id", family_id)
            .execute()
        )
        return rows_of(res)

    # -----------------------------
    # Secrets (hashing happens server-side)
    # -----------------------------
    async def auth_check(self, child_id: str, family_id: str, clear: str, pin_mode: bool) -> bool:
        res = await self._rpc(
            "api_child_auth_check",
            {"child_id": child_id, "fid": family_id, "clear": clear, "pin_mode": pin_mode},
        )
        return scalar_of(res) is True

    async def set_secret(self, child_id: str, family_id: str, clear: str, pin_mode: bool) -> bool:
        res = await self._rpc(
            "api_child_set_secret",
            {"child_id": child_id, "fid": family_id, "clear": clear, "pin_mode": pin_mode},
        )
        return scalar_of(res) is True

    async def set_secret_by_uid(self, child_uid: str, family_id: str, clear: str, pin_mode: bool) -> bool:
        res = await self._rpc(
            "api_child_set_secret_by_uid",
            {"child_uid": child_uid, "fid": family_id, "clear": clear, "pin_mode": pin_mode},
        )
        return scalar_of(res) is True

    # -----------------------------
    # Row mapping
    # -----------------------------
    @staticmethod
    def _row_to_child(row: Dict[str, Any]) -> ChildSummary:
        age = row.get("age")
        return ChildSummary(
            id=str(row.get("id")),
            name=row.get("name") or row.get("first_name"),
            age=to_int(age) if age is not None else None,
            nickname=row.get("nickname") or row.get("nick_name"),
        )
