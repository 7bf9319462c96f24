"""
Identity Resolver
=================

Works out (family_id, canonical child id, legacy child uid) from weak hints.

Family, first hit wins:
    1. explicit fid / typed code / QR fid   (UUID as is, short code via lookup)
    2. remembered durable family            (re-validated the same way)
    3. family of the child hint, else of the remembered child

Child, within a known family:
    1. explicit child id                    (must be a known child of this family)
    2. nickname lookup
    3. remembered durable child (only if it belongs to this family)
    4. first child of the family listing    (selection default, never a login)

An explicit child or nickname hint that does not resolve is a miss: the
caller shows the family listing instead of quietly picking someone else.

Nothing here raises for "not found"; None is the NotFound result.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from kidpoints.models import ChildIdentity, ChildSummary, FamilyScope
from kidpoints.repositories.identity_repository import IdentityRepository
from kidpoints.schemas import IdentityHints, MalformedQRPayload
from kidpoints.services.session_store import SessionStore
from kidpoints.utils.chain import Source, first_of, swallow
from kidpoints.utils.ids import clean, looks_like_email, looks_like_uuid

log = logging.getLogger("kidpoints.resolver")


class IdentityResolver:
    def __init__(self, repo: IdentityRepository, store: SessionStore) -> None:
        self.repo = repo
        self.store = store

    # -----------------------------
    # Hints
    # -----------------------------
    @staticmethod
    def expand_hints(hints: Optional[IdentityHints]) -> Optional[IdentityHints]:
        """Hints with QR fields folded in; None when the QR payload is malformed."""
        hints = hints or IdentityHints()
        try:
            return hints.expanded()
        except MalformedQRPayload as e:
            log.info("[resolver] invalid QR payload: %s", e)
            return None

    # -----------------------------
    # Family
    # -----------------------------
    async def family_from_value(self, raw: Optional[str]) -> Optional[str]:
        """UUID -> itself, short code -> lookup, email -> rejected without a lookup."""
        value = clean(raw)
        if not value:
            return None
        if looks_like_email(value):
            log.info("[resolver] refusing email-shaped family hint")
            return None
        if looks_like_uuid(value):
            return value
        return await self.repo.family_by_code(value)

    async def family_for_child(self, child_id: Optional[str]) -> Optional[str]:
        if not clean(child_id):
            return None
        return await swallow("api_family_for_child", self.repo.family_for_child(clean(child_id)), None)

    def family_strategies(self, hints: IdentityHints) -> List[Source]:
        return [
            ("explicit_family", lambda: self.family_from_value(hints.family)),
            ("remembered_family", lambda: self.family_from_value(self.store.get_family_id())),
            ("child_family", lambda: self.family_for_child(hints.child or self.store.get_child_id())),
        ]

    async def resolve_family(self, hints: Optional[IdentityHints] = None) -> Optional[FamilyScope]:
        """First family strategy that hits.

        An email-shaped explicit fid is a miss for the whole chain: a parent
        typed their login into the family field, and the remembered family
        must not silently take over.
        """
        expanded = self.expand_hints(hints)
        if expanded is None:
            return None
        if looks_like_email(expanded.family):
            log.info("[resolver] email-shaped family hint; not falling back")
            return None
        family_id = await first_of(self.family_strategies(expanded))
        if not family_id:
            log.info("[resolver] no family resolved")
            return None
        return FamilyScope(family_id=family_id)

    # -----------------------------
    # Child
    # -----------------------------
    async def list_children(self, family: FamilyScope) -> List[ChildSummary]:
        return await swallow("api_children_list", self.repo.list_children(family.family_id), [])

    async def lookup_child(
        self,
        key: str,
        family: Optional[FamilyScope] = None,
        nickname: Optional[str] = None,
        require_row: bool = False,
    ) -> Optional[ChildIdentity]:
        """Expand one id (either form) to both forms plus its family.

        Without a profile row the key stands in for both forms, unless
        require_row is set, in which case the miss is None.
        """
        key = clean(key)
        if not key:
            return None
        row = await first_of(
            [
                ("api_child_lookup", lambda: self.repo.lookup_child(key)),
                ("child_profiles", lambda: self.repo.child_profile(key)),
            ]
        )
        if not row and require_row:
            log.info("[resolver] no profile for child %s", key)
            return None
        row = row or {}
        canonical = clean(row.get("id")) or key
        legacy = clean(row.get("child_uid")) or key
        family_id = clean(row.get("family_id")) or (family.family_id if family else "")
        if not family_id:
            family_id = clean(await self.family_for_child(canonical))
        if family and family_id and family_id != family.family_id:
            log.info("[resolver] child %s belongs to family %s, not %s", canonical, family_id, family.family_id)
        return ChildIdentity(
            canonical_id=canonical,
            legacy_uid=legacy,
            family_id=family_id,
            nickname=row.get("nick_name") or row.get("nickname") or nickname,
            display_name=row.get("first_name") or row.get("name"),
        )

    async def _by_nickname(self, family: FamilyScope, nick: str) -> Optional[ChildIdentity]:
        child_id = await swallow(
            "api_child_id_by_nickname",
            self.repo.child_id_by_nickname(family.family_id, nick),
            None,
        )
        if not child_id:
            log.info("[resolver] no child with nickname %r in family %s", nick, family.family_id)
            return None
        return await self.lookup_child(child_id, family, nickname=nick)

    async def _in_family(self, family: FamilyScope, key: Optional[str]) -> Optional[ChildIdentity]:
        if not key:
            return None
        identity = await self.lookup_child(key, family, require_row=True)
        if identity is None or identity.family_id != family.family_id:
            return None
        return identity

    async def remembered_child(self, family: FamilyScope) -> Optional[ChildIdentity]:
        """The durable child, only when it is a known child of this family."""
        return await self._in_family(family, self.store.get_child_id())

    async def _first_listed(self, family: FamilyScope) -> Optional[ChildIdentity]:
        kids = await self.list_children(family)
        if not kids:
            return None
        first = kids[0]
        identity = await self.lookup_child(first.id, family, nickname=first.nickname)
        if identity and not identity.display_name and first.name:
            identity = ChildIdentity(
                canonical_id=identity.canonical_id,
                legacy_uid=identity.legacy_uid,
                family_id=identity.family_id,
                nickname=identity.nickname,
                display_name=first.name,
            )
        return identity

    def child_strategies(self, family: FamilyScope, hints: IdentityHints) -> List[Source]:
        if hints.child:
            return [("explicit_child", lambda: self._in_family(family, hints.child))]
        if hints.nick:
            return [("nickname", lambda: self._by_nickname(family, hints.nick))]
        return [
            ("remembered_child", lambda: self.remembered_child(family)),
            ("first_listed_child", lambda: self._first_listed(family)),
        ]

    async def resolve_child(self, family: FamilyScope, hints: Optional[IdentityHints] = None) -> Optional[ChildIdentity]:
        expanded = self.expand_hints(hints)
        if expanded is None:
            return None
        return await first_of(self.child_strategies(family, expanded))

    async def resolve(self, hints: Optional[IdentityHints] = None) -> Optional[ChildIdentity]:
        family = await self.resolve_family(hints)
        if family is None:
            return None
        return await self.resolve_child(family, hints)
