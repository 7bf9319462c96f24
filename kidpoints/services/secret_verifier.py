"""
Secret Verifier
===============

The store owns hashing and comparison. This side only:
- checks the PIN shape before anything leaves the process
- makes exactly one api_child_auth_check call (no retry)
- keeps the clear text inside a SecretStr so it never reaches a log line
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

import httpx
from postgrest.exceptions import APIError
from pydantic import SecretStr, ValidationError

from kidpoints.exceptions import SourceUnavailable
from kidpoints.models import ChildIdentity
from kidpoints.repositories.identity_repository import IdentityRepository
from kidpoints.schemas import SecretMode, SecretSubmission
from kidpoints.settings import settings

log = logging.getLogger("kidpoints.verifier")

AUTH_CHECK = "api_child_auth_check"


class SecretVerifier:
    def __init__(self, repo: IdentityRepository, timeout: Optional[float] = None) -> None:
        self.repo = repo
        self.timeout = settings.verify_timeout if timeout is None else timeout

    async def verify(
        self,
        identity: ChildIdentity,
        secret: Union[str, SecretStr],
        mode: SecretMode = "pin",
    ) -> bool:
        try:
            submission = SecretSubmission(secret=secret, mode=mode)
        except ValidationError as e:
            log.info("[verifier] rejected before submission: %s", e.errors()[0].get("msg"))
            return False

        call = self.repo.auth_check(
            identity.canonical_id,
            identity.family_id,
            submission.secret.get_secret_value(),
            submission.pin_mode,
        )
        try:
            ok = await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            log.warning("[verifier] %s timed out after %.1fs", AUTH_CHECK, self.timeout)
            raise SourceUnavailable(AUTH_CHECK, "Verification timed out. Try again.") from e
        except (APIError, httpx.HTTPError) as e:
            log.warning("[verifier] %s failed: %s", AUTH_CHECK, e)
            return False

        log.info("[verifier] child=%s mode=%s ok=%s", identity.canonical_id, mode, ok)
        return ok

    async def set_secret(
        self,
        identity: ChildIdentity,
        secret: Union[str, SecretStr],
        mode: SecretMode = "pin",
    ) -> bool:
        """Parent-side reset. Raises ValidationError for a bad shape; store errors propagate."""
        submission = SecretSubmission(secret=secret, mode=mode)
        clear = submission.secret.get_secret_value()

        ok = await self.repo.set_secret(identity.canonical_id, identity.family_id, clear, submission.pin_mode)
        if not ok and identity.legacy_uid:
            # Profiles created before the migration are only reachable by child_uid.
            ok = await self.repo.set_secret_by_uid(identity.legacy_uid, identity.family_id, clear, submission.pin_mode)
        log.info("[verifier] secret reset child=%s mode=%s ok=%s", identity.canonical_id, mode, ok)
        return ok
