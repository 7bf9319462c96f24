"""Error taxonomy for the child portal core."""

from __future__ import annotations


class KidPointsError(Exception):
    def __init__(self, message: str, code: str = "error"):
        self.message = message
        self.code = code
        super().__init__(message)


class StoreNotConfigured(KidPointsError):
    """Raised when no Supabase client can be built from the environment."""

    def __init__(self, message: str = "Supabase not configured: set SUPABASE_URL and SUPABASE_ANON_KEY."):
        super().__init__(message, "store_not_configured")


class ResolutionFailure(KidPointsError):
    """No identity hint produced a family or child. Recoverable: prompt for manual entry."""

    def __init__(self, message: str = "We couldn't find your child session."):
        super().__init__(message, "resolution_failure")


class VerificationFailure(KidPointsError):
    """The remote store rejected the PIN/password. Recoverable: re-prompt."""

    def __init__(self, message: str = "Incorrect PIN/password."):
        super().__init__(message, "bad_secret")


class SourceUnavailable(KidPointsError):
    """A remote procedure or table could not be reached in time."""

    def __init__(self, source: str, message: str = ""):
        self.source = source
        super().__init__(message or f"{source} unavailable", "source_unavailable")


class RewardActionError(KidPointsError):
    """A redeem/accept command was refused by the remote store."""

    def __init__(self, message: str):
        super().__init__(message, "reward_action")
