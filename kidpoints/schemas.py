from __future__ import annotations

import re
from typing import Literal, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

PIN_RX = re.compile(r"^\d{4,12}$")

SecretMode = Literal["pin", "password"]


class MalformedQRPayload(ValueError):
    pass


class IdentityHints(BaseModel):
    family: Optional[str] = Field(None, description="Family UUID or short code (fid)")
    child: Optional[str] = Field(None, description="Child id (canonical or legacy)")
    nick: Optional[str] = Field(None, description="Child nickname within the family")
    qr_payload: Optional[str] = Field(None, description="Raw text decoded from a QR card")

    @field_validator("family", "child", "nick", "qr_payload", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "IdentityHints":
        return cls(family=params.get("fid"), child=params.get("child"), nick=params.get("nick"))

    @classmethod
    def from_qr(cls, payload: str) -> "IdentityHints":
        """QR cards encode a login URL: https://host/child/login?fid=...&nick=..."""
        try:
            parts = urlsplit((payload or "").strip())
        except ValueError as e:
            raise MalformedQRPayload(str(e)) from e
        if not parts.scheme or not parts.netloc:
            raise MalformedQRPayload("QR payload is not an absolute URL")
        qs = parse_qs(parts.query)
        return cls.from_query({k: v[0] for k, v in qs.items() if v})

    def expanded(self) -> "IdentityHints":
        """Fold the QR payload into the plain fields. Fields given directly win."""
        if not self.qr_payload:
            return self
        qr = IdentityHints.from_qr(self.qr_payload)
        return IdentityHints(
            family=self.family or qr.family,
            child=self.child or qr.child,
            nick=self.nick or qr.nick,
        )


class SecretSubmission(BaseModel):
    secret: SecretStr
    mode: SecretMode = "pin"

    @model_validator(mode="after")
    def _check_format(self) -> "SecretSubmission":
        value = self.secret.get_secret_value()
        if not value.strip():
            raise ValueError("Enter your PIN." if self.mode == "pin" else "Enter your password.")
        if self.mode == "pin" and not PIN_RX.match(value):
            raise ValueError("PIN must be 4-12 digits")
        return self

    @property
    def pin_mode(self) -> bool:
        return self.mode == "pin"
