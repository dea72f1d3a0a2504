"""Signed access and refresh tokens.

Tokens are compact HS256 JWS values. The claim set carries ``sub`` (identity
id), ``tenantId``, ``role``, ``kind`` (``access`` or ``refresh``), ``iat`` and
``exp`` plus ``iss``/``aud`` and a random ``jti``. Validation is stateless:
revocation is checked separately by the caller.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.errors import InvalidToken
from schoolauth.storage.models import Identity, Role

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    tenant_id: str
    role: Role
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str
    # expires_at plus clock-skew leeway: the last instant validate() admits the token
    accepted_until: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        leeway: timedelta = timedelta(0),
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Clock] = None
    ) -> "TokenService":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=settings.jwt_clock_skew_seconds),
            clock=clock,
        )

    def ttl_for(self, kind: TokenKind) -> timedelta:
        return self.access_ttl if kind == TokenKind.ACCESS else self.refresh_ttl

    def issue(
        self, identity: Identity, tenant_id: str, role: Role, kind: TokenKind
    ) -> str:
        now = self._clock()
        issued_at = int(now.timestamp())
        payload = {
            "sub": identity.id,
            "tenantId": tenant_id,
            "role": Role.parse(role).value,
            "kind": TokenKind(kind).value,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl_for(kind).total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
            "jti": uuid.uuid4().hex,
        }
        return self._encode(payload)

    def validate(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """Verify signature, issuer, audience, expiry and kind.

        Raises InvalidToken on any failure.
        """
        payload = self._decode(token)
        if payload is None:
            raise InvalidToken()
        if payload.get("iss") != self.issuer:
            logger.warning("token_issuer_mismatch")
            raise InvalidToken()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            logger.warning("token_audience_mismatch")
            raise InvalidToken()
        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
            kind = TokenKind(payload["kind"])
            role = Role.parse(payload["role"])
            subject = str(payload["sub"])
            tenant_id = str(payload["tenantId"])
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            logger.warning("token_claims_malformed")
            raise InvalidToken() from None
        accepted_until = expires_at + self.leeway
        if self._clock() >= accepted_until:
            raise InvalidToken("token expired")
        if kind != expected_kind:
            logger.warning(
                "token_kind_mismatch", expected=expected_kind.value, presented=kind.value
            )
            raise InvalidToken("token kind mismatch")
        return TokenClaims(
            subject=subject,
            tenant_id=tenant_id,
            role=role,
            kind=kind,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=expires_at,
            token_id=str(payload.get("jti") or ""),
            accepted_until=accepted_until,
        )

    def extract_subject(self, token: str) -> Optional[str]:
        """Read ``sub`` without verifying the token."""
        claims = self._unverified_claims(token)
        return str(claims["sub"]) if claims and "sub" in claims else None

    def extract_tenant(self, token: str) -> Optional[str]:
        """Read ``tenantId`` without verifying the token."""
        claims = self._unverified_claims(token)
        return str(claims["tenantId"]) if claims and "tenantId" in claims else None

    def _unverified_claims(self, token: str) -> Optional[dict[str, Any]]:
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; "none" and asymmetric algs are rejected
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
