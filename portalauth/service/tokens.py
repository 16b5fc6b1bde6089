from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from portalauth.logging import get_logger
from portalauth.service.errors import (
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPayload:
    subject_id: str
    session_id: Optional[str]
    role: str
    token_id: str
    token_type: str
    issued_at: int
    expires_at: int

    def to_claims(self, issuer: str, audience: str) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "iss": issuer,
            "aud": audience,
            "sub": self.subject_id,
            "role": self.role,
            "token_type": self.token_type,
            "jti": self.token_id,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }
        if self.session_id:
            claims["sid"] = self.session_id
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        try:
            return cls(
                subject_id=str(claims["sub"]),
                session_id=claims.get("sid") or None,
                role=str(claims.get("role") or "user"),
                token_id=str(claims["jti"]),
                token_type=str(claims.get("token_type") or ACCESS),
                issued_at=int(claims.get("iat") or 0),
                expires_at=int(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedTokenError("token is missing required claims") from exc


@dataclass(frozen=True)
class IssuedToken:
    token: str
    payload: TokenPayload

    @property
    def token_id(self) -> str:
        return self.payload.token_id

    @property
    def expires_at(self) -> int:
        return self.payload.expires_at


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken


class TokenAuthority:
    """Mints and verifies HS256 bearer tokens bound to a session.

    Verification is pure: signature, issuer, audience and expiry only. Whether
    the token id was revoked or its session is still alive is the caller's
    concern.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 24 * 60 * 60,
        refresh_ttl_seconds: int = 30 * 24 * 60 * 60,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @property
    def max_ttl_seconds(self) -> int:
        return max(self.access_ttl_seconds, self.refresh_ttl_seconds)

    def now(self) -> int:
        return int(self._clock())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(
        self,
        subject_id: str,
        session_id: Optional[str],
        role: str,
        ttl_seconds: int,
        *,
        token_type: str = ACCESS,
    ) -> IssuedToken:
        issued_at = self.now()
        payload = TokenPayload(
            subject_id=subject_id,
            session_id=session_id,
            role=role,
            token_id=str(uuid.uuid4()),
            token_type=token_type,
            issued_at=issued_at,
            expires_at=issued_at + int(ttl_seconds),
        )
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(
                payload.to_claims(self.issuer, self.audience), separators=(",", ":")
            ).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return IssuedToken(
            token=f"{signing_input}.{self._sign(signing_input)}", payload=payload
        )

    def issue_pair(
        self, subject_id: str, session_id: Optional[str], role: str
    ) -> TokenPair:
        """Issue an access token and an independent, longer-lived refresh token."""
        return TokenPair(
            access=self.issue(
                subject_id, session_id, role, self.access_ttl_seconds, token_type=ACCESS
            ),
            refresh=self.issue(
                subject_id, session_id, role, self.refresh_ttl_seconds, token_type=REFRESH
            ),
        )

    def verify(self, token: str) -> TokenPayload:
        if not token or not isinstance(token, str):
            raise MalformedTokenError("token is empty")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError("token must have three segments")
        # hmac.compare_digest raises TypeError on non-ASCII str input
        if not all(part.isascii() for part in parts):
            raise MalformedTokenError("token contains non-ASCII characters")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise MalformedTokenError("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")
        # Reject alg substitution before touching the signature
        if header.get("alg") != self.ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidSignatureError("token signature mismatch")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise MalformedTokenError("token payload is not valid JSON") from exc
        if not isinstance(claims, dict):
            raise MalformedTokenError("token payload is not an object")

        if claims.get("iss") != self.issuer:
            raise InvalidSignatureError("token issuer mismatch")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidSignatureError("token audience mismatch")

        payload = TokenPayload.from_claims(claims)
        if payload.expires_at + self.leeway_seconds <= self.now():
            raise TokenExpiredError("token has expired")
        return payload

    def remaining_ttl(self, expires_at: Optional[int]) -> int:
        """Seconds left until ``expires_at``, or the longest token lifetime if unknown."""
        if expires_at is None:
            return self.max_ttl_seconds
        return max(int(expires_at) - self.now(), 0)


__all__ = ["ACCESS", "REFRESH", "IssuedToken", "TokenAuthority", "TokenPair", "TokenPayload"]
