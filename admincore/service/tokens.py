from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, FrozenSet, Iterable, Optional

from admincore.config import Settings
from admincore.logging import get_logger
from admincore.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


@dataclass(frozen=True)
class Identity:
    """Verified access-token claims.

    ``roles`` and ``permissions`` are the snapshot taken at issuance.
    """

    user_id: str
    email: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    jti: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenService:
    """HS256 JWT issuance and verification for access and refresh tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._key = settings.jwt_secret.encode("utf-8")

    def _now(self) -> datetime:
        return self._clock()

    def issue(
        self,
        user_id: str,
        email: str,
        roles: Iterable[str],
        permissions: Iterable[str],
    ) -> TokenPair:
        access_token = self.issue_access(user_id, email, roles, permissions)
        return TokenPair(
            access_token=access_token,
            refresh_token=self.issue_refresh(email),
            expires_in=self.settings.access_token_expiry_ms,
        )

    def issue_access(
        self,
        user_id: str,
        email: str,
        roles: Iterable[str],
        permissions: Iterable[str],
    ) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "email": email,
            "roles": sorted(set(roles)),
            "permissions": sorted(set(permissions)),
            "token_type": ACCESS_TOKEN,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.settings.access_token_ttl).timestamp()),
        }
        return self._encode_jwt(payload)

    def issue_refresh(self, email: str) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": email,
            "token_type": REFRESH_TOKEN,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.settings.refresh_token_ttl).timestamp()),
        }
        return self._encode_jwt(payload)

    def verify(self, token: str) -> Identity:
        """Verify an access token and return its identity.

        Raises:
            TokenInvalidError: malformed, forged, wrong issuer/audience/type
            TokenExpiredError: well formed and signed but past ``exp``
        """
        payload = self._decode_jwt(token, expected_type=ACCESS_TOKEN)
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise TokenInvalidError()
        roles = payload.get("roles") or []
        permissions = payload.get("permissions") or []
        if not isinstance(roles, list) or not isinstance(permissions, list):
            raise TokenInvalidError()
        return Identity(
            user_id=user_id,
            email=str(payload.get("email") or ""),
            roles=frozenset(str(r) for r in roles),
            permissions=frozenset(str(p) for p in permissions),
            jti=payload.get("jti"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify_refresh(self, token: str) -> str:
        payload = self._decode_jwt(token, expected_type=REFRESH_TOKEN)
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenInvalidError()
        return subject

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> bytes:
        data = signing_input.encode("utf-8", "surrogatepass")
        return hmac.new(self._key, data, hashlib.sha256).digest()

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._encode_segment(self._sign(signing_input))}"

    def _decode_jwt(self, token: str, *, expected_type: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenInvalidError()
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenInvalidError()
        header_b64, payload_b64, sig_b64 = parts

        # Reject algorithm confusion before touching the payload
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError()

        # Canonical encoding compared as bytes; compare_digest refuses non-ASCII str
        expected_sig = self._encode_segment(self._sign(f"{header_b64}.{payload_b64}"))
        if not hmac.compare_digest(
            expected_sig.encode("utf-8"), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenInvalidError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise TokenInvalidError()
        if payload.get("token_type") != expected_type:
            raise TokenInvalidError("unexpected token type")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalidError()
        if exp <= self._now().timestamp():
            raise TokenExpiredError()
        return payload


__all__ = ["ACCESS_TOKEN", "REFRESH_TOKEN", "Identity", "TokenPair", "TokenService"]
