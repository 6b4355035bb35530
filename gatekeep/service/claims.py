"""Session claims: enrichment from live store state, projection, signing.

Claims are re-read from the store on every refresh. A role change, a toggled
two-factor flag or a newly linked identity therefore reaches the client at its
next refresh without forcing a new sign-in; between refreshes the client sees
the values from the last one.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.errors import UnauthorizedError
from gatekeep.storage.common import SecretStore
from gatekeep.storage.models import User, UserRole

logger = get_logger(__name__)

ENRICHED_CLAIMS = ("role", "is_two_factor_enabled", "name", "email", "is_oauth")
REGISTERED_CLAIMS = ("iss", "aud", "iat", "exp")


class ClientSessionView(BaseModel):
    """What the client sees of its session. Fields absent from the claims stay unset."""

    id: Optional[str] = None
    role: Optional[UserRole] = None
    is_two_factor_enabled: Optional[bool] = None
    name: Optional[str] = None
    email: Optional[str] = None
    is_oauth: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


@dataclass
class SignedSession:
    token: str
    claims: Dict[str, Any]


class SessionClaimsPipeline:
    def __init__(
        self,
        store: SecretStore,
        settings: Settings,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    async def enrich(
        self, subject_id: Optional[str], previous_claims: Dict[str, Any]
    ) -> Dict[str, Any]:
        claims = dict(previous_claims)
        user = self.store.get_user(subject_id) if subject_id else None
        if not user:
            logger.info("claims_subject_missing", user_id=subject_id)
            return claims
        claims.setdefault("sub", user.id)
        claims["role"] = user.role.value
        claims["is_two_factor_enabled"] = user.is_two_factor_enabled
        claims["name"] = user.name
        claims["email"] = user.email
        # Recomputed on every refresh rather than cached at link time
        claims["is_oauth"] = self.store.get_account_by_user_id(user.id) is not None
        return claims

    def project(self, claims: Dict[str, Any]) -> ClientSessionView:
        fields: Dict[str, Any] = {}
        if "sub" in claims:
            fields["id"] = claims["sub"]
        for key in ENRICHED_CLAIMS:
            if key in claims:
                fields[key] = claims[key]
        return ClientSessionView(**fields)

    async def mint(self, subject: Union[User, str]) -> SignedSession:
        subject_id = subject.id if isinstance(subject, User) else subject
        claims = await self.enrich(subject_id, {"sub": subject_id})
        return self._sign(claims)

    async def refresh(self, token: str) -> SignedSession:
        payload = self.decode(token)
        if payload is None:
            raise UnauthorizedError("Invalid session!")
        previous = {k: v for k, v in payload.items() if k not in REGISTERED_CLAIMS}
        claims = await self.enrich(payload.get("sub"), previous)
        logger.info("session_refreshed", user_id=payload.get("sub"))
        return self._sign(claims)

    def _sign(self, claims: Dict[str, Any]) -> SignedSession:
        now = self.now()
        exp = now + timedelta(minutes=self.settings.session_ttl_minutes)
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
        return SignedSession(token=self._encode_jwt(payload), claims=payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the verified payload, or None for any invalid token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.now().timestamp():
            logger.info("jwt_expired", user_id=payload.get("sub"))
            return None
        return payload
