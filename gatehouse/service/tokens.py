from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from gatehouse.logging import get_logger
from gatehouse.service.errors import TokenInvalidError
from gatehouse.storage.models import User

logger = get_logger(__name__)

_HKDF_SALT = b"gatehouse"
_HKDF_INFO = b"api.jwt"


def derive_signing_secret(root_key: str, *, info: bytes = _HKDF_INFO) -> bytes:
    """Derive a 32-byte signing key from the root key with HKDF-SHA256.

    Rotating the root key rotates every derived secret; nothing else is stored.
    """
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_HKDF_SALT,
        info=info,
    ).derive(root_key.encode("utf-8"))


class SessionTokenService:
    """Issues and verifies HS256 session tokens.

    ``verify`` checks the signature and the time/issuer/audience claims only.
    Whether the embedded ``token_version`` is still current is a separate
    question answered through the token version cache.
    """

    def __init__(
        self,
        root_key: str,
        *,
        issuer: str = "urn:gatehouse",
        audience: str = "gatehouse.api",
        ttl_seconds: int = 7 * 24 * 60 * 60,
        clock_skew_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = derive_signing_secret(root_key)
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user: User) -> str:
        now = int(self._clock())
        payload = {
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "token_version": user.token_version,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        payload = self._decode(token)
        if payload is None:
            raise TokenInvalidError()
        return payload

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm; "none" and asymmetric algs are never accepted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            logger.info("token_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None

        now = self._clock()
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", payload.get("iat", 0)))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= now - self.clock_skew_seconds:
            logger.info("token_expired", sub=payload.get("sub"))
            return None
        if nbf_ts > now + self.clock_skew_seconds:
            return None
        if not payload.get("sub"):
            return None
        return payload
