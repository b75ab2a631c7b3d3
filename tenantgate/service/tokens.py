from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from tenantgate.config import DEFAULT_TOKEN_TTL_SECONDS
from tenantgate.logging import get_logger

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"


class TokenIssuer:
    """Signs and verifies the gateway's HS256 bearer tokens.

    Claims carry the principal's identity (``userId``, ``tenantId``, ``role``)
    alongside ``aud``, ``iss``, ``iat``, ``nbf`` and ``exp``. ``decode`` only
    answers whether the token itself is genuine and current; whether its
    tenant and user still exist is the auth gate's job.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        clock_skew_seconds: int = 15,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
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
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, user_id: str, tenant_id: str, role: str) -> str:
        now = int(self._clock())
        payload = {
            "aud": self.audience,
            "iss": self.issuer,
            "userId": user_id,
            "tenantId": tenant_id,
            "role": role,
            "iat": now,
            "nbf": now,
            "exp": now + self.ttl_seconds,
        }
        return self.encode(payload)

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the verified claims, or ``None`` when the token is unusable."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
            alg = header.get("alg")
            if alg != JWT_ALGORITHM:
                logger.warning("jwt_invalid_algorithm", alg=alg)
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        if payload.get("iss") != self.issuer:
            logger.warning("jwt_issuer_mismatch")
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            logger.warning("jwt_audience_mismatch")
            return None

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload["iat"])
            nbf_ts = float(payload.get("nbf", iat_ts))
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_time_claims_invalid")
            return None
        now = self._clock()
        skew = self.clock_skew_seconds
        if exp_ts <= now - skew:
            logger.info("jwt_expired")
            return None
        if nbf_ts > now + skew:
            logger.warning("jwt_not_yet_valid")
            return None
        # Max age holds even when exp was minted further out
        if now - iat_ts > self.ttl_seconds + skew:
            logger.info("jwt_too_old")
            return None
        return payload
