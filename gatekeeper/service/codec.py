from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Protocol, Union

from gatekeeper.logging import get_logger
from gatekeeper.service.errors import UnexpectedTokenError

logger = get_logger(__name__)

SIGNING_ALGORITHM = "HS256"


class TokenCodec(Protocol):
    """Turns a claim mapping into an opaque signed token and back."""

    def sign(self, claims: dict[str, Any]) -> str: ...

    def verify(self, token: Union[str, bytes]) -> dict[str, Any]: ...


class JWTCodec:
    """Compact HS256 JSON Web Tokens signed with a shared secret."""

    def __init__(self, secret: Union[str, bytes]) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret.encode() if isinstance(secret, str) else bytes(secret)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any]) -> str:
        header = {"alg": SIGNING_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: Union[str, bytes]) -> dict[str, Any]:
        if isinstance(token, bytes):
            try:
                text = token.decode("ascii")
            except UnicodeDecodeError as exc:
                raise UnexpectedTokenError("token is not ASCII") from exc
        elif isinstance(token, str) and token.isascii():
            text = token
        else:
            raise UnexpectedTokenError("token is not an ASCII string")

        try:
            header_b64, payload_b64, sig_b64 = text.split(".")
        except ValueError as exc:
            raise UnexpectedTokenError("token must have three segments") from exc

        # Reject anything but HS256 before touching the signature (alg confusion)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, RecursionError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise UnexpectedTokenError("undecodable token header") from exc
        if not isinstance(header, dict) or header.get("alg") != SIGNING_ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise UnexpectedTokenError(
                f"invalid signing method: {alg}", detail={"alg": alg}
            )

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise UnexpectedTokenError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise UnexpectedTokenError("undecodable token payload") from exc
        if not isinstance(payload, dict):
            raise UnexpectedTokenError("token payload is not an object")
        return payload


__all__ = ["TokenCodec", "JWTCodec", "SIGNING_ALGORITHM"]
