"""Client Assertion Builder.

Produces the signed, time-bounded JWT that authenticates this client at the
token endpoint without a shared secret (SMART Backend Services / RFC 7523).
The private key is read from a JSON Web Key Set on every build; the first
key declared for signature use (``"use": "sig"``) is used.

Security Impact:
    - Private key material never leaves this module
    - Signed assertions are short-lived and carry a fresh ``jti``
    - A missing or unusable signing key is a configuration error, never retried
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import jwt
from jwt.exceptions import PyJWTError

from labsieve.domain.models import AssertionClaims
from labsieve.domain.ports import SigningKeyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningKey:
    """Private key resolved from a key set, ready for PyJWT."""

    key: Any
    algorithm: str
    key_id: Optional[str] = None


class JWKSKeySource:
    """Reads the signing key from a JSON Web Key Set file.

    Parameters:
        path: Location of the key set
        default_algorithm: Algorithm used when the key has no ``alg`` member
    """

    def __init__(self, path: str, default_algorithm: str = "RS384"):
        self.path = path
        self.default_algorithm = default_algorithm

    def load_key_set(self) -> dict:
        key_file = Path(self.path)
        if not key_file.exists():
            raise SigningKeyError(f"Key store not found: {self.path}", key_store=self.path)
        try:
            with open(key_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SigningKeyError(f"Cannot read key store {self.path}: {e}", key_store=self.path)

    def signing_key(self) -> SigningKey:
        """Resolve the signature key from the key set.

        Raises:
            SigningKeyError: If no key has ``"use": "sig"`` or the key cannot be parsed
        """
        key_set = self.load_key_set()
        if not isinstance(key_set, dict):
            raise SigningKeyError(f"Key store {self.path} is not a JSON Web Key Set", key_store=self.path)
        candidates = [k for k in key_set.get("keys", []) if isinstance(k, dict) and k.get("use") == "sig"]
        if not candidates:
            raise SigningKeyError(f"No signing key (use=sig) in key store {self.path}", key_store=self.path)

        jwk_data = candidates[0]
        algorithm = jwk_data.get("alg") or self.default_algorithm
        try:
            jwk = jwt.PyJWK(jwk_data, algorithm)
        except (PyJWTError, KeyError, ValueError) as e:
            raise SigningKeyError(f"Unusable signing key in {self.path}: {e}", key_store=self.path)
        return SigningKey(key=jwk.key, algorithm=algorithm, key_id=jwk_data.get("kid"))


class AssertionBuilder:
    """Signs client assertions with the key from a JWKSKeySource.

    Example Usage:
        ```python
        builder = AssertionBuilder(JWKSKeySource("keys.json"))
        claims = AssertionClaims.build(client_id, token_endpoint, lifetime_minutes=4)
        assertion = builder.sign(claims)
        ```
    """

    def __init__(self, key_source: JWKSKeySource):
        self.key_source = key_source

    def sign(self, claims: AssertionClaims) -> str:
        """Produce a compact JWS for ``claims``.

        Returns:
            str: Compact serialized JWT

        Raises:
            SigningKeyError: If the key cannot be loaded or signing fails
        """
        signing_key = self.key_source.signing_key()
        headers = {"typ": "JWT"}
        if signing_key.key_id:
            headers["kid"] = signing_key.key_id
        try:
            token = jwt.encode(
                claims.model_dump(),
                signing_key.key,
                algorithm=signing_key.algorithm,
                headers=headers,
            )
        except (PyJWTError, ValueError, TypeError, AttributeError) as e:
            raise SigningKeyError(f"Failed to sign client assertion: {e}", key_store=self.key_source.path)
        logger.debug(f"Client assertion signed with kid={signing_key.key_id} alg={signing_key.algorithm}")
        return token

    def build(self, client_id: str, audience: str, lifetime_minutes: float) -> str:
        """Build and sign an assertion with a fresh ``jti``."""
        return self.sign(AssertionClaims.build(client_id, audience, lifetime_minutes))
