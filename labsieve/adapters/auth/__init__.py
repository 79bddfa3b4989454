"""Authentication adapters: client assertion signing and token exchange."""

from labsieve.adapters.auth.assertion import AssertionBuilder, JWKSKeySource, SigningKey
from labsieve.adapters.auth.token_client import TokenExchangeClient

__all__ = ["AssertionBuilder", "JWKSKeySource", "SigningKey", "TokenExchangeClient"]
