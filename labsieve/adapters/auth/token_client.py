"""Token Exchange Client.

Exchanges a signed client assertion for a short-lived bearer token using the
OAuth2 client-credentials grant with a JWT-bearer client assertion.

Security Impact:
    - The assertion and the returned token are never logged
    - Any rejection is fatal: resubmitting the same assertion will not help
"""

import logging

import httpx
from pydantic import ValidationError as PydanticValidationError

from labsieve.adapters.auth.assertion import AssertionBuilder
from labsieve.domain.models import AccessToken
from labsieve.domain.ports import AuthenticationError
from labsieve.infrastructure.config_manager import JWT_BEARER_ASSERTION_TYPE, ExportConfig

logger = logging.getLogger(__name__)


class TokenExchangeClient:
    """Obtains bearer tokens from the token endpoint.

    Parameters:
        client: Shared async HTTP client
        config: Export configuration (client id, token endpoint, assertion lifetime)
        assertion_builder: Signs the client assertion
    """

    def __init__(self, client: httpx.AsyncClient, config: ExportConfig, assertion_builder: AssertionBuilder):
        self.client = client
        self.config = config
        self.assertion_builder = assertion_builder

    async def request_token(self) -> AccessToken:
        """Sign a fresh assertion and exchange it for an access token.

        Returns:
            AccessToken: Bearer token for the rest of the run

        Raises:
            SigningKeyError: If the assertion cannot be signed
            AuthenticationError: On network failure, non-2xx status or a malformed body
        """
        assertion = self.assertion_builder.build(
            client_id=self.config.client_id,
            audience=self.config.token_endpoint,
            lifetime_minutes=self.config.assertion_lifetime_minutes,
        )
        form = {
            "grant_type": "client_credentials",
            "client_assertion_type": JWT_BEARER_ASSERTION_TYPE,
            "client_assertion": assertion,
        }

        try:
            response = await self.client.post(
                self.config.token_endpoint,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token endpoint unreachable: {type(e).__name__}: {e}")

        if not response.is_success:
            raise AuthenticationError(
                f"Token endpoint rejected the assertion: HTTP {response.status_code} {_error_summary(response)}",
                status_code=response.status_code,
            )

        try:
            token = AccessToken(**response.json())
        except (ValueError, TypeError, PydanticValidationError) as e:
            raise AuthenticationError(
                f"Token endpoint returned no usable access_token: {type(e).__name__}",
                status_code=response.status_code,
            )

        logger.info(f"Access token obtained (expires_in={token.expires_in}, scope={token.scope})")
        return token


def _error_summary(response: httpx.Response) -> str:
    """Extract the OAuth2 error code from a rejection body, if present."""
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and body.get("error"):
        description = body.get("error_description")
        return f"({body['error']}: {description})" if description else f"({body['error']})"
    return ""
