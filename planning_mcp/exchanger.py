"""
Token Exchanger: the only component that talks to the identity provider.

Three calls, each exactly one outbound HTTP request:

- exchange_code(code, redirect_uri): authorization_code grant
- refresh(refresh_token): refresh_token grant
- fetch_profile(access_token): userinfo endpoint

Failures are classified into kinds that callers act on differently:

- InvalidGrant: the provider rejected the credential (``invalid_grant``).
  Terminal for that code / refresh token; the user must log in again.
- ProviderUnavailable: network error, timeout, 5xx, 408 or 429. Transient;
  the caller may retry later. Nothing in here retries on its own.
- ProviderError: any other refusal or an unusable response (for example
  ``invalid_client`` from a misconfigured secret). Not the user's fault, so
  it never costs them their session.

Authorization codes are single-use on the provider side, so a failed
exchange is surfaced as-is and never attempted a second time.

Token values never appear in log lines or exception messages; only the
provider's OAuth error code does.
"""

import logging

import httpx

from planning_mcp.errors import InvalidGrant, ProviderError, ProviderUnavailable
from planning_mcp.models import Profile, TokenSet

logger = logging.getLogger("planning-mcp.exchanger")

# Request timeout and rate limiting: the provider is up but not answering now.
TRANSIENT_STATUS_CODES = frozenset({408, 429})


class TokenExchanger:
    """
    Client for the provider's token and userinfo endpoints.

    An ``httpx.AsyncClient`` can be injected (tests pass one backed by
    ``httpx.MockTransport``); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        userinfo_url: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.timeout = timeout
        self._http_client = http_client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            # Transport-level failure: DNS, connect, read timeout, ...
            logger.warning(
                "Identity provider unreachable",
                extra={"auth_data": {"url": url, "error": type(e).__name__}},
            )
            raise ProviderUnavailable(f"identity provider unreachable: {type(e).__name__}") from e

    def _check_status(self, response: httpx.Response, operation: str) -> None:
        """
        Classify an error response.

        - 5xx, 408 and 429: ProviderUnavailable (transient)
        - ``invalid_grant`` from the token endpoint, or 401 from userinfo:
          InvalidGrant (the credential itself was rejected)
        - any other 4xx (``invalid_client``, ``unsupported_grant_type``, ...):
          ProviderError, a provider or configuration problem that says
          nothing about the user's credential
        """
        status = response.status_code
        if status < 400:
            return
        error_code = _oauth_error_code(response)
        log_data = {"operation": operation, "status_code": status, "oauth_error": error_code}

        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            logger.warning("Identity provider error", extra={"auth_data": log_data})
            raise ProviderUnavailable(f"identity provider returned {status} during {operation}")

        if error_code == "invalid_grant" or (operation == "profile_fetch" and status == 401):
            logger.warning("Identity provider rejected grant", extra={"auth_data": log_data})
            raise InvalidGrant(f"{operation} rejected by identity provider: {error_code}")

        logger.error("Identity provider refused request", extra={"auth_data": log_data})
        raise ProviderError(f"{operation} refused by identity provider ({status}): {error_code}")

    async def _token_request(self, data: dict[str, str], operation: str) -> TokenSet:
        response = await self._send(
            "POST",
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **data,
            },
            headers={"Accept": "application/json"},
        )
        self._check_status(response, operation)
        return _parse_token_set(response)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """
        Exchange an authorization code for a token set.

        Raises:
            InvalidGrant: The code was rejected (used, expired, wrong redirect URI)
            ProviderUnavailable: The provider could not be reached
        """
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            "code_exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Exchange a refresh token for a fresh access token.

        The returned TokenSet carries a new refresh token only if the provider
        rotates them.

        Raises:
            InvalidGrant: The refresh token is revoked or expired
            ProviderUnavailable: The provider could not be reached
        """
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token_refresh",
        )

    async def fetch_profile(self, access_token: str) -> Profile:
        """Fetch the authenticated identity from the userinfo endpoint."""
        response = await self._send(
            "GET",
            self.userinfo_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        self._check_status(response, "profile_fetch")
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError("userinfo response is not JSON") from e
        if not isinstance(payload, dict):
            raise ProviderError("userinfo response is not a JSON object")
        return parse_profile(payload)


def _oauth_error_code(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return "unknown_error"
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return "unknown_error"


def _parse_token_set(response: httpx.Response) -> TokenSet:
    try:
        payload = response.json()
    except ValueError as e:
        raise ProviderError("token response is not JSON") from e

    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not access_token or not isinstance(access_token, str):
        raise ProviderError("token response has no access_token")

    expires_in = payload.get("expires_in")
    try:
        expires_in = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        expires_in = None

    return TokenSet(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or None,
        expires_in_seconds=expires_in,
    )


def parse_profile(userinfo: dict) -> Profile:
    """
    Normalise a userinfo payload.

    Accepts OpenID Connect claims (``sub``, ``name``, ``picture``) and the
    common non-OIDC spellings (``id``, ``login``, ``avatar_url``).
    """
    external_id = userinfo.get("sub") or userinfo.get("id")
    if external_id is None or str(external_id) == "":
        raise ProviderError("userinfo response has no subject id")

    email = userinfo.get("email") or None
    display_name = userinfo.get("name") or userinfo.get("login")
    if not display_name and email:
        display_name = email.split("@")[0]

    return Profile(
        external_id=str(external_id),
        email=email,
        email_verified=userinfo.get("email_verified", True) not in (False, "false"),
        display_name=display_name,
        avatar_url=userinfo.get("picture") or userinfo.get("avatar_url"),
    )
