"""
Unit tests for the Token Exchanger (planning_mcp/exchanger.py).

The fake provider from tests/fakes.py answers the token and userinfo endpoints;
a few tests use their own MockTransport to simulate transport failures and
malformed responses.
"""

import httpx
import pytest

from planning_mcp.errors import InvalidGrant, ProviderError, ProviderUnavailable
from planning_mcp.exchanger import TokenExchanger, parse_profile
from tests.fakes import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, TOKEN_URL, USERINFO_URL


def _exchanger_for(handler) -> TokenExchanger:
    return TokenExchanger(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        token_url=TOKEN_URL,
        userinfo_url=USERINFO_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestExchangeCode:
    async def test_exchange_returns_token_set(self, exchanger, provider):
        provider.add_code("code-1")

        tokens = await exchanger.exchange_code("code-1", REDIRECT_URI)

        assert tokens.access_token.startswith("access-")
        assert tokens.refresh_token.startswith("refresh-")
        assert tokens.expires_in_seconds == 3600

    async def test_exchange_sends_client_credentials_and_redirect_uri(self, exchanger, provider):
        provider.add_code("code-1")

        await exchanger.exchange_code("code-1", REDIRECT_URI)

        form = provider.token_requests[-1]
        assert form == {
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": "code-1",
            "redirect_uri": REDIRECT_URI,
        }

    async def test_rejected_code_raises_invalid_grant_without_retry(self, exchanger, provider):
        with pytest.raises(InvalidGrant, match="invalid_grant"):
            await exchanger.exchange_code("unknown-code", REDIRECT_URI)

        assert provider.calls["authorization_code"] == 1

    async def test_code_is_single_use(self, exchanger, provider):
        provider.add_code("code-1")
        await exchanger.exchange_code("code-1", REDIRECT_URI)

        with pytest.raises(InvalidGrant):
            await exchanger.exchange_code("code-1", REDIRECT_URI)

    async def test_server_error_raises_provider_unavailable(self, exchanger, provider):
        provider.add_code("code-1")
        provider.token_mode = "unavailable"

        with pytest.raises(ProviderUnavailable):
            await exchanger.exchange_code("code-1", REDIRECT_URI)

    @pytest.mark.parametrize("status, error", [(429, "rate_limit_exceeded"), (408, "request_timeout")])
    async def test_throttling_is_transient_not_a_rejected_grant(self, status, error):
        exchanger = _exchanger_for(lambda request: httpx.Response(status, json={"error": error}))

        with pytest.raises(ProviderUnavailable):
            await exchanger.refresh("rt")

    async def test_bad_client_credentials_do_not_blame_the_grant(self, exchanger, provider):
        provider.add_refresh_token("rt-1")
        provider.token_mode = "bad_client"

        with pytest.raises(ProviderError, match="invalid_client") as exc_info:
            await exchanger.refresh("rt-1")

        assert not isinstance(exc_info.value, (InvalidGrant, ProviderUnavailable))

    async def test_other_client_errors_are_provider_errors(self):
        exchanger = _exchanger_for(
            lambda request: httpx.Response(400, json={"error": "unsupported_grant_type"})
        )

        with pytest.raises(ProviderError) as exc_info:
            await exchanger.exchange_code("code-1", REDIRECT_URI)

        assert not isinstance(exc_info.value, InvalidGrant)

    async def test_connection_error_raises_provider_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable):
            await _exchanger_for(handler).exchange_code("code-1", REDIRECT_URI)

    async def test_timeout_raises_provider_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderUnavailable):
            await _exchanger_for(handler).refresh("rt")

    async def test_response_without_access_token_is_provider_error(self):
        exchanger = _exchanger_for(lambda request: httpx.Response(200, json={"token_type": "Bearer"}))

        with pytest.raises(ProviderError, match="no access_token"):
            await exchanger.exchange_code("code-1", REDIRECT_URI)

    async def test_error_messages_never_contain_tokens(self):
        exchanger = _exchanger_for(
            lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        )

        with pytest.raises(InvalidGrant) as exc_info:
            await exchanger.refresh("super-secret-refresh-token")

        assert "super-secret-refresh-token" not in str(exc_info.value)


class TestRefresh:
    async def test_refresh_with_rotation(self, exchanger, provider):
        provider.add_refresh_token("rt-1")

        tokens = await exchanger.refresh("rt-1")

        assert tokens.refresh_token is not None
        assert tokens.refresh_token != "rt-1"
        assert "rt-1" not in provider.refresh_tokens

    async def test_refresh_without_rotation_has_no_refresh_token(self, exchanger, provider):
        provider.add_refresh_token("rt-1")
        provider.rotate = False

        tokens = await exchanger.refresh("rt-1")

        assert tokens.refresh_token is None
        assert "rt-1" in provider.refresh_tokens

    async def test_refresh_without_reported_lifetime(self, exchanger, provider):
        provider.add_refresh_token("rt-1")
        provider.expires_in = None

        tokens = await exchanger.refresh("rt-1")

        assert tokens.expires_in_seconds is None

    async def test_revoked_refresh_token_raises_invalid_grant(self, exchanger, provider):
        with pytest.raises(InvalidGrant):
            await exchanger.refresh("revoked")

        assert provider.calls["refresh_token"] == 1


class TestProfile:
    async def test_fetch_profile(self, exchanger, provider):
        provider.add_code("code-1", sub="ext-42", email="dana@example.org", name="Dana", picture="https://img.test/d.png")
        tokens = await exchanger.exchange_code("code-1", REDIRECT_URI)

        profile = await exchanger.fetch_profile(tokens.access_token)

        assert profile.external_id == "ext-42"
        assert profile.email == "dana@example.org"
        assert profile.display_name == "Dana"
        assert profile.avatar_url == "https://img.test/d.png"

    async def test_unknown_access_token_raises_invalid_grant(self, exchanger):
        with pytest.raises(InvalidGrant):
            await exchanger.fetch_profile("not-issued")

    def test_parse_profile_accepts_non_oidc_fields(self):
        profile = parse_profile(
            {"id": 1234, "login": "octo", "email": None, "avatar_url": "https://img.test/o.png"}
        )

        assert profile.external_id == "1234"
        assert profile.display_name == "octo"
        assert profile.email is None
        assert profile.avatar_url == "https://img.test/o.png"

    def test_parse_profile_falls_back_to_email_local_part(self):
        profile = parse_profile({"sub": "s-1", "email": "erin@example.org"})

        assert profile.display_name == "erin"

    def test_parse_profile_reads_email_verified(self):
        assert parse_profile({"sub": "s", "email_verified": False}).email_verified is False
        assert parse_profile({"sub": "s", "email_verified": "false"}).email_verified is False
        assert parse_profile({"sub": "s"}).email_verified is True

    def test_parse_profile_requires_subject(self):
        with pytest.raises(ProviderError, match="no subject id"):
            parse_profile({"email": "x@example.org"})
