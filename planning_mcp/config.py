"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables. All config comes from the environment (or a local
.env file), never hardcoded in source code.

In production these are injected by the deployment:
- MCP_HOST, MCP_PORT, MCP_LOG_LEVEL come from the ConfigMap
- MCP_JWT_SECRET_KEY and MCP_OAUTH_CLIENT_SECRET come from the secret store

List-valued settings (scopes, admin domains) are given as JSON arrays, e.g.
MCP_ADMIN_DOMAINS='["yourcompany.com"]'.
"""

from pathlib import Path

from pydantic_settings import BaseSettings

from planning_mcp.models import Role


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `oauth_client_id` reads from MCP_OAUTH_CLIENT_ID.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # --- Signing of the short-lived anti-forgery state cookie ---

    # Default is for local development only.
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    state_ttl_seconds: int = 600

    # --- Identity provider (defaults point at Google) ---

    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_redirect_uri: str = "http://localhost:8080/auth/callback"
    oauth_authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_userinfo_url: str = "https://openidconnect.googleapis.com/v1/userinfo"
    oauth_scopes: list[str] = ["openid", "email", "profile"]

    # Timeout for each call to the token and userinfo endpoints.
    provider_timeout_seconds: float = 10.0

    # --- Role assignment for first-time users ---

    # Verified emails in these domains become ADMIN on first login.
    admin_domains: list[str] = []
    default_role: Role = Role.MEMBER

    # --- Sessions ---

    session_cookie_name: str = "planning_session"
    state_cookie_name: str = "planning_oauth_state"

    # Absolute session lifetime, independent of the provider token expiry.
    # Unset means sessions only end on logout or failed refresh.
    session_max_age_seconds: int | None = None

    # --- Persistence ---

    # users.json and sessions.json are written here.
    data_dir: Path = Path("data")

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton instance: import this from other modules.
settings = Settings()
