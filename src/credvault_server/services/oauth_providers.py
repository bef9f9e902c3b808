"""OAuth provider table.

Everything that differs between providers lives here as data: endpoints,
scopes, how client credentials are sent to the token endpoint, and extra
parameters or headers. Adding a provider means adding an entry, plus its
client id/secret settings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from credvault_server.core.errors import IntegrationNotFoundError

NOTION_VERSION = "2022-06-28"
USER_AGENT = "credvault-server"


class AuthStyle(str, Enum):
    """How client credentials reach the token endpoint."""

    BASIC = "basic"  # HTTP Basic auth, JSON body
    FORM = "form"  # In a URL-encoded body
    JSON = "json"  # In a JSON body


@dataclass(frozen=True)
class OAuthProviderConfig:
    """Static description of one OAuth integration.

    Attributes:
        integration_id: Stable id used in URLs and settings ("notion")
        name: Display name
        authorize_url: Where the user is sent to grant access
        token_url: Code and refresh-token exchange endpoint
        scopes: Requested scopes, joined with a space
        auth_style: Shape of the token request
        capabilities: Actions the connection enables
        extra_authorize_params: Added to the authorization URL
        extra_headers: Sent to the token endpoint
        test_url: Cheap authenticated endpoint for connection tests
        test_headers: Sent with the connection test
        version: Integration version recorded on the connection
    """

    integration_id: str
    name: str
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    auth_style: AuthStyle
    capabilities: tuple[str, ...] = ()
    extra_authorize_params: dict[str, str] = field(default_factory=dict)
    extra_headers: dict[str, str] = field(default_factory=dict)
    test_url: str | None = None
    test_headers: dict[str, str] = field(default_factory=dict)
    version: str = "1.0.0"

    def token_request(
        self, client_id: str, client_secret: str, grant: dict[str, str]
    ) -> dict[str, Any]:
        """Build ``httpx`` request kwargs for a token endpoint call.

        Args:
            client_id: OAuth app client id
            client_secret: OAuth app client secret
            grant: Grant parameters (grant_type, code, redirect_uri, refresh_token...)

        Returns:
            Keyword arguments for ``httpx.AsyncClient.post``
        """
        headers = {"Accept": "application/json", **self.extra_headers}

        if self.auth_style is AuthStyle.BASIC:
            return {"headers": headers, "auth": (client_id, client_secret), "json": grant}

        body = {**grant, "client_id": client_id, "client_secret": client_secret}
        if self.auth_style is AuthStyle.FORM:
            return {"headers": headers, "data": body}
        return {"headers": headers, "json": body}


PROVIDERS: dict[str, OAuthProviderConfig] = {
    "notion": OAuthProviderConfig(
        integration_id="notion",
        name="Notion",
        authorize_url="https://api.notion.com/v1/oauth/authorize",
        token_url="https://api.notion.com/v1/oauth/token",
        scopes=("read_content", "update_content", "insert_content"),
        auth_style=AuthStyle.BASIC,
        capabilities=(
            "search_pages",
            "read_page",
            "update_page",
            "create_page",
            "query_database",
            "create_database_page",
        ),
        extra_authorize_params={"owner": "user"},
        extra_headers={"Notion-Version": NOTION_VERSION},
        test_url="https://api.notion.com/v1/users/me",
        test_headers={"Notion-Version": NOTION_VERSION},
    ),
    "github": OAuthProviderConfig(
        integration_id="github",
        name="GitHub",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scopes=("repo", "user:email", "read:org"),
        auth_style=AuthStyle.FORM,
        capabilities=(
            "list_repositories",
            "get_repository",
            "list_issues",
            "create_issue",
            "get_commits",
            "list_branches",
            "search_code",
            "get_pull_requests",
        ),
        # GitHub rejects API requests without a User-Agent
        extra_headers={"User-Agent": USER_AGENT},
        test_url="https://api.github.com/user",
        test_headers={"User-Agent": USER_AGENT, "Accept": "application/vnd.github+json"},
    ),
    "jira": OAuthProviderConfig(
        integration_id="jira",
        name="Jira",
        authorize_url="https://auth.atlassian.com/authorize",
        token_url="https://auth.atlassian.com/oauth/token",
        scopes=("read:jira-work", "write:jira-work", "read:jira-user", "offline_access"),
        auth_style=AuthStyle.JSON,
        capabilities=(
            "search_issues",
            "create_issue",
            "update_issue",
            "get_project",
            "list_projects",
        ),
        extra_authorize_params={"audience": "api.atlassian.com", "prompt": "consent"},
        test_url="https://api.atlassian.com/oauth/token/accessible-resources",
    ),
}


def get_provider(integration_id: str) -> OAuthProviderConfig:
    """Look up a provider.

    Raises:
        IntegrationNotFoundError: If the integration is unknown
    """
    try:
        return PROVIDERS[integration_id]
    except KeyError:
        raise IntegrationNotFoundError(integration_id) from None
