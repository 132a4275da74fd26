"""
Runtime configuration for fido2-enroll.

Values come from FIDO2_ENROLL_* environment variables and may be
overridden on the command line.
"""

import os
from dataclasses import dataclass, replace

# Public client id used by the Microsoft Graph command-line tools
DEFAULT_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
DEFAULT_TENANT = "organizations"
DEFAULT_LOGIN_HOST = "login.microsoftonline.com"
DEFAULT_GRAPH_HOST = "graph.microsoft.com"

# The relying party origin is common across all Entra ID tenants
DEFAULT_ORIGIN = "https://login.microsoft.com"

GRAPH_SCOPES = (
    "UserAuthenticationMethod.ReadWrite.All",
    "User.Read.All",
)

CHALLENGE_TIMEOUT_MINUTES = 5
DISPLAY_NAME_MAX_LENGTH = 30

ENV_PREFIX = "FIDO2_ENROLL_"


@dataclass(frozen=True)
class Settings:
    tenant: str = DEFAULT_TENANT
    client_id: str = DEFAULT_CLIENT_ID
    login_host: str = DEFAULT_LOGIN_HOST
    graph_host: str = DEFAULT_GRAPH_HOST
    origin: str = DEFAULT_ORIGIN
    access_token: str = None
    verbosity: int = 0

    @classmethod
    def from_env(cls, environ=None):
        """Build settings from FIDO2_ENROLL_* environment variables."""
        if environ is None:
            environ = os.environ

        def _get(name, default):
            value = environ.get(ENV_PREFIX + name, "").strip()
            return value or default

        return cls(
            tenant=_get("TENANT", DEFAULT_TENANT),
            client_id=_get("CLIENT_ID", DEFAULT_CLIENT_ID),
            login_host=_get("LOGIN_HOST", DEFAULT_LOGIN_HOST),
            graph_host=_get("GRAPH_HOST", DEFAULT_GRAPH_HOST),
            origin=_get("ORIGIN", DEFAULT_ORIGIN),
            access_token=_get("ACCESS_TOKEN", None),
        )

    def override(self, **values):
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})

    @property
    def scope(self):
        """Space separated delegated scopes for the Graph resource."""
        return " ".join(f"https://{self.graph_host}/{s}" for s in GRAPH_SCOPES)
