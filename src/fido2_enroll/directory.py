"""
Microsoft Graph access for security key enrollment.

DirectorySession wraps an authenticated requests.Session and exposes the
handful of Graph calls the enrollment workflow needs:

- user lookup by principal name
- listing and deleting registered FIDO2 methods
- fetching WebAuthn creation options
- registering a new FIDO2 method

Delegated tokens are acquired with the OAuth 2.0 device authorization
grant, so the operator signs in with their own admin account.
"""

import logging
import time
from dataclasses import dataclass
from urllib.parse import quote

import requests

from .config import CHALLENGE_TIMEOUT_MINUTES

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


class AuthenticationError(Exception):
    """Raised when a directory session cannot be established."""


class DirectoryError(Exception):
    """Raised when a Graph request returns an unexpected status."""

    def __init__(self, message, status_code=None, body=""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class DirectoryUser:
    id: str
    user_principal_name: str
    display_name: str = ""


@dataclass(frozen=True)
class Fido2Method:
    id: str
    display_name: str


def _login_url(settings, endpoint):
    return f"https://{settings.login_host}/{settings.tenant}/oauth2/v2.0/{endpoint}"


def request_device_code(settings):
    """Start the device authorization flow and return the device code response."""
    try:
        resp = requests.post(
            _login_url(settings, "devicecode"),
            data={"client_id": settings.client_id, "scope": settings.scope},
            headers={"Accept": "application/json"},
        )
    except requests.RequestException as e:
        raise AuthenticationError(f"Could not reach sign-in endpoint: {e}") from e

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code != 200 or "device_code" not in data:
        detail = data.get("error_description") or data.get("error") or resp.text
        raise AuthenticationError(f"Device code request failed: {detail}")

    for key in ("expires_in", "interval"):
        if key in data:
            data[key] = int(data[key])
    return data


def poll_for_token(settings, device_code, interval, expires_in):
    """Poll the token endpoint until the operator completes sign-in."""
    start = time.monotonic()
    while time.monotonic() - start < expires_in:
        try:
            resp = requests.post(
                _login_url(settings, "token"),
                data={
                    "client_id": settings.client_id,
                    "device_code": device_code,
                    "grant_type": DEVICE_CODE_GRANT,
                },
                headers={"Accept": "application/json"},
            )
        except requests.RequestException as e:
            raise AuthenticationError(f"Could not reach token endpoint: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            raise AuthenticationError(
                f"Unexpected token response: HTTP {resp.status_code}"
            ) from None
        if "access_token" in data:
            return data["access_token"]
        error = data.get("error")
        if error == "authorization_pending":
            time.sleep(interval)
            continue
        if error == "slow_down":
            interval += 5
            time.sleep(interval)
            continue
        raise AuthenticationError(
            f"Sign-in failed: {data.get('error_description', error)}"
        )
    raise AuthenticationError("Device code expired before sign-in completed.")


class DirectorySession:
    """An authenticated connection to Microsoft Graph, scoped to one run."""

    def __init__(self, access_token, graph_host, http=None):
        self.graph_host = graph_host
        self.http = http or requests.Session()
        self.http.headers.update({
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
        })

    @classmethod
    def connect(cls, settings, notify=print):
        """Acquire a delegated token and return a ready session."""
        if settings.access_token:
            logger.info("Using pre-acquired access token")
            return cls(settings.access_token, settings.graph_host)

        device = request_device_code(settings)
        notify(
            device.get("message")
            or f"Visit {device['verification_uri']} and enter code: {device['user_code']}"
        )
        token = poll_for_token(
            settings,
            device["device_code"],
            device.get("interval", 5),
            device.get("expires_in", 900),
        )
        logger.info("Signed in to %s", settings.login_host)
        return cls(token, settings.graph_host)

    def _url(self, version, path):
        return f"https://{self.graph_host}/{version}/{path}"

    @staticmethod
    def _user_path(user_principal_name):
        return "users/" + quote(user_principal_name, safe="@")

    def _get_json(self, url, what, **kwargs):
        try:
            resp = self.http.get(url, **kwargs)
        except requests.RequestException as e:
            raise DirectoryError(f"{what} failed: {e}") from e
        if resp.status_code != 200:
            raise DirectoryError(
                f"{what} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise DirectoryError(f"{what} returned invalid JSON") from e

    def resolve_user(self, user_principal_name):
        """Find a user by exact principal name. Returns None when absent."""
        escaped = user_principal_name.replace("'", "''")
        data = self._get_json(
            self._url("v1.0", "users"),
            "User lookup",
            params={
                "$filter": f"userPrincipalName eq '{escaped}'",
                "$select": "id,userPrincipalName,displayName",
            },
        )
        users = data.get("value", [])
        if not users:
            return None
        user = users[0]
        return DirectoryUser(
            id=user["id"],
            user_principal_name=user.get("userPrincipalName", user_principal_name),
            display_name=user.get("displayName") or "",
        )

    def list_fido2_methods(self, user):
        """Return the user's registered security keys in directory order."""
        data = self._get_json(
            self._url("v1.0", f"users/{user.id}/authentication/fido2Methods"),
            "Listing security keys",
        )
        return [
            Fido2Method(id=m["id"], display_name=m.get("displayName") or "")
            for m in data.get("value", [])
        ]

    def delete_fido2_method(self, user, method_id):
        """Delete one registered key. Failures are logged, never raised."""
        url = self._url("v1.0", f"users/{user.id}/authentication/fido2Methods/{method_id}")
        try:
            resp = self.http.delete(url)
        except requests.RequestException as e:
            logger.warning("Could not remove key %s: %s", method_id, e)
            return False
        if resp.status_code not in (200, 204):
            logger.warning(
                "Removal of key %s rejected: HTTP %s %s",
                method_id, resp.status_code, resp.text,
            )
            return False
        logger.info("Removed key %s from %s", method_id, user.user_principal_name)
        return True

    def get_creation_options(self, user_principal_name, timeout_minutes=CHALLENGE_TIMEOUT_MINUTES):
        """Fetch WebAuthn creation options issued for this user."""
        path = (
            self._user_path(user_principal_name)
            + "/authentication/fido2Methods/creationOptions"
            + f"(challengeTimeoutInMinutes={timeout_minutes})"
        )
        return self._get_json(self._url("beta", path), "Fetching creation options")

    def register_fido2_method(self, user_principal_name, payload):
        """POST a new security key. The response is returned unvalidated."""
        url = self._url(
            "beta",
            self._user_path(user_principal_name) + "/authentication/fido2Methods",
        )
        try:
            return self.http.post(
                url, json=payload, headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise DirectoryError(f"Registration request failed: {e}") from e


def build_registration_payload(display_name, credential):
    """Compose the fido2Methods request body from a new credential."""
    return {
        "DisplayName": display_name,
        "publicKeyCredential": {
            "id": credential.credential_id,
            "response": {
                "clientDataJSON": credential.client_data_json,
                "attestationObject": credential.attestation_object,
            },
        },
    }
