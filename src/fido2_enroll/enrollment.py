"""
The enrollment workflow.

A run moves through these states in order, with a single abort path to
FAILED from any of them:

    AUTHENTICATING -> USER_LOOKUP -> KEY_REMOVAL -> NAME_AND_PIN_PREP
        -> CREDENTIAL_CREATION -> DIRECTORY_REGISTRATION -> DONE

Authentication happens before enroll() is called; enroll() receives the
resulting DirectorySession. Nothing here retries, and a hardware
credential created before a failed registration is left on the key.
"""

import datetime
import logging
import secrets
from dataclasses import dataclass
from enum import Enum

import pyperclip

from .authenticator import (
    CreationStatus,
    InvalidCreationOptions,
    create_credential,
    get_device,
)
from .config import DEFAULT_ORIGIN, DISPLAY_NAME_MAX_LENGTH
from .directory import DirectoryError, build_registration_payload

logger = logging.getLogger(__name__)

PIN_MIN = 100000
PIN_MAX = 999999


class EnrollmentState(Enum):
    AUTHENTICATING = "authenticating"
    USER_LOOKUP = "user_lookup"
    KEY_REMOVAL = "key_removal"
    NAME_AND_PIN_PREP = "name_and_pin_prep"
    CREDENTIAL_CREATION = "credential_creation"
    DIRECTORY_REGISTRATION = "directory_registration"
    DONE = "done"
    FAILED = "failed"


class RemovalOutcome(Enum):
    REMOVED = "removed"
    NOT_LISTED = "not_listed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ClipboardOutcome(Enum):
    COPIED = "copied"
    FAILED = "failed"


_CREATION_MESSAGES = {
    CreationStatus.DEVICE_ERROR: "Security key error",
    CreationStatus.USER_CANCELLED: "Credential creation cancelled on the security key",
    CreationStatus.TIMEOUT: "Timed out waiting for the security key",
}


@dataclass
class EnrollmentResult:
    state: EnrollmentState = EnrollmentState.USER_LOOKUP
    failed_at: EnrollmentState = None
    message: str = ""
    display_name: str = None
    pin: int = None
    removal: RemovalOutcome = None
    clipboard: ClipboardOutcome = None
    response_status: int = None
    response_text: str = None

    @property
    def ok(self):
        return self.state is EnrollmentState.DONE

    def fail(self, message):
        self.failed_at = self.state
        self.state = EnrollmentState.FAILED
        self.message = message
        return self


def build_display_name(base_name, today=None):
    """Append the date to the base name and cap it at 30 characters.

    A base name of 30 or more characters loses the date suffix entirely.
    """
    if today is None:
        today = datetime.date.today()
    return f"{base_name}_{today.isoformat()}"[:DISPLAY_NAME_MAX_LENGTH]


def generate_pin():
    """Return a uniformly random 6-digit PIN."""
    return secrets.randbelow(PIN_MAX - PIN_MIN + 1) + PIN_MIN


def copy_pin_to_clipboard(pin):
    """Place the PIN on the clipboard. Best effort."""
    try:
        pyperclip.copy(str(pin))
    except pyperclip.PyperclipException as e:
        logger.warning("Could not copy PIN to clipboard: %s", e)
        return ClipboardOutcome.FAILED
    return ClipboardOutcome.COPIED


def remove_existing_method(session, user, methods, chosen_id):
    """Remove the chosen key if, and only if, it was in the listed set."""
    chosen_id = (chosen_id or "").strip()
    if not chosen_id:
        return RemovalOutcome.SKIPPED
    if chosen_id not in {m.id for m in methods}:
        logger.info("Key id %r was not listed; nothing removed", chosen_id)
        return RemovalOutcome.NOT_LISTED
    if session.delete_fido2_method(user, chosen_id):
        return RemovalOutcome.REMOVED
    return RemovalOutcome.FAILED


def enroll(
    session,
    user_principal_name,
    base_name,
    *,
    choose_removal=None,
    device_factory=get_device,
    create=create_credential,
    copy_pin=copy_pin_to_clipboard,
    announce=None,
    today=None,
    origin=DEFAULT_ORIGIN,
):
    """Run the enrollment against an authenticated directory session."""
    result = EnrollmentResult()

    # User lookup
    try:
        user = session.resolve_user(user_principal_name)
    except DirectoryError as e:
        return result.fail(f"User lookup failed: {e}")
    if user is None:
        return result.fail(f"User '{user_principal_name}' not found.")

    # Optional removal of an existing key
    result.state = EnrollmentState.KEY_REMOVAL
    try:
        methods = session.list_fido2_methods(user)
    except DirectoryError as e:
        return result.fail(f"Could not list existing security keys: {e}")
    if methods and choose_removal is not None:
        result.removal = remove_existing_method(
            session, user, methods, choose_removal(methods)
        )
    else:
        result.removal = RemovalOutcome.SKIPPED

    # Display name and PIN
    result.state = EnrollmentState.NAME_AND_PIN_PREP
    result.display_name = build_display_name(base_name, today)
    result.pin = generate_pin()
    result.clipboard = copy_pin(result.pin)
    if announce is not None:
        announce(result.display_name, result.pin, result.clipboard)

    # Hardware credential
    result.state = EnrollmentState.CREDENTIAL_CREATION
    try:
        options = session.get_creation_options(user_principal_name)
    except DirectoryError as e:
        return result.fail(f"Could not fetch creation options: {e}")
    try:
        created = create(device_factory(), options, result.display_name, origin)
    except InvalidCreationOptions as e:
        return result.fail(f"Directory returned {e}")
    if created.status is not CreationStatus.SUCCESS:
        prefix = _CREATION_MESSAGES[created.status]
        return result.fail(f"{prefix}: {created.message}" if created.message else prefix)

    # Directory registration
    result.state = EnrollmentState.DIRECTORY_REGISTRATION
    payload = build_registration_payload(result.display_name, created.credential)
    try:
        response = session.register_fido2_method(user_principal_name, payload)
    except DirectoryError as e:
        return result.fail(str(e))
    result.response_status = response.status_code
    result.response_text = response.text

    result.state = EnrollmentState.DONE
    return result
