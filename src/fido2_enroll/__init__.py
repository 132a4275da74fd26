"""
FIDO2 Enroll - enroll security keys on behalf of users in Microsoft Entra ID.
"""

__version__ = "0.1.0"

from .authenticator import (
    CreationResult,
    CreationStatus,
    InvalidCreationOptions,
    NewCredential,
    create_credential,
    enumerate_devices,
    get_device,
)
from .cli import main
from .config import Settings
from .directory import (
    AuthenticationError,
    DirectoryError,
    DirectorySession,
    build_registration_payload,
)
from .enrollment import (
    ClipboardOutcome,
    EnrollmentResult,
    EnrollmentState,
    RemovalOutcome,
    build_display_name,
    enroll,
    generate_pin,
)

__all__ = [
    "main",
    "enroll",
    "build_display_name",
    "generate_pin",
    "build_registration_payload",
    "create_credential",
    "get_device",
    "enumerate_devices",
    "Settings",
    "DirectorySession",
    "AuthenticationError",
    "DirectoryError",
    "CreationResult",
    "CreationStatus",
    "InvalidCreationOptions",
    "NewCredential",
    "ClipboardOutcome",
    "EnrollmentResult",
    "EnrollmentState",
    "RemovalOutcome",
]
