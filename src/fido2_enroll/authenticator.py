"""
Local security key access.

Finds an attached FIDO2 authenticator and runs the makeCredential
ceremony with creation options issued by the directory. Device-side
failures are reported as a CreationResult rather than raised, so the
caller can tell a missing key from an on-device cancel or a timeout.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from getpass import getpass

from fido2.client import ClientError, DefaultClientDataCollector, Fido2Client, UserInteraction
from fido2.ctap import CtapError
from fido2.ctap2.extensions import CredProtectExtension
from fido2.hid import CtapHidDevice
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialParameters,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialType,
    PublicKeyCredentialUserEntity,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

try:
    from fido2.pcsc import CtapPcscDevice
except ImportError:
    CtapPcscDevice = None

logger = logging.getLogger(__name__)

_CANCEL_CODES = (
    CtapError.ERR.KEEPALIVE_CANCEL,
    CtapError.ERR.OPERATION_DENIED,
)
_TIMEOUT_CODES = (
    CtapError.ERR.ACTION_TIMEOUT,
    CtapError.ERR.USER_ACTION_TIMEOUT,
)


class CliInteraction(UserInteraction):
    """Handle user interaction prompts in the CLI."""

    def prompt_up(self):
        """Prompt for user presence (tap)."""
        print("\n" + "=" * 50)
        print("  >>> TAP THE SECURITY KEY NOW <<<")
        print("=" * 50 + "\n")

    def request_pin(self, permissions, rd_id):
        """Request the key PIN. The generated PIN is on the clipboard."""
        return getpass("Enter the security key PIN (paste the generated PIN): ")

    def request_uv(self, permissions, rd_id):
        """Request user verification."""
        print("User verification required. Please verify on the device.")
        return True


class InvalidCreationOptions(ValueError):
    """Raised when directory creation options cannot be turned into a request."""


class CreationStatus(Enum):
    SUCCESS = "success"
    DEVICE_ERROR = "device_error"
    USER_CANCELLED = "user_cancelled"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class NewCredential:
    """A freshly created credential, fields base64url encoded."""

    credential_id: str
    client_data_json: str
    attestation_object: str


@dataclass(frozen=True)
class CreationResult:
    status: CreationStatus
    credential: NewCredential = None
    message: str = ""

    @property
    def ok(self):
        return self.status is CreationStatus.SUCCESS


def enumerate_devices():
    """Yield USB HID devices, then NFC readers when pyscard is installed."""
    for dev in CtapHidDevice.list_devices():
        yield dev
    if CtapPcscDevice:
        for dev in CtapPcscDevice.list_devices():
            yield dev


def get_device():
    """Detect and return a FIDO2 device."""
    print("\nSearching for FIDO2 devices...")
    devices = list(enumerate_devices())

    if not devices:
        print("\nERROR: No FIDO2 device found!")
        return None

    if len(devices) == 1:
        print(f"Found device: {devices[0]}")
        return devices[0]

    print(f"\nFound {len(devices)} devices:")
    for i, dev in enumerate(devices):
        print(f"  [{i + 1}] {dev}")

    while True:
        try:
            choice = int(input("\nSelect device number: ")) - 1
            if 0 <= choice < len(devices):
                return devices[choice]
            print("Invalid selection.")
        except ValueError:
            print("Please enter a number.")


def check_resident_key_support(device):
    """Check if the device supports resident keys."""
    try:
        from fido2.ctap2 import Ctap2
        ctap2 = Ctap2(device)
        options = ctap2.info.options or {}
        return options.get("rk", False)
    except (CtapError, OSError, ValueError):
        return False


def _b64_to_bytes(value):
    # Graph may hand out either base64 alphabet
    return websafe_decode(value.replace("+", "-").replace("/", "_").rstrip("="))


def _map_extensions(extensions):
    mapped = dict(extensions or {})
    policy = mapped.get("credentialProtectionPolicy")
    if isinstance(policy, str):
        mapped["credentialProtectionPolicy"] = CredProtectExtension.POLICY(policy)
    return mapped


def build_creation_options(options, display_name):
    """Turn directory creation options into fido2 creation options.

    The enrollment display name replaces the user entity's display name so
    the key and the directory record carry the same label.
    """
    public_key = options.get("publicKey", options)
    rp = public_key["rp"]
    user = public_key["user"]
    selection = public_key.get("authenticatorSelection") or {}

    criteria = AuthenticatorSelectionCriteria(
        authenticator_attachment=AuthenticatorAttachment(
            selection.get("authenticatorAttachment", "cross-platform")
        ),
        resident_key=ResidentKeyRequirement(selection.get("residentKey", "required")),
        user_verification=UserVerificationRequirement(
            selection.get("userVerification", "required")
        ),
        require_resident_key=selection.get("requireResidentKey", True),
    )

    return PublicKeyCredentialCreationOptions(
        rp=PublicKeyCredentialRpEntity(name=rp.get("name", rp["id"]), id=rp["id"]),
        user=PublicKeyCredentialUserEntity(
            name=user["name"],
            id=_b64_to_bytes(user["id"]),
            display_name=display_name,
        ),
        challenge=_b64_to_bytes(public_key["challenge"]),
        pub_key_cred_params=[
            PublicKeyCredentialParameters(
                type=PublicKeyCredentialType(p.get("type", "public-key")), alg=p["alg"]
            )
            for p in public_key.get("pubKeyCredParams", [])
        ],
        timeout=public_key.get("timeout") or None,
        exclude_credentials=[
            PublicKeyCredentialDescriptor(
                type=PublicKeyCredentialType.PUBLIC_KEY,
                id=_b64_to_bytes(c["id"]),
            )
            for c in public_key.get("excludeCredentials") or []
        ],
        authenticator_selection=criteria,
        attestation=AttestationConveyancePreference(
            public_key.get("attestation", "direct")
        ),
        extensions=_map_extensions(public_key.get("extensions")),
    )


def _classify(error):
    """Map a fido2 failure onto a creation status."""
    # fido2 reports an on-device cancel as ClientError(TIMEOUT) wrapping
    # KEEPALIVE_CANCEL, so the CTAP cause decides before the client code
    if isinstance(error, ClientError) and isinstance(error.cause, CtapError):
        error = error.cause
    if isinstance(error, CtapError):
        if error.code in _CANCEL_CODES:
            return CreationStatus.USER_CANCELLED
        if error.code in _TIMEOUT_CODES:
            return CreationStatus.TIMEOUT
    elif isinstance(error, ClientError) and error.code == ClientError.ERR.TIMEOUT:
        return CreationStatus.TIMEOUT
    return CreationStatus.DEVICE_ERROR


def create_credential(device, options, display_name, origin, interaction=None):
    """Create a credential on the given device.

    Device failures come back as a CreationResult. Malformed directory
    options raise InvalidCreationOptions before the device is touched.
    """
    if device is None:
        return CreationResult(CreationStatus.DEVICE_ERROR, message="No FIDO2 device found.")

    try:
        creation_options = build_creation_options(options, display_name)
    except (AttributeError, KeyError, ValueError, TypeError) as e:
        raise InvalidCreationOptions(f"unusable creation options: {e!r}") from e

    if not check_resident_key_support(device):
        print("\nNote: This device does not report discoverable credential support.")

    client = Fido2Client(
        device,
        DefaultClientDataCollector(origin),
        user_interaction=interaction or CliInteraction(),
    )

    try:
        result = client.make_credential(creation_options)
    except (ClientError, CtapError, OSError) as e:
        status = _classify(e)
        logger.debug("makeCredential failed: %r", e)
        return CreationResult(status, message=str(e) or status.value)

    response = result.response
    credential = NewCredential(
        credential_id=websafe_encode(result.raw_id),
        client_data_json=response.client_data.b64,
        attestation_object=websafe_encode(bytes(response.attestation_object)),
    )
    logger.info("New credential created: %s", credential.credential_id)
    return CreationResult(CreationStatus.SUCCESS, credential=credential)
