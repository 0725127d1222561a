"""Connection authenticator — coarse identity check at admission.

Every connection must present {user_id, device_id, device_name, credential}.
The credential check is a shape check only; swap validate_credential() for
real signature/token verification before exposing this beyond a trusted network.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from config.settings import Settings, get_settings
from core.exceptions import AuthenticationError
from schemas.ws_messages import ClientType, ConnectPayload

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_.:@-]{1,128}$")
_CREDENTIAL = re.compile(r"^\S+$")


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity attached to a connection after admission."""
    user_id: str
    device_id: str
    device_name: str
    client_type: ClientType
    firmware_version: Optional[str] = None
    authenticated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def validate_credential(credential: str, min_length: int) -> None:
    """Placeholder credential check. Raises AuthenticationError."""
    if len(credential) < min_length:
        raise AuthenticationError("Authentication failed: Invalid credential")
    if not _CREDENTIAL.match(credential):
        raise AuthenticationError("Authentication failed: Malformed credential")


def authenticate(payload: ConnectPayload, settings: Optional[Settings] = None) -> DeviceIdentity:
    """Admit or reject a connecting client. Raises AuthenticationError with the reason."""
    settings = settings or get_settings()

    missing = [
        name for name in ("user_id", "device_id", "device_name", "credential")
        if not getattr(payload, name).strip()
    ]
    if missing:
        raise AuthenticationError(f"Authentication failed: Missing {', '.join(missing)}")

    for name in ("user_id", "device_id"):
        if not _IDENTIFIER.match(getattr(payload, name)):
            raise AuthenticationError(f"Authentication failed: Malformed {name}")

    validate_credential(payload.credential, settings.MIN_CREDENTIAL_LENGTH)

    identity = DeviceIdentity(
        user_id=payload.user_id,
        device_id=payload.device_id,
        device_name=payload.device_name.strip(),
        client_type=payload.client_type,
        firmware_version=payload.firmware_version,
    )
    logger.info(
        "Client authenticated: device=%s user=%s name=%s type=%s",
        identity.device_id, identity.user_id, identity.device_name, identity.client_type.value,
    )
    return identity
