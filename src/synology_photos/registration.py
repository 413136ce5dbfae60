"""One-time device registration for accounts with two-factor authentication.

Logs in with an OTP while asking the NAS for a device token, then persists the
returned device id so later logins can skip the OTP.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from .adapters.synology import Credentials, NasHttp, SynologyPhotosError
from .adapters.synology.session import DEFAULT_DEVICE_NAME, authenticate, logout
from .domain.models import ConnectionCandidate, DeviceCredential
from .storage.device_token import save_device_credential

LOGGER = logging.getLogger(__name__)


class RegistrationError(SynologyPhotosError):
    """Raised when the NAS accepted the login but issued no device token."""


async def register_device(
    http: NasHttp,
    candidate: ConnectionCandidate,
    credentials: Credentials,
    otp_code: str,
    *,
    server_host: str,
    token_path: Path,
    device_name: str = DEFAULT_DEVICE_NAME,
) -> DeviceCredential:
    session = await authenticate(
        http,
        candidate,
        credentials,
        otp_code=otp_code,
        device_name=device_name,
    )
    try:
        if not session.issued_device_id:
            raise RegistrationError(
                "Login succeeded but no device id was returned; this DSM version may not "
                "support device tokens. Consider a separate account without 2FA."
            )
        credential = DeviceCredential(
            device_id=session.issued_device_id,
            server_host=server_host,
            created_at=datetime.now(timezone.utc),
            device_name=device_name,
        )
        save_device_credential(token_path, credential)
    finally:
        await logout(http, session)

    LOGGER.info("Device registered for %s", server_host)
    return credential
