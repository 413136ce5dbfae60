"""Login, 2FA bypass via a persisted device credential, and session ownership.

The manager holds at most one live :class:`Session`. Replacement is a single
reference assignment of an immutable model, so the refresh job and the
thumbnail proxy never observe a half-built session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import httpx

from ...domain.models import ConnectionCandidate, DeviceCredential, Session
from .base import AuthError, AuthErrorKind, NonJsonPayloadError
from .transport import NasHttp

LOGGER = logging.getLogger(__name__)

AUTH_API = "SYNO.API.Auth"
AUTH_API_VERSION = "6"
DEFAULT_DEVICE_NAME = "PhotoFrame"

# Login error codes differ between DSM releases; callers may pass their own table.
DEFAULT_AUTH_ERROR_CODES: dict[int, AuthErrorKind] = {
    400: AuthErrorKind.INVALID_CREDENTIALS,
    401: AuthErrorKind.ACCOUNT_DISABLED,
    402: AuthErrorKind.PERMISSION_DENIED,
    403: AuthErrorKind.INVALID_OTP,
    404: AuthErrorKind.NEEDS_OTP,
}

# 105 = no permission (usually an expired sid), 106 = timeout, 107 = duplicate login, 119 = sid not found
SESSION_EXPIRED_CODES: frozenset[int] = frozenset({105, 106, 107, 119})


@dataclass(frozen=True, slots=True)
class Credentials:
    account: str
    password: str = field(repr=False)


def _mask(value: str) -> str:
    return f"{value[:8]}..." if len(value) > 8 else value


def error_code(payload: Mapping[str, Any]) -> int | None:
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    try:
        return int(error.get("code"))
    except (TypeError, ValueError):
        return None


def auth_error_for_code(code: int | None, codes: Mapping[int, AuthErrorKind] | None = None) -> AuthError:
    table = DEFAULT_AUTH_ERROR_CODES if codes is None else codes
    if code is None:
        return AuthError(AuthErrorKind.UNKNOWN)
    return AuthError(table.get(code, AuthErrorKind.UNKNOWN), code)


async def authenticate(
    http: NasHttp,
    candidate: ConnectionCandidate,
    credentials: Credentials,
    *,
    device_credential: DeviceCredential | None = None,
    device_name: str = DEFAULT_DEVICE_NAME,
    otp_code: str | None = None,
    auth_error_codes: Mapping[int, AuthErrorKind] | None = None,
    endpoint: str | None = None,
) -> Session:
    """Perform one ``SYNO.API.Auth`` login against ``candidate``.

    ``endpoint`` defaults to the candidate's ``auth.cgi``.

    With ``otp_code`` the NAS is also asked to issue a device token, which is
    returned as ``Session.issued_device_id``.

    Raises:
        AuthError: the NAS answered with an error code or a non-JSON page.
        httpx.HTTPError: the candidate could not be reached.
    """
    params: dict[str, str] = {
        "api": AUTH_API,
        "version": AUTH_API_VERSION,
        "method": "login",
        "account": credentials.account,
        "passwd": credentials.password,
    }
    if device_credential is not None:
        params["device_id"] = device_credential.device_id
        params["device_name"] = device_name
    if otp_code:
        params["otp_code"] = otp_code
        params["enable_device_token"] = "yes"
        params["device_name"] = device_name

    try:
        payload = await http.get_json(endpoint or candidate.auth_url, params=params)
    except NonJsonPayloadError as exc:
        raise AuthError(AuthErrorKind.UNKNOWN, message=f"Login endpoint did not return JSON: {exc}") from exc

    data = payload.get("data")
    if payload.get("success") is True and isinstance(data, dict) and data.get("sid"):
        sid = str(data["sid"])
        issued = data.get("did") or data.get("device_id")
        LOGGER.info("Synology login successful via %s (sid=%s)", candidate.label, _mask(sid))
        return Session(
            session_id=sid,
            established_at=datetime.now(timezone.utc),
            source_candidate=candidate,
            issued_device_id=str(issued) if issued else None,
        )

    error = auth_error_for_code(error_code(payload), auth_error_codes)
    LOGGER.warning("Synology login failed via %s: %s", candidate.label, error)
    raise error


async def logout(http: NasHttp, session: Session) -> None:
    """End ``session`` on the NAS; failures are logged and swallowed."""
    params = {
        "api": AUTH_API,
        "version": AUTH_API_VERSION,
        "method": "logout",
        "_sid": session.session_id,
    }
    try:
        await http.client.get(session.source_candidate.auth_url, params=params)
    except httpx.HTTPError as exc:
        LOGGER.debug("Synology logout failed: %s", exc)
        return
    LOGGER.info("Synology logout completed")


class SessionManager:
    def __init__(
        self,
        http: NasHttp,
        credentials: Credentials,
        *,
        server_host: str,
        device_credential_loader: Callable[[], DeviceCredential | None] | None = None,
        device_name: str = DEFAULT_DEVICE_NAME,
        auth_error_codes: Mapping[int, AuthErrorKind] | None = None,
    ) -> None:
        self._http = http
        self._credentials = credentials
        self._server_host = server_host.lower()
        self._load_device_credential = device_credential_loader or (lambda: None)
        self._device_name = device_name
        self._auth_error_codes = dict(auth_error_codes or DEFAULT_AUTH_ERROR_CODES)
        self._session: Session | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Session | None:
        return self._session

    def is_session_expired_code(self, code: int | None) -> bool:
        return code in SESSION_EXPIRED_CODES

    async def login(self, candidate: ConnectionCandidate, *, endpoint: str | None = None) -> Session:
        """Log in, trying the device credential first and password-only second.

        A device credential that the NAS rejects (for instance one registered
        against another host) falls back to a single password-only attempt.
        """
        device_credential = self._load_device_credential()
        if device_credential is not None and device_credential.server_host.lower() != self._server_host:
            LOGGER.warning(
                "Device credential was registered for %s, not %s; the NAS may reject it",
                device_credential.server_host,
                self._server_host,
            )

        try:
            session = await authenticate(
                self._http,
                candidate,
                self._credentials,
                device_credential=device_credential,
                device_name=self._device_name,
                auth_error_codes=self._auth_error_codes,
                endpoint=endpoint,
            )
        except AuthError as exc:
            if device_credential is None:
                self._session = None
                raise
            LOGGER.warning("Device credential rejected (%s); retrying with password only", exc)
            try:
                session = await authenticate(
                    self._http,
                    candidate,
                    self._credentials,
                    device_name=self._device_name,
                    auth_error_codes=self._auth_error_codes,
                    endpoint=endpoint,
                )
            except AuthError:
                self._session = None
                raise

        self._session = session
        return session

    async def ensure_session(self, candidate: ConnectionCandidate) -> Session:
        session = self._session
        if session is not None and session.source_candidate == candidate:
            return session
        async with self._lock:
            session = self._session
            if session is not None and session.source_candidate == candidate:
                return session
            return await self.login(candidate)

    async def renew(self, stale: Session) -> Session:
        """Replace ``stale`` with a fresh session unless another caller already did."""
        async with self._lock:
            current = self._session
            if current is not None and current.session_id != stale.session_id:
                return current
            self._session = None
            return await self.login(stale.source_candidate)

    def invalidate(self, session: Session | None = None) -> None:
        if session is None or self._session is session:
            self._session = None

    async def logout(self) -> None:
        session = self._session
        self._session = None
        if session is not None:
            await logout(self._http, session)
