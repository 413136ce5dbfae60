"""Thumbnail relay.

Photo URLs handed to the display layer point at a local route carrying an
unsigned thumbnail URL. The proxy checks that the target is a thumbnail call on
the adopted NAS endpoint, signs it with the current session id and streams the
upstream body back.
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from urllib.parse import parse_qsl, urlsplit

import httpx

from ...domain.models import ConnectionCandidate
from .base import AuthError, NonJsonPayloadError, ProxyError, ProxyErrorKind
from .catalog import THUMBNAIL_APIS
from .session import SessionManager, error_code
from .transport import decode_json_object

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"
DEFAULT_CACHE_MAX_AGE_SECONDS = 86400


def _bad_target(message: str) -> ProxyError:
    return ProxyError(ProxyErrorKind.MISSING_TARGET, message, 400)


def parse_target(raw_url: str | None) -> tuple[str, list[tuple[str, str]]]:
    """Split a proxy target into ``(endpoint, params)`` with any ``_sid`` removed."""
    if raw_url is None or not raw_url.strip():
        raise _bad_target("Missing URL")

    parts = urlsplit(raw_url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise _bad_target("URL must be an absolute http(s) URL")

    params = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != "_sid"]
    api_names = {value for key, value in params if key == "api"}
    if len(api_names) != 1 or not api_names <= set(THUMBNAIL_APIS.values()):
        raise _bad_target("URL is not a thumbnail request")

    endpoint = f"{parts.scheme}://{parts.netloc}{parts.path}"
    return endpoint, params


class ThumbnailProxy:
    def __init__(
        self,
        client: httpx.AsyncClient,
        sessions: SessionManager,
        candidate_provider: Callable[[], ConnectionCandidate | None],
        *,
        cache_max_age_seconds: int = DEFAULT_CACHE_MAX_AGE_SECONDS,
    ) -> None:
        self._client = client
        self._sessions = sessions
        self._candidate_provider = candidate_provider
        self.cache_max_age_seconds = cache_max_age_seconds

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.cache_max_age_seconds}"

    def validate(self, raw_url: str | None) -> tuple[ConnectionCandidate, list[tuple[str, str]]]:
        endpoint, params = parse_target(raw_url)
        candidate = self._candidate_provider()
        if candidate is None:
            raise ProxyError(ProxyErrorKind.NOT_READY, "NAS connection is not established yet", 503)
        if endpoint.lower() != candidate.entry_url.lower():
            raise _bad_target("URL does not address the connected NAS")
        return candidate, params

    async def _send(self, candidate: ConnectionCandidate, params: list[tuple[str, str]], sid: str) -> httpx.Response:
        request = self._client.build_request("GET", candidate.entry_url, params=[*params, ("_sid", sid)])
        return await self._client.send(request, stream=True)

    @staticmethod
    async def _json_error(response: httpx.Response) -> dict[str, Any] | None:
        """Consume and decode a JSON body sent in place of an image; ``None`` for anything else."""
        if not response.is_success or "json" not in response.headers.get("content-type", ""):
            return None
        body = await response.aread()
        await response.aclose()
        return decode_json_object(body.decode("utf-8", errors="replace"))

    async def open(self, raw_url: str | None) -> httpx.Response:
        """Return a streaming upstream response; the caller must ``aclose`` it.

        Raises:
            ProxyError: for an invalid target (400), no connection yet (503),
                an upstream error status (same status) or a network failure (502).
        """
        candidate, params = self.validate(raw_url)
        try:
            session = await self._sessions.ensure_session(candidate)
            response = await self._send(candidate, params, session.session_id)

            payload = await self._json_error(response)
            if payload is not None and self._sessions.is_session_expired_code(error_code(payload)):
                LOGGER.info("Session expired while proxying (code=%s), logging in again", error_code(payload))
                session = await self._sessions.renew(session)
                response = await self._send(candidate, params, session.session_id)
                payload = await self._json_error(response)
            if payload is not None:
                raise ProxyError(
                    ProxyErrorKind.UPSTREAM_FAILURE,
                    f"NAS refused thumbnail (error code: {error_code(payload)})",
                    502,
                )
        except (httpx.HTTPError, NonJsonPayloadError, AuthError) as exc:
            LOGGER.warning("Thumbnail proxy failed: %s", exc)
            raise ProxyError(ProxyErrorKind.UPSTREAM_FAILURE, "Proxy error", 502) from exc

        if not response.is_success:
            status = response.status_code
            reason = response.reason_phrase or "Upstream error"
            await response.aclose()
            raise ProxyError(ProxyErrorKind.UPSTREAM_FAILURE, reason, status)
        return response
