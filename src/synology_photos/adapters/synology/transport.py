"""HTTP plumbing shared by the resolver, the session manager and the catalog fetcher.

NAS endpoints use self-signed certificates, so their client skips certificate
verification. The relay coordinator has a public certificate and keeps the
default verification in a separate client.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

import httpx

from .base import NonJsonPayloadError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 12.0
USER_AGENT = "synology-photos-slideshow/0.1"


def relay_referer(relay_host: str) -> str:
    return f"https://{relay_host}/"


def decode_json_object(text: str) -> dict[str, Any]:
    """Decode a NAS payload, rejecting HTML error pages before they reach the JSON parser."""
    stripped = text.lstrip()
    if not stripped.startswith("{"):
        preview = " ".join(stripped[:80].split())
        raise NonJsonPayloadError(f"Endpoint did not return JSON: {preview or '<empty>'}")
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise NonJsonPayloadError("Endpoint returned malformed JSON") from exc
    if not isinstance(payload, dict):
        raise NonJsonPayloadError("Endpoint returned an unexpected JSON shape")
    return payload


class NasHttp:
    """Owns the two outbound ``httpx.AsyncClient`` instances.

    ``referer_host`` is set when the configured server is a relay address; the
    relay answers API calls with an HTML page unless the request carries a
    ``Referer`` naming the original relay hostname.
    """

    def __init__(
        self,
        *,
        referer_host: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        relay_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.referer_host = referer_host
        headers = {"User-Agent": USER_AGENT}
        if referer_host:
            headers["Referer"] = relay_referer(referer_host)
        timeout = httpx.Timeout(timeout_seconds)
        self._nas = httpx.AsyncClient(
            headers=headers,
            timeout=timeout,
            verify=False,
            follow_redirects=True,
            transport=transport,
        )
        self._relay = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
            transport=relay_transport or transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._nas

    async def get_json(self, url: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        response = await self._nas.get(url, params=params)
        return decode_json_object(response.text)

    async def post_relay_json(self, url: str, body: Mapping[str, Any]) -> dict[str, Any]:
        response = await self._relay.post(url, json=dict(body))
        response.raise_for_status()
        return decode_json_object(response.text)

    async def aclose(self) -> None:
        await self._nas.aclose()
        await self._relay.aclose()
