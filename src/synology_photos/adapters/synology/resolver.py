"""Endpoint discovery: turn a user-supplied server address into connection candidates.

A direct address (LAN IP, DDNS name, hostname) yields a single base URL. A relay
address is resolved through the relay coordinator into LAN, DDNS and external
bases, with the relay address itself appended as the last resort. Every base is
paired with both API path prefixes, ``/webapi`` first.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from ...domain.models import API_PATH_PREFIXES, ConnectionCandidate, ServerTarget
from .base import NonJsonPayloadError, ResolutionError
from .transport import NasHttp

LOGGER = logging.getLogger(__name__)

DEFAULT_RELAY_SUFFIX = "quickconnect.to"
DEFAULT_RELAY_COORDINATOR = "global.quickconnect.to"
DEFAULT_DSM_PORT = 5001
PLAIN_HTTP_PORT = 5000

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def _strip_address(raw_address: str) -> str:
    text = _SCHEME_PATTERN.sub("", raw_address.strip())
    return text.split("/", 1)[0].strip()


def is_relay_host(host: str, relay_suffix: str = DEFAULT_RELAY_SUFFIX) -> bool:
    suffix = relay_suffix.strip(".").lower()
    normalized = host.lower()
    return normalized.endswith(f".{suffix}")


def parse_server_address(
    raw_address: str,
    *,
    port: int | None = None,
    relay_suffix: str = DEFAULT_RELAY_SUFFIX,
) -> ServerTarget:
    address = _strip_address(raw_address)
    if not address:
        raise ResolutionError("Server address must not be empty")

    host, separator, raw_port = address.rpartition(":")
    embedded_port: int | None = None
    if separator and raw_port.isdigit():
        embedded_port = int(raw_port)
    else:
        host = address

    if not host:
        raise ResolutionError(f"Server address has no host: {raw_address!r}")

    if is_relay_host(host, relay_suffix):
        return ServerTarget(host=host, port=None, is_relay_address=True)

    return ServerTarget(host=host, port=embedded_port or port or DEFAULT_DSM_PORT, is_relay_address=False)


def resolve_secure(target: ServerTarget, secure: bool | None) -> bool:
    if secure is not None:
        return secure
    if target.is_relay_address:
        return True
    return target.port != PLAIN_HTTP_PORT


def split_relay_host(host: str, relay_suffix: str = DEFAULT_RELAY_SUFFIX) -> tuple[str, str | None]:
    """Return ``(server_id, region)`` for ``id[.region].<relay_suffix>``."""
    suffix = relay_suffix.strip(".").lower()
    prefix = host.lower()[: -(len(suffix) + 1)]
    parts = [part for part in prefix.split(".") if part]
    if not parts:
        raise ResolutionError(f"Relay address has no server id: {host}")
    region = parts[1] if len(parts) > 1 else None
    return parts[0], region


def expand_candidates(bases: list[tuple[str, str]]) -> list[ConnectionCandidate]:
    candidates: list[ConnectionCandidate] = []
    seen: set[str] = set()
    for base_url, label in bases:
        if base_url in seen:
            continue
        seen.add(base_url)
        for prefix in API_PATH_PREFIXES:
            candidates.append(
                ConnectionCandidate(base_url=base_url, api_path_prefix=prefix, label=f"{label} + {prefix}")
            )
    return candidates


def _coerce_port(value: Any, default: int = DEFAULT_DSM_PORT) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return default
    return port if 0 < port < 65536 else default


def _usable_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or text.upper() == "NULL" or text == "0.0.0.0":
        return None
    return text


def bases_from_server_info(server: dict[str, Any]) -> list[tuple[str, str]]:
    bases: list[tuple[str, str]] = []
    external = server.get("external")
    external = external if isinstance(external, dict) else {}
    external_port = _coerce_port(external.get("port"))

    interfaces = server.get("interface")
    if isinstance(interfaces, list):
        for interface in interfaces:
            if not isinstance(interface, dict):
                continue
            ip = _usable_text(interface.get("ip"))
            if ip is None:
                continue
            bases.append((f"https://{ip}:{_coerce_port(interface.get('port'))}", f"LAN ({ip})"))

    ddns = _usable_text(server.get("ddns"))
    if ddns is not None:
        bases.append((f"https://{ddns}:{external_port}", f"DDNS ({ddns})"))

    external_ip = _usable_text(external.get("ip"))
    if external_ip is not None:
        bases.append((f"https://{external_ip}:{external_port}", "External IP"))

    return bases


class EndpointResolver:
    def __init__(
        self,
        http: NasHttp,
        target: ServerTarget,
        *,
        secure: bool | None = None,
        relay_suffix: str = DEFAULT_RELAY_SUFFIX,
        relay_coordinator: str = DEFAULT_RELAY_COORDINATOR,
    ) -> None:
        self._http = http
        self.target = target
        self._secure = resolve_secure(target, secure)
        self._relay_suffix = relay_suffix
        self._relay_coordinator = relay_coordinator

    def relay_coordinator_urls(self) -> list[str]:
        _, region = split_relay_host(self.target.host, self._relay_suffix)
        suffix = self._relay_suffix.strip(".")
        urls: list[str] = []
        if region:
            urls.append(f"https://{region}.{suffix}/Serv.php")
        urls.append(f"https://{self._relay_coordinator}/Serv.php")
        return list(dict.fromkeys(urls))

    async def _query_relay(self) -> list[tuple[str, str]]:
        server_id, _ = split_relay_host(self.target.host, self._relay_suffix)
        body = {
            "version": 1,
            "command": "get_server_info",
            "stop_when_error": False,
            "stop_when_success": False,
            "id": "dsm_portal_https",
            "serverID": server_id,
        }
        for url in self.relay_coordinator_urls():
            LOGGER.info("Querying relay coordinator %s for server '%s'", url, server_id)
            try:
                payload = await self._http.post_relay_json(url, body)
            except (httpx.HTTPError, NonJsonPayloadError) as exc:
                LOGGER.warning("Relay coordinator %s failed: %s", url, exc)
                continue

            server = payload.get("server")
            if not isinstance(server, dict):
                LOGGER.warning("Relay coordinator %s returned no server info", url)
                continue
            return bases_from_server_info(server)
        return []

    async def discover_candidates(self) -> list[ConnectionCandidate]:
        if not self.target.is_relay_address:
            scheme = "https" if self._secure else "http"
            base_url = f"{scheme}://{self.target.host}:{self.target.port}"
            return expand_candidates([(base_url, "Direct")])

        bases = await self._query_relay()
        bases.append((f"https://{self.target.host}", "Relay"))
        return expand_candidates(bases)

    async def query_api_info(self, candidate: ConnectionCandidate) -> dict[str, Any]:
        params = {"api": "SYNO.API.Info", "version": "1", "method": "query"}
        payload = await self._http.get_json(candidate.entry_url, params=params)
        if payload.get("success") is not True:
            raise NonJsonPayloadError(f"API info query was not successful: {payload.get('error')}")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def probe(self, candidate: ConnectionCandidate) -> dict[str, Any] | None:
        try:
            return await self.query_api_info(candidate)
        except (httpx.HTTPError, NonJsonPayloadError) as exc:
            LOGGER.warning("Candidate %s rejected: %s", candidate.label, exc)
            return None

    async def resolve(self) -> ConnectionCandidate:
        """Probe candidates in order and adopt the first with a valid API-info payload."""
        candidates = await self.discover_candidates()
        for candidate in candidates:
            if await self.probe(candidate) is not None:
                LOGGER.info("Adopted candidate %s (%s)", candidate.label, candidate.base_url)
                return candidate
        raise ResolutionError(
            f"Could not reach the Synology NAS at {self.target.host} ({len(candidates)} candidates tried)"
        )
