"""End-to-end connection check: resolve, inspect APIs, log in, list photos, download a thumbnail."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .adapters.synology import (
    AuthError,
    Credentials,
    EndpointResolver,
    NasHttp,
    PhotoCatalogFetcher,
    SessionManager,
    SynologyPhotosError,
)
from .adapters.synology.base import NonJsonPayloadError
from .adapters.synology.catalog import PhotoRecord, thumbnail_url
from .adapters.synology.session import DEFAULT_DEVICE_NAME
from .domain.models import ConnectionCandidate, PhotoSpace, Session, SourceKind, SourceSelector
from .registration import register_device
from .storage.device_token import load_device_credential

LOGGER = logging.getLogger(__name__)

REQUIRED_APIS = ("SYNO.API.Auth", "SYNO.Foto.Browse.Item", "SYNO.Foto.Thumbnail")
SAMPLE_LIMIT = 5
PREFERRED_SIZES = ("xl", "m", "sm")


@dataclass(slots=True)
class StageResult:
    name: str
    passed: bool
    detail: str


@dataclass(slots=True)
class DiagnosticReport:
    stages: list[StageResult] = field(default_factory=list)
    candidate: ConnectionCandidate | None = None
    space: PhotoSpace | None = None

    @property
    def passed(self) -> bool:
        return bool(self.stages) and all(stage.passed for stage in self.stages)

    def record(self, name: str, passed: bool, detail: str) -> bool:
        self.stages.append(StageResult(name=name, passed=passed, detail=detail))
        return passed


def pick_thumbnail_size(record: PhotoRecord) -> str | None:
    for size in PREFERRED_SIZES:
        if record.is_ready(size):
            return size
    return None


def config_snippet(resolver: EndpointResolver, report: DiagnosticReport) -> str:
    target = resolver.target
    port = "null" if target.port is None else str(target.port)
    secure = "true" if report.candidate is None or report.candidate.base_url.startswith("https") else "false"
    lines = [
        "synology:",
        f"  server: {target.host}",
        f"  port: {port}",
        f"  secure: {secure}",
    ]
    if report.space is PhotoSpace.SHARED:
        lines.extend(["photos:", "  shared_space: true"])
    return "\n".join(lines)


async def _check_thumbnail(
    http: NasHttp,
    session: Session,
    record: PhotoRecord,
    space: PhotoSpace,
    report: DiagnosticReport,
    save_to: Path | None,
) -> None:
    size = pick_thumbnail_size(record)
    if size is None:
        report.record("thumbnail", False, "No photos with ready thumbnails found")
        return

    url = thumbnail_url(
        session.source_candidate,
        space=space,
        photo_id=record.id,
        size=size,
        cache_key=record.cache_key or "",
        session_id=session.session_id,
    )
    try:
        response = await http.client.get(url)
    except httpx.HTTPError as exc:
        report.record("thumbnail", False, f"Download error: {exc}")
        return

    content_type = response.headers.get("content-type", "")
    if "image" not in content_type and "octet-stream" not in content_type:
        report.record("thumbnail", False, f"Unexpected response type: {content_type or '<none>'}")
        return

    detail = f"Downloaded {record.filename} ({size}, {len(response.content) / 1024:.1f} KB)"
    if save_to is not None:
        save_to.write_bytes(response.content)
        detail = f"{detail}, saved to {save_to}"
    report.record("thumbnail", True, detail)


async def _login(sessions: SessionManager, candidate: ConnectionCandidate) -> tuple[Session, str]:
    """Log in at ``auth.cgi``, retrying at ``entry.cgi`` when the former answers with a non-JSON page."""
    try:
        return await sessions.login(candidate), candidate.auth_url
    except AuthError as exc:
        if not isinstance(exc.__cause__, NonJsonPayloadError):
            raise
        LOGGER.info("%s did not return JSON; retrying the login via %s", candidate.auth_url, candidate.entry_url)
    return await sessions.login(candidate, endpoint=candidate.entry_url), candidate.entry_url


async def run_diagnostics(
    http: NasHttp,
    resolver: EndpointResolver,
    credentials: Credentials,
    *,
    token_path: Path,
    otp_code: str | None = None,
    device_name: str = DEFAULT_DEVICE_NAME,
    save_thumbnail_to: Path | None = None,
) -> DiagnosticReport:
    report = DiagnosticReport()
    server_host = resolver.target.host

    candidates = await resolver.discover_candidates()
    api_info: dict | None = None
    for candidate in candidates:
        api_info = await resolver.probe(candidate)
        if api_info is not None:
            report.candidate = candidate
            break
    if report.candidate is None or api_info is None:
        report.record("resolve", False, f"Could not reach the NAS ({len(candidates)} candidates tried)")
        return report
    report.record("resolve", True, f"{report.candidate.label} => {report.candidate.base_url}")

    photo_apis = [name for name in api_info if "Foto" in name]
    missing = [name for name in REQUIRED_APIS if name not in api_info]
    detail = f"{len(api_info)} APIs, {len(photo_apis)} Synology Photos APIs"
    if missing:
        detail = f"{detail}; missing {', '.join(missing)} (is Synology Photos installed?)"
    report.record("api_info", not missing, detail)

    sessions = SessionManager(
        http,
        credentials,
        server_host=server_host,
        device_credential_loader=lambda: load_device_credential(token_path, server_host),
        device_name=device_name,
    )
    try:
        if otp_code:
            await register_device(
                http,
                report.candidate,
                credentials,
                otp_code,
                server_host=server_host,
                token_path=token_path,
                device_name=device_name,
            )
        session, login_url = await _login(sessions, report.candidate)
    except (SynologyPhotosError, httpx.HTTPError) as exc:
        report.record("login", False, str(exc))
        return report
    report.record("login", True, f"Login successful via {login_url}")

    try:
        fetcher = PhotoCatalogFetcher(http)
        records: list[PhotoRecord] = []
        for kind in (SourceKind.PERSONAL_SPACE, SourceKind.SHARED_SPACE):
            selector = SourceSelector(kind=kind)
            try:
                records = await fetcher.list_records(session, selector, SAMPLE_LIMIT)
            except (SynologyPhotosError, httpx.HTTPError) as exc:
                LOGGER.info("%s: %s", selector.space.value, exc)
                continue
            if records:
                report.space = selector.space
                break

        if report.space is None:
            report.record("fetch", False, "No photos found in either personal or shared space")
            return report
        report.record("fetch", True, f"Found {len(records)} photos in {report.space.value} space")

        ready = next((record for record in records if pick_thumbnail_size(record)), records[0])
        await _check_thumbnail(http, session, ready, report.space, report, save_thumbnail_to)
    finally:
        await sessions.logout()

    return report
