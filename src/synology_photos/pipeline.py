"""The long-lived fetch pipeline for one configured NAS.

resolve -> authenticate -> fetch -> normalize, with the adopted candidate, the
session and the published catalog held as owned fields that are only ever
replaced wholesale.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from .adapters.synology import (
    Credentials,
    EndpointResolver,
    FetchError,
    FetchErrorKind,
    NasHttp,
    PhotoCatalogFetcher,
    SessionExpiredError,
    SessionManager,
    SynologyPhotosError,
    ThumbnailProxy,
    parse_server_address,
)
from .adapters.synology.catalog import DEFAULT_PROXY_ROUTE
from .domain.models import ConnectionCandidate, PhotoCatalog, RefreshOutcome, SourceSelector
from .settings import AppSettings
from .storage.device_token import load_device_credential

LOGGER = logging.getLogger(__name__)

RefreshListener = Callable[[RefreshOutcome], Any]


class PhotoPipeline:
    def __init__(
        self,
        *,
        http: NasHttp,
        resolver: EndpointResolver,
        sessions: SessionManager,
        fetcher: PhotoCatalogFetcher,
        selector: SourceSelector,
        limit: int,
        cache_max_age_seconds: int = 86400,
    ) -> None:
        self._http = http
        self.resolver = resolver
        self.sessions = sessions
        self.fetcher = fetcher
        self.selector = selector
        self.limit = limit
        self.proxy = ThumbnailProxy(
            http.client,
            sessions,
            lambda: self.proxy_candidate,
            cache_max_age_seconds=cache_max_age_seconds,
        )
        self._candidate: ConnectionCandidate | None = None
        self._last_adopted: ConnectionCandidate | None = None
        self._catalog = PhotoCatalog()
        self._last_outcome: RefreshOutcome | None = None
        self._listeners: list[RefreshListener] = []
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        relay_transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> PhotoPipeline:
        synology = settings.yaml.synology
        photos = settings.yaml.photos
        target = parse_server_address(synology.server, port=synology.port, relay_suffix=synology.relay_suffix)
        http = NasHttp(
            referer_host=target.host if target.is_relay_address else None,
            timeout_seconds=synology.request_timeout_seconds,
            transport=transport,
            relay_transport=relay_transport,
        )
        device_token_path = settings.device_token_path
        return cls(
            http=http,
            resolver=EndpointResolver(
                http,
                target,
                secure=synology.secure,
                relay_suffix=synology.relay_suffix,
                relay_coordinator=synology.relay_coordinator,
            ),
            sessions=SessionManager(
                http,
                Credentials(account=settings.env.synology_account, password=settings.env.synology_password),
                server_host=target.host,
                device_credential_loader=lambda: load_device_credential(device_token_path, target.host),
                device_name=synology.device_name,
                auth_error_codes=synology.auth_error_codes,
            ),
            fetcher=PhotoCatalogFetcher(
                http,
                thumbnail_size=photos.resolved_thumbnail_size,
                shuffle=photos.shuffle,
                sort_by=photos.sort_by,
                proxy_route=DEFAULT_PROXY_ROUTE if settings.yaml.proxy.enabled else None,
                rng=rng,
            ),
            selector=SourceSelector.from_options(
                album_id=photos.album_id,
                folder_id=photos.folder_id,
                shared_space=photos.shared_space,
            ),
            limit=photos.limit,
            cache_max_age_seconds=settings.yaml.proxy.cache_max_age_seconds,
        )

    @property
    def candidate(self) -> ConnectionCandidate | None:
        return self._candidate

    @property
    def proxy_candidate(self) -> ConnectionCandidate | None:
        """Candidate the thumbnail proxy signs against; survives a failed re-resolution."""
        return self._candidate or self._last_adopted

    @property
    def catalog(self) -> PhotoCatalog:
        return self._catalog

    @property
    def last_outcome(self) -> RefreshOutcome | None:
        return self._last_outcome

    @property
    def last_error(self) -> str | None:
        outcome = self._last_outcome
        return outcome.error if outcome is not None else None

    @property
    def is_fetching(self) -> bool:
        return self._lock.locked()

    def subscribe(self, listener: RefreshListener) -> Callable[[], None]:
        """Register ``listener`` for one outcome per completed cycle; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def ensure_candidate(self) -> ConnectionCandidate:
        candidate = self._candidate
        if candidate is None:
            candidate = await self.resolver.resolve()
            self._candidate = candidate
            self._last_adopted = candidate
        return candidate

    def forget_candidate(self) -> None:
        self._candidate = None
        self.sessions.invalidate()

    async def _fetch_with_session(self, candidate: ConnectionCandidate) -> PhotoCatalog:
        session = await self.sessions.ensure_session(candidate)
        try:
            return await self.fetcher.fetch(session, self.selector, self.limit)
        except SessionExpiredError as exc:
            LOGGER.info("Session expired during fetch (code=%s), logging in again", exc.code)
            session = await self.sessions.renew(session)
            return await self.fetcher.fetch(session, self.selector, self.limit)

    async def _run_cycle(self) -> PhotoCatalog:
        reresolved = False
        while True:
            candidate = await self.ensure_candidate()
            try:
                return await self._fetch_with_session(candidate)
            except httpx.TransportError as exc:
                self.forget_candidate()
                if reresolved:
                    raise FetchError(
                        FetchErrorKind.SOURCE_UNAVAILABLE, f"NAS request failed: {exc}"
                    ) from exc
                LOGGER.warning("Request on %s failed (%s); resolving the NAS again", candidate.label, exc)
                reresolved = True

    async def refresh(self) -> RefreshOutcome | None:
        """Run one fetch cycle; returns ``None`` when a cycle is already in flight.

        A failed cycle keeps the previously published catalog.
        """
        if self._lock.locked():
            LOGGER.info("Photo refresh already in progress; trigger ignored")
            return None

        async with self._lock:
            try:
                catalog = await self._run_cycle()
            except SynologyPhotosError as exc:
                LOGGER.warning("Photo refresh failed, keeping %d cached photos: %s", self._catalog.count, exc)
                outcome = RefreshOutcome(error=str(exc), finished_at=datetime.now(timezone.utc))
            except httpx.HTTPError as exc:
                LOGGER.warning("Photo refresh failed, keeping %d cached photos: %s", self._catalog.count, exc)
                outcome = RefreshOutcome(
                    error=f"NAS request failed: {exc}", finished_at=datetime.now(timezone.utc)
                )
            except Exception:  # pragma: no cover - defensive fallback
                LOGGER.exception("Photo refresh failed")
                outcome = RefreshOutcome(
                    error="Unexpected error while fetching photos", finished_at=datetime.now(timezone.utc)
                )
            else:
                self._catalog = catalog
                outcome = RefreshOutcome(catalog=catalog, finished_at=datetime.now(timezone.utc))
            self._last_outcome = outcome

        await self._notify(outcome)
        return outcome

    async def _notify(self, outcome: RefreshOutcome) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # pragma: no cover - defensive fallback
                LOGGER.exception("Refresh listener failed")

    async def aclose(self) -> None:
        await self.sessions.logout()
        await self._http.aclose()
