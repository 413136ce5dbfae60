from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Mapping
from urllib.parse import quote, urlencode

from ...domain.models import ConnectionCandidate, Photo, PhotoCatalog, PhotoSpace, Session, SourceKind, SourceSelector
from .base import FetchError, FetchErrorKind, NonJsonPayloadError, SessionExpiredError
from .session import SESSION_EXPIRED_CODES, error_code
from .transport import NasHttp

LOGGER = logging.getLogger(__name__)

BROWSE_APIS = {
    PhotoSpace.PERSONAL: "SYNO.Foto.Browse.Item",
    PhotoSpace.SHARED: "SYNO.FotoTeam.Browse.Item",
}
THUMBNAIL_APIS = {
    PhotoSpace.PERSONAL: "SYNO.Foto.Thumbnail",
    PhotoSpace.SHARED: "SYNO.FotoTeam.Thumbnail",
}
ADDITIONAL_FIELDS = '["thumbnail","resolution"]'
THUMBNAIL_SIZES = ("sm", "m", "xl")
DEFAULT_PROXY_ROUTE = "/synology-photos/image"


@dataclass(frozen=True, slots=True)
class PhotoRecord:
    id: int
    filename: str
    time: int
    width: int | None
    height: int | None
    cache_key: str | None
    thumbnail_ready: Mapping[str, bool] = field(default_factory=dict)

    def is_ready(self, size: str) -> bool:
        return self.thumbnail_ready.get(size, False)


def thumbnail_state_is_ready(value: Any) -> bool:
    """Older Photos releases report ``"ready"``, newer ones ``true``."""
    if value is True:
        return True
    return isinstance(value, str) and value.strip().lower() == "ready"


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_record(item: Any) -> PhotoRecord | None:
    if not isinstance(item, dict):
        return None
    photo_id = _optional_int(item.get("id"))
    if photo_id is None:
        return None

    additional = item.get("additional")
    additional = additional if isinstance(additional, dict) else {}
    thumbnail = additional.get("thumbnail")
    thumbnail = thumbnail if isinstance(thumbnail, dict) else {}
    resolution = additional.get("resolution")
    resolution = resolution if isinstance(resolution, dict) else {}

    cache_key = thumbnail.get("cache_key")
    filename = item.get("filename")
    return PhotoRecord(
        id=photo_id,
        filename=filename if isinstance(filename, str) else "",
        time=_optional_int(item.get("time")) or 0,
        width=_optional_int(resolution.get("width")),
        height=_optional_int(resolution.get("height")),
        cache_key=str(cache_key) if cache_key not in (None, "") else None,
        thumbnail_ready={
            size: thumbnail_state_is_ready(state)
            for size, state in thumbnail.items()
            if size != "cache_key"
        },
    )


def browse_params(selector: SourceSelector, session: Session, limit: int, *, offset: int = 0) -> dict[str, str]:
    params = {
        "api": BROWSE_APIS[selector.space],
        "version": "1",
        "method": "list",
        "type": "photo",
        "offset": str(offset),
        "limit": str(limit),
    }
    if selector.kind is SourceKind.ALBUM:
        params["album_id"] = str(selector.source_id)
    elif selector.kind is SourceKind.FOLDER:
        params["folder_id"] = str(selector.source_id)
    params["_sid"] = session.session_id
    params["additional"] = ADDITIONAL_FIELDS
    return params


def thumbnail_url(
    candidate: ConnectionCandidate,
    *,
    space: PhotoSpace,
    photo_id: int,
    size: str,
    cache_key: str,
    session_id: str | None = None,
) -> str:
    """Build a thumbnail download URL; it is signed only when ``session_id`` is given."""
    params = {
        "api": THUMBNAIL_APIS[space],
        "version": "1",
        "method": "get",
        "mode": "download",
        "id": str(photo_id),
        "type": "unit",
        "size": size,
        "cache_key": cache_key,
    }
    if session_id is not None:
        params["_sid"] = session_id
    return f"{candidate.entry_url}?{urlencode(params)}"


def proxy_url(target_url: str, route: str = DEFAULT_PROXY_ROUTE) -> str:
    return f"{route}?url={quote(target_url, safe='')}"


def order_photos(
    photos: Iterable[Photo],
    *,
    shuffle: bool,
    sort_by: Literal["time", "none"],
    rng: random.Random | None = None,
) -> list[Photo]:
    ordered = list(photos)
    if shuffle:
        (rng or random).shuffle(ordered)
    elif sort_by == "time":
        ordered.sort(key=lambda photo: photo.time, reverse=True)
    return ordered


class PhotoCatalogFetcher:
    def __init__(
        self,
        http: NasHttp,
        *,
        thumbnail_size: str = "xl",
        shuffle: bool = True,
        sort_by: Literal["time", "none"] = "time",
        proxy_route: str | None = DEFAULT_PROXY_ROUTE,
        rng: random.Random | None = None,
    ) -> None:
        if thumbnail_size not in THUMBNAIL_SIZES:
            raise ValueError(f"Unsupported thumbnail size: {thumbnail_size}")
        self._http = http
        self.thumbnail_size = thumbnail_size
        self._shuffle = shuffle
        self._sort_by = sort_by
        self._proxy_route = proxy_route
        self._rng = rng

    async def list_records(self, session: Session, selector: SourceSelector, limit: int) -> list[PhotoRecord]:
        candidate = session.source_candidate
        params = browse_params(selector, session, limit)
        try:
            payload = await self._http.get_json(candidate.entry_url, params=params)
        except NonJsonPayloadError as exc:
            raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, f"Photo listing was not JSON: {exc}") from exc

        if payload.get("success") is not True:
            code = error_code(payload)
            if code in SESSION_EXPIRED_CODES:
                raise SessionExpiredError(code)
            raise FetchError(
                FetchErrorKind.SOURCE_UNAVAILABLE,
                f"Photo source {selector.kind.value} is unavailable (error code: {code})",
                code,
            )

        data = payload.get("data")
        items = data.get("list") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, "Photo listing did not include a list")

        records: list[PhotoRecord] = []
        for item in items:
            record = parse_record(item)
            if record is None:
                LOGGER.debug("Dropping malformed photo entry: %r", item)
                continue
            records.append(record)
        return records

    def to_photo(self, record: PhotoRecord, session: Session, space: PhotoSpace) -> Photo:
        candidate = session.source_candidate
        if self._proxy_route is not None:
            url = proxy_url(
                thumbnail_url(
                    candidate,
                    space=space,
                    photo_id=record.id,
                    size=self.thumbnail_size,
                    cache_key=record.cache_key or "",
                ),
                self._proxy_route,
            )
        else:
            url = thumbnail_url(
                candidate,
                space=space,
                photo_id=record.id,
                size=self.thumbnail_size,
                cache_key=record.cache_key or "",
                session_id=session.session_id,
            )
        return Photo(
            id=record.id,
            filename=record.filename,
            url=url,
            width=record.width,
            height=record.height,
            time=record.time,
        )

    async def fetch(self, session: Session, selector: SourceSelector, limit: int) -> PhotoCatalog:
        records = await self.list_records(session, selector, limit)
        ready = [record for record in records if record.is_ready(self.thumbnail_size)]
        photos = [self.to_photo(record, session, selector.space) for record in ready]
        ordered = order_photos(photos, shuffle=self._shuffle, sort_by=self._sort_by, rng=self._rng)
        LOGGER.info(
            "Fetched %d photos from %s (%d listed, %d without a ready '%s' thumbnail)",
            len(ordered),
            selector.kind.value,
            len(records),
            len(records) - len(ready),
            self.thumbnail_size,
        )
        return PhotoCatalog(photos=tuple(ordered), refreshed_at=datetime.now(timezone.utc))
