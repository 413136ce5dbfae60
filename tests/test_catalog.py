"""Tests for photo listing, readiness filtering, URL building and ordering."""

from __future__ import annotations

import random
from datetime import datetime, timezone
from urllib.parse import parse_qs, unquote, urlsplit

import pytest

from synology_photos.adapters.synology import (
    FetchError,
    FetchErrorKind,
    NasHttp,
    PhotoCatalogFetcher,
    SessionExpiredError,
)
from synology_photos.adapters.synology.catalog import parse_record, proxy_url, thumbnail_url
from synology_photos.domain.models import (
    ConnectionCandidate,
    PhotoSpace,
    Session,
    SourceKind,
    SourceSelector,
)

from .conftest import NAS_BASE, failure, listing, photo_item

CANDIDATE = ConnectionCandidate(base_url=NAS_BASE, api_path_prefix="/webapi", label="Direct + /webapi")
SESSION = Session(session_id="sid-live", established_at=datetime.now(timezone.utc), source_candidate=CANDIDATE)
PERSONAL = SourceSelector(kind=SourceKind.PERSONAL_SPACE)


def _fetcher(nas, **kwargs) -> PhotoCatalogFetcher:
    kwargs.setdefault("shuffle", False)
    return PhotoCatalogFetcher(NasHttp(transport=nas.transport()), **kwargs)


class TestSourceSelector:
    """Tests for picking exactly one photo source."""

    def test_album_wins(self):
        selector = SourceSelector.from_options(album_id=7, folder_id=3, shared_space=True)

        assert selector.kind is SourceKind.ALBUM
        assert selector.source_id == 7
        assert selector.space is PhotoSpace.PERSONAL

    def test_folder_wins_over_shared_space(self):
        selector = SourceSelector.from_options(folder_id=3, shared_space=True)

        assert selector.kind is SourceKind.FOLDER

    def test_shared_space(self):
        selector = SourceSelector.from_options(shared_space=True)

        assert selector.kind is SourceKind.SHARED_SPACE
        assert selector.space is PhotoSpace.SHARED

    def test_personal_space_is_the_default(self):
        assert SourceSelector.from_options().kind is SourceKind.PERSONAL_SPACE


class TestParseRecord:
    def test_ready_string_and_true_are_both_ready(self):
        record = parse_record(photo_item(1, sizes={"sm": "ready", "m": True, "xl": "broken"}))

        assert record.is_ready("sm") is True
        assert record.is_ready("m") is True
        assert record.is_ready("xl") is False

    def test_missing_size_is_not_ready(self):
        record = parse_record(photo_item(1, sizes={"sm": "ready"}))

        assert record.is_ready("xl") is False

    def test_resolution_and_time(self):
        record = parse_record(photo_item(5, time=1_600_000_000))

        assert (record.width, record.height) == (4032, 3024)
        assert record.time == 1_600_000_000

    @pytest.mark.parametrize("item", [None, "x", {"filename": "no-id.jpg"}, {"id": "abc"}])
    def test_malformed_items_are_rejected(self, item):
        assert parse_record(item) is None


class TestUrls:
    def test_thumbnail_url_parameter_order(self):
        url = thumbnail_url(
            CANDIDATE, space=PhotoSpace.PERSONAL, photo_id=42, size="xl", cache_key="42_1633659350", session_id="s1"
        )

        assert url == (
            f"{NAS_BASE}/webapi/entry.cgi?api=SYNO.Foto.Thumbnail&version=1&method=get&mode=download"
            "&id=42&type=unit&size=xl&cache_key=42_1633659350&_sid=s1"
        )

    def test_unsigned_thumbnail_url_has_no_sid(self):
        url = thumbnail_url(CANDIDATE, space=PhotoSpace.SHARED, photo_id=42, size="m", cache_key="k")

        assert "_sid" not in url
        assert "api=SYNO.FotoTeam.Thumbnail" in url

    def test_proxy_url_percent_encodes_target(self):
        target = f"{NAS_BASE}/webapi/entry.cgi?api=SYNO.Foto.Thumbnail&id=1"

        url = proxy_url(target)

        assert url.startswith("/synology-photos/image?url=https%3A%2F%2Fnas.local%3A5001")
        assert unquote(url.split("url=", 1)[1]) == target


class TestPhotoCatalogFetcher:
    """Tests for fetching and normalizing a photo listing."""

    @pytest.mark.asyncio
    async def test_only_ready_thumbnails_are_kept(self, fake_nas):
        fake_nas.browse_default = listing(
            photo_item(1, sizes={"sm": "ready", "m": "ready", "xl": "ready"}),
            photo_item(2, sizes={"sm": "ready", "m": "ready", "xl": "broken"}),
        )

        catalog = await _fetcher(fake_nas, thumbnail_size="xl", proxy_route=None).fetch(SESSION, PERSONAL, 100)

        assert catalog.ids == [1]
        photo = catalog.photos[0]
        query = parse_qs(urlsplit(photo.url).query)
        assert query["size"] == ["xl"]
        assert query["id"] == ["1"]
        assert query["_sid"] == ["sid-live"]

    @pytest.mark.asyncio
    async def test_missing_cache_key_still_yields_photo(self, fake_nas):
        item = photo_item(3)
        del item["additional"]["thumbnail"]["cache_key"]
        fake_nas.browse_default = listing(item)

        catalog = await _fetcher(fake_nas, proxy_route=None).fetch(SESSION, PERSONAL, 100)

        assert catalog.ids == [3]
        assert "cache_key=&" in catalog.photos[0].url

    @pytest.mark.asyncio
    async def test_malformed_entries_are_dropped(self, fake_nas):
        fake_nas.browse_default = listing(photo_item(1), {"filename": "broken.jpg"}, photo_item(2))

        catalog = await _fetcher(fake_nas).fetch(SESSION, PERSONAL, 100)

        assert sorted(catalog.ids) == [1, 2]

    @pytest.mark.asyncio
    async def test_sorted_newest_first_without_shuffle(self, fake_nas):
        fake_nas.browse_default = listing(
            photo_item(1, time=100), photo_item(2, time=300), photo_item(3, time=200)
        )

        catalog = await _fetcher(fake_nas, sort_by="time").fetch(SESSION, PERSONAL, 100)

        assert catalog.ids == [2, 3, 1]

    @pytest.mark.asyncio
    async def test_listing_order_kept_when_sort_disabled(self, fake_nas):
        fake_nas.browse_default = listing(
            photo_item(1, time=100), photo_item(2, time=300), photo_item(3, time=200)
        )

        catalog = await _fetcher(fake_nas, sort_by="none").fetch(SESSION, PERSONAL, 100)

        assert catalog.ids == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_shuffle_is_a_permutation(self, fake_nas):
        fake_nas.browse_default = listing(*(photo_item(i, time=i) for i in range(1, 21)))

        catalog = await _fetcher(fake_nas, shuffle=True, rng=random.Random(3)).fetch(SESSION, PERSONAL, 100)

        assert sorted(catalog.ids) == list(range(1, 21))
        assert catalog.count == 20

    @pytest.mark.asyncio
    async def test_proxy_mode_wraps_unsigned_url(self, fake_nas):
        fake_nas.browse_default = listing(photo_item(9))

        catalog = await _fetcher(fake_nas).fetch(SESSION, PERSONAL, 100)

        url = catalog.photos[0].url
        assert url.startswith("/synology-photos/image?url=")
        target = unquote(url.split("url=", 1)[1])
        assert target.startswith(f"{NAS_BASE}/webapi/entry.cgi?api=SYNO.Foto.Thumbnail")
        assert "_sid" not in target

    @pytest.mark.asyncio
    async def test_browse_request_parameters(self, fake_nas):
        await _fetcher(fake_nas).fetch(SESSION, SourceSelector(kind=SourceKind.ALBUM, source_id=12), 25)

        params = fake_nas.calls("SYNO.Foto.Browse.Item")[0].url.params
        assert params["method"] == "list"
        assert params["type"] == "photo"
        assert params["limit"] == "25"
        assert params["album_id"] == "12"
        assert params["_sid"] == "sid-live"
        assert params["additional"] == '["thumbnail","resolution"]'

    @pytest.mark.asyncio
    async def test_folder_source(self, fake_nas):
        await _fetcher(fake_nas).fetch(SESSION, SourceSelector(kind=SourceKind.FOLDER, source_id=4), 10)

        params = fake_nas.calls("SYNO.Foto.Browse.Item")[0].url.params
        assert params["folder_id"] == "4"
        assert "album_id" not in params

    @pytest.mark.asyncio
    async def test_shared_space_uses_team_apis(self, fake_nas):
        fake_nas.browse_default = listing(photo_item(5))

        catalog = await _fetcher(fake_nas, proxy_route=None).fetch(
            SESSION, SourceSelector(kind=SourceKind.SHARED_SPACE), 10
        )

        assert len(fake_nas.calls("SYNO.FotoTeam.Browse.Item")) == 1
        assert "api=SYNO.FotoTeam.Thumbnail" in catalog.photos[0].url

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [105, 106, 107, 119])
    async def test_expired_session_codes(self, fake_nas, code):
        fake_nas.browse_default = failure(code)

        with pytest.raises(SessionExpiredError) as exc_info:
            await _fetcher(fake_nas).fetch(SESSION, PERSONAL, 10)

        assert exc_info.value.code == code

    @pytest.mark.asyncio
    async def test_other_error_code_is_source_unavailable(self, fake_nas):
        fake_nas.browse_default = failure(641)

        with pytest.raises(FetchError) as exc_info:
            await _fetcher(fake_nas).fetch(SESSION, PERSONAL, 10)

        assert exc_info.value.kind is FetchErrorKind.SOURCE_UNAVAILABLE
        assert exc_info.value.code == 641

    @pytest.mark.asyncio
    async def test_listing_without_list_is_malformed(self, fake_nas):
        fake_nas.browse_default = {"success": True, "data": {"total": 3}}

        with pytest.raises(FetchError) as exc_info:
            await _fetcher(fake_nas).fetch(SESSION, PERSONAL, 10)

        assert exc_info.value.kind is FetchErrorKind.MALFORMED_RESPONSE

    def test_unknown_thumbnail_size_is_rejected(self, fake_nas):
        with pytest.raises(ValueError):
            _fetcher(fake_nas, thumbnail_size="huge")
