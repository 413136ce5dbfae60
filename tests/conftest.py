"""Shared fixtures: a scriptable fake Synology NAS served through ``httpx.MockTransport``."""

from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from synology_photos.pipeline import PhotoPipeline
from synology_photos.settings import AppSettings, EnvSettings, SlideshowYamlSettings

NAS_BASE = "https://nas.local:5001"

DEFAULT_API_INFO = {
    "SYNO.API.Auth": {"path": "entry.cgi", "minVersion": 1, "maxVersion": 7},
    "SYNO.API.Info": {"path": "entry.cgi", "minVersion": 1, "maxVersion": 1},
    "SYNO.Foto.Browse.Item": {"path": "entry.cgi", "minVersion": 1, "maxVersion": 4},
    "SYNO.Foto.Thumbnail": {"path": "entry.cgi", "minVersion": 1, "maxVersion": 2},
    "SYNO.FotoTeam.Browse.Item": {"path": "entry.cgi", "minVersion": 1, "maxVersion": 4},
}

Responder = dict[str, Any] | httpx.Response | Callable[[httpx.Request], Any]


def photo_item(
    photo_id: int,
    *,
    time: int = 1_700_000_000,
    sizes: dict[str, Any] | None = None,
    cache_key: str | None = None,
    filename: str | None = None,
) -> dict[str, Any]:
    thumbnail: dict[str, Any] = dict(sizes if sizes is not None else {"sm": "ready", "m": "ready", "xl": "ready"})
    thumbnail["cache_key"] = cache_key or f"{photo_id}_1633659350"
    return {
        "id": photo_id,
        "filename": filename or f"IMG_{photo_id:04d}.jpg",
        "time": time,
        "type": "photo",
        "additional": {
            "thumbnail": thumbnail,
            "resolution": {"width": 4032, "height": 3024},
        },
    }


def listing(*items: dict[str, Any]) -> dict[str, Any]:
    return {"success": True, "data": {"list": list(items)}}


def failure(code: int) -> dict[str, Any]:
    return {"success": False, "error": {"code": code}}


class FakeNas:
    """Answers Synology Web API calls for whitelisted ``(base_url, api_path)`` endpoints."""

    def __init__(self, endpoints: tuple[tuple[str, str], ...] = ((NAS_BASE, "/webapi"),)) -> None:
        self.endpoints = set(endpoints)
        self.html_bases: set[str] = set()
        self.html_scripts: set[str] = set()
        self.unreachable_hosts: set[str] = set()
        self.relay_payload: Any = None
        self.api_info = dict(DEFAULT_API_INFO)
        self.login_responses: list[Responder] = []
        self.browse_responses: list[Responder] = []
        self.browse_default: dict[str, Any] = listing()
        self.thumbnail_responses: list[Responder] = []
        self.requests: list[httpx.Request] = []
        self._sid_counter = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, api: str | None = None, method: str | None = None) -> list[httpx.Request]:
        selected = []
        for request in self.requests:
            params = request.url.params
            if api is not None and params.get("api") != api:
                continue
            if method is not None and params.get("method") != method:
                continue
            selected.append(request)
        return selected

    @staticmethod
    def _respond(responder: Responder, request: httpx.Request) -> httpx.Response:
        if callable(responder):
            responder = responder(request)
        if isinstance(responder, httpx.Response):
            return responder
        return httpx.Response(200, json=responder)

    def _next(self, queue: list[Responder], default: Responder, request: httpx.Request) -> httpx.Response:
        responder = queue.pop(0) if queue else default
        return self._respond(responder, request)

    def _default_login(self, request: httpx.Request) -> dict[str, Any]:
        self._sid_counter += 1
        return {"success": True, "data": {"sid": f"sid-{self._sid_counter}"}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.unreachable_hosts:
            raise httpx.ConnectError("Connection refused", request=request)

        path = request.url.path
        if path.endswith("/Serv.php"):
            if self.relay_payload is None:
                return httpx.Response(503, text="unavailable")
            if isinstance(self.relay_payload, Exception):
                raise self.relay_payload
            return httpx.Response(200, json=self.relay_payload)

        base = f"{request.url.scheme}://{request.url.netloc.decode('ascii')}"
        if base in self.html_bases:
            return httpx.Response(200, text="<!DOCTYPE html><html><body>Not found</body></html>")

        prefix, _, script = path.rpartition("/")
        if (base, prefix) not in self.endpoints or script not in ("entry.cgi", "auth.cgi"):
            return httpx.Response(404, text="<html>404</html>")
        if script in self.html_scripts:
            return httpx.Response(200, text="<!DOCTYPE html><html><body>DSM</body></html>")

        params = request.url.params
        api = params.get("api")
        method = params.get("method")
        if api == "SYNO.API.Info":
            return httpx.Response(200, json={"success": True, "data": self.api_info})
        if api == "SYNO.API.Auth" and method == "login":
            return self._next(self.login_responses, self._default_login, request)
        if api == "SYNO.API.Auth" and method == "logout":
            return httpx.Response(200, json={"success": True})
        if api in ("SYNO.Foto.Browse.Item", "SYNO.FotoTeam.Browse.Item"):
            return self._next(self.browse_responses, self.browse_default, request)
        if api in ("SYNO.Foto.Thumbnail", "SYNO.FotoTeam.Thumbnail"):
            image = httpx.Response(200, content=b"\xff\xd8\xff\xe0jpeg", headers={"content-type": "image/jpeg"})
            return self._next(self.thumbnail_responses, image, request)
        return httpx.Response(200, text=json.dumps(failure(102)))


@pytest.fixture
def fake_nas() -> FakeNas:
    return FakeNas()


def make_settings(tmp_path: Path, *, server: str = "nas.local:5001", **sections: dict[str, Any]) -> AppSettings:
    raw: dict[str, Any] = {"synology": {"server": server, **sections.pop("synology", {})}}
    raw.update(sections)
    token_path = tmp_path / "device_token.json"
    return AppSettings(
        env=EnvSettings(
            slideshow_env="test",
            synology_account="alice",
            synology_password="secret",
            slideshow_device_token_path=token_path,
        ),
        yaml=SlideshowYamlSettings.model_validate(raw),
        project_root=tmp_path,
        config_path=tmp_path / "slideshow.yaml",
        device_token_path=token_path,
    )


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path, photos={"shuffle": False, "sort_by": "time", "thumbnail_size": "xl"})


@pytest.fixture
def pipeline(settings: AppSettings, fake_nas: FakeNas) -> PhotoPipeline:
    return PhotoPipeline.from_settings(settings, transport=fake_nas.transport(), rng=random.Random(7))
