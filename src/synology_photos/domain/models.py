from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_PATH_WEBAPI = "/webapi"
API_PATH_PHOTO_WEBAPI = "/photo/webapi"
API_PATH_PREFIXES: tuple[str, ...] = (API_PATH_WEBAPI, API_PATH_PHOTO_WEBAPI)


class ServerTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: int | None = None
    is_relay_address: bool = False

    @field_validator("host")
    @classmethod
    def validate_host(cls, value: str) -> str:
        text = value.strip().lower()
        if not text:
            raise ValueError("server host must not be empty")
        return text


class ConnectionCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str
    api_path_prefix: Literal["/webapi", "/photo/webapi"]
    label: str

    @property
    def api_root(self) -> str:
        return f"{self.base_url}{self.api_path_prefix}"

    @property
    def entry_url(self) -> str:
        return f"{self.api_root}/entry.cgi"

    @property
    def auth_url(self) -> str:
        return f"{self.api_root}/auth.cgi"


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    established_at: datetime
    source_candidate: ConnectionCandidate
    issued_device_id: str | None = None


class DeviceCredential(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    device_id: str
    server_host: str
    created_at: datetime
    device_name: str | None = None

    @field_validator("device_id", "server_host")
    @classmethod
    def validate_non_empty_text(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("device credential fields must not be empty")
        return text


class PhotoSpace(str, Enum):
    PERSONAL = "personal"
    SHARED = "shared"


class SourceKind(str, Enum):
    ALBUM = "album"
    FOLDER = "folder"
    SHARED_SPACE = "shared_space"
    PERSONAL_SPACE = "personal_space"


class SourceSelector(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    source_id: int | None = None

    @property
    def space(self) -> PhotoSpace:
        if self.kind is SourceKind.SHARED_SPACE:
            return PhotoSpace.SHARED
        return PhotoSpace.PERSONAL

    @classmethod
    def from_options(
        cls,
        *,
        album_id: int | None = None,
        folder_id: int | None = None,
        shared_space: bool = False,
    ) -> SourceSelector:
        """Pick exactly one source; album wins over folder wins over shared space."""
        if album_id is not None:
            return cls(kind=SourceKind.ALBUM, source_id=album_id)
        if folder_id is not None:
            return cls(kind=SourceKind.FOLDER, source_id=folder_id)
        if shared_space:
            return cls(kind=SourceKind.SHARED_SPACE)
        return cls(kind=SourceKind.PERSONAL_SPACE)


class Photo(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    filename: str
    url: str
    width: int | None = None
    height: int | None = None
    time: int = 0


class PhotoCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    photos: tuple[Photo, ...] = Field(default_factory=tuple)
    refreshed_at: datetime | None = None

    @property
    def count(self) -> int:
        return len(self.photos)

    @property
    def ids(self) -> list[int]:
        return [photo.id for photo in self.photos]


class RefreshOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    catalog: PhotoCatalog | None = None
    error: str | None = None
    finished_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.error is None
