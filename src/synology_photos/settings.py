from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .adapters.synology.base import AuthErrorKind
from .adapters.synology.resolver import DEFAULT_RELAY_COORDINATOR, DEFAULT_RELAY_SUFFIX
from .adapters.synology.session import DEFAULT_AUTH_ERROR_CODES, DEFAULT_DEVICE_NAME

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class SynologySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    server: str
    port: int | None = Field(default=None, ge=1, le=65535)
    secure: bool | None = None
    relay_suffix: str = DEFAULT_RELAY_SUFFIX
    relay_coordinator: str = DEFAULT_RELAY_COORDINATOR
    request_timeout_seconds: float = Field(default=12.0, ge=1, le=60)
    device_name: str = DEFAULT_DEVICE_NAME
    auth_error_codes: dict[int, AuthErrorKind] = Field(
        default_factory=lambda: dict(DEFAULT_AUTH_ERROR_CODES)
    )

    @field_validator("server")
    @classmethod
    def validate_server(cls, value: str) -> str:
        text = value.strip()
        for scheme in ("https://", "http://"):
            if text.lower().startswith(scheme):
                text = text[len(scheme):]
        text = text.rstrip("/")
        if not text:
            raise ValueError("synology.server must not be empty")
        return text

    @field_validator("relay_suffix", "relay_coordinator")
    @classmethod
    def validate_relay_host(cls, value: str) -> str:
        text = value.strip().strip(".").lower()
        if not text:
            raise ValueError("synology relay hosts must not be empty")
        return text

    @field_validator("device_name")
    @classmethod
    def validate_device_name(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("synology.device_name must not be empty")
        return text


class PhotosSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    album_id: int | None = None
    folder_id: int | None = None
    shared_space: bool = False
    limit: int = Field(default=100, ge=1, le=5000)
    thumbnail_size: Literal["sm", "m", "xl", "auto"] = "xl"
    display_width: int | None = Field(default=None, ge=1)
    shuffle: bool = True
    sort_by: Literal["time", "none"] = "time"

    @model_validator(mode="after")
    def validate_display_width(self) -> PhotosSettings:
        if self.display_width is not None and self.thumbnail_size != "auto":
            raise ValueError("photos.display_width is only used when thumbnail_size is 'auto'")
        return self

    @property
    def resolved_thumbnail_size(self) -> Literal["sm", "m", "xl"]:
        if self.thumbnail_size != "auto":
            return self.thumbnail_size
        width = self.display_width
        if width is None or width > 800:
            return "xl"
        if width > 320:
            return "m"
        return "sm"


class RefreshSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval_minutes: int = Field(default=60, ge=1, le=1440)
    misfire_grace_seconds: int = Field(default=120, ge=1, le=3600)


class ProxySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    cache_max_age_seconds: int = Field(default=86400, ge=0)


class SlideshowYamlSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    synology: SynologySettings
    photos: PhotosSettings = Field(default_factory=PhotosSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    slideshow_env: Literal["dev", "test", "prod"] = "dev"
    slideshow_config_path: Path = Path("config/slideshow.yaml")
    slideshow_device_token_path: Path = Path("data/device_token.json")
    synology_account: str = ""
    synology_password: str = Field(default="", repr=False)


class AppSettings(BaseModel):
    env: EnvSettings
    yaml: SlideshowYamlSettings
    project_root: Path
    config_path: Path
    device_token_path: Path


def resolve_project_path(path: Path) -> Path:
    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


def _load_yaml_settings(path: Path) -> SlideshowYamlSettings:
    if not path.exists():
        raise FileNotFoundError(f"Slideshow config file not found: {path}")

    raw_config = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Slideshow config must be a YAML mapping/object at the top level")
    return SlideshowYamlSettings.model_validate(raw_config)


def build_settings(env: EnvSettings) -> AppSettings:
    config_path = resolve_project_path(env.slideshow_config_path)
    return AppSettings(
        env=env,
        yaml=_load_yaml_settings(config_path),
        project_root=PROJECT_ROOT,
        config_path=config_path,
        device_token_path=resolve_project_path(env.slideshow_device_token_path),
    )


@lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return build_settings(EnvSettings())
