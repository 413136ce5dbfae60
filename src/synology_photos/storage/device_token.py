from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..domain.models import DeviceCredential

LOGGER = logging.getLogger(__name__)


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _credential_from_payload(payload: dict[str, Any], default_host: str | None) -> DeviceCredential:
    created = payload.get("created_at", payload.get("created"))
    host = payload.get("server_host", payload.get("server_url")) or default_host
    return DeviceCredential.model_validate(
        {
            "device_id": payload.get("device_id"),
            "server_host": host,
            "created_at": created or datetime.now(timezone.utc),
            "device_name": payload.get("device_name"),
        }
    )


def load_device_credential(path: Path, default_host: str | None = None) -> DeviceCredential | None:
    """Read the persisted device credential, or ``None`` when absent or unreadable.

    Token files written without a host are bound to ``default_host``.
    """
    token_path = Path(path)
    if not token_path.exists():
        return None

    try:
        payload = json.loads(token_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.warning("Could not read device token %s: %s", token_path, exc)
        return None

    if not isinstance(payload, dict) or not payload.get("device_id"):
        LOGGER.warning("Device token %s has no device_id", token_path)
        return None

    if not (payload.get("server_host") or payload.get("server_url")) and default_host:
        LOGGER.warning("Device token %s names no server; assuming %s", token_path, default_host)

    try:
        credential = _credential_from_payload(payload, default_host)
    except ValidationError as exc:
        LOGGER.warning("Device token %s is invalid: %s", token_path, exc)
        return None
    return credential.model_copy(update={"created_at": _normalize_datetime(credential.created_at)})


def save_device_credential(path: Path, credential: DeviceCredential) -> None:
    token_path = Path(path)
    token_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "device_id": credential.device_id,
        "server_url": credential.server_host,
        "created": _normalize_datetime(credential.created_at).isoformat(),
        "device_name": credential.device_name,
    }
    token_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    LOGGER.info("Device token saved to %s", token_path)
