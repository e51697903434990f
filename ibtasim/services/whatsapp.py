"""WaSender session management for the organisation's WhatsApp number."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from flask import current_app

from ibtasim.errors import ConfigurationError, ProviderError, ValidationError
from ibtasim.services import config_store
from ibtasim.services.config_store import WHATSAPP_SETTINGS_KEY

log = logging.getLogger(__name__)

SESSION_NAME = "ibtasim-platform"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _master_headers() -> Dict[str, str]:
    token = str(current_app.config.get("WASENDER_MASTER_TOKEN") or "").strip()
    if not token:
        raise ConfigurationError("WASENDER_MASTER_TOKEN is not configured")
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def _api(path: str) -> str:
    base = str(current_app.config.get("WASENDER_API_URL") or "https://www.wasenderapi.com/api").rstrip("/")
    return f"{base}/{path.lstrip('/')}"


def _timeout() -> float:
    return float(current_app.config.get("WASENDER_TIMEOUT_SECS", 10.0))


def _webhook_url() -> Optional[str]:
    base = str(current_app.config.get("PUBLIC_BASE_URL") or "").rstrip("/")
    return f"{base}/whatsapp-webhook" if base else None


def get_session_settings() -> Dict[str, Any]:
    settings = config_store.get_json(WHATSAPP_SETTINGS_KEY)
    settings.pop("apiKey", None)
    return settings


def create_and_connect_session(phone_number: str) -> Dict[str, Any]:
    """
    Create a WaSender session for ``phone_number``, request its QR code and
    persist the session under ``whatsapp_settings``. Returns the stored
    settings without the API key.
    """
    phone_number = (phone_number or "").strip()
    if not phone_number:
        raise ValidationError("phoneNumber is required", field="phoneNumber")

    headers = _master_headers()
    webhook_url = _webhook_url()
    body: Dict[str, Any] = {
        "name": SESSION_NAME,
        "phone_number": phone_number,
        "webhook_enabled": bool(webhook_url),
        "webhook_events": ["session.status"],
        "auto_reject_calls": True,
    }
    if webhook_url:
        body["webhook_url"] = webhook_url

    try:
        resp = requests.post(_api("whatsapp-sessions"), json=body, headers=headers, timeout=_timeout())
        resp.raise_for_status()
        created = (resp.json() or {}).get("data") or {}
    except (requests.RequestException, ValueError) as e:
        raise ProviderError(f"Failed to create session: {e}") from e

    session_id = created.get("id")
    api_key = created.get("api_key")
    if not session_id or not api_key:
        raise ProviderError("Invalid response from WaSender (missing id or api_key).")

    qr_code = None
    try:
        resp = requests.post(_api(f"whatsapp-sessions/{session_id}/connect"), headers=headers, timeout=_timeout())
        resp.raise_for_status()
        data = (resp.json() or {}).get("data") or {}
        qr_code = data.get("qr_code") or data.get("qrCode") or data.get("qr")
    except (requests.RequestException, ValueError) as e:
        log.warning("WaSender connect for session %s failed: %s", session_id, e)

    def _store(current: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "instanceId": session_id,
            "apiKey": api_key,
            "phoneNumber": phone_number,
            "isConnected": False,
            "qrCode": qr_code,
            "createdAt": _now_iso(),
        }

    stored = config_store.update_json(WHATSAPP_SETTINGS_KEY, _store)
    log.info("WhatsApp session %s created for %s", session_id, phone_number)
    return {k: v for k, v in stored.items() if k != "apiKey"}


def disconnect_session() -> Dict[str, Any]:
    settings = config_store.get_json(WHATSAPP_SETTINGS_KEY)
    instance_id = settings.get("instanceId")
    if not instance_id:
        raise ValidationError("No session ID found.")

    try:
        requests.post(
            _api(f"whatsapp-sessions/{instance_id}/disconnect"),
            headers=_master_headers(),
            timeout=_timeout(),
        )
    except requests.RequestException as e:
        log.warning("WaSender disconnect for session %s failed: %s", instance_id, e)

    def _mark(current: Dict[str, Any]) -> Dict[str, Any]:
        current.update({"isConnected": False, "qrCode": None, "disconnectedAt": _now_iso()})
        return current

    stored = config_store.update_json(WHATSAPP_SETTINGS_KEY, _mark)
    return {k: v for k, v in stored.items() if k != "apiKey"}


def mark_session_connected() -> Dict[str, Any]:
    """Messaging webhook reported ``session.status = connected``."""

    def _mark(current: Dict[str, Any]) -> Dict[str, Any]:
        current.update({"isConnected": True, "qrCode": None, "connectedAt": _now_iso()})
        return current

    return config_store.update_json(WHATSAPP_SETTINGS_KEY, _mark)


__all__ = ["create_and_connect_session", "disconnect_session", "mark_session_connected", "get_session_settings"]
