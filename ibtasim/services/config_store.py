"""
Key/value runtime settings with optimistic concurrency.

Writers compare-and-set on ``ConfigEntry.version`` so two concurrent
read-modify-write cycles (e.g. the WhatsApp webhook and an admin
disconnect) cannot silently drop each other's changes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update as sa_update
from sqlalchemy.exc import IntegrityError

from ibtasim.errors import ConcurrentUpdate
from ibtasim.extensions import db
from ibtasim.models import ConfigEntry, utcnow

log = logging.getLogger(__name__)

WHATSAPP_SETTINGS_KEY = "whatsapp_settings"

_MAX_ATTEMPTS = 5


def _read(key: str):
    return db.session.execute(
        select(ConfigEntry.value, ConfigEntry.version).where(ConfigEntry.key == key)
    ).first()


def get_config(key: str) -> Optional[str]:
    row = _read(key)
    return row.value if row is not None else None


def get_json(key: str, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    raw = get_config(key)
    if not raw:
        return dict(default or {})
    try:
        data = json.loads(raw)
    except ValueError:
        log.warning("config %s holds invalid JSON; treating as empty", key)
        return dict(default or {})
    return data if isinstance(data, dict) else dict(default or {})


def _compare_and_set(key: str, expected_version: Optional[int], value: str) -> bool:
    """One CAS attempt; flushes but never commits. A lost insert race rolls the session back."""
    if expected_version is None:
        try:
            db.session.add(ConfigEntry(key=key, value=value, version=1))
            db.session.flush()
            return True
        except IntegrityError:
            db.session.rollback()
            return False

    res = db.session.execute(
        sa_update(ConfigEntry)
        .where(ConfigEntry.key == key, ConfigEntry.version == expected_version)
        .values(value=value, version=ConfigEntry.version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return bool(getattr(res, "rowcount", 0))


def set_config(key: str, value: Optional[str], *, commit: bool = True) -> None:
    """Upsert ``key`` unconditionally (last writer wins)."""
    for _ in range(_MAX_ATTEMPTS):
        row = _read(key)
        if _compare_and_set(key, row.version if row is not None else None, value or ""):
            if commit:
                db.session.commit()
            return
    raise ConcurrentUpdate(f"config {key!r} kept changing underneath set_config")


def update_json(
    key: str,
    mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
    *,
    commit: bool = True,
) -> Dict[str, Any]:
    """
    Transactional read-modify-write of a JSON config value.

    ``mutate`` receives a copy of the current document and returns the new
    one; it is re-run against fresh data whenever another writer wins.
    """
    for attempt in range(1, _MAX_ATTEMPTS + 1):
        row = _read(key)
        current: Dict[str, Any] = {}
        if row is not None and row.value:
            try:
                loaded = json.loads(row.value)
                current = loaded if isinstance(loaded, dict) else {}
            except ValueError:
                current = {}

        updated = mutate(dict(current))
        encoded = json.dumps(updated, ensure_ascii=False, sort_keys=True)

        if _compare_and_set(key, row.version if row is not None else None, encoded):
            if commit:
                db.session.commit()
            return updated

        log.info("config %s changed concurrently (attempt %d), retrying", key, attempt)

    raise ConcurrentUpdate(f"config {key!r} kept changing underneath update_json")


__all__ = ["WHATSAPP_SETTINGS_KEY", "get_config", "get_json", "set_config", "update_json"]
