"""
Blueprint helpers: API-style JSON (never cached) with a consistent
ok/error envelope, and domain-error mapping.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, cast

from flask import Blueprint, current_app, g, jsonify, request

from ibtasim.errors import IbtasimError

_TRUTHY = {"1", "true", "yes", "on", "y"}


def truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    return str(v).strip().lower() in _TRUTHY


def request_payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return cast(Dict[str, Any], data)
    if request.form:
        return cast(Dict[str, Any], request.form.to_dict(flat=True))
    return {}


def json_response(payload: Dict[str, Any], status: int = 200):
    resp = jsonify(payload)
    resp.status_code = int(status)
    resp.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
    resp.headers.setdefault("Pragma", "no-cache")
    return resp


def json_ok(payload: Optional[Dict[str, Any]] = None, status: int = 200):
    body = dict(payload or {})
    body.setdefault("ok", True)
    return json_response(body, status)


def json_error(message: str, status: int, extra: Optional[Dict[str, Any]] = None):
    err: Dict[str, Any] = {"code": int(status), "message": message, "request_id": getattr(g, "request_id", "-")}
    if extra:
        err.update(extra)
    return json_response({"ok": False, "error": err}, status)


def register_domain_errors(bp: Blueprint) -> None:
    @bp.errorhandler(IbtasimError)
    def _domain_error(err: IbtasimError):
        if err.status_code >= 500:
            current_app.logger.error("%s: %s", type(err).__name__, err.message)
        body = err.to_dict()
        body.pop("code", None)
        return json_error(err.message, err.status_code, body)
