from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from flask import jsonify, request

from storefront.config import Config


def is_admin_request() -> bool:
    token = request.headers.get(Config.ADMIN_TOKEN_HEADER, "")
    if not Config.ADMIN_API_TOKEN or not token:
        return False
    return hmac.compare_digest(token, Config.ADMIN_API_TOKEN)


def forbidden():
    return jsonify({"error": "Forbidden"}), 403


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None
