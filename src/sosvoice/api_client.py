"""Shared HTTP plumbing for the backend endpoints."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from .config import BackendConfig

logger = logging.getLogger("sosvoice.api")


def build_http_client(
    backend: BackendConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    headers = {"Content-Type": "application/json"}
    if backend.api_token:
        headers["Authorization"] = f"Bearer {backend.api_token}"
    return httpx.AsyncClient(
        base_url=backend.base_url,
        headers=headers,
        timeout=backend.timeout_s,
        transport=transport,
    )


def read_json(response: httpx.Response) -> Any:
    """Decode a JSON body, returning ``None`` for empty or malformed payloads."""
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.debug("Non-JSON response from %s: %s", response.request.url, exc)
        return None


def error_text(payload: Any, default: str) -> str:
    if not isinstance(payload, dict):
        return default
    details = payload.get("details")
    if isinstance(details, dict) and details.get("message"):
        return str(details["message"])
    for key in ("message", "error"):
        if payload.get(key):
            return str(payload[key])
    return default
