"""Submission of confirmed emergencies to the dispatch backend."""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx

from .api_client import error_text, read_json
from .errors import BroadcastFailure
from .models import EmergencyCase

logger = logging.getLogger("sosvoice.broadcast")

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def valid_service_id(value: Optional[str]) -> Optional[str]:
    if value and UUID_RE.match(value):
        return value
    return None


def build_payload(case: EmergencyCase) -> dict:
    return {
        "category": case.category,
        "serviceId": valid_service_id(case.service_id),
        "description": case.description,
        "lat": case.location.lat,
        "lng": case.location.lng,
        "address": case.location.display_text(),
    }


class EmergencyBroadcastClient:
    """One POST per call; retrying is left to the user re-confirming."""

    def __init__(self, http: httpx.AsyncClient, path: str = "/api/emergency/create") -> None:
        self._http = http
        self._path = path

    async def submit(self, case: EmergencyCase) -> str:
        headers = {}
        if case.requester_id:
            headers["X-Requester-Id"] = case.requester_id
        logger.info("Broadcasting %s at %s", case.category, case.location.coordinates_text())
        try:
            response = await self._http.post(self._path, json=build_payload(case), headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise BroadcastFailure(f"Broadcast request failed: {exc}") from exc

        data = read_json(response)
        if not response.is_success:
            raise BroadcastFailure(
                error_text(data, f"Broadcast HTTP {response.status_code}"),
                details=data if isinstance(data, dict) else None,
            )
        record = data.get("data") if isinstance(data, dict) else None
        case_id = record.get("id") if isinstance(record, dict) else None
        if not case_id:
            raise BroadcastFailure("Broadcast response missing data.id", details=data if isinstance(data, dict) else None)
        if isinstance(data, dict) and data.get("warning"):
            logger.warning("Broadcast warning: %s", data["warning"])
        logger.debug("Broadcast response: %s", data)
        return str(case_id)
