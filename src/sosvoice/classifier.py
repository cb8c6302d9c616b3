"""Client for the conversational classifier endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from .api_client import error_text, read_json
from .errors import ClassifierFailure
from .models import ClassifierReply, DetectedCategory, Message

logger = logging.getLogger("sosvoice.classifier")


def parse_category(raw: Any) -> Optional[DetectedCategory]:
    if not isinstance(raw, dict):
        return None
    try:
        return DetectedCategory(
            id=str(raw["id"]),
            name=str(raw["name"]),
            confidence=float(raw.get("confidence", 0.0)),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Ignoring malformed detectedCategory: %r", raw)
        return None


class ClassifierClient:
    def __init__(self, http: httpx.AsyncClient, path: str = "/api/ai/emergency-chat") -> None:
        self._http = http
        self._path = path

    async def classify(self, messages: Sequence[Message], location: str) -> ClassifierReply:
        payload = {
            "messages": [{"role": m.role.value, "content": m.content} for m in messages],
            "location": location,
        }
        try:
            response = await self._http.post(self._path, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ClassifierFailure(f"Classifier request failed: {exc}") from exc

        data = read_json(response)
        if not response.is_success:
            raise ClassifierFailure(error_text(data, f"Classifier HTTP {response.status_code}"))
        if not isinstance(data, dict):
            raise ClassifierFailure("Classifier returned no JSON object")
        text = data.get("assistantResponse")
        if not isinstance(text, str) or not text.strip():
            raise ClassifierFailure("Classifier response missing assistantResponse")

        category = parse_category(data.get("detectedCategory"))
        if category is not None:
            logger.info("Classifier detected %s (%.2f)", category.name, category.confidence)
        return ClassifierReply(assistant_response=text.strip(), detected_category=category)
