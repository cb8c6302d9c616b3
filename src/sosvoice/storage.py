"""Storage and naming utilities."""

from __future__ import annotations

import os
import re
from datetime import datetime


def timestamp_slug(dt: datetime | None = None) -> str:
    now = dt or datetime.now()
    return now.strftime("%Y-%m-%d_%H%M%S")


def build_session_basename(title: str, dt: datetime | None = None) -> str:
    slug = re.sub(r"[^A-Za-z0-9-]+", "-", title.strip()).strip("-") if title else ""
    return f"{timestamp_slug(dt)}--{slug or 'Emergency'}"


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)
