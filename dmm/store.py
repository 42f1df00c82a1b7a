from __future__ import annotations

import json
import os
from typing import Any

from .db import resolve_file_path
from .settings import Settings, settings as default_settings


class StoreCorrupted(ValueError):
    pass


class ServiceStore:
    """The persisted registry: one JSON document holding every service record.

    Each save rewrites the whole file in place. There is no temp file, rename
    or journal, so a crash mid-write leaves a truncated document behind and
    the next load reports it as corrupted.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.path = resolve_file_path(self.settings.data_path, "microservices.json")

    def load(self) -> list[dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, encoding="utf-8") as f:
            raw = f.read()
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise StoreCorrupted(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list) or any(not isinstance(r, dict) for r in data):
            raise StoreCorrupted(f"{self.path} does not hold a list of service records")
        return data

    def save(self, records: list[dict[str, Any]]) -> None:
        payload = json.dumps(records, indent=2, ensure_ascii=False)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(payload)
