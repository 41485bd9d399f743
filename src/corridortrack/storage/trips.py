from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from corridortrack.settings import AppConfig

logger = logging.getLogger(__name__)

TripDocument = dict[str, Any]

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class TripRepository(Protocol):
    async def save(self, doc: TripDocument) -> None:
        ...

    async def delete(self, trip_id: str) -> None:
        ...

    def load_all(self) -> list[TripDocument]:
        ...


class MemoryTripRepository:
    def __init__(self) -> None:
        self._docs: dict[str, TripDocument] = {}

    async def save(self, doc: TripDocument) -> None:
        self._docs[str(doc["id"])] = dict(doc)

    async def delete(self, trip_id: str) -> None:
        self._docs.pop(trip_id, None)

    def load_all(self) -> list[TripDocument]:
        return [dict(doc) for doc in self._docs.values()]


class JsonTripRepository:
    """One JSON document per trip; writes go through a temp file and an atomic replace."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, trip_id: str) -> Path:
        return self.directory / f"{_SAFE_ID.sub('_', trip_id)}.json"

    def _write(self, doc: TripDocument) -> None:
        path = self._path_for(str(doc["id"]))
        tmp = path.with_suffix(f"{path.suffix}.tmp")
        tmp.write_text(json.dumps(doc, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    async def save(self, doc: TripDocument) -> None:
        await asyncio.to_thread(self._write, doc)

    async def delete(self, trip_id: str) -> None:
        await asyncio.to_thread(self._path_for(trip_id).unlink, missing_ok=True)

    def load_all(self) -> list[TripDocument]:
        docs: list[TripDocument] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable trip document %s: %s", path.name, exc)
                continue
            if isinstance(data, dict) and "id" in data:
                docs.append(data)
        return docs


def trip_repository_from_config(config: AppConfig) -> TripRepository:
    if config.tracking.persistence == "json":
        return JsonTripRepository(config.paths.trips_dir)
    return MemoryTripRepository()
