"""Shared test doubles for the field-services tests."""
import asyncio
import io
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from PIL import Image

from forkflow_mobile.services.geolocation import (
    Coordinates,
    LocationErrorKind,
    LocationPermission,
    PositionError,
)
from forkflow_mobile.services.local_storage import InMemoryKeyValueStore
from forkflow_mobile.services.record_store import RecordStoreError


class FakeRecordStore:
    """Records every call; ids listed in ``fail_ids`` raise on each attempt."""

    def __init__(self, fail_ids=None, delay: float = 0.0):
        self.calls: List[tuple] = []
        self.fail_ids = set(fail_ids or [])
        self.delay = delay

    async def _call(self, *call):
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)

    def _maybe_fail(self, data: Dict):
        if data.get("subject") in self.fail_ids or data.get("id") in self.fail_ids:
            raise RecordStoreError("record store rejected the write", 500)

    async def create(self, resource, data):
        await self._call("create", resource, data)
        self._maybe_fail(data)
        return {**data, "id": len(self.calls)}

    async def update(self, resource, record_id, data, previous_data=None):
        await self._call("update", resource, record_id, data, previous_data)
        self._maybe_fail(data)
        return data

    async def delete(self, resource, record_id):
        await self._call("delete", resource, record_id)
        self._maybe_fail({"id": record_id})

    async def query(self, resource, filter=None, sort=None, pagination=None):
        await self._call("query", resource, filter)
        return {"data": [], "total": 0}


class FakeLocationSource:
    """Scriptable platform location capability."""

    def __init__(
        self,
        coords: Optional[Coordinates] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        permission: Optional[LocationPermission] = LocationPermission.PROMPT,
    ):
        self.coords = coords
        self.error = error
        self.delay = delay
        self.permission = permission
        self.requests = 0
        self.watches: Dict[int, tuple] = {}
        self._next_handle = 0

    async def get_position(self, high_accuracy: bool) -> Coordinates:
        self.requests += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Coordinates(
            latitude=self.coords.latitude,
            longitude=self.coords.longitude,
            accuracy=self.coords.accuracy,
            captured_at=self.coords.captured_at,
        )

    def watch_position(self, on_position, on_error, high_accuracy: bool):
        self._next_handle += 1
        self.watches[self._next_handle] = (on_position, on_error)
        return self._next_handle

    def clear_watch(self, handle) -> None:
        self.watches.pop(handle, None)

    def emit(self, coords: Coordinates) -> None:
        for on_position, _ in list(self.watches.values()):
            on_position(coords)

    def fail(self, kind: LocationErrorKind) -> None:
        for _, on_error in list(self.watches.values()):
            on_error(PositionError(kind))

    async def query_permission(self):
        return self.permission


class FailingStore(InMemoryKeyValueStore):
    """Accepts reads but every write fails, like a full disk."""

    def set(self, key, value):
        raise OSError("No space left on device")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_image_bytes(width: int, height: int, fmt: str = "JPEG", color=(200, 30, 30)) -> bytes:
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    img = Image.new(mode, (width, height), fill)
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture()
def record_store():
    return FakeRecordStore()
