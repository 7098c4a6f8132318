"""
Remote record store client.
The sync engine replays queued interactions through this interface; the HTTP
implementation talks to the CRM's REST backend and times every call.
"""
import logging
import time
from typing import Any, Dict, Optional, Protocol

import httpx

from .telemetry import PerformanceTelemetryCollector

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """A remote record-store operation failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RecordStore(Protocol):
    async def create(self, resource: str, data: Dict) -> Dict: ...

    async def update(self, resource: str, record_id: Any, data: Dict, previous_data: Optional[Dict]) -> Dict: ...

    async def delete(self, resource: str, record_id: Any) -> None: ...

    async def query(
        self,
        resource: str,
        filter: Optional[Dict] = None,
        sort: Optional[Dict] = None,
        pagination: Optional[Dict] = None,
    ) -> Dict: ...


class HttpRecordStore:
    """REST client: ``POST /{resource}``, ``PATCH``/``DELETE /{resource}/{id}``, ``GET /{resource}``."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15,
        telemetry: Optional[PerformanceTelemetryCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.telemetry = telemetry
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        start = time.time()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.request(method, path, headers=self._headers(), **kwargs)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = f"{method} {path} failed with status {exc.response.status_code}"
            self._track(path, method, start, False, message)
            raise RecordStoreError(message, exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            message = f"{method} {path} failed: {exc}"
            self._track(path, method, start, False, message)
            raise RecordStoreError(message) from exc
        self._track(path, method, start, True)
        return resp

    def _track(self, path: str, method: str, start: float, success: bool, error: Optional[str] = None) -> None:
        if self.telemetry:
            self.telemetry.track_api_call(path, method, start, success, error)
        if error:
            logger.warning("Record store call failed: %s", error)

    async def create(self, resource: str, data: Dict) -> Dict:
        resp = await self._request("POST", f"/{resource}", json=data)
        return resp.json()

    async def update(self, resource: str, record_id: Any, data: Dict, previous_data: Optional[Dict] = None) -> Dict:
        resp = await self._request("PATCH", f"/{resource}/{record_id}", json=data)
        return resp.json()

    async def delete(self, resource: str, record_id: Any) -> None:
        await self._request("DELETE", f"/{resource}/{record_id}")

    async def query(
        self,
        resource: str,
        filter: Optional[Dict] = None,
        sort: Optional[Dict] = None,
        pagination: Optional[Dict] = None,
    ) -> Dict:
        params: Dict[str, Any] = dict(filter or {})
        if sort:
            params["sort"] = sort.get("field", "id")
            params["order"] = sort.get("order", "ASC")
        if pagination:
            params["page"] = pagination.get("page", 1)
            params["per_page"] = pagination.get("per_page", 25)
        resp = await self._request("GET", f"/{resource}", params=params)
        payload = resp.json()
        if isinstance(payload, list):
            total = int(resp.headers.get("X-Total-Count", len(payload)))
            return {"data": payload, "total": total}
        return {"data": payload.get("data", []), "total": payload.get("total", 0)}
