# Production backend client.
# Version: 1.0.0
# Typed access to live status, phase logs, dead time, sheets and the stored
# job list. Every response is normalized before it reaches the core.

import logging
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence
from urllib.parse import quote

import httpx

from .errors import BackendError, PayloadError, TransientNetworkError
from .models import (
    LiveStatus,
    PhaseLog,
    ProductionSheet,
    SheetLinkage,
    SinglePhaseSession,
    StoredJobItem,
)
from .payloads import (
    extract_id,
    normalize_active_phase,
    normalize_live_status,
    normalize_phase_log,
    normalize_sheet,
    normalize_stored_items,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way the backend stores it (ISO-8601, UTC, ms)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ProductionApi(Protocol):
    """Operations the core consumes from the production backend."""

    async def get_live_status(self) -> LiveStatus: ...

    async def start_live_phase(
        self,
        username: str,
        sheet_id: str,
        product_id: str,
        phase_id: str,
        position: int,
        planned_time: int,
        status: str,
    ) -> None: ...

    async def stop_live_phase(self, username: str) -> None: ...

    async def start_phase(
        self,
        username: str,
        sheet: ProductionSheet,
        phase_id: str,
        position: int,
        start_time: datetime,
        total_quantity: int,
        stage: str,
        find_material_time: int = 0,
        setup_time: int = 0,
    ) -> PhaseLog: ...

    async def finish_phase(
        self,
        log_id: str,
        end_time: datetime,
        quantity_done: int,
        duration_seconds: int,
    ) -> None: ...

    async def start_dead_time(
        self,
        username: str,
        code: int,
        description: str,
        linkage: SheetLinkage,
    ) -> str: ...

    async def finish_dead_time(self, dead_time_id: str) -> None: ...

    async def get_production_sheet_by_qr(self, code: str) -> ProductionSheet: ...

    async def save_multi_session(self, username: str, items: Sequence[StoredJobItem]) -> None: ...

    async def get_my_multi_session(self) -> list[StoredJobItem]: ...

    async def clear_my_multi_session(self) -> None: ...

    async def get_my_active_phase(self) -> SinglePhaseSession | None: ...


class HttpProductionApi:
    """ProductionApi implementation over HTTP (httpx).

    Transport failures and timeouts raise TransientNetworkError; error
    statuses raise BackendError with the backend's ``error`` text.

    Attributes:
        base_url: Backend base URL.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Backend base URL.
            timeout: Request timeout in seconds.
            headers: Extra headers sent with every request (session cookie).
            client: Shared AsyncClient; one is created and owned if omitted.
        """
        self.base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout

    async def __aenter__(self) -> "HttpProductionApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Any = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                json=json,
                headers={
                    "Content-Type": "application/json",
                    "Cache-Control": "no-store",
                    **self._headers,
                },
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout during {operation} ({method} {path})")
            raise TransientNetworkError(operation, e)
        except httpx.RequestError as e:
            logger.warning(f"Request error during {operation} ({method} {path}): {e}")
            raise TransientNetworkError(operation, e)

        if response.status_code >= 400:
            raise BackendError(operation, response.status_code, _error_text(response))

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise PayloadError(operation, "Response is not JSON")

    async def get_live_status(self) -> LiveStatus:
        data = await self._request("GET", "/api/live/status", "get_live_status")
        return normalize_live_status(data or {})

    async def start_live_phase(
        self,
        username: str,
        sheet_id: str,
        product_id: str,
        phase_id: str,
        position: int,
        planned_time: int,
        status: str,
    ) -> None:
        await self._request(
            "POST",
            "/api/live/start",
            "start_live_phase",
            json={
                "username": username,
                "sheetId": str(sheet_id),
                "productId": str(product_id),
                "phaseId": str(phase_id),
                "position": str(position),
                "plannedTime": planned_time,
                "status": status,
            },
        )

    async def stop_live_phase(self, username: str) -> None:
        await self._request("POST", "/api/live/stop", "stop_live_phase", json={"username": username})

    async def start_phase(
        self,
        username: str,
        sheet: ProductionSheet,
        phase_id: str,
        position: int,
        start_time: datetime,
        total_quantity: int,
        stage: str,
        find_material_time: int = 0,
        setup_time: int = 0,
    ) -> PhaseLog:
        data = await self._request(
            "POST",
            "/phase_logs/start",
            "start_phase",
            json={
                "operatorUsername": username,
                "orderNumber": sheet.order_number,
                "productionSheetNumber": sheet.sheet_number,
                "productId": sheet.product_id,
                "phaseId": str(phase_id),
                "position": str(position),
                "startTime": format_timestamp(start_time),
                "totalQuantity": total_quantity,
                "findMaterialTime": find_material_time,
                "setupTime": setup_time,
                "stage": stage,
            },
        )
        log = normalize_phase_log(data or {})
        if not log.id:
            raise PayloadError("phase_log", "Started log has no id")
        return log

    async def finish_phase(
        self,
        log_id: str,
        end_time: datetime,
        quantity_done: int,
        duration_seconds: int,
    ) -> None:
        await self._request(
            "POST",
            f"/phase_logs/finish/{quote(str(log_id), safe='')}",
            "finish_phase",
            json={
                "endTime": format_timestamp(end_time),
                "quantityDone": quantity_done,
                "timeSeconds": duration_seconds,
            },
        )

    async def start_dead_time(
        self,
        username: str,
        code: int,
        description: str,
        linkage: SheetLinkage,
    ) -> str:
        body = {"username": username, "code": code, "description": description}
        if linkage.product_id:
            body["productId"] = linkage.product_id
        if linkage.sheet_id:
            body["sheetId"] = linkage.sheet_id
        if linkage.order_number:
            body["orderNumber"] = linkage.order_number
        if linkage.sheet_number:
            body["productionSheetNumber"] = linkage.sheet_number

        data = await self._request("POST", "/deadtime/start", "start_dead_time", json=body)
        return extract_id(data, "dead_time")

    async def finish_dead_time(self, dead_time_id: str) -> None:
        await self._request(
            "POST",
            f"/deadtime/finish/{quote(str(dead_time_id), safe='')}",
            "finish_dead_time",
        )

    async def get_production_sheet_by_qr(self, code: str) -> ProductionSheet:
        data = await self._request(
            "GET",
            f"/production_sheet_by_qr/{quote(code, safe='')}",
            "get_production_sheet_by_qr",
        )
        return normalize_sheet(data, qr_value=code)

    async def save_multi_session(self, username: str, items: Sequence[StoredJobItem]) -> None:
        await self._request(
            "POST",
            "/api/multi-session/save",
            "save_multi_session",
            json={"username": username, "items": [item.to_payload() for item in items]},
        )

    async def get_my_multi_session(self) -> list[StoredJobItem]:
        data = await self._request("GET", "/api/multi-session/my", "get_my_multi_session")
        return normalize_stored_items(data)

    async def clear_my_multi_session(self) -> None:
        await self._request("DELETE", "/api/multi-session/my", "clear_my_multi_session")

    async def get_my_active_phase(self) -> SinglePhaseSession | None:
        data = await self._request("GET", "/api/phase-logs/my-active", "get_my_active_phase")
        return normalize_active_phase(data)


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.reason_phrase or f"HTTP {response.status_code}"
