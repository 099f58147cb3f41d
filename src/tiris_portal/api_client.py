# src/tiris_portal/api_client.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import BackendError, ErrorKind, WarmupInProgress, classify_error

DEFAULT_WARMUP_RETRY_MS = 2_000
MIN_WARMUP_RETRY_MS = 1_500


class Trading(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    exchange_binding_id: Optional[str] = None
    type: str = "paper"
    status: str = ""
    created_at: Optional[str] = None
    info: Dict[str, Any] = Field(default_factory=dict)
    exchange_binding: Optional[Dict[str, Any]] = None


class ExchangeBinding(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    exchange_type: str = ""
    status: str = ""
    info: Dict[str, Any] = Field(default_factory=dict)


class TradingLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    event_time: str
    type: str
    source: str = ""
    message: str = ""
    info: Dict[str, Any] = Field(default_factory=dict)


def to_iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _retry_after_ms(response: httpx.Response) -> int:
    header = response.headers.get("Retry-After")
    try:
        seconds = float(header) if header is not None else None
    except ValueError:
        seconds = None
    if seconds is None:
        return DEFAULT_WARMUP_RETRY_MS
    return max(int(round(seconds * 1000)), MIN_WARMUP_RETRY_MS)


def unwrap_envelope(response: httpx.Response, context: str) -> Any:
    """
    Returns `data` from the backend's {success, data, error} envelope or raises BackendError.
    A 202 is not an error; it means the backend is still preparing the data.
    """
    if response.status_code == 202:
        raise WarmupInProgress(_retry_after_ms(response), f"{context}: data is warming up")

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if response.is_success and body.get("success"):
        return body.get("data")

    error = body.get("error") or {}
    code = error.get("code")
    message = error.get("message") or response.reason_phrase or "Request failed"
    details = error.get("details")
    status_code = response.status_code
    kind = classify_error(status_code if not response.is_success else 200, code, message)
    print(f"API: {context} failed. Status: {status_code}, code: {code}, message: {message}")
    raise BackendError(
        kind,
        f"{context} failed ({code or status_code}): {message}" + (f" - {details}" if details else ""),
        status_code=status_code,
        code=code,
        details=details,
    )


class BackendClient:
    """Shared request plumbing for the TIRIS REST API. Owns no state besides the injected httpx client."""

    def __init__(self, http: httpx.AsyncClient):
        self._http = http

    async def _request(
            self,
            method: str,
            path: str,
            *,
            token: Optional[str] = None,
            json: Optional[dict] = None,
            params: Optional[dict] = None,
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self._http.request(method, path, headers=headers, json=json, params=params)
        except httpx.RequestError as e:
            print(f"API: Request error calling {method} {path}: {str(e)}")
            raise BackendError(ErrorKind.NETWORK, f"Could not connect to TIRIS backend: {str(e)}") from e
        return unwrap_envelope(response, f"{method} {path}")

    @staticmethod
    def _parse(model, data: Any, context: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            print(f"API: {context} returned an unexpected payload: {e.error_count()} validation error(s)")
            raise BackendError(ErrorKind.UNKNOWN, f"{context}: unexpected response shape") from e


class TradingApiClient(BackendClient):
    """Plain REST resource operations for tradings, exchange bindings, equity curves and logs."""

    async def list_tradings(self, token: Optional[str] = None) -> List[Trading]:
        data = await self._request("GET", "/tradings", token=token)
        return [self._parse(Trading, item, "GET /tradings") for item in (data or {}).get("tradings", [])]

    async def get_trading(self, trading_id: str, token: Optional[str] = None) -> Trading:
        data = await self._request("GET", f"/tradings/{trading_id}", token=token)
        return self._parse(Trading, data, f"GET /tradings/{trading_id}")

    async def create_trading(self, payload: Dict[str, Any], token: str) -> Trading:
        data = await self._request("POST", "/tradings", token=token, json=payload)
        return self._parse(Trading, data, "POST /tradings")

    async def delete_trading(self, trading_id: str, token: str) -> None:
        await self._request("DELETE", f"/tradings/{trading_id}", token=token)

    async def list_exchange_bindings(self, token: str) -> List[ExchangeBinding]:
        data = await self._request("GET", "/exchange-bindings", token=token)
        return [
            self._parse(ExchangeBinding, item, "GET /exchange-bindings")
            for item in (data or {}).get("exchange_bindings", [])
        ]

    async def create_exchange_binding(self, payload: Dict[str, Any], token: str) -> ExchangeBinding:
        data = await self._request("POST", "/exchange-bindings", token=token, json=payload)
        return self._parse(ExchangeBinding, data, "POST /exchange-bindings")

    async def delete_exchange_binding(self, binding_id: str, token: str) -> None:
        await self._request("DELETE", f"/exchange-bindings/{binding_id}", token=token)

    async def get_equity_curve(
            self,
            trading_id: str,
            timeframe: str,
            limit: int,
            stock_symbol: str,
            quote_symbol: str,
            token: Optional[str] = None,
            exchange_type: Optional[str] = None,
            end_time_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        params = {
            "timeframe": timeframe,
            "limit": limit,
            "stock_symbol": stock_symbol,
            "quote_symbol": quote_symbol,
            "exchange_type": exchange_type,
            "end_time": to_iso(end_time_ms) if end_time_ms is not None else None,
        }
        return await self._request("GET", f"/tradings/{trading_id}/equity-curve", token=token, params=params) or {}

    async def get_equity_curve_by_time_range(
            self,
            trading_id: str,
            timeframe: str,
            start_time_ms: int,
            end_time_ms: int,
            stock_symbol: str,
            quote_symbol: str,
            token: Optional[str] = None,
            exchange_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {
            "timeframe": timeframe,
            "start_time": to_iso(start_time_ms),
            "end_time": to_iso(end_time_ms),
            "stock_symbol": stock_symbol,
            "quote_symbol": quote_symbol,
            "exchange_type": exchange_type,
        }
        return await self._request("GET", f"/tradings/{trading_id}/equity-curve", token=token, params=params) or {}

    async def get_trading_logs(
            self,
            trading_id: str,
            token: Optional[str] = None,
            since_ms: Optional[int] = None,
            limit: int = 1000,
    ) -> List[TradingLog]:
        params = {
            "trading_id": trading_id,
            "limit": limit,
            "start_time": to_iso(since_ms) if since_ms is not None else None,
        }
        data = await self._request("GET", "/trading-logs", token=token, params=params)
        return [self._parse(TradingLog, item, "GET /trading-logs") for item in (data or {}).get("trading_logs", [])]
