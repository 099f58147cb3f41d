# src/tiris_portal/equity.py

import math
import statistics
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict

from .api_client import (
    DEFAULT_WARMUP_RETRY_MS,
    MIN_WARMUP_RETRY_MS,
    Trading,
    TradingApiClient,
    TradingLog,
)
from .errors import BackendError, ErrorKind, PortalError, WarmupInProgress
from .token_store import epoch_ms

T = TypeVar("T")

TIMEFRAME_MS = {
    "1m": 60 * 1000,
    "5m": 5 * 60 * 1000,
    "15m": 15 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "4h": 4 * 60 * 60 * 1000,
    "8h": 8 * 60 * 60 * 1000,
    "1d": 24 * 60 * 60 * 1000,
    "1w": 7 * 24 * 60 * 60 * 1000,
}
MS_PER_DAY = 24 * 60 * 60 * 1000
TRADING_PERIODS_PER_YEAR = 252


def timeframe_to_ms(timeframe: str) -> int:
    return TIMEFRAME_MS.get(timeframe, 60 * 1000)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parse_timestamp_ms(parsed)
    return None


def finite_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


def positive_number(value: Any) -> Optional[float]:
    number = finite_number(value)
    return number if number is not None and number > 0 else None


class OhlcvInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None
    coverage: Optional[float] = None
    final: Optional[bool] = None


class EquityPoint(BaseModel):
    timestamp_ms: int
    equity: Optional[float] = None
    quote_balance: Optional[float] = None
    stock_balance: Optional[float] = None
    stock_price: Optional[float] = None
    benchmark_return: Optional[float] = None
    ohlcv: Optional[OhlcvInfo] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> Optional["EquityPoint"]:
        timestamp_ms = parse_timestamp_ms(raw.get("timestamp"))
        if timestamp_ms is None:
            return None
        ohlcv = raw.get("ohlcv")
        return cls(
            timestamp_ms=timestamp_ms,
            equity=finite_number(raw.get("equity")),
            quote_balance=finite_number(raw.get("quote_balance")),
            stock_balance=finite_number(raw.get("stock_balance")),
            stock_price=finite_number(raw.get("stock_price")),
            benchmark_return=finite_number(raw.get("benchmark_return")),
            ohlcv=OhlcvInfo.model_validate(ohlcv) if isinstance(ohlcv, dict) else None,
        )

    def has_valid_values(self) -> bool:
        return (
            (self.equity is not None and self.equity > 0)
            or (self.stock_price is not None and self.stock_price > 0)
            or self.stock_balance is not None
            or self.quote_balance is not None
        )

    def portfolio_value(self) -> Optional[float]:
        """quote + stock * price when every part is known, otherwise the backend's equity field."""
        price = positive_number(self.stock_price)
        if price is not None and self.quote_balance is not None and self.stock_balance is not None:
            return self.quote_balance + self.stock_balance * price
        return self.equity


class Candlestick(BaseModel):
    timestamp_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None
    final: Optional[bool] = None


class EquityCurve(BaseModel):
    trading_id: str
    timeframe: str
    points: List[EquityPoint] = []
    baseline_price: Optional[float] = None
    initial_balance: Optional[float] = None
    warming_up: bool = False
    retry_after: Optional[float] = None
    gap_count: Optional[int] = None
    status: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any], trading_id: str, timeframe: str) -> "EquityCurve":
        points = []
        for item in raw.get("data_points") or []:
            if isinstance(item, dict):
                point = EquityPoint.from_api(item)
                if point is not None:
                    points.append(point)
        gap_count = finite_number(raw.get("gap_count"))
        return cls(
            trading_id=trading_id,
            timeframe=timeframe,
            points=points,
            baseline_price=positive_number(raw.get("baseline_price")),
            initial_balance=finite_number(raw.get("initial_balance", raw.get("initial_value"))),
            warming_up=raw.get("warming_up") is True,
            retry_after=finite_number(raw.get("retry_after")),
            gap_count=int(gap_count) if gap_count is not None else None,
            status=raw.get("status"),
            message=raw.get("message"),
        )

    def candlesticks(self) -> List[Candlestick]:
        candles = []
        for point in self.points:
            ohlcv = point.ohlcv
            if ohlcv is None or None in (ohlcv.open, ohlcv.high, ohlcv.low, ohlcv.close):
                continue
            candles.append(Candlestick(
                timestamp_ms=point.timestamp_ms,
                open=ohlcv.open,
                high=ohlcv.high,
                low=ohlcv.low,
                close=ohlcv.close,
                volume=ohlcv.volume,
                final=ohlcv.final,
            ))
        return candles


class WarmupState(BaseModel):
    active: bool = False
    retry_after_ms: int = 0


def warmup_state(curve: Optional[EquityCurve]) -> WarmupState:
    if curve is None:
        return WarmupState()
    warming = (
        curve.warming_up
        or (curve.status or "").lower() == "warming"
        or bool(curve.gap_count and curve.gap_count > 0)
    )
    if not warming:
        return WarmupState()
    retry_after_seconds = curve.retry_after if curve.retry_after is not None else DEFAULT_WARMUP_RETRY_MS / 1000
    return WarmupState(active=True, retry_after_ms=max(int(round(retry_after_seconds * 1000)), MIN_WARMUP_RETRY_MS))


# --- Point merging ---

def is_incoming_point_preferred(existing: Optional[EquityPoint], incoming: EquityPoint) -> bool:
    if existing is None:
        return True
    existing_valid = existing.has_valid_values()
    incoming_valid = incoming.has_valid_values()
    if incoming_valid != existing_valid:
        return incoming_valid

    existing_coverage = (existing.ohlcv.coverage if existing.ohlcv else None) or 0
    incoming_coverage = (incoming.ohlcv.coverage if incoming.ohlcv else None) or 0
    if incoming_coverage != existing_coverage:
        return incoming_coverage > existing_coverage

    existing_final = bool(existing.ohlcv and existing.ohlcv.final)
    incoming_final = bool(incoming.ohlcv and incoming.ohlcv.final)
    if incoming_final != existing_final:
        return incoming_final
    return True


def normalize_points(points: Iterable[EquityPoint]) -> List[EquityPoint]:
    """Orders one fetched batch by time, keeping the best point for each timestamp."""
    by_timestamp: Dict[int, EquityPoint] = {}
    for point in points:
        if is_incoming_point_preferred(by_timestamp.get(point.timestamp_ms), point):
            by_timestamp[point.timestamp_ms] = point
    return [by_timestamp[ts] for ts in sorted(by_timestamp)]


def merge_equity_points(existing: Sequence[EquityPoint], incoming: Iterable[EquityPoint]) -> List[EquityPoint]:
    """
    Appends the points of `incoming` whose timestamps are not already present.

    Existing points keep their position and values; new points follow in arrival
    order. Merging the same batch twice adds nothing the second time.
    """
    merged = list(existing)
    seen = {point.timestamp_ms for point in merged}
    for point in incoming:
        if point.timestamp_ms in seen:
            continue
        seen.add(point.timestamp_ms)
        merged.append(point)
    return merged


# --- Prices and metrics ---

def resolve_effective_stock_price(
        candlesticks: Optional[Sequence[Candlestick]] = None,
        equity_curve: Optional[EquityCurve] = None,
        fallback_price: Optional[float] = None,
) -> Optional[float]:
    if candlesticks:
        close = positive_number(candlesticks[-1].close)
        if close is not None:
            return close
    if equity_curve is not None and equity_curve.points:
        price = positive_number(equity_curve.points[-1].stock_price)
        if price is not None:
            return price
    if equity_curve is not None and positive_number(equity_curve.baseline_price) is not None:
        return equity_curve.baseline_price
    return positive_number(fallback_price)


def compute_roi(equity: float, initial_funds: float) -> float:
    if not initial_funds or initial_funds <= 0:
        return 0.0
    return (equity - initial_funds) / initial_funds * 100


class TradingMetrics(BaseModel):
    total_roi: float = 0.0
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    total_trades: int = 0


def _log_price(log: TradingLog) -> float:
    return positive_number(log.info.get("price")) or 0.0


def compute_win_rate(trading_logs: Sequence[TradingLog]) -> float:
    """Pairs every long with the next later short; a pair wins when the exit price beats the entry."""
    timed = []
    for log in trading_logs:
        event_ms = parse_timestamp_ms(log.event_time)
        if event_ms is not None:
            timed.append((event_ms, log))
    timed.sort(key=lambda item: item[0])
    shorts = [(ts, log) for ts, log in timed if log.type == "short"]

    completed = 0
    winning = 0
    for long_ts, long_log in timed:
        if long_log.type != "long":
            continue
        exit_log = next((log for ts, log in shorts if ts > long_ts), None)
        if exit_log is None:
            continue
        entry_price = _log_price(long_log)
        exit_price = _log_price(exit_log)
        if entry_price > 0 and exit_price > 0:
            completed += 1
            if exit_price > entry_price:
                winning += 1
    return winning / completed * 100 if completed else 0.0


def compute_metrics(
        points: Sequence[EquityPoint],
        initial_balance: Optional[float],
        trading_logs: Sequence[TradingLog] = (),
) -> TradingMetrics:
    values = []
    for point in points:
        value = point.portfolio_value()
        if value is not None:
            values.append(value)
    if not values:
        return TradingMetrics()

    initial = initial_balance if initial_balance and initial_balance > 0 else 0.0
    total_roi = compute_roi(values[-1], initial)

    peak = initial if initial > 0 else values[0]
    max_drawdown = 0.0
    for value in values:
        peak = max(peak, value)
        if peak > 0:
            max_drawdown = max(max_drawdown, (peak - value) / peak * 100)

    returns = [
        (current - previous) / previous
        for previous, current in zip(values, values[1:])
        if previous != 0
    ]
    sharpe_ratio = 0.0
    if returns:
        volatility = statistics.pstdev(returns)
        if volatility > 0:
            sharpe_ratio = statistics.fmean(returns) / volatility * math.sqrt(TRADING_PERIODS_PER_YEAR)

    total_trades = sum(1 for log in trading_logs if log.type in ("long", "short", "stop_loss"))
    win_rate = compute_win_rate(trading_logs) if total_trades else 0.0

    return TradingMetrics(
        total_roi=round(total_roi, 2),
        win_rate=round(win_rate, 2),
        sharpe_ratio=round(sharpe_ratio, 2),
        max_drawdown=-round(max_drawdown, 2) if max_drawdown else 0.0,
        total_trades=total_trades,
    )


# --- Trading context helpers ---

class MarketContext(BaseModel):
    stock_symbol: str = "ETH"
    quote_symbol: str = "USDT"
    stock_balance: float = 0.0
    quote_balance: float = 0.0


def _parse_symbol_pair(value: Any) -> Optional[Tuple[str, str]]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    separator = "/" if "/" in text else "_" if "_" in text else None
    if separator is None:
        return None
    stock, _, quote = text.partition(separator)
    if not stock or not quote:
        return None
    return stock.upper(), quote.upper()


def _first_present(info: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if info.get(key) is not None:
            return info[key]
    return None


def market_context_from_trading(trading: Trading) -> MarketContext:
    info = trading.info or {}
    pair = None
    for key in ("market_symbol", "symbol", "trading_pair", "pair", "bot_symbol", "strategy_symbol"):
        pair = _parse_symbol_pair(info.get(key))
        if pair:
            break

    stock_symbol = pair[0] if pair else (info.get("stock_symbol") or info.get("stockSymbol") or info.get("asset_symbol") or "ETH")
    quote_symbol = pair[1] if pair else (info.get("quote_symbol") or info.get("quoteSymbol") or info.get("quote_currency") or "USDT")
    stock_balance = finite_number(_first_present(
        info, "initial_stock_balance", "initial_asset_balance", "initial_position", "stock_balance",
    ))
    quote_balance = finite_number(_first_present(
        info, "initial_balance", "initial_funds", "initial_quote_balance", "quote_balance", "balance",
    ))
    return MarketContext(
        stock_symbol=str(stock_symbol).upper(),
        quote_symbol=str(quote_symbol).upper(),
        stock_balance=stock_balance or 0.0,
        quote_balance=quote_balance or 0.0,
    )


def trading_day_count(trading: Trading, now_ms: Optional[int] = None) -> Optional[int]:
    info = trading.info or {}
    start_ms = parse_timestamp_ms(info.get("start_date")) or parse_timestamp_ms(trading.created_at)
    if start_ms is None:
        return None
    end_ms = parse_timestamp_ms(info.get("end_date"))
    if trading.type == "backtest" and end_ms is None:
        return None
    effective_end = end_ms if end_ms is not None else (now_ms if now_ms is not None else epoch_ms())
    diff = effective_end - start_ms
    if diff < 0:
        return None
    return max(1, math.ceil(diff / MS_PER_DAY))


# --- Lightweight list-view metrics ---

class LightweightMetrics(BaseModel):
    current_equity: Optional[float] = None
    current_roi: float = 0.0
    unrealized_pnl: float = 0.0
    quote_balance: float = 0.0
    stock_balance: Optional[float] = None
    stock_price: Optional[float] = None
    benchmark_return: Optional[float] = None
    warming_up: bool = False
    error: Optional[str] = None


async def fetch_lightweight_metrics(
        api: TradingApiClient,
        trading: Trading,
        stock_symbol: str = "BTC",
        quote_symbol: str = "USDT",
        timeframe: str = "1d",
        *,
        stock_balance: Optional[float] = None,
        quote_balance: Optional[float] = None,
        require_auth: Optional[bool] = None,
        exchange_type: Optional[str] = None,
        token: Optional[str] = None,
) -> LightweightMetrics:
    """
    Metrics for a trading list card, computed from the single latest equity point.

    Failures are reported on the returned object rather than raised, so one
    broken trading does not take down a whole list.
    """
    initial_funds = finite_number(trading.info.get("initial_funds")) or 0.0
    if require_auth is None:
        require_auth = trading.type not in ("paper", "backtest")

    try:
        raw = await api.get_equity_curve(
            trading.id,
            timeframe,
            1,
            stock_symbol,
            quote_symbol,
            token=token if require_auth else None,
            exchange_type=exchange_type,
        )
    except PortalError as e:
        print(f"EQUITY: Failed to fetch lightweight metrics for trading {trading.id}: {e}")
        return LightweightMetrics(error=str(e), warming_up=isinstance(e, WarmupInProgress))

    curve = EquityCurve.from_api(raw, trading.id, timeframe)
    if not curve.points:
        return LightweightMetrics(warming_up=warmup_state(curve).active)
    latest = curve.points[-1]

    resolved_stock_balance = finite_number(stock_balance)
    if resolved_stock_balance is None:
        resolved_stock_balance = latest.stock_balance if latest.stock_balance is not None else 0.0
    resolved_quote_balance = finite_number(quote_balance)
    if resolved_quote_balance is None:
        resolved_quote_balance = latest.quote_balance if latest.quote_balance is not None else 0.0

    stock_price = resolve_effective_stock_price(
        equity_curve=curve.model_copy(update={"points": [latest]}),
        fallback_price=curve.baseline_price,
    )
    fallback_equity = latest.equity if latest.equity is not None else initial_funds
    if stock_price is not None:
        current_equity = resolved_quote_balance + resolved_stock_balance * stock_price
    else:
        current_equity = fallback_equity

    return LightweightMetrics(
        current_equity=current_equity,
        current_roi=compute_roi(current_equity, initial_funds),
        unrealized_pnl=current_equity - initial_funds,
        quote_balance=resolved_quote_balance,
        stock_balance=resolved_stock_balance,
        stock_price=stock_price,
        benchmark_return=latest.benchmark_return * 100 if latest.benchmark_return is not None else None,
        warming_up=warmup_state(curve).active,
    )


# --- Cached full and incremental loading ---

class EquityDataService:
    """
    Equity curves cached per (trading_id, timeframe).

    Requests go out without credentials first and are retried with the bearer
    token on 401/403, since paper and backtest curves are public.
    """

    def __init__(self, api: TradingApiClient, *, fetch_limit: int = 500, clock: Callable[[], int] = epoch_ms):
        self._api = api
        self._fetch_limit = fetch_limit
        self._clock = clock
        self._cache: Dict[Tuple[str, str], EquityCurve] = {}

    def cached(self, trading_id: str, timeframe: str) -> Optional[EquityCurve]:
        return self._cache.get((trading_id, timeframe))

    def invalidate(self, trading_id: str) -> None:
        for key in [key for key in self._cache if key[0] == trading_id]:
            del self._cache[key]

    async def _public_first(self, request: Callable[[Optional[str]], Awaitable[T]], token: Optional[str]) -> T:
        try:
            return await request(None)
        except BackendError as e:
            if token and e.kind in (ErrorKind.UNAUTHORIZED, ErrorKind.FORBIDDEN):
                return await request(token)
            raise

    def _end_time_ms(self, trading: Trading) -> Tuple[int, Optional[int]]:
        trading_end = parse_timestamp_ms(trading.info.get("end_date"))
        now = self._clock()
        return (min(now, trading_end) if trading_end is not None else now), trading_end

    async def load_curve(self, trading: Trading, timeframe: str, token: Optional[str] = None) -> EquityCurve:
        context = market_context_from_trading(trading)
        exchange_type = (trading.exchange_binding or {}).get("exchange_type")
        end_time_ms, _ = self._end_time_ms(trading)
        raw = await self._public_first(
            lambda auth: self._api.get_equity_curve(
                trading.id,
                timeframe,
                self._fetch_limit,
                context.stock_symbol,
                context.quote_symbol,
                token=auth,
                exchange_type=exchange_type,
                end_time_ms=end_time_ms,
            ),
            token,
        )
        curve = EquityCurve.from_api(raw, trading.id, timeframe)
        curve = curve.model_copy(update={
            "points": [p for p in normalize_points(curve.points) if p.timestamp_ms <= end_time_ms],
        })
        self._cache[(trading.id, timeframe)] = curve
        print(f"EQUITY: Loaded {len(curve.points)} points for trading {trading.id} ({timeframe}).")
        return curve

    async def refresh_curve(
            self,
            trading: Trading,
            timeframe: str,
            token: Optional[str] = None,
    ) -> Tuple[EquityCurve, int]:
        """Fetches only the tail since the last cached point and merges it in. Returns the curve and the number of new points."""
        cached = self._cache.get((trading.id, timeframe))
        if cached is None or not cached.points:
            curve = await self.load_curve(trading, timeframe, token)
            return curve, len(curve.points)

        end_time_ms, trading_end = self._end_time_ms(trading)
        last_ms = cached.points[-1].timestamp_ms
        if trading_end is not None and last_ms >= trading_end:
            return cached, 0
        start_time_ms = max(last_ms - timeframe_to_ms(timeframe), cached.points[0].timestamp_ms)
        if end_time_ms <= start_time_ms:
            return cached, 0

        context = market_context_from_trading(trading)
        exchange_type = (trading.exchange_binding or {}).get("exchange_type")
        raw = await self._public_first(
            lambda auth: self._api.get_equity_curve_by_time_range(
                trading.id,
                timeframe,
                start_time_ms,
                end_time_ms,
                context.stock_symbol,
                context.quote_symbol,
                token=auth,
                exchange_type=exchange_type,
            ),
            token,
        )
        incoming = EquityCurve.from_api(raw, trading.id, timeframe)
        batch = [p for p in incoming.points if p.timestamp_ms <= end_time_ms]
        merged = merge_equity_points(cached.points, batch)
        appended = len(merged) - len(cached.points)
        if trading.type != "backtest" and len(merged) > self._fetch_limit:
            merged = merged[-self._fetch_limit:]

        updated = cached.model_copy(update={
            "points": merged,
            "baseline_price": cached.baseline_price or incoming.baseline_price,
            "warming_up": incoming.warming_up,
            "retry_after": incoming.retry_after,
            "gap_count": incoming.gap_count,
            "status": incoming.status or cached.status,
            "message": incoming.message or cached.message,
        })
        self._cache[(trading.id, timeframe)] = updated
        if appended:
            print(f"EQUITY: Appended {appended} new points for trading {trading.id} ({timeframe}).")
        return updated, appended

    async def trading_logs(self, trading: Trading, token: Optional[str] = None) -> List[TradingLog]:
        return await self._public_first(
            lambda auth: self._api.get_trading_logs(trading.id, token=auth),
            token,
        )
