from datetime import UTC, datetime, timedelta

from marketpipe.core.entities import Bar, TradeEvent

BASE_TIME = datetime(2025, 1, 6, 14, 30, tzinfo=UTC)


def create_test_bars(count: int = 50, base_price: float = 100.0) -> list[Bar]:
    """Create synthetic one-minute bars for testing."""
    bars = []
    current_price = base_price

    for i in range(count):
        # Simple oscillating walk
        price_change = (i % 3 - 1) * 0.5  # -0.5, 0, 0.5 pattern
        current_price += price_change

        open_price = current_price
        high_price = current_price + abs(price_change) + 0.2
        low_price = current_price - abs(price_change) - 0.1
        close_price = current_price + price_change * 0.5
        volume = 1000 + (i % 10) * 100

        bars.append(
            Bar(
                ts=BASE_TIME + timedelta(minutes=i),
                open=open_price,
                high=high_price,
                low=low_price,
                close=close_price,
                volume=volume,
            )
        )
        current_price = close_price

    return bars


def create_trending_bars(count: int = 50, trend: str = "up") -> list[Bar]:
    """Create trending bars with a small deterministic noise component."""
    bars = []
    current_price = 100.0
    trend_direction = 1 if trend == "up" else -1

    for i in range(count):
        base_move = trend_direction * 0.3
        noise = (i % 5 - 2) * 0.1
        price_change = base_move + noise

        open_price = current_price
        close_price = current_price + price_change
        high_price = max(open_price, close_price) + 0.1
        low_price = min(open_price, close_price) - 0.1
        volume = 1000 + abs(price_change) * 500

        bars.append(
            Bar(
                ts=BASE_TIME + timedelta(minutes=i),
                open=open_price,
                high=high_price,
                low=low_price,
                close=close_price,
                volume=volume,
            )
        )
        current_price = close_price

    return bars


def create_monotonic_bars(count: int = 60, step: float = 1.0, start: float = 100.0) -> list[Bar]:
    """Strictly monotonic closes with no intrabar range (zero noise)."""
    bars = []
    for i in range(count):
        price = start + i * step
        bars.append(
            Bar(
                ts=BASE_TIME + timedelta(minutes=i),
                open=price,
                high=price,
                low=price,
                close=price,
                volume=1000.0,
            )
        )
    return bars


def create_regime_switch_bars(segment: int = 40, step: float = 1.0) -> list[Bar]:
    """Up-leg, down-leg, up-leg; produces clear trend flips."""
    closes = []
    price = 100.0
    for direction in (1, -1, 1):
        for _ in range(segment):
            price += direction * step
            closes.append(price)

    return [
        Bar(
            ts=BASE_TIME + timedelta(minutes=i),
            open=close - 0.1,
            high=close + 0.5,
            low=close - 0.5,
            close=close,
            volume=1000.0,
        )
        for i, close in enumerate(closes)
    ]


def create_trades(
    symbol: str,
    prices: list[float],
    start: datetime = BASE_TIME,
    spacing_seconds: float = 10.0,
    volume: float = 100.0,
) -> list[TradeEvent]:
    """Evenly spaced trades for one symbol."""
    return [
        TradeEvent(
            symbol=symbol,
            price=price,
            volume=volume,
            ts=start + timedelta(seconds=i * spacing_seconds),
        )
        for i, price in enumerate(prices)
    ]
