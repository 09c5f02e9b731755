import logging
from typing import Any, Dict, Optional

from strategy.instruments import try_symbol
from strategy.models import CandleDirection


logger = logging.getLogger(__name__)


class MarketStateCache:
    """Latest candle direction per symbol, overwritten on every candle."""

    def __init__(self):
        self._directions: Dict[str, CandleDirection] = {}

    def on_candle_message(self, frame: Dict[str, Any]) -> Optional[CandleDirection]:
        if not isinstance(frame, dict):
            return None
        arg = frame.get('arg') or {}
        channel = str(arg.get('channel') or '')
        if not channel.startswith('candle'):
            return None
        symbol = try_symbol(arg.get('instId') or '')
        if symbol is None:
            return None
        rows = frame.get('data') or []
        if not rows:
            return None
        candle = rows[0]
        if not isinstance(candle, (list, tuple)) or len(candle) < 5:
            return None
        try:
            open_price = float(candle[1])
            close_price = float(candle[4])
        except (TypeError, ValueError):
            return None
        direction = CandleDirection.from_candle(open_price, close_price)
        self._directions[symbol] = direction
        return direction

    def set_direction(self, symbol: str, direction: CandleDirection) -> None:
        self._directions[symbol] = direction

    def get(self, symbol: str) -> Optional[CandleDirection]:
        return self._directions.get(symbol)

    def clear(self) -> None:
        self._directions = {}

    def snapshot(self) -> Dict[str, str]:
        return {symbol: direction.value for symbol, direction in self._directions.items()}

    def __len__(self) -> int:
        return len(self._directions)
