import time
from enum import Enum
from typing import Dict, Optional

from config import config
from strategy.models import CandleDirection, Decision, PositionSnapshot, StrategyConfig


class EvaluationMode(Enum):
    LIVE = 'live'
    TICK = 'tick'


def now_ms() -> int:
    return int(time.time() * 1000)


def opposite_side(pos_side: str) -> str:
    return 'sell' if pos_side == 'long' else 'buy'


def side_from_direction(direction: Optional[CandleDirection]) -> str:
    return 'buy' if direction is CandleDirection.UP else 'sell'


def is_adverse(pos_side: str, direction: Optional[CandleDirection]) -> bool:
    if direction is None:
        return False
    if pos_side == 'long':
        return direction is CandleDirection.DOWN
    return direction is CandleDirection.UP


def in_range(strategy: StrategyConfig, price: Optional[float]) -> bool:
    if not strategy.has_range:
        return True
    if price is None:
        return False
    if strategy.range_low is not None and price < strategy.range_low:
        return False
    if strategy.range_high is not None and price > strategy.range_high:
        return False
    return True


class DebounceGuard:
    """Last decision timestamp per instrument id."""

    def __init__(self):
        self._last: Dict[str, int] = {}

    def last(self, inst_id: str) -> Optional[int]:
        return self._last.get(inst_id)

    def mark(self, inst_id: str, ts_ms: int) -> None:
        self._last[inst_id] = ts_ms

    def clear(self) -> None:
        self._last = {}


class TriggerEvaluator:
    """Decide what, if anything, to do about one (position, strategy) pair.

    ``evaluate`` never awaits and never mutates state; callers own the
    debounce guard and must mark it as soon as a decision is an action.
    """

    def __init__(self, debounce_ms: Optional[int] = None):
        if debounce_ms is None:
            debounce_ms = int(config.section('trigger').get('debounce_ms', 2000))
        self.debounce_ms = debounce_ms

    def evaluate(
        self,
        position: PositionSnapshot,
        strategy: StrategyConfig,
        direction: Optional[CandleDirection],
        now: int,
        last_action: Optional[int] = None,
        mode: EvaluationMode = EvaluationMode.LIVE,
        price: Optional[float] = None,
    ) -> Decision:
        context = {
            'strategy_id': strategy.id,
            'inst_id': position.inst_id,
            'symbol': position.symbol,
            'pos_side': position.pos_side,
            'size': position.size,
            'upl_ratio': position.upl_ratio,
            'profit_ratio': strategy.profit_ratio,
            'loss_stop_ratio': strategy.loss_stop_ratio,
            'direction': direction.value if direction else None,
            'mode': mode.value,
        }

        if not strategy.is_running:
            return Decision.none('paused', **context)
        if mode is EvaluationMode.LIVE and position.size <= 0:
            return Decision.none('flat', **context)

        if last_action is not None and now - last_action < self.debounce_ms:
            return Decision.none('debounced', since_last_ms=now - last_action, **context)

        if mode is EvaluationMode.TICK and strategy.has_range:
            context.update(price=price, range_low=strategy.range_low, range_high=strategy.range_high)
            if not in_range(strategy, price):
                return Decision.none('paused: out of range', **context)

        if position.size > 0:
            loss_breached = (
                strategy.loss_stop_ratio > 0
                and position.upl_ratio <= -strategy.loss_stop_ratio
            )
            context['loss_breached'] = loss_breached
            if loss_breached and is_adverse(position.pos_side, direction):
                return Decision.hedge(opposite_side(position.pos_side), position.size, **context)

            # a strategy without a profit target never closes on profit
            if strategy.profit_ratio > 0 and position.upl_ratio >= strategy.profit_ratio:
                reentry_size = position.size or strategy.entry_size
                return Decision.take_profit(
                    position.pos_side,
                    side_from_direction(direction),
                    reentry_size,
                    **context,
                )
            return Decision.none('below_thresholds', **context)

        if mode is EvaluationMode.TICK:
            if strategy.entry_size and strategy.entry_size > 0:
                return Decision.open_initial(side_from_direction(direction), strategy.entry_size, **context)
            return Decision.none('flat_without_entry_size', **context)

        return Decision.none('flat', **context)
