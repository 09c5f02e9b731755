from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from strategy.instruments import inst_id_to_symbol


class StrategyStatus(Enum):
    RUNNING = 'running'
    PAUSED = 'paused'


class CandleDirection(Enum):
    UP = 'up'
    DOWN = 'down'

    @classmethod
    def from_candle(cls, open_price: float, close_price: float) -> 'CandleDirection':
        return cls.UP if close_price >= open_price else cls.DOWN

    @classmethod
    def parse(cls, value: Any) -> Optional['CandleDirection']:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class DecisionKind(Enum):
    NONE = 'none'
    HEDGE = 'hedge'
    TAKE_PROFIT = 'take_profit'
    OPEN_INITIAL = 'open_initial'


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class StrategyConfig:
    """Read-only copy of one strategy row, ratios held as fractions."""

    id: str
    symbol: str
    status: StrategyStatus
    profit_ratio: float
    loss_stop_ratio: float
    margin_mode: str = 'isolated'
    range_low: Optional[float] = None
    range_high: Optional[float] = None
    entry_size: Optional[float] = None
    auto_restart_on_price_return: bool = False
    signal_type: Optional[str] = None
    account_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status is StrategyStatus.RUNNING

    @property
    def has_range(self) -> bool:
        return self.range_low is not None or self.range_high is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any], ratio_units: str = 'percent') -> 'StrategyConfig':
        divisor = 100.0 if ratio_units == 'percent' else 1.0
        profit = _as_float(row.get('profit_ratio')) or 0.0
        loss = _as_float(row.get('loss_stop_ratio')) or 0.0
        return cls(
            id=str(row['id']),
            symbol=row['symbol'],
            status=StrategyStatus(row.get('status') or 'paused'),
            profit_ratio=profit / divisor,
            loss_stop_ratio=abs(loss) / divisor,
            margin_mode=row.get('margin_mode') or 'isolated',
            range_low=_as_float(row.get('range_low')),
            range_high=_as_float(row.get('range_high')),
            entry_size=_as_float(row.get('entry_size')),
            auto_restart_on_price_return=bool(row.get('auto_restart_on_price_return')),
            signal_type=row.get('signal_type'),
            account_id=row.get('api_credential_id'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'status': self.status.value,
            'profit_ratio': self.profit_ratio,
            'loss_stop_ratio': self.loss_stop_ratio,
            'margin_mode': self.margin_mode,
            'range_low': self.range_low,
            'range_high': self.range_high,
            'entry_size': self.entry_size,
            'auto_restart_on_price_return': self.auto_restart_on_price_return,
        }


@dataclass
class PositionSnapshot:
    inst_id: str
    symbol: str
    pos_side: str
    size: float
    upl_ratio: float

    @classmethod
    def from_feed_row(cls, row: Dict[str, Any]) -> Optional['PositionSnapshot']:
        """Build a snapshot from a positions channel row (or REST position row).

        Returns None when the instrument id is unknown or the side cannot be
        resolved. An unparsable size is treated as a flat position.
        """
        inst_id = row.get('instId')
        if not inst_id:
            return None
        try:
            symbol = inst_id_to_symbol(inst_id)
        except ValueError:
            return None
        raw_pos = _as_float(row.get('pos')) or 0.0
        pos_side = (row.get('posSide') or '').lower()
        if pos_side == 'net':
            pos_side = 'long' if raw_pos >= 0 else 'short'
        if pos_side not in ('long', 'short'):
            return None
        return cls(
            inst_id=inst_id,
            symbol=symbol,
            pos_side=pos_side,
            size=abs(raw_pos),
            upl_ratio=_as_float(row.get('uplRatio')) or 0.0,
        )

    @classmethod
    def flat(cls, inst_id: str, symbol: str, pos_side: str = 'long') -> 'PositionSnapshot':
        return cls(inst_id=inst_id, symbol=symbol, pos_side=pos_side, size=0.0, upl_ratio=0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inst_id': self.inst_id,
            'symbol': self.symbol,
            'pos_side': self.pos_side,
            'size': self.size,
            'upl_ratio': self.upl_ratio,
        }


@dataclass
class Decision:
    kind: DecisionKind
    reason: str = ''
    side: Optional[str] = None
    size: Optional[float] = None
    pos_side: Optional[str] = None
    reentry_side: Optional[str] = None
    reentry_size: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_action(self) -> bool:
        return self.kind is not DecisionKind.NONE

    @classmethod
    def none(cls, reason: str, **context: Any) -> 'Decision':
        return cls(DecisionKind.NONE, reason=reason, context=context)

    @classmethod
    def hedge(cls, side: str, size: float, **context: Any) -> 'Decision':
        return cls(DecisionKind.HEDGE, reason='loss_threshold', side=side, size=size, context=context)

    @classmethod
    def take_profit(cls, pos_side: str, reentry_side: str, reentry_size: Optional[float], **context: Any) -> 'Decision':
        return cls(
            DecisionKind.TAKE_PROFIT,
            reason='profit_threshold',
            pos_side=pos_side,
            reentry_side=reentry_side,
            reentry_size=reentry_size,
            context=context,
        )

    @classmethod
    def open_initial(cls, side: str, size: float, **context: Any) -> 'Decision':
        return cls(DecisionKind.OPEN_INITIAL, reason='flat_bootstrap', side=side, size=size, context=context)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'reason': self.reason,
            'side': self.side,
            'size': self.size,
            'pos_side': self.pos_side,
            'reentry_side': self.reentry_side,
            'reentry_size': self.reentry_size,
            'context': self.context,
        }
