import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence

from strategy.models import StrategyConfig


logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Symbol -> strategies mapping for one account.

    The mapping is rebuilt off to the side and swapped in with a single
    assignment, so readers see either the old or the new mapping.
    """

    def __init__(
        self,
        account_id: str,
        ratio_units: str = 'percent',
        statuses: Sequence[str] = ('running', 'paused'),
    ):
        self.account_id = account_id
        self.ratio_units = ratio_units
        self.statuses = tuple(statuses)
        self._by_symbol: Dict[str, List[StrategyConfig]] = {}
        self.last_refresh_ts: Optional[float] = None
        self.last_error: Optional[str] = None

    async def refresh(self, store) -> bool:
        try:
            rows = await store.fetch_strategies(self.account_id, self.statuses)
        except Exception as exc:
            self.last_error = str(exc)
            logger.warning("Strategy refresh failed for account %s: %s", self.account_id, exc)
            return False
        self.replace(self.parse_rows(rows or []))
        self.last_refresh_ts = time.time()
        self.last_error = None
        return True

    def parse_rows(self, rows: Iterable[Dict]) -> List[StrategyConfig]:
        parsed: List[StrategyConfig] = []
        for row in rows:
            try:
                parsed.append(StrategyConfig.from_row(row, self.ratio_units))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed strategy row %s: %s", row.get('id'), exc)
        return parsed

    def replace(self, strategies: Iterable[StrategyConfig]) -> None:
        mapping: Dict[str, List[StrategyConfig]] = {}
        for strategy in strategies:
            mapping.setdefault(strategy.symbol, []).append(strategy)
        self._by_symbol = mapping

    def strategies_for(self, symbol: str) -> List[StrategyConfig]:
        return list(self._by_symbol.get(symbol, ()))

    def symbols(self) -> List[str]:
        return list(self._by_symbol)

    def running(self) -> List[StrategyConfig]:
        return [s for strategies in self._by_symbol.values() for s in strategies if s.is_running]

    def snapshot(self) -> Dict[str, List[Dict]]:
        return {symbol: [s.to_dict() for s in strategies] for symbol, strategies in self._by_symbol.items()}

    def __len__(self) -> int:
        return sum(len(strategies) for strategies in self._by_symbol.values())
