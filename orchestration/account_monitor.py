import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

from api.metrics import metrics
from config import config
from ingest.okx_rest import OKXRESTClient
from ingest.store_client import AccountCredentials, StoreClient
from ingest.websocket_client import FeedConnectionManager
from monitoring.action_auditor import ActionAuditor
from monitoring.async_utils import cancel_and_wait
from strategy.dispatcher import ActionDispatcher
from strategy.evaluator import DebounceGuard, EvaluationMode, TriggerEvaluator, now_ms
from strategy.instruments import symbol_to_inst_id, try_symbol
from strategy.market_state import MarketStateCache
from strategy.models import CandleDirection, Decision, PositionSnapshot, StrategyConfig
from strategy.registry import StrategyRegistry
from strategy.transports.execution_endpoint import ExecutionTransport


logger = logging.getLogger(__name__)


class AccountMonitor:
    """Owns every piece of live state for one account.

    Frames from the feeds are handled one at a time: evaluation is
    synchronous, and the only awaits on the message path come after the
    debounce entry is set and the action task is scheduled.
    """

    def __init__(
        self,
        account_id: str,
        store: StoreClient,
        transport: ExecutionTransport,
        okx_rest: Optional[OKXRESTClient] = None,
        feeds: Optional[FeedConnectionManager] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        auditor: Optional[ActionAuditor] = None,
    ):
        store_cfg = config.section('store')
        registry_cfg = config.section('registry')
        self.account_id = account_id
        self.store = store
        self.okx_rest = okx_rest
        self.refresh_interval = float(registry_cfg.get('refresh_interval_s', 60))

        self.credentials: Optional[AccountCredentials] = None
        self.registry = StrategyRegistry(
            account_id,
            ratio_units=store_cfg.get('ratio_units', 'percent'),
            statuses=registry_cfg.get('statuses', ('running', 'paused')),
        )
        self.market_state = MarketStateCache()
        self.debounce = DebounceGuard()
        self.evaluator = TriggerEvaluator()
        self.auditor = auditor or ActionAuditor(
            account_id,
            sink=store,
            log_path=config.section('monitoring').get('audit_log'),
        )
        self.dispatcher = dispatcher or ActionDispatcher(account_id, transport, self.auditor)
        self.feeds = feeds or FeedConnectionManager(account_id)
        self.feeds.register_handler('position', self.handle_position_frame)
        self.feeds.register_handler('candle', self.handle_candle_frame)

        self.running = False
        self.started_at: Optional[float] = None
        self._refresh_task: Optional[asyncio.Task] = None

    async def start(self):
        if self.running:
            return
        self.running = True
        self.started_at = time.time()
        await self._load_credentials()
        await self.refresh()
        if self.credentials is not None:
            await self.feeds.connect_private()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info("Account %s monitoring started", self.account_id)

    async def stop(self):
        self.running = False
        await cancel_and_wait(self._refresh_task)
        self._refresh_task = None
        await self.feeds.stop()
        logger.info(
            "Account %s monitoring stopped (%s actions still in flight)",
            self.account_id,
            len(self.dispatcher.pending),
        )

    async def _load_credentials(self):
        try:
            self.credentials = await self.store.fetch_credentials(self.account_id)
        except Exception as exc:
            logger.error("Credential lookup failed for account %s: %s", self.account_id, exc)
            self.credentials = None
        if self.credentials is None:
            logger.error("No usable credentials for account %s; feeds will not connect", self.account_id)
            await self.auditor.error(None, 'Missing exchange credentials', {'account_id': self.account_id})
        self.feeds.credentials = self.credentials

    async def refresh(self) -> bool:
        ok = await self.registry.refresh(self.store)
        metrics.record_registry_refresh(ok)
        metrics.update_registry_size(self.account_id, len(self.registry))
        if self.credentials is not None:
            await self.feeds.subscribe_symbols(self.registry.symbols())
        return ok

    async def _refresh_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.refresh_interval)
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Registry refresh loop error for account %s", self.account_id)

    async def handle_candle_frame(self, frame: Dict):
        direction = self.market_state.on_candle_message(frame)
        if direction is not None:
            symbol = try_symbol((frame.get('arg') or {}).get('instId') or '')
            metrics.update_candle_direction(symbol, direction.value)

    async def handle_position_frame(self, frame: Dict):
        started = time.perf_counter()
        for row in frame.get('data') or []:
            if not isinstance(row, dict):
                continue
            position = PositionSnapshot.from_feed_row(row)
            if position is None:
                continue
            self.process_position(position)
        metrics.record_evaluation_latency(time.perf_counter() - started)

    def process_position(
        self,
        position: PositionSnapshot,
        mode: EvaluationMode = EvaluationMode.LIVE,
        strategies: Optional[Iterable[StrategyConfig]] = None,
        price: Optional[float] = None,
        direction: Optional[CandleDirection] = None,
    ) -> List[Decision]:
        if strategies is None:
            strategies = self.registry.strategies_for(position.symbol)
        if direction is None:
            direction = self.market_state.get(position.symbol)
        decisions: List[Decision] = []
        for strategy in strategies:
            now = now_ms()
            decision = self.evaluator.evaluate(
                position,
                strategy,
                direction,
                now,
                last_action=self.debounce.last(position.inst_id),
                mode=mode,
                price=price,
            )
            metrics.record_decision(decision.kind.value)
            decisions.append(decision)
            if not decision.is_action:
                logger.debug(
                    "No trigger for %s/%s (%s): %s",
                    self.account_id,
                    strategy.id,
                    decision.reason,
                    decision.context,
                )
                continue
            self.debounce.mark(position.inst_id, now)
            logger.info(
                "Decision %s for account %s strategy %s %s",
                decision.kind.value,
                self.account_id,
                strategy.id,
                position.symbol,
            )
            self.dispatcher.dispatch(decision, strategy, position.symbol)
        return decisions

    async def handle_forwarded_event(self, event: Dict[str, Any]) -> List[Decision]:
        symbol = event.get('symbol')
        if not symbol:
            return []
        try:
            inst_id = symbol_to_inst_id(symbol)
        except ValueError:
            logger.warning("Forwarded event with unsupported symbol %s", symbol)
            return []
        if event.get('candleDir') is not None:
            direction = CandleDirection.parse(event.get('candleDir'))
            if direction is not None:
                self.market_state.set_direction(symbol, direction)
                metrics.update_candle_direction(symbol, direction.value)
            return []
        position = PositionSnapshot.from_feed_row({
            'instId': inst_id,
            'posSide': event.get('posSide'),
            'pos': event.get('size'),
            'uplRatio': event.get('uplRatio'),
        })
        if position is None:
            return []
        if self.registry.last_refresh_ts is None:
            await self.refresh()
        return self.process_position(position)

    async def run_tick(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Poll-driven pass: fetch each running strategy's position and evaluate."""
        if self.okx_rest is None:
            raise RuntimeError("Tick evaluation needs a venue REST client")
        if self.credentials is None:
            await self._load_credentials()
        if self.credentials is None:
            return {'processed': 0, 'actions': 0, 'error': 'missing credentials'}
        wanted = sorted(set(symbols or ()))
        if wanted:
            try:
                rows = await self.store.fetch_strategies(self.account_id, ('running',), symbols=wanted)
            except Exception as exc:
                logger.warning("Tick strategy lookup failed for %s: %s", self.account_id, exc)
                return {'processed': 0, 'actions': 0, 'error': 'strategy lookup failed'}
            strategies = [s for s in self.registry.parse_rows(rows) if s.is_running]
        else:
            if not len(self.registry):
                await self.refresh()
            strategies = self.registry.running()

        processed = 0
        actions = 0
        for strategy in strategies:
            processed += 1
            try:
                decisions = await self._tick_strategy(strategy)
            except Exception as exc:
                logger.warning("Tick failed for %s/%s: %s", self.account_id, strategy.id, exc)
                await self.auditor.error(strategy.id, 'Tick evaluation failed', {'error': str(exc)})
                continue
            actions += sum(1 for d in decisions if d.is_action)
        return {'processed': processed, 'actions': actions}

    async def _tick_strategy(self, strategy: StrategyConfig) -> List[Decision]:
        inst_id = symbol_to_inst_id(strategy.symbol)
        direction = self.market_state.get(strategy.symbol)
        if direction is None:
            direction = await self.okx_rest.fetch_candle_direction(inst_id)
            if direction is not None:
                self.market_state.set_direction(strategy.symbol, direction)
        price = None
        if strategy.has_range:
            price = await self.okx_rest.fetch_last_price(inst_id)

        rows = await self.okx_rest.fetch_positions(self.credentials, inst_id)
        positions = [p for p in (PositionSnapshot.from_feed_row(r) for r in rows) if p is not None]
        open_positions = [p for p in positions if p.size > 0]
        if not open_positions:
            open_positions = [PositionSnapshot.flat(inst_id, strategy.symbol)]

        decisions: List[Decision] = []
        for position in open_positions:
            decisions.extend(
                self.process_position(
                    position,
                    mode=EvaluationMode.TICK,
                    strategies=[strategy],
                    price=price,
                    direction=direction,
                )
            )
        return decisions

    def status(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'running': self.running,
            'started_at': self.started_at,
            'has_credentials': self.credentials is not None,
            'feeds': self.feeds.status(),
            'strategies': self.registry.snapshot(),
            'last_refresh_ts': self.registry.last_refresh_ts,
            'last_refresh_error': self.registry.last_error,
            'candle_directions': self.market_state.snapshot(),
            'pending_actions': len(self.dispatcher.pending),
        }
