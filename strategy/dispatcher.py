import asyncio
import logging
import random
from typing import Optional, Set, Tuple

from api.metrics import metrics
from config import config
from monitoring.action_auditor import ActionAuditor
from strategy.models import Decision, DecisionKind, StrategyConfig
from strategy.transports.execution_endpoint import ExecutionResult, ExecutionTransport


logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Turn decisions into delayed calls to the trade-execution endpoint.

    Hedges wait for the reversal to confirm, closes wait a short random
    jitter, and re-entries wait for the close plus a cool-off. Scheduled
    actions are never cancelled once created.
    """

    def __init__(
        self,
        account_id: str,
        transport: ExecutionTransport,
        auditor: ActionAuditor,
        hedge_delay_s: Optional[float] = None,
        close_jitter_s: Optional[Tuple[float, float]] = None,
        reentry_delay_s: Optional[float] = None,
    ):
        dispatch_cfg = config.section('dispatch')
        self.account_id = account_id
        self.transport = transport
        self.auditor = auditor
        self.hedge_delay_s = float(
            hedge_delay_s if hedge_delay_s is not None else dispatch_cfg.get('hedge_delay_s', 5)
        )
        jitter = close_jitter_s if close_jitter_s is not None else dispatch_cfg.get('close_jitter_s', [0.5, 2.5])
        self.close_jitter_s = (float(jitter[0]), float(jitter[1]))
        self.reentry_delay_s = float(
            reentry_delay_s if reentry_delay_s is not None else dispatch_cfg.get('reentry_delay_s', 7)
        )
        self.pending: Set[asyncio.Task] = set()
        self._sleep = asyncio.sleep

    def close_delay(self) -> float:
        low, high = self.close_jitter_s
        return random.uniform(low, high)

    def dispatch(self, decision: Decision, strategy: StrategyConfig, symbol: str) -> Optional[asyncio.Task]:
        if decision.kind is DecisionKind.HEDGE:
            coro = self._run_hedge(decision, strategy, symbol)
        elif decision.kind is DecisionKind.TAKE_PROFIT:
            coro = self._run_take_profit(decision, strategy, symbol)
        elif decision.kind is DecisionKind.OPEN_INITIAL:
            coro = self._run_open_initial(decision, strategy, symbol)
        else:
            return None
        task = asyncio.create_task(self._guard(decision.kind.value, strategy, symbol, coro))
        self.pending.add(task)
        task.add_done_callback(self._on_done)
        metrics.update_pending_actions(self.account_id, len(self.pending))
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self.pending.discard(task)
        metrics.update_pending_actions(self.account_id, len(self.pending))

    async def drain(self) -> None:
        if self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)

    async def _guard(self, action: str, strategy: StrategyConfig, symbol: str, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            metrics.record_action(action, 'failed')
            logger.error(
                "Action %s failed for account %s strategy %s %s: %s",
                action,
                self.account_id,
                strategy.id,
                symbol,
                exc,
            )
            await self.auditor.error(
                strategy.id,
                f"Action failed: {action}",
                {'symbol': symbol, 'error': str(exc)},
            )

    async def _run_hedge(self, decision: Decision, strategy: StrategyConfig, symbol: str) -> None:
        await self._sleep(self.hedge_delay_s)
        await self.auditor.warning(
            strategy.id,
            'Loss threshold reached with adverse trend; opening hedge',
            {'symbol': symbol, 'hedgeSide': decision.side, 'size': decision.size, 'decision': decision.context},
        )
        result = await self.transport.place_order(
            self.account_id, strategy.id, symbol, decision.side, decision.size, strategy.margin_mode
        )
        await self._record_result('hedge', strategy, symbol, result)

    async def _run_take_profit(self, decision: Decision, strategy: StrategyConfig, symbol: str) -> None:
        await self._sleep(self.close_delay())
        await self.auditor.info(
            strategy.id,
            'Profit threshold reached; closing position at market',
            {'symbol': symbol, 'posSide': decision.pos_side, 'decision': decision.context},
        )
        result = await self.transport.close_position(
            self.account_id, symbol, decision.pos_side, strategy.margin_mode
        )
        await self._record_result('take_profit', strategy, symbol, result)
        if not result.ok:
            return

        size = decision.reentry_size or strategy.entry_size
        if not size:
            logger.info("Skipping re-entry for %s %s: no size available", strategy.id, symbol)
            return
        await self._sleep(self.reentry_delay_s)
        await self.auditor.info(
            strategy.id,
            'Re-entering after take-profit',
            {'symbol': symbol, 'side': decision.reentry_side, 'size': size},
        )
        result = await self.transport.place_order(
            self.account_id, strategy.id, symbol, decision.reentry_side, size, strategy.margin_mode
        )
        await self._record_result('reentry', strategy, symbol, result)

    async def _run_open_initial(self, decision: Decision, strategy: StrategyConfig, symbol: str) -> None:
        await self._sleep(self.close_delay())
        await self.auditor.info(
            strategy.id,
            'No open position; opening initial position at market',
            {'symbol': symbol, 'side': decision.side, 'size': decision.size},
        )
        result = await self.transport.place_order(
            self.account_id, strategy.id, symbol, decision.side, decision.size, strategy.margin_mode
        )
        await self._record_result('open_initial', strategy, symbol, result)

    async def _record_result(self, action: str, strategy: StrategyConfig, symbol: str, result: ExecutionResult) -> None:
        outcome = 'ok' if result.ok else 'rejected'
        metrics.record_action(action, outcome)
        if result.ok:
            logger.info("%s executed for %s %s", action, strategy.id, symbol)
            await self.auditor.info(strategy.id, f"Action executed: {action}", {'symbol': symbol, 'result': result.as_dict()})
        else:
            logger.warning("%s rejected for %s %s: %s", action, strategy.id, symbol, result.error)
            await self.auditor.error(strategy.id, f"Action rejected: {action}", {'symbol': symbol, 'result': result.as_dict()})
