import sys

sys.path.insert(0, '.')

from strategy.evaluator import DebounceGuard, EvaluationMode, TriggerEvaluator, in_range, side_from_direction
from strategy.models import CandleDirection, DecisionKind, PositionSnapshot, StrategyConfig, StrategyStatus


NOW = 1_700_000_000_000


def make_strategy(**overrides) -> StrategyConfig:
    params = dict(
        id='S-1',
        symbol='BTC/USDT:USDT',
        status=StrategyStatus.RUNNING,
        profit_ratio=0.05,
        loss_stop_ratio=0.10,
    )
    params.update(overrides)
    return StrategyConfig(**params)


def make_position(pos_side='long', size=1.0, upl_ratio=0.0) -> PositionSnapshot:
    return PositionSnapshot('BTC-USDT-SWAP', 'BTC/USDT:USDT', pos_side, size, upl_ratio)


def test_flat_position_never_triggers_live():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    decision = evaluator.evaluate(make_position(size=0, upl_ratio=0.5), make_strategy(), CandleDirection.UP, NOW)
    assert decision.kind is DecisionKind.NONE
    assert decision.reason == 'flat'


def test_paused_strategy_never_triggers():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    strategy = make_strategy(status=StrategyStatus.PAUSED)
    decision = evaluator.evaluate(make_position(upl_ratio=0.2), strategy, CandleDirection.UP, NOW)
    assert not decision.is_action
    assert decision.reason == 'paused'


def test_take_profit_reenters_with_candle_direction():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    position = make_position(pos_side='long', size=2.0, upl_ratio=0.06)

    up = evaluator.evaluate(position, make_strategy(), CandleDirection.UP, NOW)
    assert up.kind is DecisionKind.TAKE_PROFIT
    assert up.pos_side == 'long'
    assert up.reentry_side == 'buy'
    assert up.reentry_size == 2.0

    down = evaluator.evaluate(position, make_strategy(), CandleDirection.DOWN, NOW)
    assert down.reentry_side == 'sell'

    unknown = evaluator.evaluate(position, make_strategy(), None, NOW)
    assert unknown.kind is DecisionKind.TAKE_PROFIT
    assert unknown.reentry_side == 'sell'


def test_hedge_requires_adverse_direction():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    long_losing = make_position(pos_side='long', size=3.0, upl_ratio=-0.12)

    hedge = evaluator.evaluate(long_losing, make_strategy(), CandleDirection.DOWN, NOW)
    assert hedge.kind is DecisionKind.HEDGE
    assert hedge.side == 'sell'
    assert hedge.size == 3.0

    assert evaluator.evaluate(long_losing, make_strategy(), CandleDirection.UP, NOW).reason == 'below_thresholds'
    assert evaluator.evaluate(long_losing, make_strategy(), None, NOW).reason == 'below_thresholds'

    short_losing = make_position(pos_side='short', size=1.0, upl_ratio=-0.2)
    short_hedge = evaluator.evaluate(short_losing, make_strategy(), CandleDirection.UP, NOW)
    assert short_hedge.kind is DecisionKind.HEDGE
    assert short_hedge.side == 'buy'


def test_loss_boundary_is_inclusive():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    position = make_position(pos_side='long', upl_ratio=-0.10)
    decision = evaluator.evaluate(position, make_strategy(), CandleDirection.DOWN, NOW)
    assert decision.kind is DecisionKind.HEDGE


def test_zero_profit_ratio_disables_take_profit():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    strategy = make_strategy(profit_ratio=0.0)
    decision = evaluator.evaluate(make_position(upl_ratio=0.0), strategy, CandleDirection.UP, NOW)
    assert decision.reason == 'below_thresholds'


def test_debounce_window_suppresses_then_allows():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    position = make_position(upl_ratio=0.06)
    assert evaluator.evaluate(position, make_strategy(), CandleDirection.UP, NOW, last_action=NOW - 500).reason == 'debounced'
    assert evaluator.evaluate(position, make_strategy(), CandleDirection.UP, NOW, last_action=NOW - 2000).is_action


def test_debounce_guard_keyed_by_instrument():
    guard = DebounceGuard()
    guard.mark('BTC-USDT-SWAP', NOW)
    assert guard.last('BTC-USDT-SWAP') == NOW
    assert guard.last('ETH-USDT-SWAP') is None
    guard.clear()
    assert guard.last('BTC-USDT-SWAP') is None


def test_tick_range_gate_blocks_out_of_range():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    strategy = make_strategy(range_low=100.0, range_high=200.0)
    position = make_position(upl_ratio=0.06)

    blocked = evaluator.evaluate(position, strategy, CandleDirection.UP, NOW, mode=EvaluationMode.TICK, price=250.0)
    assert blocked.reason == 'paused: out of range'
    missing = evaluator.evaluate(position, strategy, CandleDirection.UP, NOW, mode=EvaluationMode.TICK, price=None)
    assert missing.reason == 'paused: out of range'
    allowed = evaluator.evaluate(position, strategy, CandleDirection.UP, NOW, mode=EvaluationMode.TICK, price=150.0)
    assert allowed.kind is DecisionKind.TAKE_PROFIT
    # live mode ignores the range
    live = evaluator.evaluate(position, strategy, CandleDirection.UP, NOW, price=250.0)
    assert live.kind is DecisionKind.TAKE_PROFIT


def test_open_bound_range():
    strategy = make_strategy(range_low=100.0)
    assert in_range(strategy, 1_000_000.0)
    assert not in_range(strategy, 99.0)
    assert in_range(make_strategy(), None)


def test_tick_bootstrap_needs_entry_size():
    evaluator = TriggerEvaluator(debounce_ms=2000)
    flat = make_position(size=0)

    opened = evaluator.evaluate(flat, make_strategy(entry_size=0.5), CandleDirection.DOWN, NOW, mode=EvaluationMode.TICK)
    assert opened.kind is DecisionKind.OPEN_INITIAL
    assert opened.side == 'sell'
    assert opened.size == 0.5

    skipped = evaluator.evaluate(flat, make_strategy(), CandleDirection.DOWN, NOW, mode=EvaluationMode.TICK)
    assert skipped.reason == 'flat_without_entry_size'


def test_side_from_direction_defaults_to_sell():
    assert side_from_direction(CandleDirection.UP) == 'buy'
    assert side_from_direction(CandleDirection.DOWN) == 'sell'
    assert side_from_direction(None) == 'sell'
