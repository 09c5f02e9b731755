import asyncio
import sys

sys.path.insert(0, '.')

from monitoring.action_auditor import ActionAuditor
from orchestration.account_monitor import AccountMonitor
from strategy.dispatcher import ActionDispatcher
from strategy.models import CandleDirection, DecisionKind
from tests.fakes import FakeFeeds, FakeStore, FakeTransport, RecordingSleep, credentials, strategy_row


class DummyOKXRest:
    def __init__(self, positions=None, direction=CandleDirection.UP, price=150.0):
        self.positions = positions or []
        self.direction = direction
        self.price = price
        self.calls = []

    async def fetch_positions(self, creds, inst_id):
        self.calls.append(('positions', inst_id))
        return self.positions

    async def fetch_candle_direction(self, inst_id):
        self.calls.append(('candle', inst_id))
        return self.direction

    async def fetch_last_price(self, inst_id):
        self.calls.append(('price', inst_id))
        return self.price


def make_monitor(store, transport=None, okx_rest=None):
    transport = transport or FakeTransport()
    auditor = ActionAuditor('ACC-1', sink=store)
    dispatcher = ActionDispatcher('ACC-1', transport, auditor, hedge_delay_s=5, close_jitter_s=(0.5, 2.5), reentry_delay_s=7)
    dispatcher._sleep = RecordingSleep()
    feeds = FakeFeeds()
    monitor = AccountMonitor('ACC-1', store, transport, okx_rest=okx_rest, feeds=feeds,
                             dispatcher=dispatcher, auditor=auditor)
    return monitor, transport, feeds


def candle(open_price, close_price, inst_id='BTC-USDT-SWAP'):
    return {'arg': {'channel': 'candle1H', 'instId': inst_id},
            'data': [['1700000000000', str(open_price), '0', '0', str(close_price), '1']]}


def positions(pos_side='long', pos='1', upl='0.06', inst_id='BTC-USDT-SWAP'):
    return {'arg': {'channel': 'positions', 'instType': 'SWAP'},
            'data': [{'instId': inst_id, 'posSide': pos_side, 'pos': pos, 'uplRatio': upl}]}


def test_take_profit_then_reentry_end_to_end():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    monitor, transport, feeds = make_monitor(store)

    async def run():
        await monitor.start()
        await feeds.handlers['candle'](candle(100, 110))
        await feeds.handlers['position'](positions(upl='0.06'))
        # second update inside the debounce window
        await feeds.handlers['position'](positions(upl='0.07'))
        await monitor.dispatcher.drain()
        await monitor.stop()

    asyncio.run(run())

    assert feeds.private_connects == 1
    assert feeds.subscribed == ['BTC/USDT:USDT']
    assert feeds.stopped
    assert [c['action'] for c in transport.calls] == ['closePosition', 'placeOrder']
    assert transport.calls[0]['posSide'] == 'long'
    assert transport.calls[1]['side'] == 'buy'
    assert transport.calls[1]['size'] == 1.0


def test_hedge_on_adverse_trend():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    monitor, transport, feeds = make_monitor(store)

    async def run():
        await monitor.refresh()
        await feeds.handlers['candle'](candle(110, 100))
        await feeds.handlers['position'](positions(pos='2', upl='-0.12'))
        await monitor.dispatcher.drain()

    asyncio.run(run())
    assert transport.calls == [{'action': 'placeOrder', 'symbol': 'BTC/USDT:USDT', 'side': 'sell', 'size': 2.0,
                                'marginMode': 'isolated', 'credentialId': 'ACC-1'}]
    assert monitor.dispatcher._sleep.delays == [5]


def test_no_strategies_means_no_subscriptions_or_actions():
    store = FakeStore(rows=[], credentials=credentials())
    monitor, transport, feeds = make_monitor(store)

    async def run():
        await monitor.start()
        await feeds.handlers['position'](positions(upl='0.5'))
        await monitor.dispatcher.drain()
        await monitor.stop()

    asyncio.run(run())
    assert feeds.subscribed == []
    assert transport.calls == []


def test_missing_credentials_keeps_feeds_down():
    store = FakeStore(rows=[strategy_row()], credentials=None)
    monitor, _, feeds = make_monitor(store)

    async def run():
        await monitor.start()
        await monitor.stop()

    asyncio.run(run())
    assert feeds.private_connects == 0
    assert feeds.subscribed == []
    assert store.logs[0]['message'] == 'Missing exchange credentials'
    assert store.logs[0]['level'] == 'error'


def test_unknown_instrument_and_unconfigured_symbol_ignored():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    monitor, transport, feeds = make_monitor(store)

    async def run():
        await monitor.refresh()
        await feeds.handlers['position'](positions(inst_id='ETH-USDT-SWAP', upl='0.5'))
        await feeds.handlers['position'](positions(inst_id='BTC-USDT', upl='0.5'))
        await monitor.dispatcher.drain()

    asyncio.run(run())
    assert transport.calls == []


def test_forwarded_events():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    monitor, transport, _ = make_monitor(store)

    async def run():
        await monitor.refresh()
        assert await monitor.handle_forwarded_event({'symbol': 'BTC/USDT:USDT', 'candleDir': 'down'}) == []
        decisions = await monitor.handle_forwarded_event(
            {'symbol': 'BTC/USDT:USDT', 'posSide': 'short', 'size': 1, 'uplRatio': 0.08}
        )
        await monitor.dispatcher.drain()
        return decisions

    decisions = asyncio.run(run())
    assert monitor.market_state.get('BTC/USDT:USDT') is CandleDirection.DOWN
    assert [d.kind for d in decisions] == [DecisionKind.TAKE_PROFIT]
    assert [c['action'] for c in transport.calls] == ['closePosition', 'placeOrder']
    assert transport.calls[1]['side'] == 'sell'


def test_tick_bootstraps_flat_strategy():
    store = FakeStore(rows=[strategy_row(entry_size=0.5)], credentials=credentials())
    okx_rest = DummyOKXRest(positions=[], direction=CandleDirection.UP)
    monitor, transport, _ = make_monitor(store, okx_rest=okx_rest)

    async def run():
        result = await monitor.run_tick()
        await monitor.dispatcher.drain()
        return result

    result = asyncio.run(run())
    assert result == {'processed': 1, 'actions': 1}
    assert transport.calls[0]['action'] == 'placeOrder'
    assert transport.calls[0]['side'] == 'buy'
    assert transport.calls[0]['size'] == 0.5
    assert ('price', 'BTC-USDT-SWAP') not in okx_rest.calls


def test_tick_respects_range_gate():
    store = FakeStore(rows=[strategy_row(range_low=100, range_high=120)], credentials=credentials())
    okx_rest = DummyOKXRest(
        positions=[{'instId': 'BTC-USDT-SWAP', 'posSide': 'long', 'pos': '1', 'uplRatio': '0.2'}],
        price=150.0,
    )
    monitor, transport, _ = make_monitor(store, okx_rest=okx_rest)

    async def run():
        result = await monitor.run_tick(['BTC/USDT:USDT'])
        await monitor.dispatcher.drain()
        return result

    result = asyncio.run(run())
    assert result == {'processed': 1, 'actions': 0}
    assert transport.calls == []


def test_tick_without_credentials_reports_error():
    store = FakeStore(rows=[strategy_row()], credentials=None)
    monitor, _, _ = make_monitor(store, okx_rest=DummyOKXRest())
    result = asyncio.run(monitor.run_tick())
    assert result['error'] == 'missing credentials'


def test_process_position_marks_debounce_per_instrument():
    store = FakeStore(rows=[strategy_row(), strategy_row(id='S-2')], credentials=credentials())
    monitor, transport, _ = make_monitor(store)

    async def run():
        await monitor.refresh()
        monitor.market_state.set_direction('BTC/USDT:USDT', CandleDirection.UP)
        assert len(monitor.registry) == 2
        await monitor.handle_forwarded_event({'symbol': 'BTC/USDT:USDT', 'posSide': 'long', 'size': 1, 'uplRatio': 0.1})
        await monitor.dispatcher.drain()

    asyncio.run(run())
    # the second strategy on the same instrument falls inside the debounce window
    assert [c['action'] for c in transport.calls] == ['closePosition', 'placeOrder']
    assert monitor.debounce.last('BTC-USDT-SWAP') is not None


def test_tick_symbol_filter_queries_store():
    store = FakeStore(rows=[
        strategy_row(id='S-1'),
        strategy_row(id='S-2', symbol='ETH/USDT:USDT'),
    ], credentials=credentials())
    okx_rest = DummyOKXRest(positions=[])
    monitor, _, _ = make_monitor(store, okx_rest=okx_rest)

    result = asyncio.run(monitor.run_tick(['ETH/USDT:USDT']))

    assert result == {'processed': 1, 'actions': 0}
    assert store.symbol_filters == [['ETH/USDT:USDT']]
    assert okx_rest.calls[-1] == ('positions', 'ETH-USDT-SWAP')
    # the account registry is left untouched by a filtered tick
    assert len(monitor.registry) == 0


def test_tick_symbol_lookup_failure_reported():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    store.fail_strategies = True
    monitor, _, _ = make_monitor(store, okx_rest=DummyOKXRest())
    result = asyncio.run(monitor.run_tick(['BTC/USDT:USDT']))
    assert result['error'] == 'strategy lookup failed'


def test_forwarded_event_loads_registry_for_unstarted_account():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    monitor, transport, _ = make_monitor(store)

    async def run():
        decisions = await monitor.handle_forwarded_event(
            {'symbol': 'BTC/USDT:USDT', 'posSide': 'long', 'size': 2, 'uplRatio': 0.5}
        )
        await monitor.dispatcher.drain()
        return decisions

    decisions = asyncio.run(run())
    assert [d.kind for d in decisions] == [DecisionKind.TAKE_PROFIT]
    assert store.strategy_calls == 1
    assert transport.calls[0]['action'] == 'closePosition'
