import asyncio
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, '.')

import api.fastapi_server as server
from main import PositionEngine
from monitoring.action_auditor import ActionAuditor
from orchestration.account_monitor import AccountMonitor
from strategy.dispatcher import ActionDispatcher
from tests.fakes import FakeFeeds, FakeStore, FakeTransport, RecordingSleep, credentials, strategy_row
from tests.test_account_monitor import DummyOKXRest


class DummyEngine(PositionEngine):
    def _build_monitor(self, account_id):
        auditor = ActionAuditor(account_id, sink=self.store)
        dispatcher = ActionDispatcher(account_id, self.transport, auditor)
        dispatcher._sleep = RecordingSleep()
        return AccountMonitor(account_id, self.store, self.transport, okx_rest=self.okx_rest,
                              feeds=FakeFeeds(), dispatcher=dispatcher, auditor=auditor)


@pytest.fixture
def client():
    store = FakeStore(rows=[strategy_row(profit_ratio=50)], credentials=credentials())
    okx_rest = DummyOKXRest(positions=[{'instId': 'BTC-USDT-SWAP', 'posSide': 'long', 'pos': '1', 'uplRatio': '0.01'}])
    server.engine = DummyEngine(store=store, transport=FakeTransport(), okx_rest=okx_rest)
    yield TestClient(server.app)
    server.engine = None


def test_root_and_health(client):
    assert client.get('/').json()['service'] == 'Position Sentinel'
    health = client.get('/health').json()
    assert health['status'] == 'healthy'
    assert health['accounts'] == 0


def test_unknown_account_status_and_refresh(client):
    assert client.get('/accounts/ACC-9/status').json() == {'account_id': 'ACC-9', 'running': False}
    assert client.post('/accounts/ACC-9/refresh').status_code == 404
    assert client.post('/accounts/ACC-9/stop').json()['status'] == 'not_running'


def test_forwarded_events(client):
    resp = client.post('/accounts/ACC-1/events', json={'symbol': 'BTC/USDT:USDT', 'candleDir': 'up'})
    assert resp.status_code == 200
    assert resp.json()['decisions'] == []
    assert server.engine.monitors['ACC-1'].market_state.snapshot() == {'BTC/USDT:USDT': 'up'}

    bad = client.post('/accounts/ACC-1/events', json={'posSide': 'long'})
    assert bad.status_code == 422


def test_tick_summary(client):
    resp = client.post('/accounts/ACC-1/tick', json={'symbols': ['BTC/USDT:USDT']})
    body = resp.json()
    assert resp.status_code == 200
    assert body['ok'] is True
    assert body['processed'] == 1
    assert body['actions'] == 0


def test_engine_forwards_events_for_unstarted_account():
    store = FakeStore(rows=[strategy_row()], credentials=credentials())
    transport = FakeTransport()
    engine = DummyEngine(store=store, transport=transport, okx_rest=DummyOKXRest())

    async def run():
        decisions = await engine.forward_event(
            'ACC-1', {'symbol': 'BTC/USDT:USDT', 'posSide': 'long', 'size': 2, 'uplRatio': 0.5}
        )
        await engine.monitors['ACC-1'].dispatcher.drain()
        return decisions

    decisions = asyncio.run(run())
    assert [d['kind'] for d in decisions] == ['take_profit']
    assert decisions[0]['reentry_size'] == 2.0
    assert [c['action'] for c in transport.calls] == ['closePosition', 'placeOrder']


def test_engine_unavailable():
    server.engine = None
    assert TestClient(server.app).get('/accounts').status_code == 503
