import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import websockets

from api.metrics import metrics
from config import config
from ingest.signing import login_args
from ingest.store_client import AccountCredentials
from monitoring.async_utils import cancel_and_wait
from strategy.instruments import symbol_to_inst_id


logger = logging.getLogger(__name__)

Handler = Callable[[Dict], Awaitable[None]]

PRIVATE = 'private'
PUBLIC = 'public'


def is_open(ws) -> bool:
    if ws is None:
        return False
    state = getattr(ws, 'state', None)
    return getattr(state, 'name', None) == 'OPEN'


class FeedConnectionManager:
    """One private (positions) and one public (candles) feed for an account.

    Each feed runs in its own supervised loop that reconnects after a fixed
    delay for as long as the manager is running. Only ``stop()`` ends them.
    """

    def __init__(
        self,
        account_id: str,
        credentials: Optional[AccountCredentials] = None,
        private_url: Optional[str] = None,
        public_url: Optional[str] = None,
        reconnect_delay_s: Optional[float] = None,
        ping_interval_s: Optional[float] = None,
        connector: Callable = websockets.connect,
    ):
        ws_cfg = config.section('websocket')
        exchange_cfg = config.section('exchange')
        self.account_id = account_id
        self.credentials = credentials
        self.private_url = private_url or exchange_cfg.get('private_ws_url')
        self.public_url = public_url or exchange_cfg.get('public_ws_url')
        self.inst_type = exchange_cfg.get('inst_type', 'SWAP')
        self.candle_channel = exchange_cfg.get('candle_channel', 'candle1H')
        self.login_path = ws_cfg.get('login_path', '/users/self/verify')
        self.reconnect_delay = float(
            reconnect_delay_s if reconnect_delay_s is not None else ws_cfg.get('reconnect_delay_s', 2)
        )
        self.ping_interval = float(ping_interval_s if ping_interval_s is not None else ws_cfg.get('ping_interval_s', 20))
        self._connect = connector

        self.handlers: Dict[str, Handler] = {}
        self.running = False
        self.reconnects = {PRIVATE: 0, PUBLIC: 0}

        self._private_ws = None
        self._public_ws = None
        self._private_task: Optional[asyncio.Task] = None
        self._public_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        # instrument ids wanted on the public feed, in subscription order
        self._desired: Dict[str, None] = {}
        self._subscribed: set = set()

    def register_handler(self, stream_type: str, handler: Handler):
        self.handlers[stream_type] = handler

    @property
    def private_open(self) -> bool:
        return is_open(self._private_ws)

    @property
    def public_open(self) -> bool:
        return is_open(self._public_ws)

    @property
    def desired_inst_ids(self) -> List[str]:
        return list(self._desired)

    def _ensure_running(self):
        if self.running:
            return
        self.running = True
        if self._ping_task is None or self._ping_task.done():
            self._ping_task = asyncio.create_task(self._ping_loop())

    async def connect_private(self):
        if self._private_task is not None and not self._private_task.done():
            return
        if self.credentials is None:
            logger.error("Account %s has no credentials; private feed not started", self.account_id)
            return
        self._ensure_running()
        self._private_task = asyncio.create_task(self._run_private())

    async def connect_public(self, symbols: Optional[Iterable[str]] = None):
        for symbol in symbols or ():
            try:
                self._desired.setdefault(symbol_to_inst_id(symbol), None)
            except ValueError:
                logger.warning("Skipping candle subscription for unsupported symbol %s", symbol)
        if not self._desired:
            return
        if self._public_task is not None and not self._public_task.done():
            await self._sync_public_subscriptions()
            return
        self._ensure_running()
        self._public_task = asyncio.create_task(self._run_public())

    async def subscribe_symbols(self, symbols: Iterable[str]):
        await self.connect_public(symbols)

    async def _run_private(self):
        while self.running:
            try:
                async with self._connect(self.private_url, ping_interval=None) as ws:
                    self._private_ws = ws
                    metrics.set_feed_connected(self.account_id, PRIVATE, True)
                    await ws.send(json.dumps(self._login_frame()))
                    logger.info("Private feed open for account %s", self.account_id)
                    async for raw in ws:
                        await self._handle_private_raw(ws, raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Private feed error for account %s: %s", self.account_id, e)
            finally:
                self._private_ws = None
                metrics.set_feed_connected(self.account_id, PRIVATE, False)
            if not self.running:
                break
            await self._wait_before_reconnect(PRIVATE)

    async def _run_public(self):
        while self.running:
            try:
                async with self._connect(self.public_url, ping_interval=None) as ws:
                    self._public_ws = ws
                    self._subscribed = set()
                    metrics.set_feed_connected(self.account_id, PUBLIC, True)
                    await self._sync_public_subscriptions()
                    logger.info("Public feed open for account %s (%s instruments)", self.account_id, len(self._desired))
                    async for raw in ws:
                        await self._handle_public_raw(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Public feed error for account %s: %s", self.account_id, e)
            finally:
                self._public_ws = None
                self._subscribed = set()
                metrics.set_feed_connected(self.account_id, PUBLIC, False)
            if not self.running:
                break
            await self._wait_before_reconnect(PUBLIC)

    async def _wait_before_reconnect(self, feed: str):
        self.reconnects[feed] += 1
        metrics.record_reconnect(feed)
        logger.info("Reconnecting %s feed for account %s in %.1fs", feed, self.account_id, self.reconnect_delay)
        await asyncio.sleep(self.reconnect_delay)

    def _login_frame(self) -> Dict:
        creds = self.credentials
        return {
            'op': 'login',
            'args': [login_args(creds.api_key, creds.api_secret, creds.passphrase, self.login_path)],
        }

    def _positions_subscribe_frame(self) -> Dict:
        return {'op': 'subscribe', 'args': [{'channel': 'positions', 'instType': self.inst_type}]}

    def _candle_subscribe_frame(self, inst_ids: Iterable[str]) -> Dict:
        return {'op': 'subscribe', 'args': [{'channel': self.candle_channel, 'instId': i} for i in inst_ids]}

    async def _sync_public_subscriptions(self):
        ws = self._public_ws
        if not is_open(ws):
            return
        missing = [inst_id for inst_id in self._desired if inst_id not in self._subscribed]
        if not missing:
            return
        await ws.send(json.dumps(self._candle_subscribe_frame(missing)))
        self._subscribed.update(missing)

    def _decode(self, feed: str, raw) -> Optional[Dict]:
        if raw == 'pong':
            return None
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            metrics.record_drop(feed)
            logger.debug("Dropping undecodable %s frame: %r", feed, raw)
            return None
        if not isinstance(msg, dict):
            metrics.record_drop(feed)
            return None
        metrics.record_feed_message(feed)
        return msg

    async def _handle_private_raw(self, ws, raw):
        msg = self._decode(PRIVATE, raw)
        if msg is None:
            return
        event = msg.get('event')
        if event == 'login':
            if str(msg.get('code', '0')) == '0':
                await ws.send(json.dumps(self._positions_subscribe_frame()))
            else:
                logger.error("Login rejected for account %s: %s", self.account_id, msg.get('msg'))
            return
        if event == 'error':
            logger.error("Private feed error event for account %s: %s", self.account_id, msg.get('msg'))
            return
        if event:
            logger.debug("Private feed event %s: %s", event, msg.get('arg'))
            return
        if (msg.get('arg') or {}).get('channel') != 'positions':
            return
        await self._dispatch('position', msg)

    async def _handle_public_raw(self, raw):
        msg = self._decode(PUBLIC, raw)
        if msg is None:
            return
        event = msg.get('event')
        if event == 'error':
            logger.error("Public feed error event for account %s: %s", self.account_id, msg.get('msg'))
            return
        if event:
            logger.debug("Public feed event %s: %s", event, msg.get('arg'))
            return
        if not str((msg.get('arg') or {}).get('channel') or '').startswith('candle'):
            return
        await self._dispatch('candle', msg)

    async def _dispatch(self, stream_type: str, payload: Dict):
        handler = self.handlers.get(stream_type)
        if not handler:
            return
        try:
            await handler(payload)
        except Exception:
            logger.exception("Feed handler %s failed for account %s", stream_type, self.account_id)

    async def _ping_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.ping_interval)
                for ws in (self._private_ws, self._public_ws):
                    if not is_open(ws):
                        continue
                    try:
                        await ws.send('ping')
                    except Exception as e:
                        logger.debug("Keepalive send failed: %s", e)
            except asyncio.CancelledError:
                break

    async def stop(self):
        self.running = False
        await cancel_and_wait(self._private_task, self._public_task, self._ping_task)
        self._private_task = None
        self._public_task = None
        self._ping_task = None

    def status(self) -> Dict:
        return {
            'private_open': self.private_open,
            'public_open': self.public_open,
            'subscribed': sorted(self._subscribed),
            'desired': self.desired_inst_ids,
            'reconnects': dict(self.reconnects),
        }
