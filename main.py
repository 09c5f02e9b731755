import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from api.metrics import start_metrics_server
from config import config
from ingest.okx_rest import OKXRESTClient
from ingest.store_client import StoreClient
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.account_monitor import AccountMonitor
from strategy.transports.execution_endpoint import ExecutionTransport


logger = logging.getLogger(__name__)


class PositionEngine:
    """Start, stop and inspect one AccountMonitor per account id.

    Monitors never share state with each other; only the stateless HTTP
    clients are shared.
    """

    def __init__(
        self,
        config_obj=None,
        store: Optional[StoreClient] = None,
        transport: Optional[ExecutionTransport] = None,
        okx_rest: Optional[OKXRESTClient] = None,
    ):
        self.config = config_obj or config
        self.monitoring_cfg = self.config.section('monitoring')
        self.engine_cfg = self.config.section('engine')
        self.store = store or StoreClient()
        self.transport = transport or ExecutionTransport()
        self.okx_rest = okx_rest or OKXRESTClient()
        self.monitors: Dict[str, AccountMonitor] = {}
        self.running = False
        self._stopped = asyncio.Event()

    def _build_monitor(self, account_id: str) -> AccountMonitor:
        return AccountMonitor(account_id, self.store, self.transport, okx_rest=self.okx_rest)

    def _get_or_create(self, account_id: str) -> AccountMonitor:
        monitor = self.monitors.get(account_id)
        if monitor is None:
            monitor = self._build_monitor(account_id)
            self.monitors[account_id] = monitor
        return monitor

    async def start_account(self, account_id: str) -> AccountMonitor:
        monitor = self._get_or_create(account_id)
        await monitor.start()
        return monitor

    async def stop_account(self, account_id: str) -> bool:
        monitor = self.monitors.pop(account_id, None)
        if monitor is None:
            return False
        await monitor.stop()
        return True

    async def refresh_account(self, account_id: str) -> Optional[bool]:
        monitor = self.monitors.get(account_id)
        if monitor is None:
            return None
        return await monitor.refresh()

    async def tick(self, account_id: str, symbols: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        monitor = self._get_or_create(account_id)
        return await monitor.run_tick(symbols)

    async def forward_event(self, account_id: str, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        monitor = self._get_or_create(account_id)
        decisions = await monitor.handle_forwarded_event(event)
        return [d.as_dict() for d in decisions]

    def status(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        if account_id is not None:
            monitor = self.monitors.get(account_id)
            return monitor.status() if monitor else {'account_id': account_id, 'running': False}
        return {acc: monitor.status() for acc, monitor in self.monitors.items()}

    async def start(self):
        self.running = True
        self._stopped.clear()
        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            try:
                start_metrics_server(int(port))
            except Exception as exc:
                logger.warning("Metrics server unavailable: %s", exc)
        for account_id in self.engine_cfg.get('accounts') or []:
            await self.start_account(str(account_id))

    async def run(self):
        await self.start()
        tasks = [asyncio.create_task(self._stopped.wait())]
        await run_tasks_with_cleanup(tasks, cleanup=self.shutdown)

    async def shutdown(self):
        self.running = False
        for account_id in list(self.monitors):
            await self.stop_account(account_id)
        await self.store.close()
        await self.transport.close()
        await self.okx_rest.close()
        self._stopped.set()


async def main():
    engine = PositionEngine(config)
    try:
        await engine.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Engine shutting down on interrupt")
        await engine.shutdown()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
