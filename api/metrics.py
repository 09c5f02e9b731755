import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.section('monitoring').get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.feed_messages = Counter('feed_messages_total', 'Total inbound feed frames', ['feed'])
        self.dropped_frames = Counter('feed_dropped_frames_total', 'Inbound frames dropped as malformed', ['feed'])
        self.reconnect_count = Counter('feed_reconnects_total', 'Total feed reconnects', ['feed'])
        self.feed_connected = Gauge('feed_connected', 'Feed connection state', ['account', 'feed'])

        self.decisions = Counter('trigger_decisions_total', 'Trigger decisions by kind', ['kind'])
        self.evaluation_latency = Histogram('trigger_evaluation_seconds', 'Time to evaluate one position frame')

        self.actions = Counter('actions_total', 'Dispatched actions by outcome', ['action', 'outcome'])
        self.pending_actions = Gauge('pending_actions', 'Scheduled actions not yet finished', ['account'])
        self.http_retries = Counter('http_retries_total', 'HTTP retries by target', ['target'])

        self.registry_refreshes = Counter('registry_refreshes_total', 'Strategy registry refreshes', ['outcome'])
        self.registry_strategies = Gauge('registry_strategies', 'Strategies held in the registry', ['account'])
        self.candle_direction = Gauge('candle_direction', 'Latest candle direction (1 up, -1 down)', ['symbol'])

    def record_feed_message(self, feed: str):
        self.feed_messages.labels(feed=feed).inc()

    def record_drop(self, feed: str):
        self.dropped_frames.labels(feed=feed).inc()

    def record_reconnect(self, feed: str):
        self.reconnect_count.labels(feed=feed).inc()

    def set_feed_connected(self, account: str, feed: str, connected: bool):
        self.feed_connected.labels(account=account, feed=feed).set(1 if connected else 0)

    def record_decision(self, kind: str):
        self.decisions.labels(kind=kind).inc()

    def record_evaluation_latency(self, seconds: float):
        self.evaluation_latency.observe(seconds)

    def record_action(self, action: str, outcome: str):
        self.actions.labels(action=action, outcome=outcome).inc()

    def update_pending_actions(self, account: str, count: int):
        self.pending_actions.labels(account=account).set(count)

    def record_http_retry(self, target: str):
        self.http_retries.labels(target=target).inc()

    def record_registry_refresh(self, ok: bool):
        self.registry_refreshes.labels(outcome='ok' if ok else 'failed').inc()

    def update_registry_size(self, account: str, count: int):
        self.registry_strategies.labels(account=account).set(count)

    def update_candle_direction(self, symbol: str, direction: str):
        self.candle_direction.labels(symbol=symbol).set(1 if direction == 'up' else -1)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
