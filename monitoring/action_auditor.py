import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

LEVELS = ('info', 'warning', 'error')


class ActionAuditor:
    """Structured audit trail for decisions and dispatched actions.

    Every record goes to the store's log table (when a sink is attached) and
    to a local JSONL file. Both writes are best effort.
    """

    def __init__(self, account_id: str, sink=None, log_path: Optional[str] = None):
        self.account_id = account_id
        self.sink = sink
        self.log_path = Path(log_path) if log_path else None

    async def record(
        self,
        strategy_id: Optional[str],
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if level not in LEVELS:
            level = 'info'
        payload = dict(data or {})
        self._write_entry({
            'timestamp': time.time(),
            'account_id': self.account_id,
            'strategy_id': strategy_id,
            'level': level,
            'message': message,
            'data': payload,
        })
        if self.sink is None:
            return
        try:
            await self.sink.insert_log(strategy_id, level, message, payload)
        except Exception as exc:
            logger.warning("Audit sink write failed (%s): %s", message, exc)

    async def info(self, strategy_id: Optional[str], message: str, data: Optional[Dict[str, Any]] = None):
        await self.record(strategy_id, 'info', message, data)

    async def warning(self, strategy_id: Optional[str], message: str, data: Optional[Dict[str, Any]] = None):
        await self.record(strategy_id, 'warning', message, data)

    async def error(self, strategy_id: Optional[str], message: str, data: Optional[Dict[str, Any]] = None):
        await self.record(strategy_id, 'error', message, data)

    def _write_entry(self, payload: Dict[str, Any]) -> None:
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except Exception as exc:
            logger.error("Failed to persist audit log: %s", exc)
