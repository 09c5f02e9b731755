from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config import config
from ingest.http_client import HTTPStatusError, JSONHTTPClient


__all__ = ["ExecutionTransport", "ExecutionResult", "HTTPStatusError"]


@dataclass
class ExecutionResult:
    """Normalized view of the trade-execution endpoint's reply."""

    action: str
    ok: bool
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        if self.ok:
            return None
        return str(self.raw.get('error') or self.raw.get('message') or 'rejected')

    def as_dict(self) -> Dict[str, Any]:
        return {'action': self.action, 'ok': self.ok, 'error': self.error, 'raw': self.raw}


class ExecutionTransport:
    """Thin adapter around the external trade-execution endpoint."""

    def __init__(self, endpoint_url: Optional[str] = None, auth_token: Optional[str] = None,
                 http: Optional[JSONHTTPClient] = None):
        exec_cfg = config.section('execution')
        self.endpoint_url = endpoint_url or exec_cfg.get('endpoint_url')
        self.auth_token = auth_token or exec_cfg.get('auth_token')
        self.order_type = exec_cfg.get('order_type', 'market')
        self.default_margin_mode = exec_cfg.get('default_margin_mode', 'isolated')
        self.http = http or JSONHTTPClient('execution')

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.auth_token:
            headers['Authorization'] = f"Bearer {self.auth_token}"
        return headers

    async def _call(self, action: str, data: Dict[str, Any]) -> ExecutionResult:
        if not self.endpoint_url:
            raise RuntimeError("Trade execution endpoint URL is not configured")
        payload = await self.http.post(
            self.endpoint_url,
            json_body={'action': action, 'data': data},
            headers=self._headers(),
        )
        raw = payload if isinstance(payload, dict) else {'body': payload}
        ok = not raw.get('error') and raw.get('success', True) is not False
        return ExecutionResult(action=action, ok=ok, raw=raw)

    async def place_order(
        self,
        account_id: str,
        strategy_id: str,
        symbol: str,
        side: str,
        size: float,
        margin_mode: str,
    ) -> ExecutionResult:
        return await self._call(
            'placeOrder',
            {
                'strategyId': strategy_id,
                'symbol': symbol,
                'side': side,
                'orderType': self.order_type,
                'size': size,
                'marginMode': margin_mode or self.default_margin_mode,
                'credentialId': account_id,
            },
        )

    async def close_position(
        self,
        account_id: str,
        symbol: str,
        pos_side: str,
        margin_mode: str,
    ) -> ExecutionResult:
        return await self._call(
            'closePosition',
            {
                'symbol': symbol,
                'posSide': pos_side,
                'marginMode': margin_mode or self.default_margin_mode,
                'credentialId': account_id,
            },
        )

    async def close(self) -> None:
        await self.http.close()
