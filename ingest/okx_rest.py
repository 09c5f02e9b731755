import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from config import config
from ingest.http_client import JSONHTTPClient
from ingest.signing import rest_headers
from ingest.store_client import AccountCredentials
from strategy.models import CandleDirection


logger = logging.getLogger(__name__)


class OKXAPIError(Exception):
    def __init__(self, code: Optional[str], msg: Optional[str], path: str):
        self.code = code
        self.msg = msg
        self.path = path
        super().__init__(f"OKX API error (code={code}, msg={msg}, path={path})")


class OKXRESTClient:
    """Venue REST lookups used by the poll-driven evaluation path."""

    def __init__(self, base_url: Optional[str] = None, http: Optional[JSONHTTPClient] = None):
        exchange_cfg = config.section('exchange')
        self.base_url = (base_url or exchange_cfg.get('rest_base_url', 'https://www.okx.com')).rstrip('/')
        self.inst_type = exchange_cfg.get('inst_type', 'SWAP')
        self.candle_bar = exchange_cfg.get('candle_bar', '1H')
        self.http = http or JSONHTTPClient('okx', base_url=self.base_url)

    def _unwrap(self, payload: Any, path: str) -> List[Any]:
        if not isinstance(payload, dict):
            raise OKXAPIError(None, 'unexpected payload', path)
        code = str(payload.get('code', '0'))
        if code != '0':
            raise OKXAPIError(code, payload.get('msg'), path)
        data = payload.get('data') or []
        return data if isinstance(data, list) else []

    async def fetch_positions(self, credentials: AccountCredentials, inst_id: str) -> List[Dict[str, Any]]:
        query = urlencode({'instType': self.inst_type, 'instId': inst_id})
        request_path = f"/api/v5/account/positions?{query}"
        headers = rest_headers(
            credentials.api_key,
            credentials.api_secret,
            credentials.passphrase,
            'GET',
            request_path,
        )
        payload = await self.http.get(request_path, headers=headers)
        return [row for row in self._unwrap(payload, request_path) if isinstance(row, dict)]

    async def fetch_candle_direction(self, inst_id: str) -> Optional[CandleDirection]:
        path = '/api/v5/market/candles'
        payload = await self.http.get(path, params={'instId': inst_id, 'bar': self.candle_bar, 'limit': '1'})
        rows = self._unwrap(payload, path)
        if not rows:
            return None
        candle = rows[0]
        if not isinstance(candle, list) or len(candle) < 5:
            return None
        try:
            return CandleDirection.from_candle(float(candle[1]), float(candle[4]))
        except (TypeError, ValueError):
            return None

    async def fetch_last_price(self, inst_id: str) -> Optional[float]:
        path = '/api/v5/market/ticker'
        payload = await self.http.get(path, params={'instId': inst_id})
        rows = self._unwrap(payload, path)
        if not rows:
            return None
        try:
            return float(rows[0].get('last'))
        except (AttributeError, TypeError, ValueError):
            return None

    async def close(self):
        await self.http.close()
