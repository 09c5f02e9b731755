import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from config import config
from ingest.http_client import JSONHTTPClient


logger = logging.getLogger(__name__)


class StoreConfigError(RuntimeError):
    pass


@dataclass
class AccountCredentials:
    account_id: str
    api_key: str
    api_secret: str
    passphrase: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional['AccountCredentials']:
        api_key = row.get('api_key')
        api_secret = row.get('api_secret')
        passphrase = row.get('passphrase')
        if not api_key or not api_secret or not passphrase:
            return None
        return cls(str(row.get('id')), api_key, api_secret, passphrase)

    def __repr__(self) -> str:
        return f"AccountCredentials(account_id={self.account_id!r}, api_key=***)"


def _in_filter(values: Iterable[str]) -> str:
    return 'in.(' + ','.join(values) + ')'


class StoreClient:
    """PostgREST reads of credentials and strategies, plus log inserts."""

    STRATEGY_COLUMNS = (
        'id,api_credential_id,symbol,status,profit_ratio,loss_stop_ratio,margin_mode,'
        'signal_type,range_low,range_high,auto_restart_on_price_return,entry_size'
    )

    def __init__(self, url: Optional[str] = None, service_key: Optional[str] = None,
                 http: Optional[JSONHTTPClient] = None):
        store_cfg = config.section('store')
        self.url = (url or store_cfg.get('url') or '').rstrip('/')
        self.service_key = service_key or store_cfg.get('service_key')
        self.credentials_table = store_cfg.get('credentials_table', 'okx_api_credentials')
        self.strategies_table = store_cfg.get('strategies_table', 'strategies')
        self.logs_table = store_cfg.get('logs_table', 'strategy_logs')
        self.http = http or JSONHTTPClient('store', base_url=self.url)

    def _headers(self) -> Dict[str, str]:
        if not self.url or not self.service_key:
            raise StoreConfigError("Store url and service key must be configured")
        return {
            'apikey': self.service_key,
            'Authorization': f"Bearer {self.service_key}",
            'Content-Type': 'application/json',
        }

    async def fetch_credentials(self, account_id: str) -> Optional[AccountCredentials]:
        rows = await self.http.get(
            f"/rest/v1/{self.credentials_table}",
            params={'id': f"eq.{account_id}", 'select': '*', 'limit': '1'},
            headers=self._headers(),
        )
        if not isinstance(rows, list) or not rows:
            return None
        return AccountCredentials.from_row(rows[0])

    async def fetch_strategies(
        self,
        account_id: str,
        statuses: Iterable[str] = ('running', 'paused'),
        symbols: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            'api_credential_id': f"eq.{account_id}",
            'status': _in_filter(statuses),
            'select': self.STRATEGY_COLUMNS,
        }
        if symbols:
            params['symbol'] = _in_filter(f'"{s}"' for s in symbols)
        rows = await self.http.get(
            f"/rest/v1/{self.strategies_table}",
            params=params,
            headers=self._headers(),
        )
        if not isinstance(rows, list):
            raise ValueError(f"Unexpected strategies payload: {rows!r}")
        return rows

    async def insert_log(self, strategy_id: Optional[str], level: str, message: str,
                         data: Optional[Dict[str, Any]] = None) -> None:
        headers = self._headers()
        headers['Prefer'] = 'return=minimal'
        await self.http.post(
            f"/rest/v1/{self.logs_table}",
            json_body={
                'strategy_id': strategy_id,
                'level': level,
                'message': message,
                'data': data or {},
            },
            headers=headers,
        )

    async def close(self):
        await self.http.close()
