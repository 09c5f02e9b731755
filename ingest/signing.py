import base64
import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Dict, Optional


def sign(message: str, secret: str) -> str:
    """Base64 HMAC-SHA256 signature used by both the REST API and the login frame."""
    digest = hmac.new(secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def rest_timestamp(now: Optional[float] = None) -> str:
    ts = datetime.fromtimestamp(now if now is not None else time.time(), tz=timezone.utc)
    return ts.strftime('%Y-%m-%dT%H:%M:%S.') + f"{ts.microsecond // 1000:03d}Z"


def login_timestamp(now: Optional[float] = None) -> str:
    return str(int(now if now is not None else time.time()))


def login_args(api_key: str, api_secret: str, passphrase: str, login_path: str = '/users/self/verify',
               now: Optional[float] = None) -> Dict[str, str]:
    ts = login_timestamp(now)
    return {
        'apiKey': api_key,
        'passphrase': passphrase,
        'timestamp': ts,
        'sign': sign(ts + 'GET' + login_path, api_secret),
    }


def rest_headers(api_key: str, api_secret: str, passphrase: str, method: str, request_path: str,
                 body: str = '', now: Optional[float] = None) -> Dict[str, str]:
    ts = rest_timestamp(now)
    return {
        'OK-ACCESS-KEY': api_key,
        'OK-ACCESS-PASSPHRASE': passphrase,
        'OK-ACCESS-TIMESTAMP': ts,
        'OK-ACCESS-SIGN': sign(ts + method.upper() + request_path + body, api_secret),
    }
