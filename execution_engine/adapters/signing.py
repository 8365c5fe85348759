"""
Execution Engine - Kraken Request Signing.

============================================================
PURPOSE
============================================================
Bit-exact implementation of Kraken's private REST
authentication:

    API-Sign = base64(
        HMAC-SHA512(
            key     = base64decode(api_secret),
            message = uri_path + SHA256(nonce + post_data),
        )
    )

The nonce appears twice: inside the hashed message and as
the `nonce` field of the url-encoded POST body.

NONCE RULE:
    Strictly increasing per API key. Derived from wall-clock
    milliseconds scaled to microsecond resolution, bumped by one
    when two requests land in the same tick.

============================================================
"""

import base64
import hashlib
import hmac
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode


# ============================================================
# NONCE
# ============================================================

class NonceGenerator:
    """Strictly increasing nonce source."""

    def __init__(self, time_source: Optional[Callable[[], float]] = None):
        self._time_source = time_source or time.time
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            candidate = int(self._time_source() * 1000) * 1000
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate


# ============================================================
# SIGNATURE
# ============================================================

def sign_request(uri_path: str, nonce: int, post_data: str, api_secret: str) -> str:
    """
    Compute the API-Sign header value.

    Args:
        uri_path: Request path, e.g. /0/private/Balance
        nonce: Nonce embedded in post_data
        post_data: url-encoded request body (already contains nonce)
        api_secret: base64-encoded secret as issued by Kraken

    Returns:
        base64 signature string
    """
    sha256_digest = hashlib.sha256((str(nonce) + post_data).encode()).digest()
    message = uri_path.encode() + sha256_digest
    mac = hmac.new(base64.b64decode(api_secret), message, hashlib.sha512)
    return base64.b64encode(mac.digest()).decode()


class KrakenSigner:
    """Builds signed private request bodies and headers."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        nonce_generator: Optional[NonceGenerator] = None,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._nonces = nonce_generator or NonceGenerator()

    @property
    def has_credentials(self) -> bool:
        return bool(self._api_key and self._api_secret)

    def sign(self, uri_path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[str, Dict[str, str]]:
        """
        Produce (post_data, headers) for a private endpoint.

        The nonce is inserted into the body before encoding so the
        exact bytes sent are the bytes signed.
        """
        nonce = self._nonces.next()
        body = dict(params or {})
        body["nonce"] = str(nonce)
        post_data = urlencode(body)

        headers = {
            "API-Key": self._api_key,
            "API-Sign": sign_request(uri_path, nonce, post_data, self._api_secret),
            "Content-Type": "application/x-www-form-urlencoded",
        }
        return post_data, headers
