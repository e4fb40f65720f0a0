# camwatch/vendor.py
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit

import requests
from anyio import to_thread

from .config import settings
from .errors import VendorError

log = logging.getLogger("vendor")

LIVE_URLS_PATH = "/api/video/v1/cameras/{device}/liveUrls"
TRANSMODE_UDP = 1


def canonical_query(access_key: str, timestamp: int, params: Dict[str, Any]) -> str:
    # ak and timestamp lead; caller params follow in key order, None values dropped
    pairs = [("ak", access_key), ("timestamp", str(timestamp))]
    for k in sorted(params):
        v = params[k]
        if v is not None:
            pairs.append((k, str(v)))
    return urlencode(pairs)


def sign(secret_key: str, method: str, path: str, query: str) -> str:
    to_sign = f"{method.upper()}\n{path}\n{query}"
    digest = hmac.new(secret_key.encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class VendorClient:
    """Signed client for the camera vendor's open API (only the live-URL lookup is used)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.VENDOR_API_URL).rstrip("/")
        self.access_key = access_key if access_key is not None else settings.VENDOR_ACCESS_KEY
        self.secret_key = secret_key if secret_key is not None else settings.VENDOR_SECRET_KEY
        self.timeout = float(settings.VENDOR_TIMEOUT_SECS if timeout is None else timeout)
        self.http = session or requests

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.access_key and self.secret_key)

    def auth_headers(self, method: str, url: str, params: Dict[str, Any], timestamp: Optional[int] = None) -> Dict[str, str]:
        ts = int(time.time()) if timestamp is None else int(timestamp)
        path = urlsplit(url).path
        signature = sign(self.secret_key, method, path, canonical_query(self.access_key, ts, params))
        return {
            "X-HV-AK": self.access_key,
            "X-HV-Timestamp": str(ts),
            "X-HV-Signature": signature,
        }

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise VendorError("Vendor API is not configured")
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json", **self.auth_headers("POST", url, body)}
        try:
            r = self.http.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise VendorError(f"Vendor API unreachable: {e}") from e
        if r.status_code == 401:
            raise VendorError("Vendor API authentication failed. Check your AK/SK credentials.")
        if r.status_code == 403:
            raise VendorError("Vendor API access forbidden. Check your permissions.")
        if r.status_code >= 400:
            raise VendorError(f"Vendor API error {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise VendorError("Vendor API returned invalid JSON") from e

    def get_live_stream_url(self, device_id: str, stream_type: str = "main") -> str:
        body = {"streamType": stream_type, "protocol": "rtsp", "transmode": TRANSMODE_UDP}
        try:
            data = self._post(LIVE_URLS_PATH.format(device=device_id), body)
        except VendorError as e:
            log.error("live URL lookup for %s failed: %s", device_id, e)
            raise
        if not isinstance(data, dict):
            raise VendorError("Vendor API returned an unexpected payload")
        url = (data.get("data") or {}).get("url")
        if data.get("code") != 0 or not url:
            msg = data.get("message") or "no url in response"
            log.error("live URL lookup for %s failed: %s", device_id, msg)
            raise VendorError(f"Failed to get stream URL: {msg}")
        log.info("live stream URL issued for device %s", device_id)
        return url

    async def get_live_stream_url_async(self, device_id: str, stream_type: str = "main") -> str:
        return await to_thread.run_sync(self.get_live_stream_url, device_id, stream_type)
