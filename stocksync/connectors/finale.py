"""Finale Inventory connector — paginated, rate-limited, retrying product fetch.

Finale quirks handled here and nowhere else:
  - The account path is often pasted as a full URL; it is cleaned down to
    the bare account segment.
  - /product pages come back in a columnar encoding
    ({"productId": [...], "quantityOnHand": [...], ...}); rows are rebuilt
    by index. Plain lists and {"productList": [...]} are accepted too.
  - An expired session answers 200 with an HTML login page (or a redirect
    to one) instead of JSON. That is an auth failure, not a parse error, and
    is never retried.

Called by: services/sync_engine.py
Depends on: rate_limit.py, utils/retry.py, http_client.py, errors.py
"""

import base64
import json
import logging
import re
from dataclasses import dataclass, field

import httpx

from ..config import settings
from ..errors import AuthError, SyncError, TransientNetworkError
from ..rate_limit import TokenBucket, get_rate_limiter
from ..utils.retry import RetryPolicy

log = logging.getLogger("stocksync.finale")

# Column that defines row count in the columnar encoding
_ROW_KEY = "productId"


def clean_account_path(account_path: str) -> str:
    """Reduce whatever the user pasted to the bare account segment.

    "https://app.finaleinventory.com/acme/api/" -> "acme"
    """
    path = (account_path or "").strip()
    path = re.sub(r"^https?://", "", path)
    match = re.search(r"finaleinventory\.com/([^/]+)", path)
    if match:
        return match.group(1)
    path = re.sub(r"\.finaleinventory\.com.*$", "", path)
    path = re.sub(r"^app\.", "", path)
    path = re.sub(r"/api/?$", "", path)
    return path.strip("/").strip()


def decode_rows(data) -> list[dict]:
    """Turn any accepted /product body into a list of row dicts."""
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if not isinstance(data, dict):
        raise TransientNetworkError(f"unexpected body type {type(data).__name__}")

    for key in ("productList", "products"):
        if isinstance(data.get(key), list):
            return decode_rows(data[key])

    columns = {k: v for k, v in data.items() if isinstance(v, list)}
    if not columns:
        if data:
            # e.g. {"error": "..."}: not a page, never an empty catalog
            raise TransientNetworkError(f"unexpected body without columns: {str(data)[:200]}")
        return []
    if _ROW_KEY in columns:
        count = len(columns[_ROW_KEY])
    else:
        count = max(len(v) for v in columns.values())
    rows = []
    for i in range(count):
        rows.append({k: v[i] for k, v in columns.items() if i < len(v)})
    return rows


def _looks_like_html(resp: httpx.Response) -> bool:
    ctype = resp.headers.get("content-type", "").lower()
    if "text/html" in ctype:
        return True
    return resp.text.lstrip()[:1] == "<"


@dataclass
class Page:
    offset: int
    limit: int
    rows: list[dict] = field(default_factory=list)

    @property
    def is_last(self) -> bool:
        return len(self.rows) < self.limit


class FinaleConnector:
    """Read-only client for Finale's /product endpoint."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        account_path: str,
        *,
        base_host: str = "https://app.finaleinventory.com",
        client: httpx.AsyncClient | None = None,
        limiter: TokenBucket | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = 30.0,
        acquire_timeout: float | None = 30.0,
    ):
        self.account = clean_account_path(account_path)
        self.base_url = f"{base_host.rstrip('/')}/{self.account}/api"
        token = base64.b64encode(f"{api_key}:{api_secret}".encode()).decode()
        self._auth_header = f"Basic {token}"
        self._client = client
        self.limiter = limiter or get_rate_limiter()
        self.retry = retry or RetryPolicy.from_settings(name="finale.fetch_page")
        self.timeout = timeout
        self.acquire_timeout = acquire_timeout
        self.requests_made = 0
        # Set by iter_pages when max_records truncated the catalog
        self.capped = False

    @classmethod
    def from_settings(cls, **kwargs) -> "FinaleConnector":
        return cls(
            settings.finale_api_key,
            settings.finale_api_secret,
            settings.finale_account_path,
            base_host=settings.finale_base_host,
            timeout=settings.finale_timeout_seconds,
            acquire_timeout=settings.rate_limit_acquire_timeout,
            **kwargs,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            from ..http_client import http

            self._client = http
        return self._client

    def _headers(self) -> dict:
        return {"Authorization": self._auth_header, "Accept": "application/json"}

    async def _get_page(self, offset: int, limit: int, fields: tuple[str, ...] | None) -> Page:
        """Single attempt. Raises classified errors, never raw httpx ones."""
        await self.limiter.acquire(timeout=self.acquire_timeout)

        params = {"limit": limit, "offset": offset}
        if fields:
            params["fields"] = ",".join(fields)

        self.requests_made += 1
        try:
            resp = await self.client.get(
                f"{self.base_url}/product",
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"timeout at offset {offset}: {e}")
        except httpx.TransportError as e:
            raise TransientNetworkError(f"transport error at offset {offset}: {e}")

        status = resp.status_code
        if status in (401, 403):
            raise AuthError(f"Finale rejected credentials ({status})", status_code=status)
        if 300 <= status < 400:
            # Expired sessions bounce to the login page
            raise AuthError(f"Finale redirected to {resp.headers.get('location', '?')}", status_code=status)
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"Finale API error {status}", status_code=status)
        if status >= 400:
            raise TransientNetworkError(
                f"Finale API error {status}: {resp.text[:200]}", status_code=status
            )

        if _looks_like_html(resp):
            raise AuthError("Finale returned HTML instead of JSON (session expired?)", status_code=status)

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise TransientNetworkError(f"malformed JSON at offset {offset}: {e}")

        rows = decode_rows(data)
        return Page(offset=offset, limit=limit, rows=rows)

    async def fetch_page(
        self, offset: int = 0, limit: int = 100, fields: tuple[str, ...] | None = None
    ) -> Page:
        """Fetch one page, retrying transient failures with backoff."""
        return await self.retry.run(lambda: self._get_page(offset, limit, fields))

    async def iter_pages(
        self,
        fields: tuple[str, ...] | None = None,
        page_size: int = 100,
        max_records: int | None = None,
    ):
        """Yield pages in order until a short page or the record cap.

        Each page depends on the previous offset, so this never runs ahead.
        """
        offset = 0
        fetched = 0
        self.capped = False
        while True:
            page = await self.fetch_page(offset, page_size, fields)
            if max_records is not None and fetched + len(page.rows) >= max_records:
                if not page.is_last or fetched + len(page.rows) > max_records:
                    self.capped = True
                    log.warning(f"Finale fetch hit safety cap of {max_records} records — stopping")
                page.rows = page.rows[: max_records - fetched]
                yield page
                return
            fetched += len(page.rows)
            log.debug(f"Finale page offset={offset}: {len(page.rows)} rows")
            yield page
            if page.is_last:
                return
            offset += page_size

    async def check_connection(self) -> tuple[bool, str]:
        """One-row request without retries. Returns (ok, operator message)."""
        try:
            await self._get_page(0, 1, None)
        except AuthError as e:
            log.warning(f"Finale connection test failed: {e}")
            return False, f"Invalid credentials for account \"{self.account}\": {e.message}"
        except SyncError as e:
            log.warning(f"Finale connection test failed: {e}")
            if getattr(e, "status_code", None) == 404:
                return False, f"Account path \"{self.account}\" not found"
            return False, f"Connection failed: {e.public_message}"
        return True, f"Connected to Finale account \"{self.account}\""

    async def test_connection(self) -> bool:
        ok, _message = await self.check_connection()
        return ok
