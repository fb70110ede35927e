"""
Tastytrade Venue Client
=======================

REST side of the venue: OAuth session, nested option chains, symbol search
and the quote token used to open the DXLink streamer.

SESSION RULES:
- authenticate() is idempotent: the access token is reused until shortly
  before it expires, then refreshed with the refresh-token grant
- Missing TASTY_CLIENT_SECRET / TASTY_REFRESH_TOKEN raises AuthMissingCredentials
  before any network call is made
- Every HTTP or network failure surfaces as UpstreamUnavailable
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from models.schemas import SymbolSearchResult
from services.skew_errors import AuthMissingCredentials, UpstreamUnavailable
from utils.environment import get_tasty_credentials, is_sandbox

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
PROD_BASE_URL = "https://api.tastyworks.com"
SANDBOX_BASE_URL = "https://api.cert.tastyworks.com"

# Refresh this many seconds before the venue says the token expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class TastytradeClient:
    def __init__(
        self,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        sandbox: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        env_secret, env_refresh = get_tasty_credentials()
        self.client_secret = client_secret or env_secret
        self.refresh_token = refresh_token or env_refresh
        self.sandbox = is_sandbox() if sandbox is None else sandbox
        self.base_url = SANDBOX_BASE_URL if self.sandbox else PROD_BASE_URL
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def is_authenticated(self) -> bool:
        return self._access_token is not None and time.time() < self._token_expires_at

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=HTTP_TIMEOUT,
            transport=self._transport,
        )

    async def authenticate(self) -> str:
        """Return a valid access token, refreshing it only when needed."""
        if self.is_authenticated:
            return self._access_token

        if not self.client_secret or not self.refresh_token:
            raise AuthMissingCredentials(
                "Missing credentials. Set TASTY_CLIENT_SECRET and TASTY_REFRESH_TOKEN in backend/.env"
            )

        logger.info(f"Authenticating with tastytrade ({'Sandbox' if self.sandbox else 'Prod'})...")
        try:
            async with self._client() as client:
                r = await client.post(
                    "/oauth/token",
                    json={
                        "grant_type": "refresh_token",
                        "refresh_token": self.refresh_token,
                        "client_secret": self.client_secret,
                    },
                )
                r.raise_for_status()
                payload = r.json()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("Authentication with tastytrade failed", details=str(e))

        token = payload.get("access_token")
        if not token:
            raise UpstreamUnavailable("Authentication response did not contain an access token")

        expires_in = float(payload.get("expires_in") or 900)
        self._access_token = token
        self._token_expires_at = time.time() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        return token

    async def _get(self, path: str) -> Dict[str, Any]:
        token = await self.authenticate()
        try:
            async with self._client() as client:
                r = await client.get(path, headers={"Authorization": f"Bearer {token}"})
                r.raise_for_status()
                return r.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(
                f"tastytrade returned HTTP {e.response.status_code} for {path}",
                details=e.response.text[:200],
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Request to tastytrade failed for {path}", details=str(e))

    async def fetch_chain_metadata(self, root_or_symbol: str, is_futures: bool) -> List[Dict[str, Any]]:
        """
        Fetch the nested chain and return its raw expirations list.

        Futures use the root-keyed futures endpoint, everything else the
        per-symbol endpoint. An empty list means the venue has no chain.
        """
        if is_futures:
            payload = await self._get(f"/futures-option-chains/{quote(root_or_symbol)}/nested")
            data = payload.get("data") or payload
            option_chains = data.get("option-chains") or []
            if not isinstance(option_chains, list) or not option_chains:
                return []
            return option_chains[0].get("expirations") or []

        payload = await self._get(f"/option-chains/{quote(root_or_symbol)}/nested")
        data = payload.get("data") or payload

        if isinstance(data, list) and data and data[0].get("expirations"):
            return data[0]["expirations"]
        items = data.get("items") if isinstance(data, dict) else None
        if items:
            if items[0].get("expirations"):
                return items[0]["expirations"]
            return items
        if isinstance(data, dict) and data.get("expirations"):
            return data["expirations"]
        return []

    async def search_symbols(self, query: str) -> List[SymbolSearchResult]:
        """Symbol search. Failures are logged and yield an empty list."""
        try:
            payload = await self._get(f"/symbols/search/{quote(query)}")
        except UpstreamUnavailable as e:
            logger.error(f"Symbol search error: {e}")
            return []

        data = payload.get("data") or {}
        items = data.get("items") if isinstance(data, dict) else data
        if not isinstance(items, list):
            logger.warning(f"Unexpected symbol search response: {payload}")
            return []

        return [
            SymbolSearchResult(
                symbol=item.get("symbol", ""),
                description=item.get("description") or "",
                listed_market=item.get("listed-market"),
                instrument_type=item.get("instrument-type"),
            )
            for item in items
            if item.get("symbol")
        ]

    async def get_quote_token(self) -> Tuple[str, str]:
        """Returns (token, dxlink_url) for the streamer handshake."""
        payload = await self._get("/api-quote-tokens")
        data = payload.get("data") or {}
        token = data.get("token")
        url = data.get("dxlink-url")
        if not token or not url:
            raise UpstreamUnavailable("Quote token response is missing token or dxlink-url")
        return token, url
