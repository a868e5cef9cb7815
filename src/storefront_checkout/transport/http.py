"""
REST HTTP client shared by the storefront back-end APIs.
"""

import logging
from typing import Any, Optional

import httpx

from storefront_checkout.errors import TransportError

DEFAULT_BASE_URL = "https://store.example.com"
DEFAULT_API_PREFIX = "/.netlify/functions"
USER_AGENT = "storefront-checkout/0.1.0"

logger = logging.getLogger(__name__)


class HttpClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: Optional[str] = None,
        api_prefix: str = DEFAULT_API_PREFIX,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}{api_prefix}",
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _unwrap(json_data: Any) -> Any:
        """Unwrap ``{"success": true, "data": <actual_data>}`` responses."""
        if isinstance(json_data, dict) and "success" in json_data and "data" in json_data:
            return json_data["data"]
        return json_data

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise TransportError(f"{method} {path} failed: {e}", retryable=True) from e
        if resp.status_code >= 400:
            logger.debug("%s %s -> %s %s", method, path, resp.status_code, resp.text[:200])
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
                retryable=resp.status_code >= 500 or resp.status_code == 429,
                payload=payload,
            )
        return self._unwrap(resp.json())

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("GET", path, params=params, headers=self._headers())

    async def post(
        self,
        path: str,
        body: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        return await self._send("POST", path, json=body, headers=self._headers(headers))

    async def close(self) -> None:
        await self._client.aclose()
