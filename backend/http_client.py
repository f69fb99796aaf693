import httpx
import asyncio
from typing import Dict, Optional, Any
import logging
from config import get_config

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"

class HTTPClientManager:
    """Shared outbound HTTP client for the Epic FHIR server.

    One attempt per call; retry and timeout policy belong to the caller.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = get_config()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'retry_attempts': 0,
            'timeouts': 0
        }

    async def _create_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client with proper configuration"""
        limits = httpx.Limits(
            max_connections=self.config.epic.max_connections,
            max_keepalive_connections=10
        )

        return httpx.AsyncClient(
            limits=limits,
            transport=self._transport,
            headers={
                "User-Agent": self.config.epic.user_agent,
                "Accept": FHIR_JSON,
                "Content-Type": FHIR_JSON
            },
            follow_redirects=True
        )

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    self._client = await self._create_client()
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client:
            async with self._lock:
                if self._client:
                    await self._client.aclose()
                    self._client = None

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        timeout: Optional[float] = None
    ) -> httpx.Response:
        """Issue a single request; transport errors propagate as httpx exceptions"""
        client = await self.get_client()
        self._stats['total_requests'] += 1
        try:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=json,
                timeout=timeout
            )
        except httpx.TimeoutException:
            self._stats['timeouts'] += 1
            self._stats['failed_requests'] += 1
            raise
        except httpx.RequestError:
            self._stats['failed_requests'] += 1
            raise

        if response.is_success:
            self._stats['successful_requests'] += 1
        else:
            self._stats['failed_requests'] += 1
        return response

    def record_retry(self):
        self._stats['retry_attempts'] += 1

    def record_timeout(self):
        """Count a timeout enforced around ``send`` by the caller"""
        self._stats['timeouts'] += 1
        self._stats['failed_requests'] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get HTTP client statistics"""
        return {
            **self._stats,
            "config": {
                "user_agent": self.config.epic.user_agent,
                "max_connections": self.config.epic.max_connections
            }
        }

    def reset_stats(self):
        """Reset statistics"""
        self._stats = self._empty_stats()

# Global HTTP client manager
_http_client_manager: Optional[HTTPClientManager] = None

def get_http_client() -> HTTPClientManager:
    """Get global HTTP client manager"""
    global _http_client_manager
    if _http_client_manager is None:
        _http_client_manager = HTTPClientManager()
    return _http_client_manager

async def close_http_client():
    """Close global HTTP client"""
    global _http_client_manager
    if _http_client_manager:
        await _http_client_manager.close()
        _http_client_manager = None

def get_http_stats() -> Dict[str, Any]:
    """Get HTTP client statistics"""
    if _http_client_manager:
        return _http_client_manager.get_stats()
    return {}
