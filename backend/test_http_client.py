import httpx
import pytest

from conftest import mock_http

class TestHTTPClientManager:
    """Shared outbound client and its statistics"""

    def setup_method(self):
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.path.endswith("/slow"):
            raise httpx.ReadTimeout("timed out")
        if request.url.path.endswith("/missing"):
            return httpx.Response(404)
        return httpx.Response(200, json={"ok": True})

    @pytest.mark.asyncio
    async def test_default_headers(self):
        http = mock_http(self.handler)
        await http.send("GET", "https://fhir.example.org/R4/metadata")
        request = self.calls[0]
        assert request.headers["Accept"] == "application/fhir+json"
        assert request.headers["User-Agent"] == http.config.epic.user_agent
        await http.close()

    @pytest.mark.asyncio
    async def test_stats_track_outcomes(self):
        http = mock_http(self.handler)

        await http.send("GET", "https://fhir.example.org/R4/ok")
        await http.send("GET", "https://fhir.example.org/R4/missing")
        with pytest.raises(httpx.TimeoutException):
            await http.send("GET", "https://fhir.example.org/R4/slow")
        http.record_retry()
        http.record_timeout()

        stats = http.get_stats()
        assert stats['total_requests'] == 3
        assert stats['successful_requests'] == 1
        assert stats['failed_requests'] == 3
        assert stats['timeouts'] == 2
        assert stats['retry_attempts'] == 1

        http.reset_stats()
        assert http.get_stats()['total_requests'] == 0
        await http.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        http = mock_http(self.handler)
        await http.send("GET", "https://fhir.example.org/R4/ok")
        await http.close()
        await http.close()
        assert http._client is None
