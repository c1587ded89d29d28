import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .base import ProviderAdapter, ProviderBackendError
from .retry import calculate_backoff, is_retryable

logger = logging.getLogger(__name__)


class HTTPStreamAdapter(ProviderAdapter):
    """Shared plumbing for adapters that stream server-sent events over HTTP.

    Owns the httpx client and the retry policy for opening a stream. Once the
    upstream has answered with a 2xx the stream is never retried.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self._provider_name = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))
        self._max_attempts = max(1, max_attempts if max_attempts is not None else int(os.getenv("PROVIDER_MAX_ATTEMPTS", "2")))
        self._client = client

    @property
    def name(self) -> str:
        return self._provider_name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _open_stream(self, path: str, headers: Dict[str, str], payload: Dict[str, Any]) -> httpx.Response:
        client = self._get_client()
        attempt = 0
        while True:
            attempt += 1
            request = client.build_request("POST", path, headers=headers, content=json.dumps(payload))
            try:
                resp = await client.send(request, stream=True)
            except httpx.HTTPError as e:
                err = ProviderBackendError(self.name, str(e) or e.__class__.__name__)
                if attempt < self._max_attempts:
                    delay = calculate_backoff(attempt)
                    logger.info("Retrying %s after %.2fs due to transport error: %s", self.name, delay, e)
                    await asyncio.sleep(delay)
                    continue
                logger.error("%s transport error: %s", self.name, e)
                raise err from e

            if resp.status_code < 400:
                return resp

            body = await resp.aread()
            await resp.aclose()
            err = ProviderBackendError(
                self.name,
                _error_message(body, resp.status_code),
                status_code=resp.status_code,
                retry_after=resp.headers.get("retry-after"),
            )
            if is_retryable(resp.status_code) and attempt < self._max_attempts:
                delay = calculate_backoff(attempt, err.retry_after)
                logger.info("Retrying %s after %.2fs due to status %s", self.name, delay, resp.status_code)
                await asyncio.sleep(delay)
                continue
            logger.error("%s API error (%s): %s", self.name, resp.status_code, err.message)
            raise err

    async def _iter_events(self, resp: httpx.Response) -> AsyncIterator[str]:
        """Yield the data payload of each SSE event until the stream ends."""
        try:
            async for line in resp.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    return
                yield data
        except httpx.HTTPError as e:
            logger.error("%s stream interrupted: %s", self.name, e)
            raise ProviderBackendError(self.name, str(e) or e.__class__.__name__) from e
        finally:
            await resp.aclose()


def _error_message(body: bytes, status_code: int) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        text = body.decode("utf-8", errors="replace").strip()
        return text or f"HTTP {status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {status_code}"
