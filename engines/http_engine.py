"""Engine transport that streams a Run over HTTP/SSE"""
import asyncio
import logging
from typing import AsyncIterator, Optional

import aiohttp

from core.errors import TransportError
from engines.protocol import RunRequest, TransportChunk, TransportExit

logger = logging.getLogger(__name__)


class HttpEngine:
    """
    Submits a Run to a listening engine and yields the response body.

    The body is a server-sent-events stream; every record, including
    stdout and stderr envelopes, arrives on the single "body" channel.
    """

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.response: Optional[aiohttp.ClientResponse] = None
        self._cancelled = False
        self._error: Optional[str] = None

    async def start(self, request: RunRequest) -> None:
        url = f"{self.base_url}/{request.request_path}"
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))

        logger.debug(f"POST {url}")
        try:
            self.response = await self._session.post(url, json=request.body())
        except aiohttp.ClientError as e:
            await self._close_session()
            raise TransportError(f"Run failed to start: {e}") from e

        if self.response.status >= 400:
            body = await self.response.text()
            self.response.release()
            await self._close_session()
            raise TransportError(f"Engine returned {self.response.status}: {body.strip()}")

        if self._cancelled:
            self.response.close()

    async def chunks(self) -> AsyncIterator[TransportChunk]:
        if self.response is None:
            return
        try:
            async for data in self.response.content.iter_any():
                yield TransportChunk(channel="body", data=data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if not self._cancelled:
                logger.warning(f"Run stream interrupted: {e}")
                self._error = str(e) or type(e).__name__

    async def wait(self) -> TransportExit:
        status = self.response.status if self.response is not None else None
        if self.response is not None:
            self.response.release()
        await self._close_session()

        if self._cancelled:
            return TransportExit(aborted=True, code=status)
        if self._error:
            return TransportExit(error=self._error, code=status)
        return TransportExit(code=status)

    def cancel(self) -> None:
        """Abort the in-flight request"""
        self._cancelled = True
        if self.response is not None:
            logger.info(f"Aborting request to {self.response.url}")
            self.response.close()

    async def _close_session(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
