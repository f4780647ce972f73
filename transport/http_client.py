"""Request/response calls against the engine endpoint"""
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from core.errors import EngineError, TransportError

logger = logging.getLogger(__name__)


class EngineClient:
    """One-shot JSON calls: list models, version, parse, credentials, callbacks"""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def call(self, path: str, body: Optional[Dict[str, Any]] = None) -> str:
        """
        Issue a basic command and return its stdout text.

        GET when there is no body, POST otherwise. The engine wraps answers
        as {"stdout": ..., "stderr": ...}; a non-empty stderr is an error.
        """
        status, text = await self._request(path, body)
        try:
            payload = json.loads(text) if text else {}
        except json.JSONDecodeError:
            payload = None

        if not isinstance(payload, dict):
            if status >= 400:
                raise EngineError(f"{path} failed ({status}): {text.strip()}")
            return text

        if payload.get("stderr"):
            raise EngineError(str(payload["stderr"]))
        if status >= 400:
            raise EngineError(f"{path} failed ({status}): {text.strip()}")

        stdout = payload.get("stdout", "")
        if isinstance(stdout, str):
            return stdout
        return json.dumps(stdout)

    async def post(self, path: str, body: Dict[str, Any]):
        """Fire a callback answer; only the status matters"""
        status, text = await self._request(path, body)
        if status >= 400:
            raise EngineError(f"{path} failed ({status}): {text.strip()}")

    async def _request(self, path: str, body: Optional[Dict[str, Any]]):
        url = f"{self.base_url}/{path.lstrip('/')}"
        method = "GET" if body is None else "POST"
        logger.debug(f"{method} {url}")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=body) as response:
                    return response.status, await response.text()
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
