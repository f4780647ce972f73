"""Transport Launcher: locates or starts the engine endpoint"""
import asyncio
import logging
from typing import Optional

import aiohttp

from core.errors import SetupError
from core.options import DEFAULT_EXTERNAL_URL, DEFAULT_LISTEN_ADDRESS, GlobalOptions

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0


class EngineRegistry:
    """
    Process-wide handle on the locally spawned engine.

    Every facade acquires a reference on construction and releases it on
    close; the process is terminated when the count returns to zero.
    """

    def __init__(self):
        self.url: Optional[str] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.refs = 0
        self._lock: Optional[asyncio.Lock] = None
        self._stderr_task: Optional[asyncio.Task] = None

    def acquire(self) -> int:
        self.refs += 1
        logger.debug(f"Engine registry acquired: {self.refs} refs")
        return self.refs

    async def local_endpoint(self, options: GlobalOptions) -> str:
        """Return the local engine's URL, starting it on first use"""
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            if self.url and self.process and self.process.returncode is None:
                return self.url
            self.url = await self._spawn(options)
            return self.url

    async def _spawn(self, options: GlobalOptions) -> str:
        cmd = [
            options.engine_command(),
            "sys.sdkserver",
            "--listen-address",
            DEFAULT_LISTEN_ADDRESS,
        ]
        logger.info(f"Starting engine server: {' '.join(cmd)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=options.child_env(),
            )
        except OSError as e:
            raise SetupError(f"Failed to start engine: {e}") from e

        line = await self.process.stderr.readline()
        address = line.decode(errors="replace").strip()
        if not address:
            code = await self.process.wait()
            self.process = None
            raise SetupError(f"Engine exited before announcing its address (exit status {code})")

        if "=" in address:
            address = address.split("=", 1)[1]
        logger.info(f"Engine server listening on {address}: PID {self.process.pid}")

        self._stderr_task = asyncio.create_task(self._drain_stderr(self.process))
        return f"http://{address}"

    async def _drain_stderr(self, process: asyncio.subprocess.Process):
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            logger.debug(f"engine: {line.decode(errors='replace').rstrip()}")

    async def release(self) -> int:
        """Drop one reference; terminate the engine on the last one"""
        if self.refs > 0:
            self.refs -= 1
        logger.debug(f"Engine registry released: {self.refs} refs")

        if self.refs == 0 and self.process is not None:
            await self._stop()
        return self.refs

    async def _stop(self):
        process = self.process
        self.process = None
        self.url = None
        if process.returncode is not None:
            return

        logger.info(f"Stopping engine server: PID {process.pid}")
        if process.stdin is not None:
            process.stdin.close()
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Engine server did not stop, killing: PID {process.pid}")
            process.kill()
            await process.wait()

        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)
            self._stderr_task = None


default_registry = EngineRegistry()


async def wait_for_engine(url: str, retries: int = 20, interval: float = 0.5):
    """Poll the health endpoint until it answers"""
    health_url = f"{url.rstrip('/')}/healthz"
    last_error = ""

    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=interval * 4)) as session:
        for attempt in range(retries):
            try:
                async with session.get(health_url) as response:
                    if response.status == 200:
                        logger.debug(f"Engine healthy after {attempt + 1} attempts")
                        return
                    last_error = f"status {response.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
            await asyncio.sleep(interval)

    raise SetupError(f"Engine at {url} not ready after {retries} attempts: {last_error}")


class EngineLauncher:
    """Resolves the endpoint a facade talks to and confirms it is healthy"""

    def __init__(self, options: GlobalOptions, registry: Optional[EngineRegistry] = None):
        self.options = options
        self.registry = registry or default_registry
        self.base_url: Optional[str] = None
        self._closed = False
        self.registry.acquire()

    async def ensure_ready(self) -> str:
        """Return a base URL that has passed the health check"""
        if self._closed:
            raise SetupError("Launcher is closed")
        if self.base_url:
            return self.base_url

        if self.options.url:
            url = self.options.url
            if "://" not in url:
                url = f"http://{url}"
        elif self.options.disable_server:
            url = DEFAULT_EXTERNAL_URL
        else:
            url = await self.registry.local_endpoint(self.options)

        await wait_for_engine(url, self.options.health_retries, self.options.health_interval)
        self.base_url = url.rstrip("/")
        return self.base_url

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self.base_url = None
        await self.registry.release()
