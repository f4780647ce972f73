"""Engine transport that spawns one engine process per Run"""
import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

from core.errors import TransportError
from engines.aux_channel import AuxiliaryChannel, select_channel
from engines.protocol import RunRequest, TransportChunk, TransportExit

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
# How long the event channel may keep draining after the process exited
EXIT_GRACE = 2.0


class SubprocessEngine:
    """
    Engine CLI adapter: stdout carries output, stderr diagnostics, and the
    auxiliary channel carries structured events.
    """

    def __init__(
        self,
        command: Optional[List[str]] = None,
        channel_factory: Callable[[], AuxiliaryChannel] = select_channel,
    ):
        self.command = command
        self.channel_factory = channel_factory
        self.process: Optional[asyncio.subprocess.Process] = None
        self.channel: Optional[AuxiliaryChannel] = None
        self._queue: "asyncio.Queue[Optional[TransportChunk]]" = asyncio.Queue()
        self._readers: List[asyncio.Task] = []
        self._exit_watch: Optional[asyncio.Task] = None
        self._killed = False

    def build_args(self, request: RunRequest) -> List[str]:
        args = [f"--events-stream-to={self.channel.destination()}"]
        args.extend(request.options.to_args())

        if request.tool_path:
            args.append(request.tool_path)
        if request.stdin_content():
            args.append("-")
        if request.options.input:
            args.append(request.options.input)
        return args

    async def start(self, request: RunRequest) -> None:
        """Spawn the engine and begin pumping its streams"""
        command = self.command or [request.global_options.engine_command()]
        self.channel = self.channel_factory()
        await self.channel.open()

        env = request.global_options.child_env()
        for entry in request.options.env:
            key, _, value = entry.partition("=")
            env[key] = value

        cmd_args = [*command, *self.build_args(request)]
        logger.debug(f"Spawning engine: {cmd_args}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                pass_fds=self.channel.pass_fds(),
            )
        except OSError as e:
            self.channel.close()
            raise TransportError(f"Run failed to start: {e}") from e
        finally:
            self.channel.after_spawn()

        logger.info(f"Engine process started: PID {self.process.pid}")

        content = request.stdin_content()
        try:
            if content:
                self.process.stdin.write(content.encode())
                await self.process.stdin.drain()
            self.process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Engine closed stdin early: {e}")

        self._readers = [
            asyncio.create_task(self._pump("stdout", self.process.stdout)),
            asyncio.create_task(self._pump("stderr", self.process.stderr)),
        ]
        events_task = asyncio.create_task(self._pump_events())
        self._readers.append(events_task)
        self._exit_watch = asyncio.create_task(self._close_channel_on_exit(events_task))

        if self._killed:
            self.process.kill()

    async def _pump(self, channel: str, stream: asyncio.StreamReader):
        try:
            while True:
                data = await stream.read(READ_SIZE)
                if not data:
                    break
                await self._queue.put(TransportChunk(channel=channel, data=data))
        finally:
            await self._queue.put(None)

    async def _pump_events(self):
        try:
            async for data in self.channel.read():
                await self._queue.put(TransportChunk(channel="events", data=data))
        finally:
            await self._queue.put(None)

    async def _close_channel_on_exit(self, events_task: asyncio.Task):
        await self.process.wait()
        await asyncio.wait({events_task}, timeout=EXIT_GRACE)
        self.channel.close()

    async def chunks(self) -> AsyncIterator[TransportChunk]:
        remaining = len(self._readers)
        while remaining:
            chunk = await self._queue.get()
            if chunk is None:
                remaining -= 1
                continue
            yield chunk

    async def wait(self) -> TransportExit:
        code = await self.process.wait()
        await asyncio.gather(*self._readers, return_exceptions=True)
        logger.info(f"Engine process exited: PID {self.process.pid} code {code}")

        if self._killed or code < 0:
            return TransportExit(aborted=True, code=code)
        if code != 0:
            return TransportExit(error=f"exit status {code}", code=code)
        return TransportExit(code=code)

    def cancel(self) -> None:
        """Kill the engine process; wait() reports the abort"""
        self._killed = True
        if self.process and self.process.returncode is None:
            logger.info(f"Killing engine process: PID {self.process.pid}")
            self.process.kill()
