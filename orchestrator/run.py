"""Run state machine: one execution attempt against the engine"""
import asyncio
import codecs
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.bus import FrameBus, Handler
from core.codec import (
    DiagnosticRecord, DoneRecord, EventRecord, FrameDecoder, OutputRecord, Record,
)
from core.errors import GPTScriptError, PolicyError, ProtocolError, RunError, UsageError
from core.events import (
    CallFrame, Frame, Program, PromptFrame, RunEventType, RunFrame, RunState,
    ToolDef, Usage, random_id,
)
from core.options import GlobalOptions, RunOptions
from core.telemetry import telemetry
from engines.protocol import RunRequest, RunTransport

logger = logging.getLogger(__name__)

ABORTED = "Run has been aborted"
INCOMPLETE = "incomplete stream"

TransportFactory = Callable[[], RunTransport]


def _token(state: Any) -> Optional[str]:
    """Continuation tokens are opaque strings; structured ones are re-encoded"""
    if state is None or state == "":
        return None
    if isinstance(state, str):
        return state
    return json.dumps(state)


class Run:
    """
    Client-side handle on one execution.

    Created in Creating; start() submits the request and a background
    task feeds every transport chunk through a FrameDecoder. State only
    moves forward: once Finished or Error nothing changes it again.
    """

    def __init__(
        self,
        request_path: str,
        tool_path: str = "",
        tools: Optional[List[ToolDef]] = None,
        content: str = "",
        options: Optional[RunOptions] = None,
        global_options: Optional[GlobalOptions] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.id = random_id("run-")
        self.request_path = request_path
        self.tool_path = tool_path
        self.tools = tools
        self.content = content
        self.options = options or RunOptions()
        self.global_options = global_options or GlobalOptions()
        self.transport_factory = transport_factory

        self.state = RunState.CREATING
        self.output = ""
        self.stderr = ""
        self.err = ""
        self.chat_state: Optional[str] = None
        self.responding_tool_id = ""
        self.program: Optional[Program] = None
        self.calls: Dict[str, CallFrame] = {}
        self.parent_call_id = ""
        self.usage = Usage()

        self.bus = FrameBus()
        self.transport: Optional[RunTransport] = None
        self._task: Optional[asyncio.Task] = None
        self._result: Optional[asyncio.Future] = None
        self._cancel_requested = False
        self._done_seen = False
        self._finish_seen = False
        self.trace = telemetry.run_trace(self.id, request_path)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event_type: Union[RunEventType, str], handler: Handler) -> "Run":
        """Register handler for a frame type (RunEventType.EVENT for all)"""
        self.bus.subscribe(event_type, handler)
        return self

    subscribe = on

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._task is not None

    def start(self) -> "Run":
        """Submit the request; progress is delivered through subscribers"""
        if self._task is not None:
            raise UsageError(f"Run {self.id} already started")
        if self.transport_factory is None:
            raise UsageError(f"Run {self.id} has no transport")

        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self._task = loop.create_task(self._drive())
        logger.info(f"Run {self.id} submitted: {self.request_path} {self.tool_path}".rstrip())
        return self

    def text(self) -> Awaitable[str]:
        """
        Await the primary output.

        Raises UsageError immediately if the Run was never started; the
        returned awaitable raises RunError if the Run ends in Error.
        """
        if self._result is None:
            raise UsageError(f"Run {self.id} not started")
        return self._wait_text()

    async def _wait_text(self) -> str:
        await asyncio.shield(self._result)
        if self.state == RunState.ERROR:
            raise RunError(self.err)
        return self.output

    def json(self) -> Awaitable[Any]:
        """Await the primary output and decode it as JSON"""
        pending = self.text()
        return self._parse_json(pending)

    @staticmethod
    async def _parse_json(pending: Awaitable[str]) -> Any:
        return json.loads(await pending)

    async def wait(self) -> RunState:
        """Wait until the transport has ended, without raising on Error"""
        if self._task is None:
            raise UsageError(f"Run {self.id} not started")
        await asyncio.shield(self._task)
        return self.state

    def close(self):
        """
        Abort the Run.

        The state becomes Error only once the transport reports the abort.
        Closing a Run that already ended is a no-op.
        """
        if self._task is None:
            raise UsageError(f"Run {self.id} not started")
        if self.state.is_terminal or self._task.done():
            return
        self._cancel_transport()

    cancel = close

    def _cancel_transport(self):
        if self._cancel_requested:
            return
        self._cancel_requested = True
        logger.info(f"Run {self.id} cancelling")
        if self.transport is not None:
            self.transport.cancel()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def current_chat_state(self) -> Optional[str]:
        return self.chat_state

    def parent_call_frame(self) -> Optional[CallFrame]:
        """The root call, once its first frame has arrived"""
        if not self.parent_call_id:
            return None
        return self.calls.get(self.parent_call_id)

    # ------------------------------------------------------------------
    # Continuation
    # ------------------------------------------------------------------

    def next_chat(self, user_input: str = "", chat_state: Optional[str] = None) -> "Run":
        """
        Start the next turn of a conversation.

        Allowed from Creating, Continue and Error. A Continue run hands its
        token to the new turn; an Error run starts fresh unless chat_state
        is given. A Run that was never started is submitted in place,
        otherwise a new Run is derived and this one is left untouched.
        """
        if self.state not in (RunState.CREATING, RunState.CONTINUE, RunState.ERROR):
            raise UsageError(f"Run {self.id} is {self.state.value}; only creating, continue or error runs can continue")

        if self.state == RunState.CREATING and self._task is None:
            run = self
            token = chat_state if chat_state is not None else self.options.chat_state
        else:
            run = self.derive()
            if chat_state is not None:
                token = chat_state
            elif self.state == RunState.CONTINUE:
                token = self.chat_state
            else:
                token = None

        run.options.chat_state = token
        run.options.input = user_input
        return run.start()

    def derive(self) -> "Run":
        """Fresh Run with the same tool reference, options and transport"""
        return Run(
            self.request_path,
            tool_path=self.tool_path,
            tools=self.tools,
            content=self.content,
            options=self.options.model_copy(deep=True),
            global_options=self.global_options,
            transport_factory=self.transport_factory,
        )

    # ------------------------------------------------------------------
    # Stream processing
    # ------------------------------------------------------------------

    def request(self) -> RunRequest:
        return RunRequest(
            request_path=self.request_path,
            tool_path=self.tool_path,
            tools=self.tools,
            content=self.content,
            options=self.options,
            global_options=self.global_options,
        )

    async def _drive(self):
        try:
            await self._consume()
        except Exception as e:
            logger.error(f"Run {self.id} failed: {e}", exc_info=True)
            self._fail(str(e) or type(e).__name__)
        finally:
            self._settle()

    async def _consume(self):
        self.transport = self.transport_factory()
        if self._cancel_requested:
            self.transport.cancel()
        try:
            await self.transport.start(self.request())
        except GPTScriptError as e:
            self._fail(e.message)
            return

        self._set_state(RunState.RUNNING)

        decoders = {
            "body": FrameDecoder(),
            "events": FrameDecoder(),
            "stdout": FrameDecoder(envelope="stdout"),
        }
        diagnostics = codecs.getincrementaldecoder("utf-8")(errors="replace")

        async for chunk in self.transport.chunks():
            logger.debug(f"Run {self.id} {chunk.channel}: {len(chunk.data)} bytes")
            if chunk.channel == "stderr":
                self.stderr += diagnostics.decode(chunk.data)
                continue
            for record in decoders[chunk.channel].feed(chunk.data):
                self._handle_record(record)

        result = await self.transport.wait()

        leftover = ""
        for channel, decoder in decoders.items():
            tail = decoder.close()
            if not tail:
                continue
            if channel == "stdout":
                self._append_output(tail)
            else:
                logger.warning(f"Run {self.id} stream ended mid-record: {tail[:100]}")
                leftover = tail

        if self._finish_seen and self.state == RunState.RUNNING:
            self._set_state(RunState.FINISHED)
        elif result.aborted:
            self._fail(ABORTED)
        elif result.error:
            detail = self.stderr.strip()
            self._fail(f"{result.error}: {detail}" if detail else result.error)
        elif leftover and not self._terminal_seen():
            self._fail(ProtocolError(INCOMPLETE).message)
        elif self.state == RunState.RUNNING:
            self._set_state(RunState.FINISHED)

    def _terminal_seen(self) -> bool:
        return self._done_seen or self._finish_seen or self.state != RunState.RUNNING

    def _handle_record(self, record: Record):
        if isinstance(record, DiagnosticRecord):
            self.stderr += record.text
        elif isinstance(record, OutputRecord):
            self._handle_output(record.payload)
        elif isinstance(record, EventRecord):
            self._handle_frame(record.frame)
        elif isinstance(record, DoneRecord):
            self._done_seen = True

    def _handle_output(self, payload: Any):
        """Primary output: plain text, or a chat state object"""
        if isinstance(payload, str):
            self._append_output(payload)
            return
        if not isinstance(payload, dict):
            self._append_output(json.dumps(payload))
            return

        if self.state.is_terminal:
            logger.debug(f"Run {self.id} ignoring output after {self.state.value}")
            return

        if "content" in payload:
            content = payload["content"]
            self.output = content if isinstance(content, str) else json.dumps(content)

        if "done" not in payload:
            return
        if payload["done"]:
            self.chat_state = None
            self._set_state(RunState.FINISHED)
        else:
            self.chat_state = _token(payload.get("state"))
            self.responding_tool_id = payload.get("toolID") or payload.get("toolId") or ""
            self._set_state(RunState.CONTINUE)

    def _append_output(self, text: str):
        # runFinish output is authoritative; stdout text only fills in before it
        if self.state.is_terminal or self._finish_seen:
            return
        self.output = f"{self.output}\n{text}" if self.output else text

    def _handle_frame(self, frame: Frame):
        if isinstance(frame, PromptFrame) and not self.options.prompt:
            self._reject_prompt(frame)
            return

        if isinstance(frame, RunFrame):
            self._handle_run_frame(frame)
        elif isinstance(frame, CallFrame):
            self._merge_call(frame)

        self.bus.publish(frame)

    def _handle_run_frame(self, frame: RunFrame):
        """
        runStart records the program; runFinish records the result.

        A successful runFinish does not settle the Run by itself: a chat
        turn's state record may still follow on the primary output, so the
        final state is left to that record or to the end of the stream.
        """
        if frame.type == RunEventType.RUN_START.value:
            if frame.program is not None:
                self.program = frame.program
            return

        if self.state.is_terminal or self._finish_seen:
            return
        self.trace.usage(self.usage.to_wire())
        if frame.error:
            self._fail(frame.error)
            return

        self._finish_seen = True
        if self.state == RunState.CONTINUE:
            return

        self.output = frame.output
        token = _token(frame.chat_state)
        if token is not None or frame.state == RunState.CONTINUE.value:
            self.chat_state = token
            self._set_state(RunState.CONTINUE)

    def _merge_call(self, frame: CallFrame):
        """Known ids are updated field by field; unseen ids are inserted"""
        existing = self.calls.get(frame.id)
        if existing is None:
            self.calls[frame.id] = frame
            if not frame.parent_id and not self.parent_call_id:
                self.parent_call_id = frame.id
        else:
            updates = {name: getattr(frame, name) for name in frame.model_fields_set}
            self.calls[frame.id] = existing.model_copy(update=updates)

        if frame.type == RunEventType.CALL_FINISH.value:
            self.usage = Usage(
                prompt_tokens=self.usage.prompt_tokens + frame.usage.prompt_tokens,
                completion_tokens=self.usage.completion_tokens + frame.usage.completion_tokens,
                total_tokens=self.usage.total_tokens + frame.usage.total_tokens,
            )

    def _reject_prompt(self, frame: PromptFrame):
        if self.state.is_terminal:
            return
        error = PolicyError(
            f"prompt occurred when prompt was not allowed: Message: {frame.message}\n"
            f"Fields: {frame.fields}\nSensitive: {frame.sensitive}"
        )
        logger.warning(f"Run {self.id}: {error}")
        self._fail(error.message)
        self._cancel_transport()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, state: RunState):
        if self.state.is_terminal or self.state == state:
            return
        previous = self.state
        self.state = state
        self.trace.state(previous.value, state.value, error=self.err or None)
        if state.is_terminal:
            self._settle()

    def _fail(self, message: str):
        if self.state.is_terminal:
            return
        self.err = message
        self._set_state(RunState.ERROR)

    def _settle(self):
        if self._result is not None and not self._result.done():
            self._result.set_result(None)
