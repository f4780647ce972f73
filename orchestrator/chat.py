"""Chat continuation: multi-turn conversations as a chain of Runs"""
import logging
from typing import List, Optional, Tuple, Union

from core.bus import Handler
from core.events import RunEventType, RunState, random_id
from core.options import GlobalOptions, RunOptions
from orchestrator.run import Run, TransportFactory
from state.persistence import ChatStateDB

logger = logging.getLogger(__name__)


def next_chat(run: Run, user_input: str = "", chat_state: Optional[str] = None) -> Run:
    """
    Issue the next turn after run.

    Raises UsageError, without touching any transport, unless run is in
    Creating, Continue or Error.
    """
    return run.next_chat(user_input, chat_state=chat_state)


class ChatSession:
    """
    One conversation: a sequence of Runs sharing a tool reference.

    Handlers registered with on() follow the conversation onto every new
    turn. With a store attached, the latest token is saved after each
    reply so the conversation can be resumed in another process.
    """

    def __init__(
        self,
        run: Run,
        session_id: Optional[str] = None,
        store: Optional[ChatStateDB] = None,
    ):
        self.id = session_id or random_id("chat-")
        self.current = run
        self.turns: List[Run] = []
        self.store = store
        self._handlers: List[Tuple[Union[RunEventType, str], Handler]] = []

    def on(self, event_type: Union[RunEventType, str], handler: Handler) -> "ChatSession":
        self._handlers.append((event_type, handler))
        self.current.on(event_type, handler)
        return self

    @property
    def chat_state(self) -> Optional[str]:
        return self.current.current_chat_state()

    @property
    def state(self) -> RunState:
        return self.current.state

    def send(self, user_input: str = "") -> Run:
        """Start the next turn and return its Run"""
        run = next_chat(self.current, user_input)
        if run is not self.current:
            for event_type, handler in self._handlers:
                run.on(event_type, handler)
            self.current = run
        self.turns.append(run)
        logger.info(f"Chat {self.id} turn {len(self.turns)}: run {run.id}")
        return run

    async def reply(self, user_input: str = "") -> str:
        """Send a turn and wait for its output"""
        run = self.send(user_input)
        try:
            return await run.text()
        finally:
            await self.save()

    async def save(self):
        if self.store is None:
            return
        run = self.current
        await self.store.save(
            self.id,
            run.request_path,
            self.chat_state,
            tool_path=run.tool_path,
            tools=run.tools,
            content=run.content,
        )

    @classmethod
    async def resume(
        cls,
        session_id: str,
        store: ChatStateDB,
        transport_factory: TransportFactory,
        options: Optional[RunOptions] = None,
        global_options: Optional[GlobalOptions] = None,
    ) -> "ChatSession":
        """
        Rebuild a stored conversation.

        The returned session holds an unstarted Run carrying the stored
        token; the next send() submits it.
        """
        row = await store.get(session_id)
        if row is None:
            raise KeyError(f"No chat session stored under {session_id}")

        options = options.model_copy(deep=True) if options else RunOptions()
        options.chat_state = row["chat_state"]
        run = Run(
            row["request_path"],
            tool_path=row["tool_path"],
            tools=row["tools"],
            content=row["content"],
            options=options,
            global_options=global_options,
            transport_factory=transport_factory,
        )
        logger.info(f"Resumed chat {session_id}")
        return cls(run, session_id=session_id, store=store)
