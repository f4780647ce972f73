"""Interactive callbacks: answering confirm and prompt frames"""
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from core.events import AuthResponse, CallFrame, PromptFrame, PromptResponse, RunEventType
from orchestrator.run import Run
from transport.http_client import EngineClient

logger = logging.getLogger(__name__)

ClientProvider = Callable[[], Awaitable[EngineClient]]
ConfirmHandler = Callable[[CallFrame], Union[AuthResponse, Awaitable[AuthResponse]]]
PromptHandler = Callable[[PromptFrame], Union[PromptResponse, Awaitable[PromptResponse]]]


class InteractionChannel:
    """Posts the host's answers back to the engine, keyed by frame id"""

    def __init__(self, client_provider: ClientProvider):
        self.client_provider = client_provider

    async def confirm(self, response: AuthResponse):
        client = await self.client_provider()
        logger.info(f"Confirm {response.id}: accept={response.accept}")
        await client.post(f"confirm/{response.id}", response.to_wire())

    async def prompt_response(self, response: PromptResponse):
        client = await self.client_provider()
        logger.info(f"Prompt response {response.id}: {sorted(response.responses)}")
        await client.post(f"prompt-response/{response.id}", response.to_wire())

    def attach(
        self,
        run: Run,
        on_confirm: Optional[ConfirmHandler] = None,
        on_prompt: Optional[PromptHandler] = None,
    ) -> Run:
        """
        Answer a Run's callConfirm / prompt frames with the given handlers.

        Handlers may be plain functions or coroutines; their answer is
        posted as soon as it is available.
        """
        if on_confirm is not None:
            async def answer_confirm(frame: CallFrame):
                response = await _resolve(on_confirm(frame))
                await self.confirm(response)

            run.on(RunEventType.CALL_CONFIRM, answer_confirm)

        if on_prompt is not None:
            async def answer_prompt(frame: PromptFrame):
                response = await _resolve(on_prompt(frame))
                await self.prompt_response(response)

            run.on(RunEventType.PROMPT, answer_prompt)

        return run


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value
