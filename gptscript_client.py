"""GPTScript facade: the object host applications instantiate"""
import json
import logging
from pathlib import Path
from typing import List, Optional, Union

from core.errors import UsageError
from core.events import (
    AuthResponse, Block, Credential, Program, PromptResponse, ToolDef,
    blocks_to_nodes, parse_blocks,
)
from core.options import GlobalOptions, RunOptions, merge_options
from core.telemetry import telemetry
from engines.http_engine import HttpEngine
from engines.subprocess_engine import SubprocessEngine
from orchestrator.chat import ChatSession
from orchestrator.interaction import InteractionChannel
from orchestrator.run import Run, TransportFactory
from state.persistence import ChatStateDB
from transport.http_client import EngineClient
from transport.launcher import EngineLauncher, EngineRegistry

logger = logging.getLogger(__name__)

ToolInput = Union[ToolDef, List[ToolDef]]


class GPTScript:
    """
    Entry point for driving the engine.

    Owns global options and a launcher reference. Streaming operations
    (evaluate, run, chat) return a Run; everything else is a one-shot
    request against the engine endpoint.
    """

    def __init__(
        self,
        options: Optional[GlobalOptions] = None,
        registry: Optional[EngineRegistry] = None,
    ):
        self.options = options or GlobalOptions.from_env()
        self.launcher = EngineLauncher(self.options, registry)
        self.interaction = InteractionChannel(self._client)
        self._engine_client: Optional[EngineClient] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        """Release this facade's reference on the shared engine"""
        await self.launcher.close()
        self._engine_client = None

    async def _client(self) -> EngineClient:
        base_url = await self.launcher.ensure_ready()
        if self._engine_client is None or self._engine_client.base_url != base_url:
            self._engine_client = EngineClient(base_url)
        return self._engine_client

    # ------------------------------------------------------------------
    # Streaming operations
    # ------------------------------------------------------------------

    async def evaluate(self, tools: ToolInput, options: Optional[RunOptions] = None) -> Run:
        """Execute inline tool definition(s)"""
        tool_list = tools if isinstance(tools, list) else [tools]
        run = await self._new_run("evaluate", tools=tool_list, options=options)
        return run.start()

    async def run(self, tool_path: str, options: Optional[RunOptions] = None) -> Run:
        """Execute a tool by path or URL"""
        run = await self._new_run("run", tool_path=tool_path, options=options)
        return run.start()

    async def chat(
        self,
        tool: Union[str, ToolInput],
        options: Optional[RunOptions] = None,
        store: Optional[ChatStateDB] = None,
        session_id: Optional[str] = None,
    ) -> ChatSession:
        """
        Open a conversation with a chat tool.

        Nothing is submitted until the first ChatSession.send().
        """
        if isinstance(tool, str):
            run = await self._new_run("run", tool_path=tool, options=options)
        else:
            tool_list = tool if isinstance(tool, list) else [tool]
            run = await self._new_run("evaluate", tools=tool_list, options=options)
        return ChatSession(run, session_id=session_id, store=store)

    async def resume_chat(
        self,
        session_id: str,
        store: ChatStateDB,
        options: Optional[RunOptions] = None,
    ) -> ChatSession:
        """Pick up a stored conversation from its last token"""
        merged = merge_options(self.options, options)
        self._check_interactive(merged)
        return await ChatSession.resume(
            session_id,
            store,
            await self._transport_for(),
            options=merged,
            global_options=self.options,
        )

    async def _new_run(
        self,
        request_path: str,
        tool_path: str = "",
        tools: Optional[List[ToolDef]] = None,
        content: str = "",
        options: Optional[RunOptions] = None,
    ) -> Run:
        merged = merge_options(self.options, options)
        self._check_interactive(merged)
        return Run(
            request_path,
            tool_path=tool_path,
            tools=tools,
            content=content,
            options=merged,
            global_options=self.options,
            transport_factory=await self._transport_for(),
        )

    def _check_interactive(self, options: RunOptions):
        if self.options.run_transport == "subprocess" and (options.confirm or options.prompt):
            raise UsageError("confirm and prompt need the HTTP transport; a spawned engine cannot be answered")

    async def _transport_for(self) -> TransportFactory:
        if self.options.run_transport == "subprocess":
            return lambda: SubprocessEngine()
        base_url = await self.launcher.ensure_ready()
        return lambda: HttpEngine(base_url)

    # ------------------------------------------------------------------
    # Interactive callbacks
    # ------------------------------------------------------------------

    async def confirm(self, response: AuthResponse):
        async with telemetry.trace_task("gptscript.confirm", id=response.id):
            await self.interaction.confirm(response)

    async def prompt_response(self, response: PromptResponse):
        async with telemetry.trace_task("gptscript.prompt_response", id=response.id):
            await self.interaction.prompt_response(response)

    # ------------------------------------------------------------------
    # Request/response operations
    # ------------------------------------------------------------------

    async def version(self) -> str:
        async with telemetry.trace_task("gptscript.version"):
            client = await self._client()
            return await client.call("version")

    async def list_tools(self) -> str:
        async with telemetry.trace_task("gptscript.list_tools"):
            client = await self._client()
            return await client.call("list-tools")

    async def list_models(
        self,
        providers: Optional[List[str]] = None,
        credential_overrides: Optional[List[str]] = None,
    ) -> List[str]:
        """Model names, optionally scoped to providers"""
        async with telemetry.trace_task("gptscript.list_models", providers=providers or []):
            client = await self._client()
            body = self.options.to_wire()
            body.update({
                "providers": providers or [],
                "env": self.options.env,
                "credentialOverrides": credential_overrides or [],
            })
            out = await client.call("list-models", body)
            return [line for line in out.strip().split("\n") if line]

    async def parse(self, file_name: Union[str, Path], disable_cache: bool = False) -> List[Block]:
        """Parse a tool file into blocks"""
        async with telemetry.trace_task("gptscript.parse", file=str(file_name)):
            client = await self._client()
            out = await client.call("parse", {"file": str(file_name), "disableCache": disable_cache})
            return parse_blocks(json.loads(out).get("nodes"))

    async def parse_content(self, content: str) -> List[Block]:
        """Parse tool source text into blocks"""
        async with telemetry.trace_task("gptscript.parse_content"):
            client = await self._client()
            out = await client.call("parse", {"content": content})
            return parse_blocks(json.loads(out).get("nodes"))

    async def fmt(self, blocks: List[Block]) -> str:
        """Serialize blocks back into tool source text"""
        async with telemetry.trace_task("gptscript.fmt", blocks=len(blocks)):
            client = await self._client()
            return await client.call("fmt", {"nodes": blocks_to_nodes(blocks)})

    stringify = fmt

    async def load_file(
        self, file_name: Union[str, Path], disable_cache: bool = False, sub_tool: str = ""
    ) -> Program:
        return await self._load({"file": str(file_name)}, disable_cache, sub_tool)

    async def load_content(self, content: str, disable_cache: bool = False, sub_tool: str = "") -> Program:
        return await self._load({"content": content}, disable_cache, sub_tool)

    async def load_tools(self, tools: ToolInput, disable_cache: bool = False, sub_tool: str = "") -> Program:
        tool_list = tools if isinstance(tools, list) else [tools]
        return await self._load({"toolDefs": [t.to_wire() for t in tool_list]}, disable_cache, sub_tool)

    async def _load(self, source: dict, disable_cache: bool, sub_tool: str) -> Program:
        """Resolve a program graph without executing it"""
        async with telemetry.trace_task("gptscript.load", source=sorted(source)):
            client = await self._client()
            body = dict(source, disableCache=disable_cache, subTool=sub_tool)
            out = await client.call("load", body)
            return Program.model_validate(json.loads(out).get("program") or {})

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def list_credentials(
        self, contexts: Optional[List[str]] = None, all_contexts: bool = False
    ) -> List[Credential]:
        async with telemetry.trace_task("gptscript.list_credentials"):
            client = await self._client()
            out = await client.call(
                "credentials",
                {"context": contexts or ["default"], "allContexts": all_contexts},
            )
            return [Credential.model_validate(c) for c in json.loads(out or "[]") or []]

    async def create_credential(self, credential: Credential):
        async with telemetry.trace_task("gptscript.create_credential", credential=credential.name):
            client = await self._client()
            await client.call("credentials/create", {"content": json.dumps(credential.to_wire())})

    async def reveal_credential(self, contexts: List[str], name: str) -> Credential:
        async with telemetry.trace_task("gptscript.reveal_credential", credential=name):
            client = await self._client()
            out = await client.call("credentials/reveal", {"context": contexts, "name": name})
            return Credential.model_validate(json.loads(out))

    async def delete_credential(self, context: str, name: str):
        async with telemetry.trace_task("gptscript.delete_credential", credential=name):
            client = await self._client()
            await client.call("credentials/delete", {"context": [context], "name": name})
