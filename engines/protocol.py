"""RunTransport protocol definition"""
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from core.events import ToolDef, tools_to_content
from core.options import GlobalOptions, RunOptions


class RunRequest(BaseModel):
    """Everything a transport needs to submit one Run"""
    request_path: str
    tool_path: str = ""
    tools: Optional[List[ToolDef]] = None
    content: str = ""
    options: RunOptions = Field(default_factory=RunOptions)
    global_options: GlobalOptions = Field(default_factory=GlobalOptions)

    def body(self) -> Dict[str, Any]:
        """JSON payload for the HTTP transport"""
        payload: Dict[str, Any] = {}
        if self.tools is not None:
            payload["toolDefs"] = [t.to_wire() for t in self.tools]
        elif self.tool_path:
            payload["file"] = self.tool_path
        elif self.content:
            payload["content"] = self.content
        payload.update(self.global_options.to_wire())
        payload.update(self.options.to_wire())
        return payload

    def stdin_content(self) -> str:
        """Source text piped to a directly spawned engine"""
        if self.tools is not None:
            return tools_to_content(self.tools)
        return self.content


class TransportChunk(BaseModel):
    """Raw bytes from one of the transport's streams"""
    channel: Literal["body", "stdout", "stderr", "events"]
    data: bytes


class TransportExit(BaseModel):
    """How the transport ended"""
    aborted: bool = False
    error: Optional[str] = None
    code: Optional[int] = None


class RunTransport(Protocol):
    """Duplex channel carrying one Run's output, diagnostics and events"""

    async def start(self, request: RunRequest) -> None:
        """
        Submit the request.

        Raises:
            TransportError: the process could not be spawned or the
                endpoint refused the request
        """
        ...

    def chunks(self) -> AsyncIterator[TransportChunk]:
        """Yield chunks in arrival order until every stream is exhausted"""
        ...

    async def wait(self) -> TransportExit:
        """Wait for the transport to terminate"""
        ...

    def cancel(self) -> None:
        """Kill the process / abort the request; termination is reported by wait()"""
        ...
