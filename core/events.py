"""Frame and tool-definition models exchanged with the engine"""
import random
import string
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RunEventType(str, Enum):
    """Subscription keys; every frame type plus the catch-all EVENT"""
    EVENT = "event"
    RUN_START = "runStart"
    RUN_FINISH = "runFinish"
    CALL_START = "callStart"
    CALL_CHAT = "callChat"
    CALL_SUB_CALLS = "callSubCalls"
    CALL_PROGRESS = "callProgress"
    CALL_CONFIRM = "callConfirm"
    CALL_CONTINUE = "callContinue"
    CALL_FINISH = "callFinish"
    PROMPT = "prompt"


class RunState(str, Enum):
    """Lifecycle states of a Run"""
    CREATING = "creating"
    RUNNING = "running"
    CONTINUE = "continue"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.FINISHED, RunState.ERROR)


def random_id(prefix: str) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return prefix + "".join(random.choices(alphabet, k=10))


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; unknown fields are kept"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Tool definitions and parsed blocks
# ---------------------------------------------------------------------------


class Property(WireModel):
    type: str = "string"
    description: str = ""
    default: Optional[str] = None


class ArgumentSchema(WireModel):
    type: str = "object"
    properties: Dict[str, Property] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)


class ToolDef(WireModel):
    """Inline tool definition"""
    name: str = ""
    description: str = ""
    max_tokens: Optional[int] = None
    model_name: str = ""
    model_provider: bool = False
    json_response: bool = False
    temperature: Optional[float] = None
    cache: Optional[bool] = None
    chat: bool = False
    internal_prompt: Optional[bool] = None
    arguments: Optional[ArgumentSchema] = None
    tools: List[str] = Field(default_factory=list)
    global_tools: List[str] = Field(default_factory=list)
    global_model_name: str = ""
    context: List[str] = Field(default_factory=list)
    export_context: List[str] = Field(default_factory=list)
    export: List[str] = Field(default_factory=list)
    agents: List[str] = Field(default_factory=list)
    credentials: List[str] = Field(default_factory=list)
    instructions: str = ""
    type: str = "tool"


class Repo(WireModel):
    vcs: str = ""
    root: str = ""
    path: str = ""
    name: str = ""
    revision: str = ""


class SourceRef(WireModel):
    location: str = ""
    line_no: int = 0
    repo: Optional[Repo] = None


class Tool(ToolDef):
    """Resolved tool as returned by parse/load"""
    id: str = ""
    tool_mapping: Dict[str, Any] = Field(default_factory=dict)
    local_tools: Dict[str, str] = Field(default_factory=dict)
    source: Optional[SourceRef] = None
    working_dir: str = ""


class Text(WireModel):
    """Non-tool text block of a parsed file"""
    id: str = ""
    type: Literal["text"] = "text"
    format: str = "text"
    content: str = ""


Block = Union[Tool, Text]


class Program(WireModel):
    name: str = ""
    entry_tool_id: str = ""
    tool_set: Dict[str, Tool] = Field(default_factory=dict)


def tool_def_to_string(tool: ToolDef) -> str:
    """Render a tool definition as engine source text"""
    lines: List[str] = []
    if tool.name:
        lines.append(f"Name: {tool.name}")
    if tool.description:
        lines.append(f"Description: {tool.description}")
    if tool.global_tools:
        lines.append(f"Global Tools: {', '.join(tool.global_tools)}")
    if tool.tools:
        lines.append(f"Tools: {', '.join(tool.tools)}")
    if tool.max_tokens is not None:
        lines.append(f"Max Tokens: {tool.max_tokens}")
    if tool.model_name:
        lines.append(f"Model: {tool.model_name}")
    if tool.cache is not None and not tool.cache:
        lines.append("Cache: false")
    if tool.temperature is not None:
        lines.append(f"Temperature: {tool.temperature}")
    if tool.json_response:
        lines.append("JSON Response: true")
    if tool.arguments:
        for arg, prop in tool.arguments.properties.items():
            lines.append(f"Args: {arg}: {prop.description}")
    if tool.internal_prompt is not None:
        lines.append(f"Internal Prompt: {str(tool.internal_prompt).lower()}")
    if tool.chat:
        lines.append("Chat: true")

    if tool.instructions:
        lines.append("")
        lines.append(tool.instructions)

    return "\n".join(lines)


def tools_to_content(tools: List[ToolDef]) -> str:
    return "\n---\n".join(tool_def_to_string(t) for t in tools)


def parse_blocks(nodes: Optional[List[Dict[str, Any]]]) -> List[Block]:
    """Convert engine parse nodes into tool and text blocks"""
    blocks: List[Block] = []
    for node in nodes or []:
        tool_node = node.get("toolNode")
        if tool_node:
            tool = Tool.model_validate(tool_node.get("tool", {}))
            if not tool.id:
                tool.id = random_id("tool-")
            blocks.append(tool)

        text_node = node.get("textNode")
        if text_node:
            text = text_node.get("text", "")
            header, _, body = text.partition("\n")
            blocks.append(Text(
                id=random_id("text-"),
                format=header[1:].strip() or "text",
                content=body.strip(),
            ))
    return blocks


def blocks_to_nodes(blocks: List[Block]) -> List[Dict[str, Any]]:
    """Inverse of parse_blocks, used by fmt"""
    nodes: List[Dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, Text):
            nodes.append({"textNode": {"text": f"!{block.format or 'text'}\n{block.content}"}})
        else:
            nodes.append({"toolNode": {"tool": block.to_wire()}})
    return nodes


# ---------------------------------------------------------------------------
# Structured event frames
# ---------------------------------------------------------------------------


class Usage(WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Output(WireModel):
    content: str = ""
    sub_calls: Dict[str, Any] = Field(default_factory=dict)


class Frame(WireModel):
    """Base frame; `type` is the discriminator"""
    type: str
    id: str = ""


class RunFrame(Frame):
    """runStart / runFinish"""
    type: Literal["runStart", "runFinish"]
    program: Optional[Program] = None
    input: Any = None
    output: str = ""
    error: str = ""
    start: Optional[str] = None
    end: Optional[str] = None
    state: Optional[str] = None
    chat_state: Any = None


class CallFrame(Frame):
    """Progress of one engine-side call, keyed by id"""
    type: Literal[
        "callStart", "callChat", "callSubCalls", "callProgress",
        "callConfirm", "callContinue", "callFinish",
    ]
    tool: Optional[Tool] = None
    display_text: str = ""
    input_context: List[Any] = Field(default_factory=list)
    tool_category: str = ""
    tool_name: str = ""
    parent_id: str = Field(default="", alias="parentID")
    start: Optional[str] = None
    end: Optional[str] = None
    input: Any = None
    output: List[Output] = Field(default_factory=list)
    error: str = ""
    usage: Usage = Field(default_factory=Usage)
    chat_response_cached: bool = False
    tool_results: int = 0
    llm_request: Any = None
    llm_response: Any = None


class PromptFrame(Frame):
    """Engine asks the host for field values"""
    type: Literal["prompt"] = "prompt"
    time: Optional[str] = None
    message: str = ""
    fields: List[str] = Field(default_factory=list)
    sensitive: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)


AnyFrame = Union[RunFrame, CallFrame, PromptFrame, Frame]


def parse_frame(obj: Dict[str, Any]) -> AnyFrame:
    """Decode a frame dict by its type field"""
    frame_type = str(obj.get("type", ""))
    if frame_type in (RunEventType.RUN_START.value, RunEventType.RUN_FINISH.value):
        return RunFrame.model_validate(obj)
    if frame_type.startswith("call"):
        return CallFrame.model_validate(obj)
    if frame_type == RunEventType.PROMPT.value:
        return PromptFrame.model_validate(obj)
    return Frame.model_validate(obj)


# ---------------------------------------------------------------------------
# Callback payloads and credentials
# ---------------------------------------------------------------------------


class AuthResponse(WireModel):
    """Answer to a callConfirm frame"""
    id: str
    accept: bool
    message: Optional[str] = None


class PromptResponse(WireModel):
    """Answer to a prompt frame: field name -> value"""
    id: str
    responses: Dict[str, str] = Field(default_factory=dict)


class Credential(WireModel):
    """Stored credential, owned by the engine"""
    context: str = "default"
    name: str = Field(default="", alias="toolName")
    type: Literal["tool", "modelProvider"] = "tool"
    env: Dict[str, str] = Field(default_factory=dict)
    ephemeral: bool = False
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
