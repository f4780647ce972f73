"""Global and per-run option models"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_BIN = "gptscript"
DEFAULT_LISTEN_ADDRESS = "127.0.0.1:0"
DEFAULT_EXTERNAL_URL = "http://127.0.0.1:9090"

_TRUTHY = {"1", "true", "yes", "on"}


class GlobalOptions(BaseModel):
    """Options applied to every request a GPTScript instance makes"""
    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    api_key: Optional[str] = Field(default=None, alias="APIKey")
    base_url: Optional[str] = Field(default=None, alias="BaseURL")
    default_model: Optional[str] = Field(default=None, alias="DefaultModel")
    default_model_provider: Optional[str] = Field(default=None, alias="DefaultModelProvider")
    cache_dir: Optional[str] = Field(default=None, alias="CacheDir")
    env: List[str] = Field(default_factory=list, alias="Env")

    # Launcher settings, never sent to the engine
    disable_server: bool = False
    engine_bin: Optional[str] = None
    run_transport: Literal["http", "subprocess"] = "http"
    health_retries: int = 20
    health_interval: float = 0.5

    @classmethod
    def from_env(cls, **overrides: Any) -> "GlobalOptions":
        """Build options from the host environment; explicit overrides win"""
        values: Dict[str, Any] = {}
        if os.environ.get("GPTSCRIPT_URL"):
            values["url"] = os.environ["GPTSCRIPT_URL"]
        if os.environ.get("GPTSCRIPT_BIN"):
            values["engine_bin"] = os.environ["GPTSCRIPT_BIN"]
        if os.environ.get("GPTSCRIPT_DISABLE_SERVER", "").lower() in _TRUTHY:
            values["disable_server"] = True
        if os.environ.get("OPENAI_API_KEY"):
            values["api_key"] = os.environ["OPENAI_API_KEY"]
        if os.environ.get("OPENAI_BASE_URL"):
            values["base_url"] = os.environ["OPENAI_BASE_URL"]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def engine_command(self) -> str:
        return self.engine_bin or DEFAULT_ENGINE_BIN

    def to_wire(self) -> Dict[str, Any]:
        """Fields the engine understands, under the engine's own names"""
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            include={"api_key", "base_url", "default_model", "default_model_provider", "cache_dir"},
        )

    def child_env(self) -> Dict[str, str]:
        """Environment for an engine process spawned on behalf of these options"""
        env = dict(os.environ)
        if self.api_key:
            env["OPENAI_API_KEY"] = self.api_key
        if self.base_url:
            env["OPENAI_BASE_URL"] = self.base_url
        for entry in self.env:
            key, _, value = entry.partition("=")
            env[key] = value
        return env


class RunOptions(BaseModel):
    """Per-run options; camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    input: str = ""
    disable_cache: Optional[bool] = None
    cache_dir: Optional[str] = None
    quiet: Optional[bool] = None
    chdir: Optional[str] = None
    sub_tool: Optional[str] = None
    workspace: Optional[str] = None
    chat_state: Optional[str] = None
    confirm: bool = False
    prompt: bool = False
    credential_overrides: List[str] = Field(default_factory=list)
    credential_contexts: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    env: List[str] = Field(default_factory=list)
    force_sequential: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_args(self) -> List[str]:
        """Command-line flags for a directly spawned engine"""
        flags = {
            "disable_cache": "--disable-cache=",
            "cache_dir": "--cache-dir=",
            "quiet": "--quiet=",
            "chdir": "--chdir=",
            "sub_tool": "--sub-tool=",
            "workspace": "--workspace=",
        }
        args = []
        for field, flag in flags.items():
            value = getattr(self, field)
            if value is None:
                continue
            if isinstance(value, bool):
                value = str(value).lower()
            args.append(f"{flag}{value}")

        args.append(f"--chat-state={self.chat_state if self.chat_state else 'null'}")
        return args


def merge_options(global_opts: GlobalOptions, run_opts: Optional[RunOptions]) -> RunOptions:
    """
    Layer run options over global ones.

    Run-level values win; env lists are concatenated with the global
    entries first.
    """
    run_opts = run_opts or RunOptions()
    merged = run_opts.model_copy(deep=True)
    if merged.cache_dir is None and global_opts.cache_dir:
        merged.cache_dir = global_opts.cache_dir
    merged.env = list(global_opts.env) + list(run_opts.env)
    return merged


def load_options(path: Path) -> GlobalOptions:
    """Load GlobalOptions from a YAML file, layered over the environment"""
    if not path.exists():
        raise FileNotFoundError(f"Options file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    logger.info(f"Loaded options from {path}")
    return GlobalOptions.from_env(**data)
