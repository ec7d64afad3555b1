"""Configuration model, loading, and session-scoped overrides.

Settings are read from `config.json` (current directory first, then the user
config dir), then overridden by `PANEPILOT_*` environment variables. Credentials
may live in a `.env` file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Annotated, Any, Dict, Iterable, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from panepilot.errors import ConfigInvalid, PolicyViolation
from panepilot.paths import config_dir

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
ENV_PREFIX = "PANEPILOT_"

TRANSPORT_ALIASES = {
    "stdio": "stdio",
    "sse": "sse",
    "streamable-http": "streamable-http",
    "streamablehttp": "streamable-http",
    "http": "streamable-http",
}


class ServerSpec(BaseModel):
    """One configured tool server. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "stdio"
    command: str = ""
    args: tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float | None = None
    retry_count: int = Field(default=0, ge=0)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        # Unknown kinds are kept as-is; the registry rejects them per server.
        raw = str(value or "").strip()
        return TRANSPORT_ALIASES.get(raw.lower(), raw)

    @field_validator("env", mode="before")
    @classmethod
    def _env_from_pairs(cls, value: Any) -> Any:
        if isinstance(value, list):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if sep:
                    env[key] = val
            return env
        return value


class LLMSettings(BaseModel):
    provider: str = "openrouter"
    model: str = "google/gemini-flash-1.5"
    api_key: str = ""
    base_url: str = ""


class McpSettings(BaseModel):
    servers: list[ServerSpec] = Field(default_factory=list)


class PromptSettings(BaseModel):
    """Prompt template overrides; empty strings fall back to built-ins."""

    base_system: str = ""
    chat_assistant: str = ""
    chat_assistant_prepared: str = ""
    watch: str = ""
    squash: str = ""


class Config(BaseModel):
    debug: bool = False
    max_capture_lines: int = Field(default=200, gt=0)
    max_context_size: int = Field(default=20_000, gt=0)
    wait_interval: int = Field(default=5, gt=0)
    send_keys_confirm: bool = True
    paste_multiline_confirm: bool = True
    exec_confirm: bool = True
    whitelist_patterns: list[str] = Field(default_factory=list)
    blacklist_patterns: list[str] = Field(default_factory=list)
    bytes_per_token: int = Field(default=4, gt=0)
    tool_list_timeout: float = Field(default=10.0, gt=0)
    tool_call_timeout: float = Field(default=30.0, gt=0)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    mcp: McpSettings = Field(default_factory=McpSettings)
    prompts: PromptSettings = Field(default_factory=PromptSettings)

    def find_server(self, name: str) -> ServerSpec | None:
        for server in self.mcp.servers:
            if server.name == name:
                return server
        return None


def _candidate_paths(explicit: str | Path | None) -> list[Path]:
    if explicit:
        return [Path(explicit).expanduser()]
    return [Path.cwd() / CONFIG_FILE_NAME, config_dir() / CONFIG_FILE_NAME]


def _read_config_file(paths: Iterable[Path], required: bool) -> dict[str, Any]:
    for path in paths:
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigInvalid(f"failed to read config file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigInvalid(f"config file {path} must contain a JSON object")
        logger.info("Loaded config from %s", path)
        return data
    if required:
        raise ConfigInvalid(f"config file not found: {', '.join(str(p) for p in paths)}")
    return {}


def _env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Apply `PANEPILOT_<KEY>` and `PANEPILOT_<SECTION>_<KEY>` variables."""

    merged = dict(data)
    for name, field_info in Config.model_fields.items():
        annotation = field_info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            if name == "mcp":
                continue
            section = dict(merged.get(name) or {})
            for sub in annotation.model_fields:
                value = environ.get(f"{ENV_PREFIX}{name}_{sub}".upper())
                if value is not None:
                    section[sub] = value
            if section:
                merged[name] = section
            continue
        value = environ.get(f"{ENV_PREFIX}{name}".upper())
        if value is None:
            continue
        if name.endswith("_patterns"):
            merged[name] = [part.strip() for part in value.split(",") if part.strip()]
        else:
            merged[name] = value
    return merged


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    return value


def load_config(path: str | Path | None = None, *, environ: Mapping[str, str] | None = None) -> Config:
    """Load and validate configuration, raising ConfigInvalid on bad input."""

    load_dotenv()
    env = os.environ if environ is None else environ
    data = _read_config_file(_candidate_paths(path), required=path is not None)
    data = _expand_env(_env_overrides(data, env))
    try:
        return Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigInvalid(f"invalid configuration: {exc}") from exc


PositiveInt = Annotated[int, Field(gt=0)]

OVERRIDE_TYPES: Dict[str, Any] = {
    "max_capture_lines": PositiveInt,
    "max_context_size": PositiveInt,
    "wait_interval": PositiveInt,
    "send_keys_confirm": bool,
    "paste_multiline_confirm": bool,
    "exec_confirm": bool,
    "llm.model": str,
}
ALLOWED_OVERRIDE_KEYS = tuple(OVERRIDE_TYPES)


def _config_value(config: Config, key: str) -> Any:
    target: Any = config
    for part in key.split("."):
        target = getattr(target, part)
    return target


class SessionOverrides:
    """Session-only values shadowing an allow-listed subset of the config."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._values: dict[str, Any] = {}

    @staticmethod
    def check_key(key: str) -> None:
        if key not in OVERRIDE_TYPES:
            raise PolicyViolation(
                f"Config key '{key}' is not allowed to be modified. "
                f"Allowed keys: {', '.join(ALLOWED_OVERRIDE_KEYS)}"
            )

    def get(self, key: str) -> Any:
        self.check_key(key)
        if key in self._values:
            return self._values[key]
        return _config_value(self._config, key)

    def set(self, key: str, raw: Any) -> Any:
        self.check_key(key)
        try:
            value = TypeAdapter(OVERRIDE_TYPES[key]).validate_python(raw)
        except ValidationError as exc:
            detail = exc.errors()[0].get("msg", "invalid value") if exc.errors() else "invalid value"
            raise ConfigInvalid(f"invalid value for {key}: {raw!r} ({detail})") from exc
        if isinstance(value, str) and not value.strip():
            raise ConfigInvalid(f"invalid value for {key}: empty string")
        self._values[key] = value
        return value

    def effective(self) -> dict[str, Any]:
        return {key: self.get(key) for key in ALLOWED_OVERRIDE_KEYS}

    def overridden(self) -> dict[str, Any]:
        return dict(self._values)
