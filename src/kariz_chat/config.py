"""Configuration management for the Kariz chat client."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class ApiConfig(BaseModel):
    base_url: str = "http://localhost:3000"
    stream_path: str = "/api/chat/stream"
    create_chat_path: str = "/createChat"
    history_path: str = "/chatHistory"
    access_token: str = ""
    user_id: str = ""
    timeout: float = 30
    connect_timeout: float = 10
    read_timeout: float = 60  # per-chunk; stalls are caught earlier by the watchdog
    history_limit: int = 100


class StreamConfig(BaseModel):
    stall_timeout: float = Field(default=15.0, gt=0)
    reconcile_delay: float = Field(default=3.0, ge=0)
    default_model: str = "GPT-4"
    web_search: bool = False
    reasoning: bool = False


class ClientConfig(BaseModel):
    api: ApiConfig = Field(default_factory=ApiConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)


CONFIG_FILENAME = "kariz_chat.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[ClientConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./kariz_chat.yaml``
      3. User config dir: ``~/.kariz_chat/kariz_chat.yaml``
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".kariz_chat"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break

    resolved: Path | None = Path(config_path) if config_path else None
    if resolved and resolved.exists():
        with open(resolved, encoding="utf-8") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return ClientConfig.model_validate(raw), resolved.resolve()

    # Explicit path was given but file doesn't exist -- report the error
    if config_path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    return ClientConfig(), None
