"""Application settings."""

import os
from typing import Any, Dict, Optional, Set
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "CONVO_AGENT_"


class Settings(BaseModel):
    """Application configuration settings."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"
    service_name: str = "convo-agent"

    # Context window
    max_context_tokens: int = Field(default=32000, gt=0)
    compress_after_tokens: int = Field(default=16000, gt=0)
    recent_messages_to_keep: int = Field(default=20, gt=0)
    high_value_content_length: int = 500

    # Summarization
    summarize_after_messages: int = Field(default=50, gt=0)
    summary_message_count: int = 20
    summary_snippet_chars: int = 200

    # Capacity
    max_conversations: int = Field(default=1000, gt=0)
    max_memories: int = Field(default=10000, gt=0)
    memory_cleanup_interval_seconds: int = 3600

    # Read-time enrichment
    relevant_memory_limit: int = 10
    relevant_memory_min_confidence: float = 0.7

    # Run summarization/extraction as background tasks instead of inline
    background_side_effects: bool = True

    # Sessions
    session_sweep_interval_minutes: int = 30
    session_idle_minutes: int = 60
    default_context_aware: bool = True
    stream_by_default: bool = True

    # Agent engine, as accepted by langchain init_chat_model
    chat_model: str = "openai:gpt-4o-mini"
    # Comma-separated tool names that need a human decision
    approval_required_tools: str = ""

    # Remote tools
    tool_config_path: str = "mcp.json"
    tool_server_timeout_seconds: float = 30.0
    # Model/tool round-trips per reply before a final answer is forced
    max_tool_rounds: int = 5

    # Durable store (None keeps sessions and messages in process memory)
    durable_store_path: Optional[str] = None

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.compress_after_tokens >= self.max_context_tokens:
            raise ValueError("compress_after_tokens must be below max_context_tokens")
        if self.max_tool_rounds < 0:
            raise ValueError("max_tool_rounds must not be negative")
        return self

    @property
    def approval_tool_names(self) -> Set[str]:
        return {name.strip() for name in self.approval_required_tools.split(",") if name.strip()}

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        """Build settings from CONVO_AGENT_* environment variables"""
        data: Dict[str, Any] = {}
        for name in cls.model_fields:
            value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                data[name] = value
        data.update(overrides)
        return cls(**data)
