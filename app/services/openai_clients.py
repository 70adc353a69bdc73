"""Explicit OpenAI client initialization returning a result, not a global."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI

from app.config.logger import app_logger
from app.utils.errors import ConfigurationError


@dataclass(frozen=True)
class ClientInit:
    """Either an initialized client or the reason it could not be created."""

    client: Optional[AsyncOpenAI] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.client is not None

    def get_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise ConfigurationError(self.error or "OpenAI client is not configured")
        return self.client


def init_openai_client(api_key: str) -> ClientInit:
    """Create the process-wide AsyncOpenAI client once at start-up."""
    if not api_key:
        app_logger.warning("OPENAI_API_KEY not set; inference and embeddings are disabled")
        return ClientInit(error="OPENAI_API_KEY must be configured")
    try:
        client = AsyncOpenAI(api_key=api_key, max_retries=0)
    except Exception as e:
        app_logger.error(f"Failed to create OpenAI client: {e}")
        return ClientInit(error="OpenAI client could not be initialized")
    app_logger.info("OpenAI client initialized")
    return ClientInit(client=client)
