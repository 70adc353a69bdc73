"""Text completion used for schema, relationship and intent inference."""

from __future__ import annotations

import json
import re
from typing import Any

from app.services.openai_clients import ClientInit
from app.utils.errors import ValidationError
from app.utils.resilience import RetryPolicy, resilient

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return CODE_FENCE_PATTERN.sub("", text).strip()


def parse_json_response(text: str) -> Any:
    """Parse model output as JSON after removing markdown code fences."""
    cleaned = strip_code_fences(text or "")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValidationError("Model response was not valid JSON", detail=cleaned[:200]) from exc


class InferenceClient:
    def __init__(self, clients: ClientInit, model: str, policy: RetryPolicy):
        self.clients = clients
        self.model = model
        self.policy = policy

    @property
    def available(self) -> bool:
        return self.clients.ok

    @resilient("policy", label="openai.chat_completion")
    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        client = self.clients.get_client()
        response = await client.chat.completions.create(
            model=self.model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.choices[0].message.content or ""
