"""Batched embedding provider (OpenAI)."""

from __future__ import annotations

from typing import List, Optional, Sequence

from app.config.logger import app_logger
from app.services.openai_clients import ClientInit
from app.utils.resilience import RetryPolicy, call_with_policy


class EmbeddingProvider:
    def __init__(
        self,
        clients: ClientInit,
        model: str,
        policy: RetryPolicy,
        batch_size: int = 100,
        max_input_chars: int = 30000,
        dimensions: Optional[int] = None,
    ):
        self.clients = clients
        self.model = model
        self.policy = policy
        self.batch_size = batch_size
        self.max_input_chars = max_input_chars
        self.dimensions = dimensions

    @property
    def available(self) -> bool:
        return self.clients.ok

    async def embed(self, texts: Sequence[object]) -> List[Optional[List[float]]]:
        """Embed texts, returning one vector per input position.

        Empty or non-string inputs are never sent and come back as ``None``;
        oversized inputs are truncated to ``max_input_chars``.
        """
        results: List[Optional[List[float]]] = [None] * len(texts)
        valid = [
            (i, t[: self.max_input_chars])
            for i, t in enumerate(texts)
            if isinstance(t, str) and t.strip()
        ]
        if not valid:
            return results

        client = self.clients.get_client()
        skipped = len(texts) - len(valid)
        if skipped:
            app_logger.debug(f"Skipping {skipped} empty embedding inputs")

        for start in range(0, len(valid), self.batch_size):
            batch = valid[start : start + self.batch_size]
            inputs = [t for _, t in batch]

            async def _call(inputs=inputs):
                if self.dimensions:
                    return await client.embeddings.create(model=self.model, input=inputs, dimensions=self.dimensions)
                return await client.embeddings.create(model=self.model, input=inputs)

            response = await call_with_policy(_call, self.policy, "openai.embeddings")
            for (position, _), item in zip(batch, sorted(response.data, key=lambda d: d.index)):
                results[position] = list(item.embedding)

        return results

    async def embed_query(self, text: str) -> Optional[List[float]]:
        return (await self.embed([text]))[0]
