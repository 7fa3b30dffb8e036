"""
Embedding provider used by the ingestion dedup gate.
"""
import asyncio
from typing import List, Protocol

from langchain_ollama import OllamaEmbeddings


class EmbeddingProvider(Protocol):
    async def get_embedding(self, text: str) -> List[float]:
        ...


class OllamaEmbedder:
    def __init__(self, base_url: str, model: str, timeout: float = 30.0):
        self.model = model
        self.timeout = timeout
        self.embeddings = OllamaEmbeddings(base_url=base_url.rstrip('/'), model=model)

    async def get_embedding(self, text: str) -> List[float]:
        if not text.strip():
            return []
        return await asyncio.wait_for(
            self.embeddings.aembed_query(text),
            timeout=self.timeout,
        )
