"""
Query embedding generation for the retrieval pipeline.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from config import RETRIEVAL_CONFIG
from pipeline.exceptions import TransientRetrievalError
from utils.llm import get_embeddings
from utils.retry import retry_async

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Embeds query strings with retries and a per-session cache.

    Identical input text always yields the same vector within one
    service instance, whatever the underlying model does.
    """

    def __init__(self, embedding_model=None, max_concurrency: Optional[int] = None):
        """
        Initialize the embedding service.

        Args:
            embedding_model: LangChain ``Embeddings`` implementation;
                defaults to the configured sentence-transformers model
            max_concurrency: Cap on embedding calls in flight
        """
        logger.info("Initializing embedding service")
        self.embedding_model = embedding_model or get_embeddings()
        self.max_concurrency = max_concurrency or RETRIEVAL_CONFIG["embedding_concurrency"]
        self._cache: Dict[str, List[float]] = {}

    async def embed(self, text: str) -> List[float]:
        """
        Generate an embedding for a search query.

        Args:
            text: The query text

        Returns:
            Embedding vector

        Raises:
            TransientRetrievalError: If the model keeps failing after retries
        """
        if text in self._cache:
            return self._cache[text]

        try:
            embedding = await retry_async(
                lambda: self.embedding_model.aembed_query(text),
                description="Query embedding",
            )
        except Exception as e:
            raise TransientRetrievalError(
                f"Embedding generation failed: {str(e)}", stage="embedding"
            ) from e

        vector = [float(value) for value in embedding]
        self._cache[text] = vector
        return vector

    async def embed_many(self, texts: List[str]) -> Dict[str, List[float]]:
        """
        Embed several distinct query strings concurrently.

        Args:
            texts: Query texts; duplicates are embedded once

        Returns:
            Mapping of query text to embedding vector
        """
        unique_texts = list(dict.fromkeys(texts))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def embed_limited(text: str) -> List[float]:
            async with semaphore:
                return await self.embed(text)

        vectors = await asyncio.gather(*(embed_limited(text) for text in unique_texts))
        logger.info(f"Generated {len(vectors)} query embeddings")
        return dict(zip(unique_texts, vectors))
