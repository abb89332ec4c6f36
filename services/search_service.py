"""
Search service wrapping the retrieval orchestrator for callers.
"""
import logging
import time
from typing import List, Optional

from fastapi import HTTPException

from models.profile import ClientProfile
from models.state import SearchResponse
from pipeline.exceptions import TransientRetrievalError
from pipeline.hierarchical_retrieval import HierarchicalRetriever
from pipeline.orchestrator import SearchOrchestrator, SearchSettings
from utils.llm import get_grading_llm, get_llm, get_rewrite_llm
from vectordb.embeddings import EmbeddingService
from vectordb.vector_store import VectorStore
from config import get_config

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Optional[SearchSettings] = None,
    vector_store: Optional[VectorStore] = None,
) -> SearchOrchestrator:
    """Wire the orchestrator to the configured LLM, embeddings and Qdrant store."""
    return SearchOrchestrator(
        llm=get_llm(),
        embedding_service=EmbeddingService(),
        retriever=HierarchicalRetriever(vector_store or VectorStore()),
        grading_llm=get_grading_llm(),
        rewrite_llm=get_rewrite_llm(),
        settings=settings or SearchSettings.from_config(),
    )


class SearchService:
    """Service for handling plan search requests."""

    def __init__(self, orchestrator: Optional[SearchOrchestrator] = None):
        """
        Initialize the search service.

        Args:
            orchestrator: Preconfigured orchestrator; built from config when omitted
        """
        logger.info("Initializing search service")
        self.config = get_config()
        self._orchestrator = orchestrator

    @property
    def orchestrator(self) -> SearchOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = build_orchestrator()
        return self._orchestrator

    async def search(self, profile: ClientProfile, document_scope: List[str]) -> SearchResponse:
        """
        Execute a plan search for a client.

        Args:
            profile: The client profile
            document_scope: Ids of the document sets to search

        Returns:
            Relevant documents and search metadata

        Raises:
            HTTPException: 503 when retrieval is unavailable, 500 on unexpected errors
        """
        start_time = time.time()
        try:
            response = await self.orchestrator.run_search(profile, document_scope)

        except TransientRetrievalError as e:
            logger.error(f"Retrieval unavailable at {e.stage} stage: {str(e)}")
            raise HTTPException(
                status_code=503,
                detail=f"Retrieval temporarily unavailable: {str(e)}"
            )

        except Exception as e:
            logger.error(f"Search failed: {str(e)}")
            raise HTTPException(
                status_code=500,
                detail=f"Search failed: {str(e)}"
            )

        execution_time = time.time() - start_time
        logger.info(
            f"Search returned {len(response.results)} documents in {execution_time:.2f}s"
            + (" (limited)" if response.metadata.limited_results else "")
        )
        return response
