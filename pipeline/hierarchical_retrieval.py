"""
Two-phase hierarchical retrieval component for the search pipeline.

Phase one searches broadly applicable (general tier) documents. The
operators and plan codes named in their metadata then steer phase two,
the search over operator/plan specific documents.
"""
import logging
from typing import Iterable, List, Optional

from config import RETRIEVAL_CONFIG
from models.documents import Document, HierarchicalResult, HierarchyTier
from pipeline.exceptions import TransientRetrievalError
from vectordb.vector_store import SearchScope

logger = logging.getLogger(__name__)

# Document properties naming an entity
ENTITY_METADATA_KEYS = ("operator", "plan_code")


def extract_entities(docs: Iterable[Document]) -> List[str]:
    """
    Collect operator names and plan codes from document metadata.

    Entities keep their first-seen spelling and order; duplicates are
    detected case-insensitively.

    Args:
        docs: General tier documents

    Returns:
        Distinct entity identifiers
    """
    entities = []
    seen = set()
    for doc in docs:
        for key in ENTITY_METADATA_KEYS:
            value = getattr(doc, key)
            if not isinstance(value, str) or not value.strip():
                continue
            normalized = value.strip().casefold()
            if normalized in seen:
                continue
            seen.add(normalized)
            entities.append(value.strip())
    return entities


def matches_entities(doc: Document, entities: Iterable[str]) -> bool:
    """Whether a document's operator or plan code is among the entities."""
    wanted = {entity.casefold() for entity in entities}
    for key in ENTITY_METADATA_KEYS:
        value = getattr(doc, key)
        if isinstance(value, str) and value.strip().casefold() in wanted:
            return True
    return False


def apply_tier_weight(
    docs: List[Document],
    tier: HierarchyTier,
    weight: float,
    entities: Optional[List[str]] = None,
    entity_boost: float = 1.0,
) -> List[Document]:
    """
    Return copies of ``docs`` carrying their hierarchical score.

    The score is ``similarity * weight``, multiplied by ``entity_boost``
    for documents matching an extracted entity.
    """
    weighted = []
    for doc in docs:
        score = doc.similarity_score * weight
        prioritized = bool(entities) and matches_entities(doc, entities)
        if prioritized:
            score *= entity_boost
        metadata = dict(doc.metadata)
        if prioritized:
            metadata["entity_prioritized"] = True
        weighted.append(doc.model_copy(update={
            "hierarchy_tier": tier,
            "hierarchical_score": score,
            "metadata": metadata,
        }))
    return weighted


class HierarchicalRetriever:
    """Runs general-then-specific retrieval against a similarity search collaborator."""

    def __init__(
        self,
        search_client,
        entity_boost: float = RETRIEVAL_CONFIG["entity_boost"],
        entity_mode: str = RETRIEVAL_CONFIG["entity_mode"],
    ):
        """
        Args:
            search_client: Object exposing ``async search(query_vector, scope, top_k)``
            entity_boost: Multiplier for specific documents matching an extracted entity
            entity_mode: ``boost`` to rerank toward entities, ``filter`` to restrict to them
        """
        if entity_mode not in ("boost", "filter"):
            raise ValueError(f"Unknown entity mode: {entity_mode}")
        self.search_client = search_client
        self.entity_boost = entity_boost
        self.entity_mode = entity_mode

    async def _search_tier(
        self,
        query_embedding: List[float],
        scope: SearchScope,
        top_k: int,
    ) -> List[Document]:
        try:
            docs = await self.search_client.search(query_embedding, scope, top_k)
        except TransientRetrievalError:
            raise
        except Exception as e:
            logger.error(f"Similarity search failed for tier {scope.tier.value}: {str(e)}")
            raise TransientRetrievalError(
                f"Similarity search failed for tier {scope.tier.value}: {str(e)}",
                stage="search",
            ) from e
        return list(docs)[:top_k]

    async def retrieve_hierarchical(
        self,
        query_embedding: List[float],
        document_scope: List[str],
        general_top_k: int = RETRIEVAL_CONFIG["general_top_k"],
        specific_top_k: int = RETRIEVAL_CONFIG["specific_top_k"],
        general_weight: float = RETRIEVAL_CONFIG["general_weight"],
        specific_weight: float = RETRIEVAL_CONFIG["specific_weight"],
    ) -> HierarchicalResult:
        """
        Retrieves general tier candidates, then entity-informed specific ones.

        Args:
            query_embedding: Embedding of the query text
            document_scope: Ids of the document sets the search may touch
            general_top_k: Maximum general tier candidates
            specific_top_k: Maximum specific tier candidates
            general_weight: Tier weight applied to general similarity
            specific_weight: Tier weight applied to specific similarity

        Returns:
            General and specific candidates plus the extracted entities

        Raises:
            TransientRetrievalError: If either similarity search fails
        """
        if not document_scope:
            logger.info("Empty document scope, skipping hierarchical retrieval")
            return HierarchicalResult()

        # Phase 1: general documents
        general_docs = await self._search_tier(
            query_embedding,
            SearchScope(document_ids=document_scope, tier=HierarchyTier.GENERAL),
            general_top_k,
        )
        entities = extract_entities(general_docs)
        logger.info(
            f"Phase 1: {len(general_docs)} general docs, "
            f"entities: {', '.join(entities) or 'none'}"
        )

        # Phase 2: specific documents, steered by the extracted entities
        specific_scope = SearchScope(document_ids=document_scope, tier=HierarchyTier.SPECIFIC)
        if self.entity_mode == "filter" and entities:
            specific_scope = specific_scope.model_copy(update={"entity_filter": entities})
        specific_docs = await self._search_tier(query_embedding, specific_scope, specific_top_k)
        logger.info(f"Phase 2: {len(specific_docs)} specific docs")

        return HierarchicalResult(
            general_docs=apply_tier_weight(general_docs, HierarchyTier.GENERAL, general_weight),
            specific_docs=apply_tier_weight(
                specific_docs,
                HierarchyTier.SPECIFIC,
                specific_weight,
                entities=entities,
                entity_boost=self.entity_boost,
            ),
            extracted_entities=entities,
        )
