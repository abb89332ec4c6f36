"""
Similarity search over plan documents stored in Qdrant.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models

from config import VECTOR_STORE_CONFIG
from models.documents import Document, HierarchyTier

logger = logging.getLogger(__name__)

# Payload keys copied onto Document fields rather than into metadata
_RESERVED_PAYLOAD_KEYS = {"id", "content", "tier", "source_collection", "document_id"}


class SearchScope(BaseModel):
    """Logical restriction applied to a similarity search."""
    document_ids: List[str] = Field(default_factory=list)
    tier: Optional[HierarchyTier] = None
    entity_filter: List[str] = Field(default_factory=list)


class VectorStore:
    """
    Vector store for tiered plan document search using Qdrant.

    Each point's payload carries ``document_id`` (the source file it was
    chunked from), ``tier`` (general or specific), ``content`` and plan
    metadata such as ``operator`` and ``plan_code``.
    """

    def __init__(self, client: Optional[AsyncQdrantClient] = None, collection_name: Optional[str] = None):
        """
        Initialize the Qdrant vector store.

        Args:
            client: Optional preconfigured async Qdrant client
            collection_name: Optional custom collection name
        """
        self.collection_name = collection_name or VECTOR_STORE_CONFIG["collection_name"]
        self.dimension = VECTOR_STORE_CONFIG["dimension"]
        self.client = client or AsyncQdrantClient(
            url=VECTOR_STORE_CONFIG["url"],
            api_key=VECTOR_STORE_CONFIG["api_key"] or None,
            timeout=VECTOR_STORE_CONFIG["timeout"],
        )

    async def ensure_collection(self):
        """Create the collection and its payload indexes if missing."""
        try:
            if await self.client.collection_exists(self.collection_name):
                logger.info(f"Using existing Qdrant collection: {self.collection_name}")
                return

            logger.info(f"Creating new Qdrant collection: {self.collection_name}")
            await self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=qdrant_models.VectorParams(
                    size=self.dimension,
                    distance=qdrant_models.Distance.COSINE
                )
            )

            for field_name in ("document_id", "tier", "operator", "plan_code"):
                await self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema=qdrant_models.PayloadSchemaType.KEYWORD
                )

            logger.info(f"Created Qdrant collection: {self.collection_name}")

        except Exception as e:
            logger.error(f"Error initializing Qdrant collection: {str(e)}")
            raise

    def build_filter(self, scope: SearchScope) -> Optional[qdrant_models.Filter]:
        """
        Translate a search scope into a Qdrant filter.

        Points without a ``tier`` payload match every tier.
        """
        conditions: List[Any] = []

        if scope.document_ids:
            conditions.append(
                qdrant_models.FieldCondition(
                    key="document_id",
                    match=qdrant_models.MatchAny(any=scope.document_ids)
                )
            )

        if scope.tier is not None:
            conditions.append(
                qdrant_models.Filter(
                    should=[
                        qdrant_models.FieldCondition(
                            key="tier",
                            match=qdrant_models.MatchValue(value=scope.tier.value)
                        ),
                        qdrant_models.IsEmptyCondition(
                            is_empty=qdrant_models.PayloadField(key="tier")
                        ),
                    ]
                )
            )

        if scope.entity_filter:
            conditions.append(
                qdrant_models.Filter(
                    should=[
                        qdrant_models.FieldCondition(
                            key="operator",
                            match=qdrant_models.MatchAny(any=scope.entity_filter)
                        ),
                        qdrant_models.FieldCondition(
                            key="plan_code",
                            match=qdrant_models.MatchAny(any=scope.entity_filter)
                        ),
                    ]
                )
            )

        if not conditions:
            return None
        return qdrant_models.Filter(must=conditions)

    async def search(self, query_vector: List[float], scope: SearchScope, top_k: int) -> List[Document]:
        """
        Search the vector store for documents similar to a query vector.

        Args:
            query_vector: Embedding of the query
            scope: Document set, tier and entity restrictions
            top_k: Number of results to return

        Returns:
            Documents ordered by similarity, highest first

        Raises:
            Exception: Any client error; the retriever decides how to surface it
        """
        response = await self.client.query_points(
            collection_name=self.collection_name,
            query=query_vector,
            query_filter=self.build_filter(scope),
            limit=top_k,
            with_payload=True,
        )

        documents = [
            self._to_document(point, scope.tier)
            for point in response.points
        ]
        logger.debug(f"Qdrant returned {len(documents)} points for tier {scope.tier}")
        return documents

    def _to_document(self, point, requested_tier: Optional[HierarchyTier]) -> Document:
        """Convert a scored Qdrant point into a Document."""
        payload: Dict[str, Any] = point.payload or {}
        tier_value = payload.get("tier")
        if tier_value in (HierarchyTier.GENERAL.value, HierarchyTier.SPECIFIC.value):
            tier = HierarchyTier(tier_value)
        else:
            # Untagged points take the tier they were searched under
            tier = requested_tier or HierarchyTier.SPECIFIC

        metadata = {
            key: value for key, value in payload.items()
            if key not in _RESERVED_PAYLOAD_KEYS
        }
        if payload.get("document_id"):
            metadata["document_id"] = payload["document_id"]

        return Document(
            id=str(payload.get("id") or point.id),
            content=payload.get("content", ""),
            source_collection=payload.get("source_collection") or self.collection_name,
            hierarchy_tier=tier,
            similarity_score=float(point.score or 0.0),
            metadata=metadata,
        )
