"""
Query and document models flowing through the retrieval pipeline.
"""
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class QueryFocus(str, Enum):
    """Aspect of the client profile a generated query targets."""
    GENERAL = "general"
    DEPENDENTS = "dependents"
    CONDITIONS = "conditions"
    PRICE = "price"
    COVERAGE = "coverage"


class HierarchyTier(str, Enum):
    """Whether a document applies broadly or to a single operator/plan."""
    GENERAL = "general"
    SPECIFIC = "specific"


class GradeLabel(str, Enum):
    """Relevance label assigned by the grader."""
    RELEVANT = "relevant"
    PARTIALLY_RELEVANT = "partially_relevant"
    IRRELEVANT = "irrelevant"


class RewriteProblem(str, Enum):
    """Failure mode that triggered a query rewrite."""
    ZERO_RESULTS = "zero_results"
    LOW_SIMILARITY = "low_similarity"
    INSUFFICIENT_COVERAGE = "insufficient_coverage"


class Query(BaseModel):
    """A search query tagged with its focus and priority (5 = most important)."""
    text: str = Field(min_length=1)
    focus: QueryFocus
    priority: int = Field(ge=1, le=5)


class Document(BaseModel):
    """A retrievable content unit returned by the similarity search."""
    id: str
    content: str
    source_collection: Optional[str] = None
    hierarchy_tier: HierarchyTier = HierarchyTier.SPECIFIC
    similarity_score: float = 0.0
    hierarchical_score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def operator(self) -> Optional[str]:
        return self.metadata.get("operator")

    @property
    def plan_code(self) -> Optional[str]:
        return self.metadata.get("plan_code")


class RankedList(BaseModel):
    """Ordered retrieval output of a single query."""
    query: str
    documents: List[Document] = Field(default_factory=list)


class FusedDocument(BaseModel):
    """A document after reciprocal rank fusion across several ranked lists."""
    id: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    rrf_score: float
    similarity_score: float = 0.0
    appearances: int = 1
    query_matches: List[str] = Field(default_factory=list)


class GradedDocument(FusedDocument):
    """A fused document carrying the grader's relevance verdict."""
    label: GradeLabel
    reason: str = ""

    @property
    def is_relevant(self) -> bool:
        return self.label != GradeLabel.IRRELEVANT


class HierarchicalResult(BaseModel):
    """Output of one two-phase (general then specific) retrieval."""
    general_docs: List[Document] = Field(default_factory=list)
    specific_docs: List[Document] = Field(default_factory=list)
    extracted_entities: List[str] = Field(default_factory=list)

    def ranked(self) -> List[Document]:
        """
        Combine both tiers into one list ordered by hierarchical score.

        A document present in both tiers keeps its higher scoring entry.
        """
        best: Dict[str, Document] = {}
        for doc in self.general_docs + self.specific_docs:
            current = best.get(doc.id)
            if current is None or doc.hierarchical_score > current.hierarchical_score:
                best[doc.id] = doc
        return sorted(best.values(), key=lambda d: (-d.hierarchical_score, d.id))
