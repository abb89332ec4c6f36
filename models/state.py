"""
State definitions for the health plan retrieval pipeline.
"""
from typing import Dict, List, Any, Optional, TypedDict
from pydantic import BaseModel, ConfigDict, Field

from models.documents import Document, FusedDocument, GradedDocument, Query
from models.profile import ClientProfile


class SearchState(TypedDict):
    """
    Working memory of one search invocation.
    Owned by the orchestrator and never shared between requests.
    """
    # Inputs
    profile: ClientProfile
    document_scope: List[str]

    # Query generation and rewriting
    queries: List[Query]
    current_query_text: str
    pending_queries: List[str]  # Query texts to embed in the next retrieval round
    rewrite_count: int
    rewritten_queries: List[str]

    # Retrieval
    general_docs: List[Document]
    specific_docs: List[Document]
    extracted_entities: List[str]
    ranked_lists: List[Any]  # RankedList per query of the current round
    retrieval_rounds: int

    # Fusion and grading
    fused_docs: List[FusedDocument]  # Merged across rounds
    round_fused_docs: List[FusedDocument]  # Latest round only
    graded_docs: Dict[str, GradedDocument]  # Keyed by document id, every label
    relevant_docs: List[GradedDocument]

    # Termination
    limited_results: bool
    limit_reason: Optional[str]

    # Context and metadata
    metadata: Dict[str, Any]


class SearchMetadata(BaseModel):
    """Terminal summary of a search invocation."""
    model_config = ConfigDict(frozen=True)

    query_count: int = 0
    general_docs_count: int = 0
    specific_docs_count: int = 0
    fused_docs_count: int = 0
    graded_docs_count: int = 0
    relevant_docs_count: int = 0
    irrelevant_docs_count: int = 0
    extracted_entities: List[str] = Field(default_factory=list)
    operators: Dict[str, int] = Field(default_factory=dict)  # Results per operator
    rewrite_count: int = 0
    rewritten_queries: List[str] = Field(default_factory=list)
    retrieval_rounds: int = 0
    limited_results: bool = False
    limit_reason: Optional[str] = None
    elapsed_ms: float = 0.0


class SearchResponse(BaseModel):
    """Relevant documents plus the summary of how they were found."""
    model_config = ConfigDict(frozen=True)

    results: List[GradedDocument] = Field(default_factory=list)
    metadata: SearchMetadata = Field(default_factory=SearchMetadata)
