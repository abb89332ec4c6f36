"""
Reciprocal Rank Fusion of per-query result lists.

A document at 0-based rank ``r`` in one list contributes
``1 / (k + r + 1)`` to its fused score; contributions are summed over
every list it appears in. Documents that rank well for several queries
therefore beat documents that rank very high for only one.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, List

from config import FUSION_CONFIG
from models.documents import FusedDocument, RankedList

logger = logging.getLogger(__name__)


def _sort_key(doc: FusedDocument):
    # Score desc, then best similarity desc, then id for reproducibility
    return (-doc.rrf_score, -doc.similarity_score, doc.id)


def fuse(
    result_lists: List[RankedList],
    k: int = FUSION_CONFIG["k"],
    top_k: int = FUSION_CONFIG["top_k"],
) -> List[FusedDocument]:
    """
    Merge ranked lists into one list ordered by RRF score.

    Args:
        result_lists: One ranked list per query
        k: RRF smoothing constant
        top_k: Maximum number of documents returned

    Returns:
        At most ``top_k`` fused documents, no duplicate ids
    """
    fused: Dict[str, FusedDocument] = {}

    for ranked_list in result_lists:
        seen_in_list = set()
        for rank, doc in enumerate(ranked_list.documents):
            # A repeated id within one list only counts at its best rank
            if doc.id in seen_in_list:
                continue
            seen_in_list.add(doc.id)

            contribution = 1.0 / (k + rank + 1)
            existing = fused.get(doc.id)
            if existing is None:
                fused[doc.id] = FusedDocument(
                    id=doc.id,
                    content=doc.content,
                    metadata=dict(doc.metadata),
                    rrf_score=contribution,
                    similarity_score=doc.similarity_score,
                    appearances=1,
                    query_matches=[ranked_list.query],
                )
            else:
                existing.rrf_score += contribution
                existing.similarity_score = max(existing.similarity_score, doc.similarity_score)
                existing.appearances += 1
                existing.query_matches.append(ranked_list.query)

    ordered = sorted(fused.values(), key=_sort_key)
    result = ordered[:top_k]

    logger.info(
        f"RRF fused {len(result_lists)} lists -> {len(ordered)} unique docs -> top {len(result)}"
    )
    return result


def merge_fused(previous: List[FusedDocument], new: List[FusedDocument]) -> List[FusedDocument]:
    """
    Union two fused lists by document id.

    A document present in both keeps the higher RRF score and the
    combined query provenance. The result is re-sorted but not truncated,
    so candidates found by a rewritten query are never lost.
    """
    merged: Dict[str, FusedDocument] = {doc.id: doc.model_copy(deep=True) for doc in previous}

    for doc in new:
        existing = merged.get(doc.id)
        if existing is None:
            merged[doc.id] = doc.model_copy(deep=True)
            continue
        existing.rrf_score = max(existing.rrf_score, doc.rrf_score)
        existing.similarity_score = max(existing.similarity_score, doc.similarity_score)
        existing.appearances += doc.appearances
        existing.query_matches.extend(
            query for query in doc.query_matches if query not in existing.query_matches
        )

    return sorted(merged.values(), key=_sort_key)


def fusion_stats(result_lists: List[RankedList], fused_docs: List[FusedDocument]) -> Dict[str, Any]:
    """Summarize a fusion run for logging and metadata."""
    appearances = [doc.appearances for doc in fused_docs]
    return {
        "total_queries": len(result_lists),
        "total_documents": sum(len(rl.documents) for rl in result_lists),
        "unique_documents": len({doc.id for rl in result_lists for doc in rl.documents}),
        "fused_documents": len(fused_docs),
        "avg_appearances": round(sum(appearances) / len(appearances), 2) if appearances else 0.0,
        "max_appearances": max(appearances) if appearances else 0,
        "top_doc_id": fused_docs[0].id if fused_docs else None,
        "top_doc_score": fused_docs[0].rrf_score if fused_docs else 0.0,
    }


def group_by_operator(docs: List[FusedDocument]) -> Dict[str, List[FusedDocument]]:
    """Group fused documents by their operator metadata."""
    groups: Dict[str, List[FusedDocument]] = defaultdict(list)
    for doc in docs:
        groups[doc.metadata.get("operator") or "unknown"].append(doc)
    return dict(groups)
