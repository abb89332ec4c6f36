"""
Query rewrite component for the corrective retrieval loop.
"""
import logging
import re
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from config import REWRITE_CONFIG
from models.documents import FusedDocument, RewriteProblem
from models.profile import ClientProfile
from utils.llm import create_llm_chain, extract_json, llm_acall
from utils.prompts import REWRITE_QUERY_PROMPT, format_client_profile

logger = logging.getLogger(__name__)

STRATEGIES = {
    RewriteProblem.ZERO_RESULTS: "broaden",
    RewriteProblem.LOW_SIMILARITY: "specialize",
    RewriteProblem.INSUFFICIENT_COVERAGE: "diversify",
}

PROBLEM_DESCRIPTIONS = {
    RewriteProblem.ZERO_RESULTS: (
        "No documents were found. The query may be too restrictive or use uncommon terms."
    ),
    RewriteProblem.LOW_SIMILARITY: (
        "The documents found have low similarity to the query. Its terms may not match "
        "the vocabulary of plan documents."
    ),
    RewriteProblem.INSUFFICIENT_COVERAGE: (
        "Documents were found but too few of them are relevant to this client."
    ),
}

STRATEGY_DESCRIPTIONS = {
    "broaden": (
        "Broaden the query: remove very specific terms such as plan codes or names, "
        "use common synonyms and keep only the client's most important need."
    ),
    "specialize": (
        "Narrow and specialize the query: add client context (location, age group, "
        "family or individual plan) and use insurance industry terminology."
    ),
    "diversify": (
        "Diversify the query: target an aspect of the client profile the original "
        "query did not cover (dependents, conditions, price or coverage preferences)."
    ),
}

# Modifiers that narrow a query without helping semantic search
_BROADEN_STOP_WORDS = {
    "best", "ideal", "perfect", "excellent", "specific", "special",
    "unique", "exclusive", "complete", "total", "premium",
}
_PLAN_CODE_PATTERN = re.compile(r"\b(?:code|cod\.?|ans)\s*[\d\-.]+|\b[A-Z]{1,3}\d{3,}\b", re.IGNORECASE)


class RewriteResponse(BaseModel):
    """Structured output contract of the rewrite prompt."""
    rewritten_query: str = Field(min_length=10, max_length=500)
    changes: Optional[str] = None


class RewriteResult(BaseModel):
    """Outcome of one rewrite cycle."""
    original_query: str
    rewritten_query: str
    problem: RewriteProblem
    strategy: str
    attempt_count: int
    used_fallback: bool = False


def average_similarity(fused_docs: List[FusedDocument]) -> float:
    if not fused_docs:
        return 0.0
    return sum(doc.similarity_score for doc in fused_docs) / len(fused_docs)


def detect_problem(
    fused_docs: List[FusedDocument],
    relevant_count: int,
    low_similarity_threshold: float = REWRITE_CONFIG["low_similarity_threshold"],
) -> RewriteProblem:
    """
    Diagnose why a retrieval round produced too few relevant documents.

    Args:
        fused_docs: The fused list of the round
        relevant_count: Number of non-irrelevant graded documents
        low_similarity_threshold: Average similarity under which results count as weak

    Returns:
        The failure mode driving the rewrite strategy
    """
    if not fused_docs:
        return RewriteProblem.ZERO_RESULTS
    if average_similarity(fused_docs) < low_similarity_threshold:
        return RewriteProblem.LOW_SIMILARITY
    logger.debug(f"Fused list looks healthy but only {relevant_count} docs are relevant")
    return RewriteProblem.INSUFFICIENT_COVERAGE


def _broaden(query: str) -> str:
    simplified = _PLAN_CODE_PATTERN.sub("", query)
    words = [w for w in simplified.split() if w.lower().strip(",.") not in _BROADEN_STOP_WORDS]
    if len(words) < 3:
        return "health plan with broad coverage and wide provider network"
    return " ".join(words)


def _specialize(query: str, profile: ClientProfile) -> str:
    additions = []
    if profile.location:
        additions.append(profile.location)
    if profile.age is not None:
        if profile.age < 30:
            additions.append("young adult")
        elif profile.age >= 60:
            additions.append("senior")
    additions.append("family plan" if profile.dependents else "individual plan")
    additions.append("coverage network")
    return f"{query} {' '.join(additions)}"


def _diversify(query: str, profile: ClientProfile, attempt_count: int) -> str:
    facets = []
    if profile.dependents:
        facets.append("family coverage for dependents")
    if profile.pre_existing_conditions:
        facets.append(f"coverage for {', '.join(profile.pre_existing_conditions)}")
    if profile.preferences:
        facets.append(f"{', '.join(profile.preferences)}")
    if profile.budget is not None:
        facets.append(f"monthly price up to {profile.budget:g}")
    facets.append("hospital and outpatient coverage")

    facet = facets[(attempt_count - 1) % len(facets)]
    location = f" in {profile.location}" if profile.location else ""
    return f"health plan{location} {facet}"


def fallback_rewrite(
    original_query: str,
    problem: RewriteProblem,
    profile: ClientProfile,
    attempt_count: int,
) -> str:
    """
    Deterministic rewrite used when the LLM cannot provide one.

    The result always differs from ``original_query``.
    """
    strategy = STRATEGIES[problem]
    if strategy == "broaden":
        rewritten = _broaden(original_query)
    elif strategy == "specialize":
        rewritten = _specialize(original_query, profile)
    else:
        rewritten = _diversify(original_query, profile, attempt_count)

    if is_same_query(rewritten, original_query):
        rewritten = f"{original_query} alternative health plan options"
    return rewritten


def is_same_query(a: str, b: str) -> bool:
    return " ".join(a.split()).casefold() == " ".join(b.split()).casefold()


async def rewrite_query(
    original_query: str,
    problem: RewriteProblem,
    attempt_count: int,
    profile: ClientProfile,
    llm,
) -> RewriteResult:
    """
    Reformulates a query that produced too few relevant documents.

    The retry ceiling is enforced by the orchestrator, not here.

    Args:
        original_query: The query text of the failed round
        problem: Diagnosed failure mode
        attempt_count: 1-based rewrite attempt number
        profile: The client profile
        llm: Chat model used to reformulate

    Returns:
        The rewritten query; never equal to the original
    """
    strategy = STRATEGIES[problem]
    logger.info(f"Rewrite attempt {attempt_count} - problem: {problem.value}, strategy: {strategy}")

    chain = create_llm_chain(REWRITE_QUERY_PROMPT, llm)

    try:
        raw_output = await llm_acall(
            chain,
            {
                "problem": PROBLEM_DESCRIPTIONS[problem],
                "strategy": STRATEGY_DESCRIPTIONS[strategy],
                "profile": format_client_profile(profile),
                "original_query": original_query,
                "attempt": attempt_count,
            },
        )
        logger.debug(f"Raw rewrite result: {raw_output}")
        response = RewriteResponse.model_validate(extract_json(raw_output))
        rewritten = response.rewritten_query.strip()

        if is_same_query(rewritten, original_query):
            raise ValueError("LLM returned the original query unchanged")

        if response.changes:
            logger.info(f"Rewrite changes: {response.changes}")

        return RewriteResult(
            original_query=original_query,
            rewritten_query=rewritten,
            problem=problem,
            strategy=strategy,
            attempt_count=attempt_count,
        )

    except (ValueError, ValidationError) as e:
        logger.warning(f"Unusable rewrite output ({str(e)}), applying {strategy} fallback")
    except Exception as e:
        logger.error(f"Query rewrite failed: {str(e)}, applying {strategy} fallback")

    return RewriteResult(
        original_query=original_query,
        rewritten_query=fallback_rewrite(original_query, problem, profile, attempt_count),
        problem=problem,
        strategy=strategy,
        attempt_count=attempt_count,
        used_fallback=True,
    )
