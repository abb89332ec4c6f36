"""
Multi-query generation component for the search pipeline.
"""
import logging
from typing import Dict, List

from pydantic import BaseModel, Field, ValidationError

from models.documents import Query, QueryFocus
from models.profile import ClientProfile
from pipeline.exceptions import GenerationParseError
from utils.llm import create_llm_chain, extract_json, llm_acall
from utils.prompts import QUERY_GENERATION_PROMPT, format_client_profile

logger = logging.getLogger(__name__)

# Priority used when the LLM omits one or a query comes from a template
DEFAULT_PRIORITIES: Dict[QueryFocus, int] = {
    QueryFocus.GENERAL: 5,
    QueryFocus.CONDITIONS: 4,
    QueryFocus.DEPENDENTS: 4,
    QueryFocus.PRICE: 3,
    QueryFocus.COVERAGE: 2,
}

FOCUS_ORDER = list(DEFAULT_PRIORITIES)


class GeneratedQuery(BaseModel):
    """One query as returned by the LLM."""
    query: str = Field(min_length=10, max_length=500)
    focus: QueryFocus
    priority: int = Field(ge=1, le=5)


class GeneratedQueries(BaseModel):
    """Structured output contract of the query generation prompt."""
    queries: List[GeneratedQuery] = Field(min_length=1, max_length=5)


def required_focuses(profile: ClientProfile) -> List[QueryFocus]:
    """
    Return the focus categories a profile calls for.

    ``general`` and ``price`` are always present; the others depend on
    which parts of the profile are filled in.
    """
    focuses = [QueryFocus.GENERAL]
    if profile.dependents:
        focuses.append(QueryFocus.DEPENDENTS)
    if profile.pre_existing_conditions:
        focuses.append(QueryFocus.CONDITIONS)
    focuses.append(QueryFocus.PRICE)
    if profile.preferences:
        focuses.append(QueryFocus.COVERAGE)
    return focuses


def template_query(profile: ClientProfile, focus: QueryFocus) -> Query:
    """Build the deterministic template query for one focus."""
    if focus == QueryFocus.GENERAL:
        parts = ["health plan"]
        if profile.age is not None:
            parts.append(f"for a {profile.age} year old")
        if profile.location:
            parts.append(f"in {profile.location}")
        if profile.budget is not None:
            parts.append(f"up to {profile.budget:g} per month")
        text = " ".join(parts)
        if len(parts) == 1:
            text = "best health plans with broad coverage and provider network"
    elif focus == QueryFocus.DEPENDENTS:
        if profile.has_children:
            text = "family health plan with pediatric coverage for children"
        else:
            text = "family health plan with full coverage for dependents"
    elif focus == QueryFocus.CONDITIONS:
        conditions = " ".join(profile.pre_existing_conditions)
        text = f"health plan coverage and treatment for {conditions}"
    elif focus == QueryFocus.PRICE:
        if profile.budget is not None:
            text = f"affordable health plan up to {profile.budget:g} monthly price value for money"
        else:
            text = "health plan monthly price comparison value for money"
    else:
        text = f"health plan coverage {' '.join(profile.preferences)}"

    return Query(text=text, focus=focus, priority=DEFAULT_PRIORITIES[focus])


def fallback_queries(profile: ClientProfile) -> List[Query]:
    """Single general query used when the LLM output cannot be used."""
    return [template_query(profile, QueryFocus.GENERAL)]


def parse_generated_queries(text: str) -> GeneratedQueries:
    """
    Parse and validate the raw LLM output.

    Raises:
        GenerationParseError: If the output is not valid structured JSON
    """
    try:
        return GeneratedQueries.model_validate(extract_json(text))
    except (ValueError, ValidationError) as e:
        raise GenerationParseError(f"Malformed query generation output: {e}") from e


def reconcile_queries(
    generated: GeneratedQueries,
    profile: ClientProfile,
) -> List[Query]:
    """
    Align LLM queries with the focuses the profile requires.

    Unexpected and duplicate focuses are dropped; required focuses the LLM
    skipped are filled from templates. Output is sorted by priority,
    highest first.
    """
    required = required_focuses(profile)
    by_focus: Dict[QueryFocus, Query] = {}

    for item in generated.queries:
        if item.focus not in required:
            logger.debug(f"Dropping query with unrequested focus '{item.focus.value}'")
            continue
        if item.focus in by_focus:
            continue
        by_focus[item.focus] = Query(
            text=item.query.strip(),
            focus=item.focus,
            priority=item.priority,
        )

    for focus in required:
        if focus not in by_focus:
            logger.info(f"LLM skipped focus '{focus.value}', using template query")
            by_focus[focus] = template_query(profile, focus)

    return sort_queries(list(by_focus.values()))


def sort_queries(queries: List[Query]) -> List[Query]:
    """Order queries by priority descending, then by focus order."""
    return sorted(queries, key=lambda q: (-q.priority, FOCUS_ORDER.index(q.focus)))


async def generate_queries(profile: ClientProfile, llm) -> List[Query]:
    """
    Generates ranked search queries for a client profile.

    Args:
        profile: The client profile (may be partially filled)
        llm: Chat model used to phrase the queries

    Returns:
        Queries sorted by priority descending; never empty
    """
    focuses = required_focuses(profile)
    logger.info(f"Generating queries for focuses: {[f.value for f in focuses]}")

    chain = create_llm_chain(QUERY_GENERATION_PROMPT, llm)

    try:
        raw_output = await llm_acall(
            chain,
            {
                "profile": format_client_profile(profile),
                "focuses": ", ".join(f.value for f in focuses),
            },
        )
        logger.debug(f"Raw query generation result: {raw_output}")
        generated = parse_generated_queries(raw_output)

    except GenerationParseError as e:
        logger.error(f"{e}; using template fallback")
        return fallback_queries(profile)

    except Exception as e:
        logger.error(f"Query generation failed: {str(e)}; using template fallback")
        return fallback_queries(profile)

    queries = reconcile_queries(generated, profile)
    logger.info(f"Generated {len(queries)} queries")
    return queries
