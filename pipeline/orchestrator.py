"""
Search orchestrator: the corrective retrieval state machine.

    INIT -> GENERATE_QUERIES -> RETRIEVE -> FUSE -> GRADE
    GRADE -> FINALIZE | REWRITE | FINALIZE_LIMITED
    REWRITE -> RETRIEVE

Each step handler returns the state updates it produced; ``next_step``
decides where to go from the updated state.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from config import (
    FEATURES,
    FUSION_CONFIG,
    GRADING_CONFIG,
    REWRITE_CONFIG,
    RETRIEVAL_CONFIG,
    TIMEOUT_CONFIG,
)
from models.documents import GradeLabel, RankedList
from models.profile import ClientProfile
from models.state import SearchMetadata, SearchResponse, SearchState
from pipeline.budget_filter import filter_by_budget
from pipeline.exceptions import BudgetExceeded, TransientRetrievalError
from pipeline.grading import RelevanceGrader
from pipeline.hierarchical_retrieval import HierarchicalRetriever
from pipeline.query_generation import generate_queries
from pipeline.query_rewrite import detect_problem, rewrite_query
from pipeline.rank_fusion import fuse, fusion_stats, group_by_operator, merge_fused

logger = logging.getLogger(__name__)

LIMIT_REWRITE_BUDGET = "rewrite_budget"
LIMIT_TIMEOUT = "timeout"
LIMIT_EMPTY_SCOPE = "empty_scope"


class SearchStep(str, Enum):
    INIT = "init"
    GENERATE_QUERIES = "generate_queries"
    RETRIEVE = "retrieve"
    FUSE = "fuse"
    GRADE = "grade"
    REWRITE = "rewrite"
    FINALIZE = "finalize"
    FINALIZE_LIMITED = "finalize_limited"


TERMINAL_STEPS = (SearchStep.FINALIZE, SearchStep.FINALIZE_LIMITED)


@dataclass(frozen=True)
class SearchSettings:
    """Tuning constants of one orchestrator instance."""
    general_top_k: int = 5
    specific_top_k: int = 10
    general_weight: float = 0.3
    specific_weight: float = 0.7
    rrf_k: int = 60
    rrf_top_k: int = 15
    grading_batch_size: int = 5
    grading_concurrency: int = 3
    max_rewrites: int = 2
    min_relevant_docs: int = 3
    low_similarity_threshold: float = 0.5
    retrieval_timeout: float = 15.0
    grading_timeout: float = 20.0
    use_budget_filter: bool = False

    @classmethod
    def from_config(cls) -> "SearchSettings":
        return cls(
            general_top_k=RETRIEVAL_CONFIG["general_top_k"],
            specific_top_k=RETRIEVAL_CONFIG["specific_top_k"],
            general_weight=RETRIEVAL_CONFIG["general_weight"],
            specific_weight=RETRIEVAL_CONFIG["specific_weight"],
            rrf_k=FUSION_CONFIG["k"],
            rrf_top_k=FUSION_CONFIG["top_k"],
            grading_batch_size=GRADING_CONFIG["batch_size"],
            grading_concurrency=GRADING_CONFIG["max_concurrency"],
            max_rewrites=REWRITE_CONFIG["max_rewrites"],
            min_relevant_docs=REWRITE_CONFIG["min_relevant_docs"],
            low_similarity_threshold=REWRITE_CONFIG["low_similarity_threshold"],
            retrieval_timeout=TIMEOUT_CONFIG["retrieval"],
            grading_timeout=TIMEOUT_CONFIG["grading"],
            use_budget_filter=FEATURES["use_budget_filter"],
        )

    @property
    def max_retrieval_rounds(self) -> int:
        return self.max_rewrites + 1


def route_after_grading(state: SearchState, settings: SearchSettings) -> SearchStep:
    """Enough relevant documents, another rewrite, or stop with what we have."""
    if len(state["relevant_docs"]) >= settings.min_relevant_docs:
        return SearchStep.FINALIZE
    # Rewriting cannot widen an empty scope
    if state["document_scope"] and state["rewrite_count"] < settings.max_rewrites:
        return SearchStep.REWRITE
    return SearchStep.FINALIZE_LIMITED


def define_transitions() -> Dict[SearchStep, Union[SearchStep, Callable, None]]:
    """
    Define the transitions between steps.

    Returns:
        Mapping of each step to its successor, a routing function for
        conditional steps, or None for terminal steps
    """
    return {
        SearchStep.INIT: SearchStep.GENERATE_QUERIES,
        SearchStep.GENERATE_QUERIES: SearchStep.RETRIEVE,
        SearchStep.RETRIEVE: SearchStep.FUSE,
        SearchStep.FUSE: SearchStep.GRADE,

        # Corrective loop routing
        SearchStep.GRADE: route_after_grading,
        SearchStep.REWRITE: SearchStep.RETRIEVE,

        # Endpoints
        SearchStep.FINALIZE: None,
        SearchStep.FINALIZE_LIMITED: None,
    }


TRANSITIONS = define_transitions()


def next_step(step: SearchStep, state: SearchState, settings: SearchSettings) -> Optional[SearchStep]:
    """
    Pick the step following ``step``.

    Returns:
        The next step, or None once a terminal step has run
    """
    if step in TERMINAL_STEPS:
        return None
    if state.get("limit_reason") == LIMIT_TIMEOUT:
        return SearchStep.FINALIZE_LIMITED

    target = TRANSITIONS[step]
    if callable(target):
        return target(state, settings)
    return target


def initial_state(profile: ClientProfile, document_scope: List[str]) -> SearchState:
    return SearchState(
        profile=profile,
        document_scope=list(document_scope),
        queries=[],
        current_query_text="",
        pending_queries=[],
        rewrite_count=0,
        rewritten_queries=[],
        general_docs=[],
        specific_docs=[],
        extracted_entities=[],
        ranked_lists=[],
        retrieval_rounds=0,
        fused_docs=[],
        round_fused_docs=[],
        graded_docs={},
        relevant_docs=[],
        limited_results=False,
        limit_reason=None,
        metadata={
            "start_time": time.time(),
            "retrieval_seconds": 0.0,
            "grading_seconds": 0.0,
            "fusion_rounds": [],
        },
    )


class SearchOrchestrator:
    """Drives one search invocation through the step machine."""

    def __init__(
        self,
        llm,
        embedding_service,
        retriever: HierarchicalRetriever,
        grading_llm=None,
        rewrite_llm=None,
        settings: Optional[SearchSettings] = None,
    ):
        """
        Args:
            llm: Chat model for query generation
            embedding_service: Object exposing ``async embed_many(texts)``
            retriever: Two-phase retriever over the vector store
            grading_llm: Low-temperature chat model for grading; defaults to ``llm``
            rewrite_llm: Chat model for query rewriting; defaults to ``llm``
            settings: Tuning constants; defaults to the configured values
        """
        self.llm = llm
        self.rewrite_llm = rewrite_llm or llm
        self.embedding_service = embedding_service
        self.retriever = retriever
        self.settings = settings or SearchSettings.from_config()
        self.grader = RelevanceGrader(
            grading_llm or llm,
            batch_size=self.settings.grading_batch_size,
            max_concurrency=self.settings.grading_concurrency,
        )
        self.handlers = {
            SearchStep.INIT: self._init,
            SearchStep.GENERATE_QUERIES: self._generate_queries,
            SearchStep.RETRIEVE: self._retrieve,
            SearchStep.FUSE: self._fuse,
            SearchStep.GRADE: self._grade,
            SearchStep.REWRITE: self._rewrite,
            SearchStep.FINALIZE: self._finalize,
            SearchStep.FINALIZE_LIMITED: self._finalize_limited,
        }

    async def run_search(self, profile: ClientProfile, document_scope: List[str]) -> SearchResponse:
        """
        Run the corrective retrieval loop for one client.

        Args:
            profile: The client profile
            document_scope: Ids of the document sets the search may touch

        Returns:
            Relevant graded documents ordered by fused score, plus metadata

        Raises:
            TransientRetrievalError: If retrieval keeps failing after one retry
        """
        state = initial_state(profile, document_scope)
        # Each round visits RETRIEVE, FUSE, GRADE and possibly REWRITE
        max_steps = 4 + 4 * self.settings.max_retrieval_rounds
        step: Optional[SearchStep] = SearchStep.INIT
        steps_taken = 0

        while step is not None:
            steps_taken += 1
            if steps_taken > max_steps:
                raise RuntimeError(f"Search did not terminate within {max_steps} steps")

            logger.debug(f"Entering step {step.value}")
            try:
                updates = await self.handlers[step](state)
            except BudgetExceeded as e:
                logger.warning(f"{e} during {step.value}, finalizing with partial results")
                updates = {"limit_reason": e.reason}
            state.update(updates)
            step = next_step(step, state, self.settings)

        return state["metadata"]["response"]

    async def _init(self, state: SearchState) -> Dict[str, Any]:
        logger.info(
            f"Starting search over {len(state['document_scope'])} document sets "
            f"for client in {state['profile'].location or 'unknown location'}"
        )
        return {}

    async def _generate_queries(self, state: SearchState) -> Dict[str, Any]:
        queries = await generate_queries(state["profile"], self.llm)
        for query in queries:
            logger.info(f"[{query.focus.value}] (priority {query.priority}) {query.text}")
        return {
            "queries": queries,
            "current_query_text": queries[0].text,
            "pending_queries": [query.text for query in queries],
        }

    def _remaining(self, state: SearchState, budget_key: str, total: float) -> float:
        remaining = total - state["metadata"][budget_key]
        if remaining <= 0:
            raise BudgetExceeded(LIMIT_TIMEOUT)
        return remaining

    async def _retrieve_round(self, state: SearchState) -> Dict[str, Any]:
        texts = state["pending_queries"]
        if not state["document_scope"]:
            logger.warning("Empty document scope, nothing to retrieve")
            return {"ranked_lists": [RankedList(query=text, documents=[]) for text in texts]}

        vectors = await self.embedding_service.embed_many(texts)

        results = await asyncio.gather(*(
            self.retriever.retrieve_hierarchical(
                vectors[text],
                state["document_scope"],
                general_top_k=self.settings.general_top_k,
                specific_top_k=self.settings.specific_top_k,
                general_weight=self.settings.general_weight,
                specific_weight=self.settings.specific_weight,
            )
            for text in texts
        ))

        ranked_lists = []
        general_docs = list(state["general_docs"])
        specific_docs = list(state["specific_docs"])
        entities = list(state["extracted_entities"])
        known = {entity.casefold() for entity in entities}
        for text, result in zip(texts, results):
            ranked_lists.append(RankedList(query=text, documents=result.ranked()))
            general_docs.extend(result.general_docs)
            specific_docs.extend(result.specific_docs)
            for entity in result.extracted_entities:
                if entity.casefold() not in known:
                    known.add(entity.casefold())
                    entities.append(entity)

        return {
            "ranked_lists": ranked_lists,
            "general_docs": general_docs,
            "specific_docs": specific_docs,
            "extracted_entities": entities,
        }

    async def _retrieve(self, state: SearchState) -> Dict[str, Any]:
        round_number = state["retrieval_rounds"] + 1
        logger.info(f"Retrieval round {round_number} for {len(state['pending_queries'])} queries")

        attempt = 0
        while True:
            attempt += 1
            remaining = self._remaining(state, "retrieval_seconds", self.settings.retrieval_timeout)
            started = time.time()
            try:
                updates = await asyncio.wait_for(self._retrieve_round(state), timeout=remaining)
            except asyncio.TimeoutError:
                state["metadata"]["retrieval_seconds"] += time.time() - started
                raise BudgetExceeded(LIMIT_TIMEOUT)
            except TransientRetrievalError as e:
                state["metadata"]["retrieval_seconds"] += time.time() - started
                if attempt > 1:
                    logger.error(f"Retrieval failed again at {e.stage} stage: {str(e)}")
                    raise
                logger.warning(f"Retrieval failed at {e.stage} stage ({str(e)}), retrying once")
                continue
            state["metadata"]["retrieval_seconds"] += time.time() - started
            break

        updates["retrieval_rounds"] = round_number
        updates["pending_queries"] = []
        return updates

    async def _fuse(self, state: SearchState) -> Dict[str, Any]:
        started = time.time()
        round_fused = fuse(state["ranked_lists"], k=self.settings.rrf_k, top_k=self.settings.rrf_top_k)
        merged = merge_fused(state["fused_docs"], round_fused)
        state["metadata"]["retrieval_seconds"] += time.time() - started

        stats = fusion_stats(state["ranked_lists"], round_fused)
        state["metadata"]["fusion_rounds"].append(stats)
        logger.info(
            f"Fusion round {state['retrieval_rounds']}: {stats['unique_documents']} unique docs, "
            f"{len(merged)} candidates in total"
        )
        return {"round_fused_docs": round_fused, "fused_docs": merged}

    async def _grade(self, state: SearchState) -> Dict[str, Any]:
        graded_docs = dict(state["graded_docs"])
        to_grade = [doc for doc in state["fused_docs"] if doc.id not in graded_docs]
        logger.info(f"Grading {len(to_grade)} new documents ({len(graded_docs)} already graded)")

        remaining = self._remaining(state, "grading_seconds", self.settings.grading_timeout)
        started = time.time()
        try:
            result = await self.grader.grade_documents(to_grade, state["profile"], timeout=remaining)
        finally:
            state["metadata"]["grading_seconds"] += time.time() - started

        for doc in result.documents:
            graded_docs[doc.id] = doc

        updates = {
            "graded_docs": graded_docs,
            "relevant_docs": self._relevant_in_fused_order(state["fused_docs"], graded_docs),
        }
        if result.timed_out:
            logger.warning(f"Grading budget exhausted after {len(result.documents)} of {len(to_grade)} documents")
            updates["limit_reason"] = LIMIT_TIMEOUT
        return updates

    @staticmethod
    def _relevant_in_fused_order(fused_docs, graded_docs) -> List:
        relevant = []
        for fused in fused_docs:
            graded = graded_docs.get(fused.id)
            if graded is None or not graded.is_relevant:
                continue
            # Carry the merged score and provenance onto the graded copy
            relevant.append(graded.model_copy(update={
                "rrf_score": fused.rrf_score,
                "similarity_score": fused.similarity_score,
                "appearances": fused.appearances,
                "query_matches": list(fused.query_matches),
            }))
        return relevant

    async def _rewrite(self, state: SearchState) -> Dict[str, Any]:
        attempt = state["rewrite_count"] + 1
        problem = detect_problem(
            state["round_fused_docs"],
            len(state["relevant_docs"]),
            low_similarity_threshold=self.settings.low_similarity_threshold,
        )
        result = await rewrite_query(
            state["current_query_text"],
            problem,
            attempt,
            state["profile"],
            self.rewrite_llm,
        )
        logger.info(
            f"Rewrite {attempt}/{self.settings.max_rewrites}: "
            f"'{result.original_query}' -> '{result.rewritten_query}'"
        )
        return {
            "rewrite_count": attempt,
            "rewritten_queries": state["rewritten_queries"] + [result.rewritten_query],
            "current_query_text": result.rewritten_query,
            "pending_queries": [result.rewritten_query],
        }

    def _build_response(self, state: SearchState) -> SearchResponse:
        results = list(state["relevant_docs"])
        if self.settings.use_budget_filter:
            results = filter_by_budget(results, state["profile"]).compatible_docs

        graded = list(state["graded_docs"].values())
        elapsed_ms = (time.time() - state["metadata"]["start_time"]) * 1000
        metadata = SearchMetadata(
            query_count=len(state["queries"]),
            general_docs_count=len(state["general_docs"]),
            specific_docs_count=len(state["specific_docs"]),
            fused_docs_count=len(state["fused_docs"]),
            graded_docs_count=len(graded),
            relevant_docs_count=len(results),
            irrelevant_docs_count=sum(1 for doc in graded if doc.label == GradeLabel.IRRELEVANT),
            extracted_entities=state["extracted_entities"],
            operators={name: len(docs) for name, docs in group_by_operator(results).items()},
            rewrite_count=state["rewrite_count"],
            rewritten_queries=state["rewritten_queries"],
            retrieval_rounds=state["retrieval_rounds"],
            limited_results=state["limited_results"],
            limit_reason=state["limit_reason"],
            elapsed_ms=round(elapsed_ms, 2),
        )
        logger.info(
            f"Search finished in {metadata.elapsed_ms:.0f} ms: {metadata.relevant_docs_count} results, "
            f"{metadata.rewrite_count} rewrites, {metadata.retrieval_rounds} rounds"
            + (f", limited ({metadata.limit_reason})" if metadata.limited_results else "")
        )
        return SearchResponse(results=results, metadata=metadata)

    async def _finalize(self, state: SearchState) -> Dict[str, Any]:
        response = self._build_response(state)
        return {"metadata": {**state["metadata"], "response": response}}

    async def _finalize_limited(self, state: SearchState) -> Dict[str, Any]:
        state["limited_results"] = True
        if not state["limit_reason"]:
            state["limit_reason"] = LIMIT_REWRITE_BUDGET if state["document_scope"] else LIMIT_EMPTY_SCOPE
        logger.warning(
            f"Finalizing with {len(state['relevant_docs'])} relevant documents "
            f"(limit: {state['limit_reason']})"
        )
        response = self._build_response(state)
        return {
            "limited_results": True,
            "limit_reason": state["limit_reason"],
            "metadata": {**state["metadata"], "response": response},
        }


async def run_search(
    profile: ClientProfile,
    document_scope: List[str],
    llm,
    embedding_service,
    retriever: HierarchicalRetriever,
    grading_llm=None,
    rewrite_llm=None,
    settings: Optional[SearchSettings] = None,
) -> SearchResponse:
    """Run one search with a one-off orchestrator (see ``SearchOrchestrator.run_search``)."""
    orchestrator = SearchOrchestrator(
        llm,
        embedding_service,
        retriever,
        grading_llm=grading_llm,
        rewrite_llm=rewrite_llm,
        settings=settings,
    )
    return await orchestrator.run_search(profile, document_scope)
