"""
Relevance grading component for the search pipeline.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from config import GRADING_CONFIG
from models.documents import FusedDocument, GradedDocument, GradeLabel
from models.profile import ClientProfile
from pipeline.exceptions import GradingFailure
from utils.llm import create_llm_chain, extract_json, llm_acall
from utils.prompts import GRADE_DOCUMENTS_PROMPT, format_client_profile, format_documents_for_grading

logger = logging.getLogger(__name__)

GRADING_FAILED_REASON = "grading_failed"


class GradeVerdict(BaseModel):
    """Verdict for one document as returned by the LLM."""
    document_id: str = Field(min_length=1)
    label: GradeLabel
    reason: str = ""

    @field_validator('document_id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        """Accept numeric ids echoed back by the model."""
        return str(v).strip() if v is not None else v

    @field_validator('label', mode='before')
    @classmethod
    def normalize_label(cls, v):
        """Accept labels with stray case or spacing."""
        return v.strip().lower().replace(" ", "_") if isinstance(v, str) else v


class GradingResult(BaseModel):
    """Every graded document, the relevant subset and label counts."""
    documents: List[GradedDocument] = Field(default_factory=list)
    relevant_documents: List[GradedDocument] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)
    timed_out: bool = False


def chunk(docs: List[FusedDocument], size: int) -> List[List[FusedDocument]]:
    """Split documents into consecutive batches of at most ``size``."""
    return [docs[i:i + size] for i in range(0, len(docs), size)]


def fallback_grade(doc: FusedDocument) -> GradedDocument:
    """Grade used when the LLM could not grade a document."""
    return GradedDocument(
        **doc.model_dump(),
        label=GradeLabel.PARTIALLY_RELEVANT,
        reason=GRADING_FAILED_REASON,
    )


def grading_stats(documents: List[GradedDocument]) -> Dict[str, int]:
    """Count graded documents per label, plus defaulted grades."""
    stats = {
        "total": len(documents),
        GradeLabel.RELEVANT.value: 0,
        GradeLabel.PARTIALLY_RELEVANT.value: 0,
        GradeLabel.IRRELEVANT.value: 0,
        "failed": 0,
    }
    for doc in documents:
        stats[doc.label.value] += 1
        if doc.reason == GRADING_FAILED_REASON:
            stats["failed"] += 1
    return stats


class RelevanceGrader:
    """Grades fused documents against a client profile with an LLM."""

    def __init__(
        self,
        llm,
        batch_size: int = GRADING_CONFIG["batch_size"],
        max_concurrency: int = GRADING_CONFIG["max_concurrency"],
    ):
        """
        Args:
            llm: Low-temperature chat model used for grading
            batch_size: Documents per grading call
            max_concurrency: Grading calls allowed in flight at once
        """
        if batch_size < 1 or max_concurrency < 1:
            raise ValueError("batch_size and max_concurrency must be positive")
        self.chain = create_llm_chain(GRADE_DOCUMENTS_PROMPT, llm)
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency

    async def _call_grader(self, batch: List[FusedDocument], profile_text: str) -> Dict[str, GradeVerdict]:
        """
        Grade one batch with a single LLM call.

        Raises:
            GradingFailure: If the call fails or its output is unusable
        """
        try:
            raw_output = await llm_acall(
                self.chain,
                {"profile": profile_text, "documents": format_documents_for_grading(batch)},
            )
            logger.debug(f"Raw grading result: {raw_output}")
            payload = extract_json(raw_output)
        except Exception as e:
            raise GradingFailure(f"Grading call failed: {str(e)}") from e

        if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
            raise GradingFailure("Grading output has no results list")

        # Validate entries one by one so a single bad verdict does not void the batch
        verdicts: Dict[str, GradeVerdict] = {}
        for entry in payload["results"]:
            try:
                verdict = GradeVerdict.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Discarding invalid grading entry {entry!r}: {e.error_count()} errors")
                continue
            verdicts.setdefault(verdict.document_id, verdict)
        return verdicts

    async def _grade_batch(
        self,
        batch: List[FusedDocument],
        profile_text: str,
        semaphore: asyncio.Semaphore,
    ) -> List[GradedDocument]:
        async with semaphore:
            try:
                verdicts = await self._call_grader(batch, profile_text)
            except GradingFailure as e:
                logger.error(f"{e}; defaulting {len(batch)} documents to partially_relevant")
                return [fallback_grade(doc) for doc in batch]

        graded = []
        for doc in batch:
            verdict = verdicts.get(doc.id)
            if verdict is None:
                logger.warning(f"No grade returned for document {doc.id}, using fallback")
                graded.append(fallback_grade(doc))
                continue
            graded.append(GradedDocument(
                **doc.model_dump(),
                label=verdict.label,
                reason=verdict.reason,
            ))
        return graded

    async def grade_documents(
        self,
        docs: List[FusedDocument],
        profile: ClientProfile,
        timeout: Optional[float] = None,
    ) -> GradingResult:
        """
        Grades documents for relevance to the client profile.

        Never raises for grading problems: failed grades default to
        ``partially_relevant`` with reason ``grading_failed``. When
        ``timeout`` elapses, unfinished batches are cancelled and the
        batches graded so far are returned with ``timed_out`` set.

        Args:
            docs: Fused documents to grade
            profile: The client profile
            timeout: Seconds to wait for all batches; None waits indefinitely

        Returns:
            Graded documents in input order plus the non-irrelevant subset
        """
        if not docs:
            logger.info("No documents to grade")
            return GradingResult(stats=grading_stats([]))

        batches = chunk(docs, self.batch_size)
        logger.info(f"Grading {len(docs)} documents in {len(batches)} batches of up to {self.batch_size}")

        profile_text = format_client_profile(profile)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [
            asyncio.ensure_future(self._grade_batch(batch, profile_text, semaphore))
            for batch in batches
        ]
        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Grading timed out with {len(pending)} of {len(batches)} batches unfinished")

        documents = [doc for task in tasks if task not in pending for doc in task.result()]
        relevant = [doc for doc in documents if doc.is_relevant]
        stats = grading_stats(documents)

        logger.info(
            f"Grading result: {stats['relevant']} relevant, "
            f"{stats['partially_relevant']} partial, {stats['irrelevant']} irrelevant, "
            f"{stats['failed']} defaulted"
        )
        return GradingResult(
            documents=documents,
            relevant_documents=relevant,
            stats=stats,
            timed_out=bool(pending),
        )


async def grade_documents(
    docs: List[FusedDocument],
    profile: ClientProfile,
    llm,
    batch_size: int = GRADING_CONFIG["batch_size"],
    max_concurrency: int = GRADING_CONFIG["max_concurrency"],
) -> GradingResult:
    """Grade documents with a one-off grader (see ``RelevanceGrader.grade_documents``)."""
    grader = RelevanceGrader(llm, batch_size=batch_size, max_concurrency=max_concurrency)
    return await grader.grade_documents(docs, profile)
