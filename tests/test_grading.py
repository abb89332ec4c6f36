"""
Tests for the relevance grading component.
"""
import asyncio
import json
import re
import unittest
import sys
import os
import logging

from langchain_core.messages import AIMessage
from langchain_core.runnables import RunnableLambda

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.documents import FusedDocument, GradeLabel
from models.profile import ClientProfile
from pipeline.grading import GRADING_FAILED_REASON, RelevanceGrader, chunk, grade_documents

# Disable logging during tests
logging.disable(logging.CRITICAL)

ID_PATTERN = re.compile(r"\(ID: ([^)]+)\)")

PROFILE = ClientProfile(age=35, city="Recife", state="PE", budget=900)


def make_fused(doc_id, score=0.01):
    return FusedDocument(id=doc_id, content=f"Plan document {doc_id}", rrf_score=score)


def grader_llm(label_for, skip=(), calls=None):
    """Grader stand-in labelling each document id found in the prompt."""
    def grade(prompt):
        ids = ID_PATTERN.findall(prompt.to_string())
        if calls is not None:
            calls.append(ids)
        results = [
            {"document_id": doc_id, "label": label_for(doc_id), "reason": f"reason for {doc_id}"}
            for doc_id in ids if doc_id not in skip
        ]
        return AIMessage(content=json.dumps({"results": results}))
    return RunnableLambda(grade)


class TestGradingHelpers(unittest.TestCase):
    """Tests for batching helpers."""

    def test_chunk(self):
        docs = [make_fused(str(i)) for i in range(12)]
        self.assertEqual([len(batch) for batch in chunk(docs, 5)], [5, 5, 2])

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            RelevanceGrader(grader_llm(lambda _: "relevant"), batch_size=0)


class TestRelevanceGrader(unittest.IsolatedAsyncioTestCase):
    """Tests for RelevanceGrader.grade_documents."""

    async def test_grades_all_documents_in_order(self):
        calls = []
        grader = RelevanceGrader(grader_llm(lambda _: "relevant", calls=calls), batch_size=5)
        docs = [make_fused(f"doc-{i}") for i in range(7)]

        result = await grader.grade_documents(docs, PROFILE)

        self.assertEqual([d.id for d in result.documents], [d.id for d in docs])
        self.assertEqual(len(result.relevant_documents), 7)
        self.assertEqual(sorted(len(ids) for ids in calls), [2, 5])
        self.assertEqual(result.stats["relevant"], 7)

    async def test_missing_verdict_defaults_single_document(self):
        grader = RelevanceGrader(grader_llm(lambda _: "relevant", skip={"doc-3"}), batch_size=5)
        docs = [make_fused(f"doc-{i}") for i in range(5)]

        result = await grader.grade_documents(docs, PROFILE)

        self.assertEqual(len(result.documents), 5)
        defaulted = [d for d in result.documents if d.reason == GRADING_FAILED_REASON]
        self.assertEqual([d.id for d in defaulted], ["doc-3"])
        self.assertEqual(defaulted[0].label, GradeLabel.PARTIALLY_RELEVANT)
        self.assertEqual(result.stats["failed"], 1)

    async def test_invalid_label_defaults_single_document(self):
        def label_for(doc_id):
            return "maybe" if doc_id == "doc-1" else "Relevant"

        grader = RelevanceGrader(grader_llm(label_for), batch_size=5)
        result = await grader.grade_documents([make_fused(f"doc-{i}") for i in range(3)], PROFILE)

        labels = {d.id: (d.label, d.reason) for d in result.documents}
        self.assertEqual(labels["doc-1"], (GradeLabel.PARTIALLY_RELEVANT, GRADING_FAILED_REASON))
        self.assertEqual(labels["doc-0"][0], GradeLabel.RELEVANT)

    async def test_failed_call_defaults_batch(self):
        def fail(prompt):
            raise TimeoutError("model timed out")

        grader = RelevanceGrader(RunnableLambda(fail), batch_size=5)
        docs = [make_fused(f"doc-{i}") for i in range(5)]

        result = await grader.grade_documents(docs, PROFILE)

        self.assertEqual(len(result.documents), 5)
        self.assertTrue(all(d.label == GradeLabel.PARTIALLY_RELEVANT for d in result.documents))
        self.assertEqual(result.stats["failed"], 5)
        self.assertEqual(len(result.relevant_documents), 5)

    async def test_unparseable_output_defaults_batch(self):
        grader = RelevanceGrader(RunnableLambda(lambda prompt: "I cannot grade these"), batch_size=5)
        result = await grader.grade_documents([make_fused("a"), make_fused("b")], PROFILE)

        self.assertEqual([d.reason for d in result.documents], [GRADING_FAILED_REASON] * 2)

    async def test_irrelevant_excluded_from_relevant_documents(self):
        def label_for(doc_id):
            return "irrelevant" if doc_id == "b" else "partially_relevant"

        grader = RelevanceGrader(grader_llm(label_for))
        result = await grader.grade_documents([make_fused("a"), make_fused("b"), make_fused("c")], PROFILE)

        self.assertEqual(len(result.documents), 3)
        self.assertEqual([d.id for d in result.relevant_documents], ["a", "c"])
        self.assertEqual(result.stats["irrelevant"], 1)

    async def test_numeric_ids_are_matched(self):
        def grade(prompt):
            return json.dumps({"results": [{"document_id": 42, "label": "relevant", "reason": "ok"}]})

        grader = RelevanceGrader(RunnableLambda(grade))
        result = await grader.grade_documents([make_fused("42")], PROFILE)

        self.assertEqual(result.documents[0].label, GradeLabel.RELEVANT)
        self.assertEqual(result.documents[0].reason, "ok")

    async def test_concurrency_is_capped(self):
        in_flight = 0
        peak = 0

        async def grade(prompt):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            ids = ID_PATTERN.findall(prompt.to_string())
            return json.dumps({"results": [
                {"document_id": doc_id, "label": "relevant", "reason": ""} for doc_id in ids
            ]})

        grader = RelevanceGrader(RunnableLambda(grade), batch_size=1, max_concurrency=3)
        result = await grader.grade_documents([make_fused(f"doc-{i}") for i in range(10)], PROFILE)

        self.assertEqual(len(result.documents), 10)
        self.assertLessEqual(peak, 3)
        self.assertGreater(peak, 1)

    async def test_timeout_keeps_finished_batches(self):
        async def grade(prompt):
            ids = ID_PATTERN.findall(prompt.to_string())
            if "doc-0" not in ids:
                await asyncio.sleep(5)
            return json.dumps({"results": [
                {"document_id": doc_id, "label": "relevant", "reason": "fast"} for doc_id in ids
            ]})

        grader = RelevanceGrader(RunnableLambda(grade), batch_size=5)
        docs = [make_fused(f"doc-{i}") for i in range(10)]

        result = await grader.grade_documents(docs, PROFILE, timeout=0.3)

        self.assertTrue(result.timed_out)
        self.assertEqual([d.id for d in result.documents], [f"doc-{i}" for i in range(5)])
        self.assertEqual(len(result.relevant_documents), 5)
        self.assertEqual(result.stats["total"], 5)

    async def test_no_timeout_when_all_batches_finish(self):
        grader = RelevanceGrader(grader_llm(lambda _: "relevant"), batch_size=2)
        result = await grader.grade_documents([make_fused("a"), make_fused("b"), make_fused("c")], PROFILE, timeout=5)

        self.assertFalse(result.timed_out)
        self.assertEqual(len(result.documents), 3)

    async def test_empty_input(self):
        calls = []
        result = await grade_documents([], PROFILE, grader_llm(lambda _: "relevant", calls=calls))

        self.assertEqual(result.documents, [])
        self.assertEqual(result.stats["total"], 0)
        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main()
