"""
Tests for problem detection and query rewriting.
"""
import json
import unittest
import sys
import os
import logging

from langchain_core.runnables import RunnableLambda

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.documents import FusedDocument, RewriteProblem
from models.profile import ClientProfile, Dependent
from pipeline.query_rewrite import (
    STRATEGIES,
    detect_problem,
    fallback_rewrite,
    is_same_query,
    rewrite_query,
)

# Disable logging during tests
logging.disable(logging.CRITICAL)

PROFILE = ClientProfile(
    age=28,
    city="Curitiba",
    state="PR",
    budget=600,
    dependents=[Dependent(age=2, relationship="child")],
)
ORIGINAL = "best premium health plan code 123456 for young adult in Curitiba"


def fused(doc_id, similarity):
    return FusedDocument(id=doc_id, content="", rrf_score=0.01, similarity_score=similarity)


def rewrite_llm(rewritten):
    return RunnableLambda(lambda prompt: json.dumps({"rewritten_query": rewritten, "changes": "added context"}))


class TestDetectProblem(unittest.TestCase):
    """Tests for detect_problem."""

    def test_zero_results(self):
        self.assertEqual(detect_problem([], 0), RewriteProblem.ZERO_RESULTS)

    def test_low_similarity(self):
        docs = [fused("a", 0.3), fused("b", 0.4)]
        self.assertEqual(detect_problem(docs, 1), RewriteProblem.LOW_SIMILARITY)

    def test_insufficient_coverage(self):
        docs = [fused("a", 0.7), fused("b", 0.8)]
        self.assertEqual(detect_problem(docs, 1), RewriteProblem.INSUFFICIENT_COVERAGE)

    def test_custom_threshold(self):
        docs = [fused("a", 0.7)]
        self.assertEqual(detect_problem(docs, 0, low_similarity_threshold=0.8), RewriteProblem.LOW_SIMILARITY)


class TestFallbackRewrite(unittest.TestCase):
    """Tests for the deterministic rewrites."""

    def test_every_strategy_changes_the_query(self):
        for problem in RewriteProblem:
            rewritten = fallback_rewrite(ORIGINAL, problem, PROFILE, attempt_count=1)
            self.assertFalse(is_same_query(rewritten, ORIGINAL), problem)

    def test_broaden_drops_codes_and_modifiers(self):
        rewritten = fallback_rewrite(ORIGINAL, RewriteProblem.ZERO_RESULTS, PROFILE, 1)
        self.assertNotIn("123456", rewritten)
        self.assertNotIn("premium", rewritten)

    def test_specialize_adds_profile_context(self):
        rewritten = fallback_rewrite("health plan", RewriteProblem.LOW_SIMILARITY, PROFILE, 1)
        self.assertIn("Curitiba", rewritten)
        self.assertIn("family plan", rewritten)

    def test_diversify_rotates_facets(self):
        first = fallback_rewrite(ORIGINAL, RewriteProblem.INSUFFICIENT_COVERAGE, PROFILE, 1)
        second = fallback_rewrite(ORIGINAL, RewriteProblem.INSUFFICIENT_COVERAGE, PROFILE, 2)
        self.assertNotEqual(first, second)


class TestRewriteQuery(unittest.IsolatedAsyncioTestCase):
    """Tests for rewrite_query."""

    async def test_llm_rewrite(self):
        result = await rewrite_query(
            ORIGINAL,
            RewriteProblem.LOW_SIMILARITY,
            1,
            PROFILE,
            rewrite_llm("family health plan in Curitiba with pediatric network"),
        )

        self.assertEqual(result.rewritten_query, "family health plan in Curitiba with pediatric network")
        self.assertEqual(result.strategy, STRATEGIES[RewriteProblem.LOW_SIMILARITY])
        self.assertEqual(result.attempt_count, 1)
        self.assertFalse(result.used_fallback)

    async def test_unchanged_query_uses_fallback(self):
        result = await rewrite_query(
            ORIGINAL,
            RewriteProblem.INSUFFICIENT_COVERAGE,
            2,
            PROFILE,
            rewrite_llm(ORIGINAL.upper()),
        )

        self.assertTrue(result.used_fallback)
        self.assertFalse(is_same_query(result.rewritten_query, ORIGINAL))
        self.assertEqual(result.strategy, "diversify")

    async def test_llm_failure_uses_fallback(self):
        def fail(prompt):
            raise ConnectionError("no route to model")

        result = await rewrite_query(ORIGINAL, RewriteProblem.ZERO_RESULTS, 1, PROFILE, RunnableLambda(fail))

        self.assertTrue(result.used_fallback)
        self.assertEqual(result.strategy, "broaden")
        self.assertNotEqual(result.rewritten_query, ORIGINAL)

    async def test_too_short_rewrite_uses_fallback(self):
        result = await rewrite_query(ORIGINAL, RewriteProblem.ZERO_RESULTS, 1, PROFILE, rewrite_llm("plan"))

        self.assertTrue(result.used_fallback)


if __name__ == "__main__":
    unittest.main()
