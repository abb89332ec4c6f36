"""
Tests for the multi-query generation component.
"""
import json
import unittest
import sys
import os
import logging

from langchain_core.runnables import RunnableLambda

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.documents import QueryFocus
from models.profile import ClientProfile, Dependent
from pipeline.exceptions import GenerationParseError
from pipeline.query_generation import (
    generate_queries,
    parse_generated_queries,
    required_focuses,
    sort_queries,
    template_query,
)

# Disable logging during tests
logging.disable(logging.CRITICAL)


def fake_llm(payload):
    """LLM stand-in answering every prompt with ``payload``."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return RunnableLambda(lambda prompt: text)


def failing_llm():
    def fail(prompt):
        raise RuntimeError("LLM unavailable")
    return RunnableLambda(fail)


FULL_PROFILE = ClientProfile(
    age=42,
    city="Campinas",
    state="SP",
    budget=1200,
    dependents=[Dependent(age=8, relationship="child")],
    pre_existing_conditions=["diabetes"],
    preferences=["dental coverage"],
)


class TestRequiredFocuses(unittest.TestCase):
    """Tests for focus derivation."""

    def test_bare_profile(self):
        self.assertEqual(required_focuses(ClientProfile()), [QueryFocus.GENERAL, QueryFocus.PRICE])

    def test_full_profile(self):
        self.assertEqual(
            required_focuses(FULL_PROFILE),
            [
                QueryFocus.GENERAL,
                QueryFocus.DEPENDENTS,
                QueryFocus.CONDITIONS,
                QueryFocus.PRICE,
                QueryFocus.COVERAGE,
            ],
        )

    def test_template_queries_use_profile(self):
        general = template_query(FULL_PROFILE, QueryFocus.GENERAL)
        self.assertIn("Campinas", general.text)
        self.assertEqual(general.priority, 5)

        conditions = template_query(FULL_PROFILE, QueryFocus.CONDITIONS)
        self.assertIn("diabetes", conditions.text)

        dependents = template_query(FULL_PROFILE, QueryFocus.DEPENDENTS)
        self.assertIn("children", dependents.text)


class TestParsing(unittest.TestCase):
    """Tests for structured output parsing."""

    def test_parse_fenced_json(self):
        raw = '```json\n{"queries": [{"query": "health plan in Campinas", "focus": "general", "priority": 5}]}\n```'
        parsed = parse_generated_queries(raw)
        self.assertEqual(len(parsed.queries), 1)
        self.assertEqual(parsed.queries[0].focus, QueryFocus.GENERAL)

    def test_parse_rejects_prose(self):
        with self.assertRaises(GenerationParseError):
            parse_generated_queries("Here are some queries you could use")

    def test_parse_rejects_unknown_focus(self):
        raw = json.dumps({"queries": [{"query": "health plan for pets", "focus": "pets", "priority": 3}]})
        with self.assertRaises(GenerationParseError):
            parse_generated_queries(raw)

    def test_sort_by_priority_descending(self):
        queries = [
            template_query(FULL_PROFILE, QueryFocus.COVERAGE),
            template_query(FULL_PROFILE, QueryFocus.GENERAL),
            template_query(FULL_PROFILE, QueryFocus.PRICE),
        ]
        priorities = [q.priority for q in sort_queries(queries)]
        self.assertEqual(priorities, sorted(priorities, reverse=True))


class TestGenerateQueries(unittest.IsolatedAsyncioTestCase):
    """Tests for generate_queries."""

    async def test_bare_profile_yields_general_and_price(self):
        llm = fake_llm({"queries": [
            {"query": "price comparison of health plans", "focus": "price", "priority": 3},
            {"query": "health plans with broad national coverage", "focus": "general", "priority": 5},
        ]})

        queries = await generate_queries(ClientProfile(), llm)

        self.assertEqual(len(queries), 2)
        self.assertEqual([q.focus for q in queries], [QueryFocus.GENERAL, QueryFocus.PRICE])
        self.assertEqual(queries[0].text, "health plans with broad national coverage")

    async def test_missing_focus_filled_from_template(self):
        llm = fake_llm({"queries": [
            {"query": "health plans with broad national coverage", "focus": "general", "priority": 5},
        ]})

        queries = await generate_queries(ClientProfile(), llm)

        self.assertEqual([q.focus for q in queries], [QueryFocus.GENERAL, QueryFocus.PRICE])
        self.assertEqual(queries[1].text, template_query(ClientProfile(), QueryFocus.PRICE).text)

    async def test_unrequested_and_duplicate_focuses_dropped(self):
        llm = fake_llm({"queries": [
            {"query": "health plans with broad national coverage", "focus": "general", "priority": 5},
            {"query": "another general health plan query", "focus": "general", "priority": 4},
            {"query": "family plan for two children", "focus": "dependents", "priority": 4},
            {"query": "cheap monthly health plan prices", "focus": "price", "priority": 3},
        ]})

        queries = await generate_queries(ClientProfile(age=30), llm)

        focuses = [q.focus for q in queries]
        self.assertEqual(focuses, [QueryFocus.GENERAL, QueryFocus.PRICE])
        self.assertEqual(queries[0].text, "health plans with broad national coverage")

    async def test_full_profile_sorted_by_priority(self):
        llm = fake_llm({"queries": [
            {"query": "dental coverage health plan options", "focus": "coverage", "priority": 2},
            {"query": "plan covering diabetes treatment and insulin", "focus": "conditions", "priority": 4},
            {"query": "health plan for 42 year old in Campinas", "focus": "general", "priority": 5},
        ]})

        queries = await generate_queries(FULL_PROFILE, llm)

        self.assertEqual(len(queries), 5)
        self.assertEqual(queries[0].focus, QueryFocus.GENERAL)
        priorities = [q.priority for q in queries]
        self.assertEqual(priorities, sorted(priorities, reverse=True))

    async def test_malformed_output_falls_back(self):
        queries = await generate_queries(FULL_PROFILE, fake_llm("not json at all"))

        self.assertEqual(len(queries), 1)
        self.assertEqual(queries[0].focus, QueryFocus.GENERAL)
        self.assertIn("Campinas", queries[0].text)

    async def test_llm_failure_falls_back(self):
        queries = await generate_queries(ClientProfile(), failing_llm())

        self.assertEqual(len(queries), 1)
        self.assertEqual(queries[0].focus, QueryFocus.GENERAL)


if __name__ == "__main__":
    unittest.main()
