"""
Tests for the budget compatibility filter.
"""
import unittest
import sys
import os
import logging

# Add parent directory to path to allow imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.documents import GradedDocument, GradeLabel
from models.profile import ClientProfile
from pipeline.budget_filter import extract_prices, filter_by_budget, get_age_band, parse_price

# Disable logging during tests
logging.disable(logging.CRITICAL)

BAND_TABLE = """
| Plan | 0-18 | 19-38 | 39-59 | 60-75 | 76+ |
|------|------|-------|-------|-------|-----|
| Basic | R$ 150,00 | R$ 200,00 | R$ 350,00 | R$ 600,00 | R$ 900,00 |
| **Family Plus** | R$ 400,00 | R$ 650,00 | R$ 1.100,00 | R$ 1.800,00 | R$ 2.400,00 |
"""

BASE_TABLE = """
| Category | Plan | Price |
|----------|------|-------|
| A | Essential | R$ 180,00 |
| B | Superior | R$ 720,00 |
"""


def graded(doc_id, content):
    return GradedDocument(id=doc_id, content=content, rrf_score=0.01, label=GradeLabel.RELEVANT)


class TestPriceParsing(unittest.TestCase):
    """Tests for price extraction helpers."""

    def test_age_bands(self):
        self.assertEqual([get_age_band(a) for a in (0, 18, 19, 38, 39, 59, 60, 75, 76, 90)],
                         [1, 1, 2, 2, 3, 3, 4, 4, 5, 5])

    def test_parse_price(self):
        self.assertEqual(parse_price("1.234,56"), 1234.56)
        self.assertEqual(parse_price("1,234.56"), 1234.56)
        self.assertEqual(parse_price("180,00"), 180.0)
        self.assertEqual(parse_price("2.400"), 2400.0)
        self.assertIsNone(parse_price("..."))

    def test_extract_band_table(self):
        plans = extract_prices(BAND_TABLE)

        self.assertEqual([p.plan_name for p in plans], ["Basic", "Family Plus"])
        self.assertEqual(plans[0].prices_by_band[2], 200.0)
        self.assertEqual(plans[1].prices_by_band[3], 1100.0)

    def test_extract_base_table(self):
        plans = extract_prices(BASE_TABLE)

        self.assertEqual([(p.category, p.plan_name) for p in plans], [("A", "Essential"), ("B", "Superior")])
        self.assertEqual(plans[0].prices_by_band, {2: 180.0})

    def test_no_tables(self):
        self.assertEqual(extract_prices("Coverage includes emergency care."), [])


class TestFilterByBudget(unittest.TestCase):
    """Tests for filter_by_budget."""

    def setUp(self):
        self.docs = [
            graded("band", BAND_TABLE),
            graded("base", BASE_TABLE),
            graded("text", "Grace periods apply to pre-existing conditions."),
        ]

    def test_keeps_affordable_and_unpriced(self):
        result = filter_by_budget(self.docs, ClientProfile(age=30, budget=190))

        self.assertEqual([d.id for d in result.compatible_docs], ["base", "text"])
        self.assertEqual([d.id for d in result.incompatible_docs], ["band"])
        self.assertEqual(result.no_price_info, 1)

    def test_age_band_decides(self):
        result = filter_by_budget(self.docs, ClientProfile(age=10, budget=190))

        self.assertIn("band", [d.id for d in result.compatible_docs])

    def test_missing_budget_keeps_everything(self):
        result = filter_by_budget(self.docs, ClientProfile(age=30))

        self.assertEqual(len(result.compatible_docs), 3)
        self.assertEqual(result.incompatible_docs, [])


if __name__ == "__main__":
    unittest.main()
