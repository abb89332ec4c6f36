"""
Budget compatibility filter for graded plan documents.

Complements semantic grading with arithmetic: prices are read from the
markdown price tables in document content and compared with the client's
budget for the client's age band.
"""
import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from models.documents import GradedDocument
from models.profile import ClientProfile

logger = logging.getLogger(__name__)

AGE_BANDS = {
    1: "0-18",
    2: "19-38",
    3: "39-59",
    4: "60-75",
    5: "76+",
}

# | Plan | band 1 | band 2 | band 3 | band 4 | band 5 |
_BAND_ROW_PATTERN = re.compile(
    r"\|\s*\**([^|]+?)\**\s*"
    + r"\|\s*\**(?:R?\$)?\s*([\d.,]+)\**\s*" * 5
    + r"\|"
)
# | A | Plan name | base price |
_BASE_ROW_PATTERN = re.compile(
    r"\|\s*\**([A-E\d])\**\s*\|\s*([^|]+?)\s*\|\s*\**(?:R?\$)?\s*([\d.,]+)\**\s*\|"
)
_HEADER_WORDS = ("category", "plan", "band", "level", "tier")


class PlanPricing(BaseModel):
    """Prices of one plan per age band."""
    plan_name: str
    category: Optional[str] = None
    prices_by_band: Dict[int, float] = Field(default_factory=dict)


class BudgetFilterResult(BaseModel):
    compatible_docs: List[GradedDocument] = Field(default_factory=list)
    incompatible_docs: List[GradedDocument] = Field(default_factory=list)
    no_price_info: int = 0


def get_age_band(age: int) -> int:
    """Map an age to its pricing band (1-5)."""
    if age <= 18:
        return 1
    if age <= 38:
        return 2
    if age <= 59:
        return 3
    if age <= 75:
        return 4
    return 5


def parse_price(text: str) -> Optional[float]:
    """
    Parse a price written with either decimal convention.

    "1.234,56" and "1,234.56" both read as 1234.56; "180,00" as 180.0.
    """
    cleaned = text.strip().rstrip(".,")
    if not cleaned:
        return None
    last_comma = cleaned.rfind(",")
    last_dot = cleaned.rfind(".")
    if last_comma > last_dot:
        # Comma is the decimal separator when followed by exactly two digits
        if len(cleaned) - last_comma - 1 == 2:
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif last_dot > last_comma:
        if len(cleaned) - last_dot - 1 == 2:
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = cleaned.replace(".", "").replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def extract_prices(content: str) -> List[PlanPricing]:
    """Extract plan prices from markdown tables in document content."""
    plans: List[PlanPricing] = []

    for match in _BAND_ROW_PATTERN.finditer(content):
        name = match.group(1).strip()
        if name.lower() in _HEADER_WORDS:
            continue
        prices = {
            band: price
            for band, price in enumerate((parse_price(g) for g in match.groups()[1:]), start=1)
            if price
        }
        if prices:
            plans.append(PlanPricing(plan_name=name, prices_by_band=prices))

    for match in _BASE_ROW_PATTERN.finditer(content):
        name = match.group(2).strip()
        price = parse_price(match.group(3))
        if not price or any(p.plan_name.lower() == name.lower() for p in plans):
            continue
        # Base price tables quote band 2
        plans.append(PlanPricing(plan_name=name, category=match.group(1), prices_by_band={2: price}))

    return plans


def filter_by_budget(docs: List[GradedDocument], profile: ClientProfile) -> BudgetFilterResult:
    """
    Drop documents whose every priced plan exceeds the client's budget.

    Documents without price information are kept, as are all documents
    when the profile lacks age or budget.
    """
    if profile.age is None or profile.budget is None:
        logger.info("No age or budget in profile, skipping budget filter")
        return BudgetFilterResult(compatible_docs=list(docs))

    band = get_age_band(profile.age)
    logger.info(f"Filtering for age band {AGE_BANDS[band]}, budget {profile.budget:g}")

    result = BudgetFilterResult()
    for doc in docs:
        plans = extract_prices(doc.content)
        if not plans:
            result.no_price_info += 1
            result.compatible_docs.append(doc)
            continue

        affordable = [
            plan.plan_name for plan in plans
            if band in plan.prices_by_band and plan.prices_by_band[band] <= profile.budget
        ]
        if affordable:
            logger.debug(f"Doc {doc.id} compatible plans: {', '.join(affordable)}")
            result.compatible_docs.append(doc)
        else:
            result.incompatible_docs.append(doc)

    logger.info(
        f"Budget filter: {len(result.compatible_docs)} compatible, "
        f"{len(result.incompatible_docs)} incompatible, {result.no_price_info} without prices"
    )
    return result
