"""
Prompt templates for the health plan retrieval pipeline.
"""
from typing import List

from langchain_core.prompts import ChatPromptTemplate

from models.documents import FusedDocument
from models.profile import ClientProfile

# Longest document excerpt sent to the grader
GRADING_CONTENT_LIMIT = 500

# Query Generation Prompt
QUERY_GENERATION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are an expert in health insurance plans.
    Given the client profile, write search queries that will retrieve plan
    documents relevant to this client from a semantic search index.

    Write exactly one query for each of these focus categories: {focuses}
    - general: the client's overall profile (age, location, budget)
    - dependents: coverage for the client's dependents
    - conditions: coverage for the client's pre-existing conditions
    - price: cost, monthly price and value for money
    - coverage: the specific coverage preferences the client stated

    Each query must be specific enough for semantic search (10-500 characters).
    Give each query a priority from 1 (least important) to 5 (most important).

    Return a JSON object of the form:
    {{"queries": [{{"query": "...", "focus": "general", "priority": 5}}]}}

    Return ONLY valid JSON, no other text."""),
    ("human", "Client profile:\n{profile}")
])

# Document Grading Prompt
GRADE_DOCUMENTS_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are an evaluator specialized in health insurance plans.
    Grade EACH document below for relevance to the client profile.

    - relevant: the document directly addresses what the client needs
      (compatible with age, location and budget, covers dependents and conditions)
    - partially_relevant: the document is related but not ideal
      (different operator, price close to the budget, partial coverage)
    - irrelevant: the document does not fit this client
      (wrong age range or region, over budget, excludes critical conditions)

    Client profile:
    {profile}

    Return a JSON object of the form:
    {{"results": [{{"document_id": "...", "label": "relevant", "reason": "one short sentence"}}]}}

    Grade ALL listed documents with consistent criteria.
    Return ONLY valid JSON, no other text."""),
    ("human", "Documents to grade:\n\n{documents}")
])

# Query Rewrite Prompt
REWRITE_QUERY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are an expert in searching health insurance plan documents.
    A previous search did not return enough relevant documents. Reformulate
    the query to improve the results. This is rewrite attempt {attempt}.

    Problem detected: {problem}
    Strategy to apply: {strategy}

    Client profile:
    {profile}

    The new query must differ from the original and be 10-500 characters long.

    Return a JSON object of the form:
    {{"rewritten_query": "...", "changes": "short description of what changed"}}

    Return ONLY valid JSON, no other text."""),
    ("human", "Original query: {original_query}")
])


def format_client_profile(profile: ClientProfile) -> str:
    """
    Render a client profile as a bullet list for prompts.

    Args:
        profile: The client profile

    Returns:
        Prompt-ready description, or a placeholder when nothing is known
    """
    parts = []

    if profile.age is not None:
        parts.append(f"- Age: {profile.age}")

    if profile.location:
        parts.append(f"- Location: {profile.location}")

    if profile.budget is not None:
        parts.append(f"- Budget: up to {profile.budget:,.2f}/month")

    if profile.dependents:
        descriptions = []
        for dependent in profile.dependents:
            dep_parts = []
            if dependent.relationship:
                dep_parts.append(dependent.relationship)
            if dependent.age is not None:
                dep_parts.append(f"{dependent.age} years old")
            descriptions.append(", ".join(dep_parts) or "dependent")
        parts.append(f"- Dependents: {'; '.join(descriptions)}")

    if profile.pre_existing_conditions:
        parts.append(f"- Pre-existing conditions: {', '.join(profile.pre_existing_conditions)}")

    if profile.preferences:
        parts.append(f"- Preferences: {', '.join(profile.preferences)}")

    if not parts:
        return "No client information available"

    return "\n".join(parts)


def format_documents_for_grading(docs: List[FusedDocument]) -> str:
    """Render a batch of documents, truncating long content."""
    sections = []
    for index, doc in enumerate(docs, start=1):
        meta = [
            str(doc.metadata[key])
            for key in ("document_type", "operator", "plan_code")
            if doc.metadata.get(key)
        ]
        content = doc.content
        if len(content) > GRADING_CONTENT_LIMIT:
            content = content[:GRADING_CONTENT_LIMIT] + "..."

        section = f"### Document {index} (ID: {doc.id})\n"
        if meta:
            section += f"Metadata: {' | '.join(meta)}\n"
        section += f"Content: {content}"
        sections.append(section)

    return "\n\n".join(sections)
