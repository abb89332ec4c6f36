"""
LLM setup and utility functions.
"""
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.prompts import ChatPromptTemplate
from langchain_community.embeddings import HuggingFaceEmbeddings
from typing import Dict, Any, Optional
import json
import logging
import re

from config import LLM_CONFIG, EMBEDDING_CONFIG

logger = logging.getLogger(__name__)

_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

def get_llm(temperature: Optional[float] = None) -> ChatGoogleGenerativeAI:
    """
    Initialize and return the LLM instance.

    Args:
        temperature: Optional override of the configured temperature

    Returns:
        ChatGoogleGenerativeAI: Configured LLM instance
    """
    try:
        llm = ChatGoogleGenerativeAI(
            model=LLM_CONFIG["model"],
            temperature=LLM_CONFIG["temperature"] if temperature is None else temperature,
            api_key=LLM_CONFIG["api_key"]
        )
        return llm
    except Exception as e:
        logger.error(f"Failed to initialize LLM: {str(e)}")
        raise

def get_grading_llm() -> ChatGoogleGenerativeAI:
    """Return a low-temperature LLM for deterministic relevance grading."""
    return get_llm(temperature=LLM_CONFIG["grading_temperature"])

def get_rewrite_llm() -> ChatGoogleGenerativeAI:
    """Return the LLM used to reformulate queries."""
    return get_llm(temperature=LLM_CONFIG["rewrite_temperature"])

def get_embeddings():
    """
    Initialize and return the sentence-transformers embeddings model.

    Returns:
        HuggingFaceEmbeddings: Configured embeddings instance
    """
    try:
        embeddings = HuggingFaceEmbeddings(
            model_name=EMBEDDING_CONFIG["model"],
            model_kwargs={'device': EMBEDDING_CONFIG["device"]},
            encode_kwargs={'normalize_embeddings': True}
        )
        return embeddings
    except Exception as e:
        logger.error(f"Failed to initialize embeddings model: {str(e)}")
        raise

def create_llm_chain(prompt: ChatPromptTemplate, llm):
    """
    Create a chain combining a prompt template with the LLM.

    Args:
        prompt: The chat prompt template
        llm: Chat model (or any runnable) that answers the prompt

    Returns:
        A chain that can be invoked with the prompt's input variables
    """
    return prompt | llm

def response_text(response: Any) -> str:
    """Return the text of a chat model response (message or plain string)."""
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Multi-part content: keep the text parts only
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content)

async def llm_acall(chain, inputs: Dict[str, Any]) -> str:
    """
    Call an LLM chain asynchronously and return the response text.

    Errors propagate; callers decide how to degrade.
    """
    response = await chain.ainvoke(inputs)
    return response_text(response).strip()

def extract_json(text: str) -> Any:
    """
    Parse the JSON object contained in an LLM response.

    Markdown code fences and any prose around the object are ignored.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    text = text.strip()

    # if start with ```json and end with ```, remove it
    if text.startswith("```json") and text.endswith("```"):
        text = text[7:-3].strip()
    elif text.startswith("```") and text.endswith("```"):
        text = text[3:-3].strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_PATTERN.search(text)
        if not match:
            raise ValueError(f"No JSON object found in LLM output: {text[:200]}")
        return json.loads(match.group(0))
