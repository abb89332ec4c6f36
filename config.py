"""
Configuration settings for the health plan retrieval pipeline.
"""
import os
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Vector store config
VECTOR_STORE_CONFIG = {
    "url": os.environ.get("QDRANT_URL", "http://localhost:6333"),
    "api_key": os.environ.get("QDRANT_API_KEY", ""),
    "collection_name": os.environ.get("QDRANT_COLLECTION", "health_plan_documents"),
    "dimension": int(os.environ.get("VECTOR_DIMENSION", "384")),
    "timeout": float(os.environ.get("QDRANT_TIMEOUT", "10")),
}

# LLM configuration
LLM_CONFIG = {
    "model": os.environ.get("LLM_MODEL", "gemini-2.0-flash-lite"),
    "temperature": float(os.environ.get("LLM_TEMPERATURE", "0.3")),
    "grading_temperature": float(os.environ.get("LLM_GRADING_TEMPERATURE", "0.0")),
    "rewrite_temperature": float(os.environ.get("LLM_REWRITE_TEMPERATURE", "0.1")),
    "api_key": os.environ.get("LLM_API_KEY", "")
}

# Embedding configuration
EMBEDDING_CONFIG = {
    "model": os.environ.get("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
    "device": os.environ.get("EMBEDDING_DEVICE", "cpu"),
}

# Two-phase retrieval
RETRIEVAL_CONFIG = {
    "general_top_k": int(os.environ.get("GENERAL_TOP_K", "5")),
    "specific_top_k": int(os.environ.get("SPECIFIC_TOP_K", "10")),
    "general_weight": float(os.environ.get("GENERAL_WEIGHT", "0.3")),
    "specific_weight": float(os.environ.get("SPECIFIC_WEIGHT", "0.7")),
    "entity_boost": float(os.environ.get("ENTITY_BOOST", "1.2")),
    "entity_mode": os.environ.get("ENTITY_MODE", "boost"),  # boost | filter
    "embedding_concurrency": int(os.environ.get("EMBEDDING_CONCURRENCY", "4")),
    "retry_base_delay": float(os.environ.get("RETRY_BASE_DELAY", "0.1")),  # in seconds
    "retry_factor": float(os.environ.get("RETRY_FACTOR", "2.0")),
    "max_retries": int(os.environ.get("MAX_RETRIES", "2")),
}

# Reciprocal rank fusion
FUSION_CONFIG = {
    "k": int(os.environ.get("RRF_K", "60")),
    "top_k": int(os.environ.get("RRF_TOP_K", "15")),
}

GRADING_CONFIG = {
    "batch_size": int(os.environ.get("GRADING_BATCH_SIZE", "5")),
    "max_concurrency": int(os.environ.get("GRADING_MAX_CONCURRENCY", "3")),
}

REWRITE_CONFIG = {
    "max_rewrites": int(os.environ.get("MAX_REWRITES", "2")),
    "min_relevant_docs": int(os.environ.get("MIN_RELEVANT_DOCS", "3")),
    "low_similarity_threshold": float(os.environ.get("LOW_SIMILARITY_THRESHOLD", "0.5")),
}

# Wall-clock budgets per invocation, in seconds
TIMEOUT_CONFIG = {
    "retrieval": float(os.environ.get("RETRIEVAL_TIMEOUT", "15")),
    "grading": float(os.environ.get("GRADING_TIMEOUT", "20")),
}

# Application configuration
APP_CONFIG = {
    "debug": os.environ.get("DEBUG", "False").lower() == "true",
    "log_level": os.environ.get("LOG_LEVEL", "INFO"),
}

# Feature flags
FEATURES = {
    "use_budget_filter": os.environ.get("USE_BUDGET_FILTER", "False").lower() == "true",
}

def get_config() -> Dict[str, Any]:
    """Return the complete configuration dictionary."""
    return {
        "llm": LLM_CONFIG,
        "embedding": EMBEDDING_CONFIG,
        "vector_store": VECTOR_STORE_CONFIG,
        "retrieval": RETRIEVAL_CONFIG,
        "fusion": FUSION_CONFIG,
        "grading": GRADING_CONFIG,
        "rewrite": REWRITE_CONFIG,
        "timeouts": TIMEOUT_CONFIG,
        "app": APP_CONFIG,
        "features": FEATURES
    }
