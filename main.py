"""
Main entry point for the health plan search pipeline.
"""
import asyncio
import logging
import time
from typing import Dict, Any, List, Optional

from config import APP_CONFIG, get_config
from models.profile import ClientProfile, Dependent
from models.state import SearchResponse
from pipeline.orchestrator import SearchOrchestrator
from services.search_service import build_orchestrator
from vectordb.vector_store import VectorStore

# Configure logging
logging.basicConfig(
    level=APP_CONFIG["log_level"],
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

_orchestrator: Optional[SearchOrchestrator] = None
# Async clients stay bound to the loop they were first used on
_loop: Optional[asyncio.AbstractEventLoop] = None


def initialize_system() -> Dict[str, Any]:
    """Initialize the search system."""
    global _orchestrator, _loop
    logger.info("Initializing health plan search system")
    config = get_config()

    # Log configuration
    logger.info(f"System configured with: LLM={config['llm']['model']}, "
                f"Embeddings={config['embedding']['model']}, "
                f"Collection={config['vector_store']['collection_name']}, "
                f"Features={config['features']}")

    if _loop is None:
        _loop = asyncio.new_event_loop()
    if _orchestrator is None:
        vector_store = VectorStore()
        _loop.run_until_complete(vector_store.ensure_collection())
        _orchestrator = build_orchestrator(vector_store=vector_store)

    return {
        "orchestrator": _orchestrator,
        "loop": _loop,
        "config": config
    }


def execute_search(profile: ClientProfile, document_scope: List[str]) -> SearchResponse:
    """
    Execute a search for a client profile.

    Args:
        profile: The client profile
        document_scope: Ids of the document sets to search

    Returns:
        Relevant documents and search metadata
    """
    system = initialize_system()
    logger.info(f"Executing search over {len(document_scope)} document sets")
    start_time = time.time()

    response = system["loop"].run_until_complete(
        system["orchestrator"].run_search(profile, document_scope)
    )

    execution_time = time.time() - start_time
    logger.info(f"Search completed in {execution_time:.2f}s, "
                f"results: {len(response.results)}, rewrites: {response.metadata.rewrite_count}")
    return response


if __name__ == "__main__":
    test_profiles = [
        # Family with a pre-existing condition
        ClientProfile(
            age=35,
            city="Sao Paulo",
            state="SP",
            budget=1500,
            dependents=[Dependent(age=6, relationship="child")],
            pre_existing_conditions=["asthma"],
            preferences=["wide hospital network"],
        ),
        # Bare profile
        ClientProfile(),
    ]

    print("\n=== TESTING PLAN SEARCH ===")
    for profile in test_profiles:
        print(f"\nTESTING PROFILE: {profile.model_dump(exclude_none=True)}")
        result = execute_search(profile, ["plans-catalog"])

        for doc in result.results:
            print(f"[{doc.label.value}] {doc.id} (rrf {doc.rrf_score:.4f}) {doc.reason}")
        print(f"Metadata: {result.metadata.model_dump()}")
        print("-" * 80)
