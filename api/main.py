"""
FastAPI implementation for the health plan search pipeline.
"""
import logging
import time
import uuid
from typing import List

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
import uvicorn

from config import APP_CONFIG, get_config
from models.profile import ClientProfile
from models.state import SearchResponse
from services.search_service import SearchService

# Configure logging
logging.basicConfig(
    level=APP_CONFIG["log_level"],
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

# Initialize FastAPI
app = FastAPI(
    title="Health Plan Search API",
    description="Agentic retrieval of health plan documents for a client profile",
    version="1.0.0"
)

_search_service = None


def get_search_service() -> SearchService:
    """Provide the shared search service, created on first use."""
    global _search_service
    if _search_service is None:
        _search_service = SearchService()
    return _search_service


# API Models
class SearchRequest(BaseModel):
    """Search request model."""
    profile: ClientProfile
    document_scope: List[str] = Field(default_factory=list)


class SearchResult(SearchResponse):
    """Search response model."""
    request_id: str


# API Routes
@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Health Plan Search API"}


@app.post("/search", response_model=SearchResult)
async def search(request: SearchRequest, service: SearchService = Depends(get_search_service)):
    """
    Search plan documents for a client.

    Invalid profiles are rejected with 422 by request validation; the
    service maps retrieval outages to 503.
    """
    request_id = str(uuid.uuid4())
    logger.info(
        f"Search request: ID={request_id}, scope={len(request.document_scope)} document sets"
    )

    start_time = time.time()
    response = await service.search(request.profile, request.document_scope)

    execution_time = time.time() - start_time
    logger.info(f"Search completed: ID={request_id}, Time={execution_time:.2f}s")

    return SearchResult(**response.model_dump(), request_id=request_id)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        Health status and the active model configuration
    """
    config = get_config()
    return {
        "status": "healthy",
        "llm_model": config["llm"]["model"],
        "embedding_model": config["embedding"]["model"],
        "collection": config["vector_store"]["collection_name"],
        "timestamp": time.time(),
    }


if __name__ == "__main__":
    # Run the API using Uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
