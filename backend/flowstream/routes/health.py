from fastapi import APIRouter, Depends

from flowstream.dependencies import get_stream_registry
from flowstream.services.registry import StreamRegistry

router = APIRouter()


@router.get("/health")
async def health(registry: StreamRegistry = Depends(get_stream_registry)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "streams": registry.stats(),
    }
