"""Model catalogue route."""

from fastapi import APIRouter, Depends

from app.dependencies import get_adapter_registry
from app.services.adapters import AdapterRegistry

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("/config")
def get_models_config(registry: AdapterRegistry = Depends(get_adapter_registry)):
    """Models available with the configured API keys, with their tunable parameters."""
    return {"models": registry.catalogue()}
