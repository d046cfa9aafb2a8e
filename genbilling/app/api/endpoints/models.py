from typing import Any

from fastapi import APIRouter, Depends

from ...schemas.base import ModelsResponse
from ...services.catalog import ModelCatalog
from ..deps import get_model_catalog
from .serializers import model_payload

router = APIRouter()


@router.get("/models", response_model=ModelsResponse)
def list_models(catalog: ModelCatalog = Depends(get_model_catalog)) -> Any:
    """Catalog listing the mini app renders its forms from."""
    return {"items": [model_payload(catalog, model) for model in catalog.list_models()]}
