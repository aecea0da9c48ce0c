"""
Router for the FAB registry: confirmed Features/Advantages/Benefits
summaries, versioned per collection.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from compare_backend.errors import ErrorCode, PipelineError
from compare_backend.schemas import FabConfirmed, FabConfirmRequest, FabConfirmResponse, FabVersionsResponse
from compare_backend.tasks import ComparePipeline, get_pipeline


router = APIRouter(prefix="/api/fab", tags=["fab"])


@router.post("/confirm", response_model=FabConfirmResponse)
async def confirm_fab(request: FabConfirmRequest, pipeline: ComparePipeline = Depends(get_pipeline)):
    """
    Saves a confirmed FAB as the next version of its collection, creating
    the collection first when it is missing.
    """
    store = pipeline.store
    collection = store.get_collection(request.collection_id) if request.collection_id else None
    if collection is None:
        collection = store.create_collection(request.product_name, request.description, request.image_ref)
        logging.info(f"📝 Collection {collection.id} created for '{request.product_name}'")

    fab = store.create_fab_version(
        collection.id,
        summary=request.summary or "",
        features=request.features,
        advantages=request.advantages,
        benefits=request.benefits,
        note=request.note,
    )
    return FabConfirmResponse(
        data=FabConfirmed(collection_id=collection.id, fab_version_id=fab.id, version=fab.version)
    )


@router.get("/versions", response_model=FabVersionsResponse)
async def list_fab_versions(
    collection_id: Optional[str] = Query(None, alias="collectionId"),
    pipeline: ComparePipeline = Depends(get_pipeline),
):
    if not collection_id:
        raise PipelineError(ErrorCode.INVALID_REQUEST, "collectionId is required.")
    return FabVersionsResponse(data=pipeline.store.list_fab_versions(collection_id))
