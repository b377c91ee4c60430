"""API routes for the search service."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from memoria.items.base import ItemAlreadyExistsError
from memoria.items.models import ContentType, DateRange, Item

from ..hybrid.exceptions import SearchError
from ..hybrid.search_manager import SearchManager
from ..models import SearchMode, SearchOutcome

logger = structlog.get_logger("search_service.api")

router = APIRouter()


class SearchFilters(BaseModel):
    """Explicit filters; each overrides the one parsed from query text."""
    type: Optional[ContentType] = Field(None, description="Content type")
    date_from: Optional[datetime] = Field(None, description="Created at or after (inclusive)")
    date_to: Optional[datetime] = Field(None, description="Created at or before (inclusive)")
    tags: Optional[List[str]] = Field(None, description="Required tags")


class SearchRequest(BaseModel):
    """Request model for search endpoint."""
    query: str = Field("", description="Search query; may be empty when filters are given")
    mode: SearchMode = Field(SearchMode.HYBRID, description="lexical, semantic or hybrid")
    limit: Optional[int] = Field(None, ge=1, description="Maximum number of results")
    filters: Optional[SearchFilters] = Field(None, description="Explicit filters")


class ItemRequest(BaseModel):
    """Request model for item ingestion."""
    id: Optional[str] = Field(None, description="Item ID; generated when omitted")
    title: str = Field(..., min_length=1, description="Item title")
    content_type: ContentType = Field(..., description="Content type")
    body: Optional[str] = Field(None, description="Item body")
    source_url: Optional[str] = Field(None, description="Source URL")
    tags: List[str] = Field(default_factory=list, description="Item tags")
    created_at: Optional[datetime] = Field(None, description="Creation time; now when omitted")

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value

    @field_validator("created_at")
    @classmethod
    def _created_at_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("created_at must include a timezone")
        return value


def get_search_manager(request: Request) -> SearchManager:
    """Get search manager from application state."""
    return request.app.state.search_manager


def _raise_http(error: Exception, message: str, **log_fields: Any) -> None:
    """Log a failure and convert it into an ``HTTPException``."""
    if isinstance(error, SearchError):
        if error.status_code >= 500:
            logger.error(message, error=str(error), **log_fields)
        raise HTTPException(status_code=error.status_code, detail=str(error))
    logger.error(message, error=str(error), **log_fields)
    raise HTTPException(status_code=500, detail=message)


def _build_date_range(date_from: Optional[datetime], date_to: Optional[datetime]) -> Optional[DateRange]:
    if date_from is None and date_to is None:
        return None
    try:
        return DateRange(start=date_from, end=date_to)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _search_response(outcome: SearchOutcome) -> Dict[str, Any]:
    return {
        "results": [result.to_dict() for result in outcome.results],
        "count": outcome.count,
        "mode": outcome.mode.value,
        "degraded": outcome.degraded,
        "degraded_reason": outcome.degraded_reason,
        "query": outcome.query_info,
        "latency_ms": round(outcome.latency_ms, 2),
    }


@router.post("/search")
async def search(
    request: SearchRequest,
    owner_id: str = Query(..., min_length=1, description="Owner whose items are searched"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Search an owner's items."""
    filters = request.filters or SearchFilters()
    date_range = _build_date_range(filters.date_from, filters.date_to)

    try:
        outcome = await search_manager.search(
            owner_id=owner_id,
            query=request.query,
            mode=request.mode,
            limit=request.limit,
            content_type=filters.type,
            date_range=date_range,
            tags=filters.tags,
        )
    except Exception as e:
        _raise_http(e, "Search failed", owner_id=owner_id, mode=request.mode.value)

    return _search_response(outcome)


@router.get("/search")
async def quick_search(
    owner_id: str = Query(..., min_length=1, description="Owner whose items are searched"),
    q: str = Query("", description="Search query"),
    mode: SearchMode = Query(SearchMode.HYBRID, description="lexical, semantic or hybrid"),
    type: Optional[ContentType] = Query(None, description="Content type filter"),
    limit: Optional[int] = Query(None, ge=1, description="Maximum number of results"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Quick search via query string."""
    try:
        outcome = await search_manager.search(
            owner_id=owner_id,
            query=q,
            mode=mode,
            limit=limit,
            content_type=type,
        )
    except Exception as e:
        _raise_http(e, "Search failed", owner_id=owner_id, mode=mode.value)

    return _search_response(outcome)


@router.post("/items", status_code=201)
async def create_item(
    request: ItemRequest,
    owner_id: str = Query(..., min_length=1, description="Owner of the new item"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Store an item; its embedding is generated in the background."""
    fields: Dict[str, Any] = {
        "owner_id": owner_id,
        "title": request.title,
        "content_type": request.content_type,
        "body": request.body,
        "source_url": request.source_url,
        "tags": tuple(request.tags),
    }
    if request.id:
        fields["id"] = request.id
    if request.created_at:
        fields["created_at"] = request.created_at

    try:
        item = await search_manager.index_item(Item(**fields))
    except ItemAlreadyExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        _raise_http(e, "Item ingestion failed", owner_id=owner_id)

    return {"status": "accepted", "item": item.to_dict()}


@router.delete("/items/{item_id}")
async def delete_item(
    item_id: str,
    owner_id: str = Query(..., min_length=1, description="Owner of the item"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Delete an item and its embedding."""
    try:
        deleted = await search_manager.remove_item(owner_id, item_id)
    except Exception as e:
        _raise_http(e, "Failed to remove item", owner_id=owner_id, item_id=item_id)

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")

    logger.info("Item removed", owner_id=owner_id, item_id=item_id)
    return {"status": "success", "message": "Item removed"}


@router.get("/index/stats")
async def get_index_stats(
    owner_id: str = Query(..., min_length=1, description="Owner to report on"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Get item and embedding counts for an owner."""
    try:
        return await search_manager.get_index_stats(owner_id)
    except Exception as e:
        _raise_http(e, "Failed to get index stats", owner_id=owner_id)


@router.post("/index/rebuild", status_code=202)
async def rebuild_index(
    owner_id: str = Query(..., min_length=1, description="Owner whose embeddings are rebuilt"),
    force: bool = Query(False, description="Re-embed items that already have a vector"),
    search_manager: SearchManager = Depends(get_search_manager),
):
    """Queue embedding jobs for an owner's items."""
    try:
        result = await search_manager.reindex(owner_id, force=force)
    except Exception as e:
        _raise_http(e, "Index rebuild failed", owner_id=owner_id)

    return {"status": "accepted", **result}
