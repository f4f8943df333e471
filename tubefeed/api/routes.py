from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from tubefeed.dependencies import get_ingestion_service
from tubefeed.services.ingestion_service import IngestionService, stats_to_dict

router = APIRouter()


class IngestionStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_videos: int
    latest_published_at: str | None = None
    oldest_published_at: str | None = None
    search_query: str


@router.get(
    "/stats",
    response_model=IngestionStatsResponse,
    tags=["ingestion"],
    operation_id="ingestion_stats",
)
def ingestion_stats(
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> IngestionStatsResponse:
    return IngestionStatsResponse.model_validate(stats_to_dict(service.get_stats()))
