"""
ONU API endpoints.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Path, Query, Request

from ..core.config import settings
from ..models.onu import MAX_BOARD, MAX_ONU_ID, MAX_PORT, DeviceCoordinate
from ..services.onu_service import MAX_STALENESS_SECONDS, OnuService
from .schemas.onu import (
    DescriptionUpdateRequest,
    EmptyOnuIdResponse,
    OnuDetailResponse,
    OnuListResponse,
    OnuResponse,
    PollFailure,
    PortRefreshData,
    PortRefreshResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/board", tags=["ONU"])


def get_onu_service(request: Request) -> OnuService:
    return request.app.state.onu_service


def _staleness(max_staleness: Optional[float]) -> float:
    return settings.DEFAULT_MAX_STALENESS if max_staleness is None else max_staleness


@router.get("/{board_id}/pon/{pon_id}", response_model=OnuListResponse)
async def list_onus(
    board_id: int = Path(..., ge=1, le=MAX_BOARD, description="Board (slot) number"),
    pon_id: int = Path(..., ge=1, le=MAX_PORT, description="PON port number"),
    max_staleness: Optional[float] = Query(
        None, ge=0, le=MAX_STALENESS_SECONDS, description="Maximum age in seconds of a cached record"
    ),
    service: OnuService = Depends(get_onu_service),
):
    """Get every ONU on a PON port."""
    readings = await service.list_onus_for_port(board_id, pon_id, _staleness(max_staleness))
    return OnuListResponse(data=[OnuResponse.from_reading(r) for r in readings])


@router.get("/{board_id}/pon/{pon_id}/onu/{onu_id}", response_model=OnuDetailResponse)
async def get_onu(
    board_id: int = Path(..., ge=1, le=MAX_BOARD, description="Board (slot) number"),
    pon_id: int = Path(..., ge=1, le=MAX_PORT, description="PON port number"),
    onu_id: int = Path(..., ge=1, le=MAX_ONU_ID, description="ONU ID on port"),
    max_staleness: Optional[float] = Query(
        None, ge=0, le=MAX_STALENESS_SECONDS, description="Maximum age in seconds of a cached record"
    ),
    service: OnuService = Depends(get_onu_service),
):
    """Get a single ONU."""
    coordinate = DeviceCoordinate(board_id, pon_id, onu_id)
    reading = await service.get_onu(coordinate, _staleness(max_staleness))
    return OnuDetailResponse(data=OnuResponse.from_reading(reading))


@router.get("/{board_id}/pon/{pon_id}/onu_id/empty", response_model=EmptyOnuIdResponse)
async def get_empty_onu_ids(
    board_id: int = Path(..., ge=1, le=MAX_BOARD, description="Board (slot) number"),
    pon_id: int = Path(..., ge=1, le=MAX_PORT, description="PON port number"),
    max_staleness: Optional[float] = Query(
        None, ge=0, le=MAX_STALENESS_SECONDS, description="Maximum age in seconds of a cached record"
    ),
    service: OnuService = Depends(get_onu_service),
):
    """Get ONU IDs that are free on a PON port."""
    onu_ids = await service.get_empty_onu_ids(board_id, pon_id, _staleness(max_staleness))
    return EmptyOnuIdResponse(data=onu_ids)


@router.post("/{board_id}/pon/{pon_id}/onu_id/update", response_model=PortRefreshResponse)
async def refresh_port(
    board_id: int = Path(..., ge=1, le=MAX_BOARD, description="Board (slot) number"),
    pon_id: int = Path(..., ge=1, le=MAX_PORT, description="PON port number"),
    service: OnuService = Depends(get_onu_service),
):
    """Re-read every ONU of a PON port from the OLT."""
    results = await service.refresh_port(board_id, pon_id)
    logger.info(f"Port {board_id}/{pon_id} refresh requested")
    return PortRefreshResponse(
        data=PortRefreshData(
            refreshed=[OnuResponse.from_reading(r.reading) for r in results if r.reading is not None],
            failed=[PollFailure.from_result(r) for r in results if r.reading is None],
        )
    )


@router.put("/{board_id}/pon/{pon_id}/onu/{onu_id}/description", response_model=OnuDetailResponse)
async def update_description(
    payload: DescriptionUpdateRequest,
    board_id: int = Path(..., ge=1, le=MAX_BOARD, description="Board (slot) number"),
    pon_id: int = Path(..., ge=1, le=MAX_PORT, description="PON port number"),
    onu_id: int = Path(..., ge=1, le=MAX_ONU_ID, description="ONU ID on port"),
    service: OnuService = Depends(get_onu_service),
):
    """Set the description of an ONU."""
    coordinate = DeviceCoordinate(board_id, pon_id, onu_id)
    reading = await service.update_description(coordinate, payload.description)
    return OnuDetailResponse(data=OnuResponse.from_reading(reading))
