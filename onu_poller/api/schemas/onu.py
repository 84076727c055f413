"""
ONU API schemas.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from ...models.onu import OnuReading, OnuStatus, PollOutcome, PollResult


class OnuResponse(BaseModel):
    """Schema for one ONU."""
    board: int = Field(..., description="Board (slot) number")
    pon: int = Field(..., description="PON port number")
    onu_id: int = Field(..., description="ONU ID on port")
    name: Optional[str] = Field(None, description="ONU name")
    description: Optional[str] = Field(None, description="ONU description")
    serial_number: str = Field(..., description="ONU serial number")
    status: OnuStatus = Field(..., description="Operational status")
    rx_power: Optional[float] = Field(None, description="Received optical power in dBm")
    tx_power: Optional[float] = Field(None, description="Transmitted optical power in dBm")
    fetched_at: datetime = Field(..., description="Time of the last successful device read")
    stale: bool = Field(False, description="True when the OLT could not be reached and a cached record is served")

    @classmethod
    def from_reading(cls, reading: OnuReading) -> "OnuResponse":
        record = reading.record
        return cls(
            board=record.coordinate.board,
            pon=record.coordinate.port,
            onu_id=record.coordinate.onu_id,
            name=record.name,
            description=record.description,
            serial_number=record.serial_display,
            status=record.status,
            rx_power=None if record.rx_power is None else float(record.rx_power),
            tx_power=None if record.tx_power is None else float(record.tx_power),
            fetched_at=reading.fetched_at,
            stale=reading.stale,
        )


class OnuDetailResponse(BaseModel):
    code: int = 200
    status: str = "OK"
    data: OnuResponse


class OnuListResponse(BaseModel):
    code: int = 200
    status: str = "OK"
    data: List[OnuResponse]


class EmptyOnuIdResponse(BaseModel):
    code: int = 200
    status: str = "OK"
    data: List[int]


class PollFailure(BaseModel):
    """Schema for an ONU that could not be refreshed."""
    onu_id: int
    outcome: PollOutcome
    message: str

    @classmethod
    def from_result(cls, result: PollResult) -> "PollFailure":
        return cls(
            onu_id=result.coordinate.onu_id,
            outcome=result.outcome,
            message=str(result.error) if result.error else "",
        )


class PortRefreshData(BaseModel):
    refreshed: List[OnuResponse]
    failed: List[PollFailure]


class PortRefreshResponse(BaseModel):
    code: int = 200
    status: str = "OK"
    data: PortRefreshData


class DescriptionUpdateRequest(BaseModel):
    """Schema for updating an ONU description."""
    description: str = Field(..., min_length=1, max_length=64, description="New ONU description")
