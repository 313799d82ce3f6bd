# File: src/parking_ledger/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Parking Ledger

This module defines DTOs for data transfer between layers:
1. Input DTOs - admission and release requests from the boundary layer
2. Output DTOs - operation results and read models returned to callers

DTO Principles:
- Validation at creation
- No business logic, only data
- Serialization/deserialization support
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
from decimal import Decimal
import json

from pydantic import BaseModel, Field, field_validator
from pydantic import ConfigDict

from ..domain.models import (
    LicensePlate, Facility, Vehicle, OccupancyRecord, HistoryEntry, OccupancyStatus
)


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,  # Allow creation from domain entities
        populate_by_name=True,
        use_enum_values=True
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(**kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls(**data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        data = json.loads(json_str)
        return cls(**data)


# ============================================================================
# REQUEST DTOs
# ============================================================================

class PlateRequestDTO(BaseDTO):
    """Plate plus facility, the shape of both ledger write requests"""
    license_plate: str = Field(description="License plate, normalized to uppercase")
    facility_id: int = Field(gt=0, description="Facility ID")

    @field_validator('license_plate')
    @classmethod
    def normalize_license_plate(cls, v: str) -> str:
        return LicensePlate(v).value


class AdmitRequestDTO(PlateRequestDTO):
    """DTO for an admission request"""


class ReleaseRequestDTO(PlateRequestDTO):
    """DTO for a release request"""


# ============================================================================
# RESPONSE DTOs
# ============================================================================

class AdmissionResultDTO(BaseDTO):
    """Result of a successful admission"""
    occupancy_record_id: int


class ReleaseResultDTO(BaseDTO):
    """Result of a successful release"""
    message: str


class FacilityDTO(BaseDTO):
    """Facility as read from the registry"""
    id: int
    name: str
    capacity: int
    hourly_rate: Decimal
    operator_id: Optional[int] = None

    @classmethod
    def from_domain(cls, facility: Facility) -> 'FacilityDTO':
        return cls.model_validate(facility)


class VehicleDTO(BaseDTO):
    """Vehicle DTO"""
    id: int
    license_plate: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, vehicle: Vehicle) -> 'VehicleDTO':
        return cls.model_validate(vehicle)


class OccupancyRecordDTO(BaseDTO):
    """Occupancy record DTO"""
    id: int
    vehicle_id: int
    facility_id: int
    license_plate: Optional[str] = None
    entry_time: datetime
    exit_time: Optional[datetime] = None
    total_cost: Optional[Decimal] = None
    status: OccupancyStatus

    @classmethod
    def from_domain(cls, record: OccupancyRecord) -> 'OccupancyRecordDTO':
        return cls.model_validate(record)


class HistoryEntryDTO(BaseDTO):
    """History entry DTO, the reporting feed"""
    id: int
    occupancy_record_id: int
    license_plate: str
    facility_id: int
    facility_name: str
    vehicle_id: int
    entry_time: datetime
    exit_time: datetime
    total_cost: Decimal

    @property
    def duration_hours(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds() / 3600

    @classmethod
    def from_domain(cls, entry: HistoryEntry) -> 'HistoryEntryDTO':
        return cls.model_validate(entry)

    @classmethod
    def from_domain_list(cls, entries: List[HistoryEntry]) -> List['HistoryEntryDTO']:
        return [cls.from_domain(entry) for entry in entries]


class ErrorResponseDTO(BaseDTO):
    """Structured error returned to the boundary layer"""
    error_code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)
