# File: src/parking_ledger/domain/models.py
"""
Domain Models for the Parking Ledger

This module contains:
1. Value Objects: LicensePlate, Money, TimeRange
2. Entities: Facility, Vehicle, OccupancyRecord, HistoryEntry
3. Enums: OccupancyStatus, EventType
4. Domain Events: VehicleAdmittedEvent, VehicleReleasedEvent

Entities are plain data holders keyed by the integer ids the store assigns;
the ledger invariants that span several records live in the application
service and the storage constraints, not here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import re
import uuid

from .exceptions import ConflictError, InvalidArgumentError


PLATE_PATTERN = re.compile(r'^[A-Z0-9]{5,7}$')
CENT = Decimal('0.01')


# ============================================================================
# DOMAIN PRIMITIVES / VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)  # Value objects are immutable
class LicensePlate:
    """
    Value Object: normalized license plate
    The natural key of a Vehicle: 5-7 uppercase letters or digits
    """
    value: str

    def __post_init__(self):
        """Normalize and validate the plate"""
        if self.value is None or not str(self.value).strip():
            raise InvalidArgumentError("License plate cannot be empty")

        object.__setattr__(self, 'value', str(self.value).strip().upper())

        if not PLATE_PATTERN.match(self.value):
            raise InvalidArgumentError(
                f"License plate must be 5-7 letters or digits, got: {self.value}"
            )

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Money:
    """
    Value Object: Monetary amount with currency
    """
    amount: Decimal
    currency: str = "USD"

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        if self.amount < Decimal('0'):
            raise ValueError("Money amount cannot be negative")

        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency} to {other.currency}")
        return Money(self.amount + other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if multiplier < Decimal('0'):
            raise ValueError("Multiplier cannot be negative")
        return Money(self.amount * multiplier, self.currency)

    def rounded(self) -> 'Money':
        """Round half-up to whole cents"""
        return Money(self.amount.quantize(CENT, rounding=ROUND_HALF_UP), self.currency)

    def format(self) -> str:
        """Format money for display"""
        return f"${self.amount:.2f}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount),
            "currency": self.currency
        }


@dataclass(frozen=True)
class TimeRange:
    """
    Value Object: a stay from entry to exit
    Zero-length ranges are allowed; inverted ranges are not.
    """
    start_time: datetime
    end_time: datetime

    def __post_init__(self):
        if self.end_time < self.start_time:
            raise InvalidArgumentError("End time must not precede start time")

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def whole_hours(self) -> int:
        """Complete hours in the range, truncated"""
        return self.duration // timedelta(hours=1)

    @property
    def remainder_minutes(self) -> int:
        """Complete minutes left after removing whole hours; seconds are dropped"""
        return (self.duration // timedelta(minutes=1)) % 60

    @property
    def duration_hours(self) -> float:
        return self.duration.total_seconds() / 3600

    def __str__(self) -> str:
        start_str = self.start_time.strftime("%Y-%m-%d %H:%M:%S")
        end_str = self.end_time.strftime("%Y-%m-%d %H:%M:%S")
        return f"{start_str} to {end_str} ({self.duration_hours:.2f} hours)"


# ============================================================================
# ENUMERATIONS
# ============================================================================

class OccupancyStatus(str, Enum):
    """Lifecycle of an occupancy record: PARKED -> EXITED, once"""
    PARKED = "PARKED"
    EXITED = "EXITED"


class EventType(str, Enum):
    """Domain event types published after a ledger transaction commits"""
    VEHICLE_ADMITTED = "vehicle.admitted"
    VEHICLE_RELEASED = "vehicle.released"


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class Facility:
    """
    Entity: a parking facility as read from the facility registry
    The ledger only reads capacity and hourly rate.
    """
    name: str
    capacity: int
    hourly_rate: Decimal
    operator_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Facility name cannot be empty")

        if self.capacity is None or self.capacity <= 0:
            raise ValueError(f"Facility capacity must be positive: {self.capacity}")

        if not isinstance(self.hourly_rate, Decimal):
            self.hourly_rate = Decimal(str(self.hourly_rate))

        if self.hourly_rate < Decimal('0'):
            raise ValueError(f"Hourly rate cannot be negative: {self.hourly_rate}")

    @property
    def rate(self) -> Money:
        return Money(self.hourly_rate)


@dataclass
class Vehicle:
    """Entity: a vehicle known to the ledger, created on first sighting"""
    license_plate: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class OccupancyRecord:
    """
    Entity: one stay of a vehicle in a facility

    Created PARKED on admission and closed exactly once on release.
    """
    vehicle_id: int
    facility_id: int
    entry_time: datetime
    status: OccupancyStatus = OccupancyStatus.PARKED
    exit_time: Optional[datetime] = None
    total_cost: Optional[Decimal] = None
    license_plate: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_parked(self) -> bool:
        return self.status == OccupancyStatus.PARKED

    def close(self, exit_time: datetime, total_cost: Decimal) -> None:
        """Move the record from PARKED to EXITED"""
        if not self.is_parked:
            raise ConflictError(
                f"Occupancy record {self.id} is already {self.status.value}"
            )

        if exit_time < self.entry_time:
            raise InvalidArgumentError("Exit time must not precede entry time")

        self.exit_time = exit_time
        self.total_cost = total_cost
        self.status = OccupancyStatus.EXITED


@dataclass(frozen=True)
class HistoryEntry:
    """
    Entity: append-only projection of a closed occupancy record
    Written once at exit and read by reporting.
    """
    occupancy_record_id: int
    license_plate: str
    facility_name: str
    entry_time: datetime
    exit_time: datetime
    total_cost: Decimal
    facility_id: int
    vehicle_id: int
    id: Optional[int] = None

    @classmethod
    def from_record(cls, record: OccupancyRecord, facility: Facility) -> 'HistoryEntry':
        if record.is_parked:
            raise ConflictError(f"Occupancy record {record.id} has not been closed")

        return cls(
            occupancy_record_id=record.id,
            license_plate=record.license_plate,
            facility_name=facility.name,
            entry_time=record.entry_time,
            exit_time=record.exit_time,
            total_cost=record.total_cost,
            facility_id=facility.id,
            vehicle_id=record.vehicle_id,
        )


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events are published only after the ledger transaction has committed.
    """

    event_type: EventType

    def __init__(self, timestamp: Optional[datetime] = None):
        self.event_id = str(uuid.uuid4())
        self.timestamp = timestamp or datetime.now()

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class VehicleAdmittedEvent(DomainEvent):
    """Event raised when a vehicle enters a facility"""

    event_type = EventType.VEHICLE_ADMITTED

    def __init__(
        self,
        occupancy_record_id: int,
        facility_id: int,
        facility_name: str,
        vehicle_id: int,
        license_plate: str,
        entry_time: datetime
    ):
        super().__init__(timestamp=entry_time)
        self.occupancy_record_id = occupancy_record_id
        self.facility_id = facility_id
        self.facility_name = facility_name
        self.vehicle_id = vehicle_id
        self.license_plate = license_plate
        self.entry_time = entry_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "data": {
                "occupancy_record_id": self.occupancy_record_id,
                "facility_id": self.facility_id,
                "facility_name": self.facility_name,
                "vehicle_id": self.vehicle_id,
                "license_plate": self.license_plate,
                "entry_time": self.entry_time.isoformat()
            }
        }


class VehicleReleasedEvent(DomainEvent):
    """Event raised when a vehicle leaves and its stay has been billed"""

    event_type = EventType.VEHICLE_RELEASED

    def __init__(self, history_entry: HistoryEntry):
        super().__init__(timestamp=history_entry.exit_time)
        self.history_entry = history_entry

    @property
    def license_plate(self) -> str:
        return self.history_entry.license_plate

    @property
    def facility_name(self) -> str:
        return self.history_entry.facility_name

    @property
    def total_cost(self) -> Money:
        return Money(self.history_entry.total_cost)

    def to_dict(self) -> Dict[str, Any]:
        entry = self.history_entry
        return {
            "event_type": self.event_type.value,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "data": {
                "history_entry_id": entry.id,
                "occupancy_record_id": entry.occupancy_record_id,
                "facility_id": entry.facility_id,
                "facility_name": entry.facility_name,
                "vehicle_id": entry.vehicle_id,
                "license_plate": entry.license_plate,
                "entry_time": entry.entry_time.isoformat(),
                "exit_time": entry.exit_time.isoformat(),
                "total_cost": str(entry.total_cost)
            }
        }
