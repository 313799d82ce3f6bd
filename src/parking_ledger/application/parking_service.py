# File: src/parking_ledger/application/parking_service.py
"""
Parking Ledger Application Service

This module implements the use cases of the occupancy ledger on top of the
repositories and the Unit of Work:

1. AdmissionController - starts an occupancy record for a plate
2. ExitBillingProcessor - closes the record, bills it and appends history
3. OccupancyQueryService - read-side queries for the boundary layer
4. ParkingLedgerService - facade combining the three
5. AsyncParkingLedgerService - runs the facade on a bounded worker pool

Every operation runs in its own Unit of Work, so one operation is one
transaction. Domain events are published only after that transaction has
committed; whatever their handlers do cannot undo a ledger change.
"""

from typing import List, Optional, Callable
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor
import asyncio
import functools
import logging

from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..domain.models import (
    LicensePlate, TimeRange, Facility, Vehicle, OccupancyRecord, HistoryEntry,
    DomainEvent, VehicleAdmittedEvent, VehicleReleasedEvent
)
from ..domain.strategies import PricingStrategy, HourlyRoundUpPricingStrategy
from ..domain.exceptions import (
    NotFoundError, ConflictError, CapacityExceededError,
    InvalidArgumentError, LedgerStorageError
)
from ..infrastructure.repositories import UnitOfWork
from ..infrastructure.messaging import EventBus


RELEASE_CONFIRMATION = "Exit registered"

UnitOfWorkFactory = Callable[[], UnitOfWork]
Clock = Callable[[], datetime]


# ============================================================================
# SHARED COMPONENT BASE
# ============================================================================

class LedgerComponent:
    """Dependencies and helpers shared by the ledger components"""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None
    ):
        self.uow_factory = uow_factory
        self.event_bus = event_bus
        self.clock = clock or datetime.now
        self.logger = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def _resolve_facility(uow: UnitOfWork, facility_id: int, lock: bool = False) -> Facility:
        if lock:
            facility = uow.facilities.get_for_update(facility_id)
        else:
            facility = uow.facilities.get(facility_id)

        if facility is None:
            raise NotFoundError(f"Facility {facility_id} not found")
        return facility

    def _storage_error(self, operation: str, error: SQLAlchemyError) -> LedgerStorageError:
        self.logger.error(f"Storage failure during {operation}, transaction rolled back: {error}")
        return LedgerStorageError(f"Storage failure during {operation}")

    def _publish(self, event: DomainEvent) -> None:
        """Publish after commit; a failing event bus never fails the operation"""
        if self.event_bus is None:
            return
        try:
            self.event_bus.publish(event)
        except Exception as e:
            self.logger.warning(f"Could not publish {event.event_type.value}: {e}")


# ============================================================================
# ADMISSION CONTROLLER
# ============================================================================

class AdmissionController(LedgerComponent):
    """
    Starts occupancy records

    Checks and insert run in one transaction holding the facility row lock,
    so the capacity count cannot change between the check and the insert.
    A plate parked concurrently at another facility is rejected by the
    one-parked-record-per-vehicle index and reported as a conflict.
    """

    def admit(self, license_plate: str, facility_id: int) -> int:
        """
        Admit a vehicle into a facility
        Returns: the new occupancy record id
        """
        plate = LicensePlate(license_plate).value
        self.logger.info(f"Admitting {plate} into facility {facility_id}")

        try:
            with self.uow_factory() as uow:
                facility = self._resolve_facility(uow, facility_id, lock=True)

                if uow.occupancy_records.find_active_by_plate(plate) is not None:
                    raise ConflictError(
                        f"Vehicle {plate} is already parked in this or another facility"
                    )

                parked = uow.occupancy_records.count_active_by_facility(facility.id)
                if parked >= facility.capacity:
                    raise CapacityExceededError(
                        f"Facility {facility.name} is full ({parked}/{facility.capacity})"
                    )

                vehicle = uow.vehicles.find_or_create(plate)
                record = uow.occupancy_records.add(OccupancyRecord(
                    vehicle_id=vehicle.id,
                    facility_id=facility.id,
                    entry_time=self.clock(),
                    license_plate=plate
                ))
        except IntegrityError as e:
            self.logger.info(f"Admission of {plate} lost a race: {e.orig}")
            raise ConflictError(
                f"Vehicle {plate} is already parked in this or another facility"
            ) from e
        except SQLAlchemyError as e:
            raise self._storage_error("admission", e) from e

        self.logger.info(
            f"Vehicle {plate} admitted into {facility.name} (record {record.id}, {parked + 1}/{facility.capacity})"
        )

        self._publish(VehicleAdmittedEvent(
            occupancy_record_id=record.id,
            facility_id=facility.id,
            facility_name=facility.name,
            vehicle_id=vehicle.id,
            license_plate=plate,
            entry_time=record.entry_time
        ))
        return record.id


# ============================================================================
# EXIT / BILLING PROCESSOR
# ============================================================================

class ExitBillingProcessor(LedgerComponent):
    """
    Closes occupancy records and bills them

    The record update and the history append share one transaction. The
    update is conditional on the record still being PARKED, so only one of
    two concurrent releases can close it.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        event_bus: Optional[EventBus] = None,
        pricing_strategy: Optional[PricingStrategy] = None,
        clock: Optional[Clock] = None
    ):
        super().__init__(uow_factory, event_bus, clock)
        self.pricing_strategy = pricing_strategy or HourlyRoundUpPricingStrategy()

    def release(self, license_plate: str, facility_id: int) -> str:
        """
        Release a vehicle from a facility
        Returns: confirmation message
        """
        plate = LicensePlate(license_plate).value
        self.logger.info(f"Releasing {plate} from facility {facility_id}")

        try:
            with self.uow_factory() as uow:
                facility = self._resolve_facility(uow, facility_id)

                record = uow.occupancy_records.find_active_by_plate_and_facility(plate, facility.id)
                if record is None:
                    raise NotFoundError(f"Vehicle {plate} is not parked in {facility.name}")

                exit_time = self.clock()
                if exit_time < record.entry_time:
                    self.logger.warning(
                        f"Clock reads {exit_time} before entry {record.entry_time} of record {record.id}, "
                        f"billing from entry time"
                    )
                    exit_time = record.entry_time

                # Rate is read now, at exit
                fee = self.pricing_strategy.calculate_fee(
                    facility.rate, TimeRange(record.entry_time, exit_time)
                )
                record.close(exit_time, fee.amount)

                if not uow.occupancy_records.mark_exited(record):
                    raise ConflictError(f"Occupancy record {record.id} was already closed")

                entry = uow.history.append(HistoryEntry.from_record(record, facility))
        except IntegrityError as e:
            self.logger.info(f"Release of {plate} lost a race: {e.orig}")
            raise ConflictError(f"Stay of {plate} in facility {facility_id} was already closed") from e
        except SQLAlchemyError as e:
            raise self._storage_error("release", e) from e

        self.logger.info(
            f"Vehicle {plate} released from {facility.name}, charged {fee.format()} (record {record.id})"
        )

        self._publish(VehicleReleasedEvent(entry))
        return RELEASE_CONFIRMATION


# ============================================================================
# OCCUPANCY QUERY SERVICE
# ============================================================================

class OccupancyQueryService(LedgerComponent):
    """Read-side queries; each runs in its own short transaction"""

    def get_facility(self, facility_id: int) -> Facility:
        try:
            with self.uow_factory() as uow:
                return self._resolve_facility(uow, facility_id)
        except SQLAlchemyError as e:
            raise self._storage_error("facility lookup", e) from e

    def list_parked(self, facility_id: int) -> List[OccupancyRecord]:
        """PARKED records of a facility, oldest entry first"""
        try:
            with self.uow_factory() as uow:
                facility = self._resolve_facility(uow, facility_id)
                return uow.occupancy_records.find_active_by_facility(facility.id)
        except SQLAlchemyError as e:
            raise self._storage_error("parked vehicle listing", e) from e

    def search_by_plate_substring(self, fragment: str) -> List[Vehicle]:
        """Vehicles whose plate contains the fragment"""
        if fragment is None or not fragment.strip():
            raise InvalidArgumentError("Search fragment cannot be empty")

        normalized = fragment.strip().upper()
        try:
            with self.uow_factory() as uow:
                return uow.vehicles.search_by_plate_fragment(normalized)
        except SQLAlchemyError as e:
            raise self._storage_error("plate search", e) from e

    def history_for_facility(
        self,
        facility_id: int,
        start: datetime,
        end: datetime
    ) -> List[HistoryEntry]:
        """Closed stays of a facility whose exit falls in [start, end]"""
        if start > end:
            raise InvalidArgumentError("History range start must not be after its end")

        try:
            with self.uow_factory() as uow:
                facility = self._resolve_facility(uow, facility_id)
                return uow.history.find_by_facility_between(facility.id, start, end)
        except SQLAlchemyError as e:
            raise self._storage_error("facility history", e) from e

    def history_for_plate(self, license_plate: str) -> List[HistoryEntry]:
        """Closed stays of one vehicle, newest first"""
        plate = LicensePlate(license_plate).value
        try:
            with self.uow_factory() as uow:
                return uow.history.find_by_license_plate(plate)
        except SQLAlchemyError as e:
            raise self._storage_error("vehicle history", e) from e


# ============================================================================
# FACADES
# ============================================================================

class ParkingLedgerService:
    """
    Facade over the ledger components

    Thread-safe: holds no per-request state, and every call opens its own
    Unit of Work. Request threads may share one instance.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        event_bus: Optional[EventBus] = None,
        pricing_strategy: Optional[PricingStrategy] = None,
        clock: Optional[Clock] = None
    ):
        self.admission = AdmissionController(uow_factory, event_bus, clock)
        self.billing = ExitBillingProcessor(uow_factory, event_bus, pricing_strategy, clock)
        self.queries = OccupancyQueryService(uow_factory, event_bus, clock)
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info(
            f"ParkingLedgerService initialized with {self.billing.pricing_strategy.get_strategy_name()} pricing"
        )

    def admit(self, license_plate: str, facility_id: int) -> int:
        return self.admission.admit(license_plate, facility_id)

    def release(self, license_plate: str, facility_id: int) -> str:
        return self.billing.release(license_plate, facility_id)

    def list_parked(self, facility_id: int) -> List[OccupancyRecord]:
        return self.queries.list_parked(facility_id)

    def search_by_plate_substring(self, fragment: str) -> List[Vehicle]:
        return self.queries.search_by_plate_substring(fragment)

    def get_facility(self, facility_id: int) -> Facility:
        return self.queries.get_facility(facility_id)

    def history_for_facility(self, facility_id: int, start: datetime, end: datetime) -> List[HistoryEntry]:
        return self.queries.history_for_facility(facility_id, start, end)

    def history_for_plate(self, license_plate: str) -> List[HistoryEntry]:
        return self.queries.history_for_plate(license_plate)


class AsyncParkingLedgerService:
    """
    Asyncio facade running ledger operations on a bounded worker pool

    Blocking database work never runs on the event loop thread; at most
    max_workers operations hold a connection at once.
    """

    def __init__(self, service: ParkingLedgerService, max_workers: int = 8):
        self.service = service
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger")
        self.logger = logging.getLogger(self.__class__.__name__)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    async def admit(self, license_plate: str, facility_id: int) -> int:
        return await self._run(self.service.admit, license_plate, facility_id)

    async def release(self, license_plate: str, facility_id: int) -> str:
        return await self._run(self.service.release, license_plate, facility_id)

    async def list_parked(self, facility_id: int) -> List[OccupancyRecord]:
        return await self._run(self.service.list_parked, facility_id)

    async def search_by_plate_substring(self, fragment: str) -> List[Vehicle]:
        return await self._run(self.service.search_by_plate_substring, fragment)

    async def get_facility(self, facility_id: int) -> Facility:
        return await self._run(self.service.get_facility, facility_id)

    async def history_for_facility(self, facility_id: int, start: datetime, end: datetime) -> List[HistoryEntry]:
        return await self._run(self.service.history_for_facility, facility_id, start, end)

    async def history_for_plate(self, license_plate: str) -> List[HistoryEntry]:
        return await self._run(self.service.history_for_plate, license_plate)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.logger.info("Ledger worker pool shut down")
