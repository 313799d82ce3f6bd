"""
Shared setup for ledger integration tests

Each test gets a fresh SQLite database file in a temporary directory, the
real repositories and Unit of Work, an in-memory notification gateway and a
manually driven clock.
"""

import unittest
import sys
import tempfile
import threading
from pathlib import Path
from datetime import datetime, timedelta
from decimal import Decimal

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from sqlalchemy import update

from parking_ledger.domain.models import Facility
from parking_ledger.domain.exceptions import LedgerError
from parking_ledger.infrastructure.repositories import RepositoryFactory, FacilityModel
from parking_ledger.infrastructure.messaging import (
    EventBus, NotificationDispatcher, NotificationEventHandler, InMemoryNotificationGateway
)
from parking_ledger.application.parking_service import ParkingLedgerService


START = datetime(2024, 3, 1, 9, 0)


class ManualClock:
    """Clock that only moves when a test moves it"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class LedgerIntegrationTestBase(unittest.TestCase):
    """Base class wiring a ledger against a temporary SQLite file"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.database_url = f"sqlite:///{Path(self._tmp.name) / 'ledger.db'}"

        self.engine = RepositoryFactory.create_engine(self.database_url)
        RepositoryFactory.create_schema(self.engine)
        self.uow_factory = RepositoryFactory.create_uow_factory(self.engine)

        self.clock = ManualClock()
        self.gateway = InMemoryNotificationGateway()
        self.dispatcher = NotificationDispatcher(self.gateway, recipient="ops@example.com")
        self.event_bus = EventBus()
        NotificationEventHandler(self.dispatcher).register(self.event_bus)

        self.service = ParkingLedgerService(
            self.uow_factory, event_bus=self.event_bus, clock=self.clock
        )

        self.downtown = self.add_facility("Downtown Garage", capacity=3, hourly_rate="5.00")
        self.airport = self.add_facility("Airport Long Stay", capacity=50, hourly_rate="2.50")

    def tearDown(self):
        self.dispatcher.close()
        self.engine.dispose()
        self._tmp.cleanup()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def add_facility(self, name: str, capacity: int, hourly_rate: str) -> Facility:
        with self.uow_factory() as uow:
            return uow.facilities.add(
                Facility(name=name, capacity=capacity, hourly_rate=Decimal(hourly_rate))
            )

    def set_rate(self, facility_id: int, hourly_rate: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(FacilityModel)
                .where(FacilityModel.id == facility_id)
                .values(hourly_rate=Decimal(hourly_rate))
            )

    def history_count(self) -> int:
        with self.uow_factory() as uow:
            return uow.history.count()

    def vehicle_count(self) -> int:
        with self.uow_factory() as uow:
            return uow.vehicles.count()

    def record_count(self) -> int:
        with self.uow_factory() as uow:
            return uow.occupancy_records.count()

    def run_concurrently(self, func, calls):
        """
        Start one thread per argument tuple, released together by a barrier
        Returns: list of ("ok", value) or ("error", LedgerError) per call
        """
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def worker(index, args):
            barrier.wait()
            try:
                outcomes[index] = ("ok", func(*args))
            except LedgerError as e:
                outcomes[index] = ("error", e)

        threads = [
            threading.Thread(target=worker, args=(i, args), name=f"racer-{i}")
            for i, args in enumerate(calls)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
            self.assertFalse(thread.is_alive(), f"{thread.name} did not finish")

        return outcomes
