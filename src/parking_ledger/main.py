# File: src/parking_ledger/main.py
"""
Main application entry point for the Parking Ledger
Wires settings, storage, messaging and services together and runs a demo
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List
import logging
import sys
import os

from .config import LedgerSettings
from .domain.models import Facility
from .domain.exceptions import LedgerError
from .infrastructure.repositories import RepositoryFactory
from .infrastructure.messaging import (
    EventBus, NotificationDispatcher, NotificationEventHandler, NotificationGatewayFactory
)
from .application.parking_service import ParkingLedgerService, AsyncParkingLedgerService
from .application.commands import (
    CommandProcessor, AdmitVehicleCommand, ReleaseVehicleCommand,
    ListParkedVehiclesCommand, SearchVehiclesCommand, FacilityHistoryCommand
)


def setup_logging(settings: Optional[LedgerSettings] = None):
    """Setup application logging configuration"""
    settings = settings or LedgerSettings.from_env()

    log_dir = settings.log_dir
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, 'parking_ledger.log')),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger(__name__)


class ParkingLedgerApplication:
    """Composition root: builds every component with dependency injection"""

    def __init__(self, settings: Optional[LedgerSettings] = None, clock=None):
        self.settings = settings or LedgerSettings.from_env()
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info(f"Starting Parking Ledger ({self.settings.app_environment})...")

        self.setup_components()

    def setup_components(self):
        """Initialize all application components"""
        try:
            # 1. Storage
            self.engine = RepositoryFactory.create_engine(
                self.settings.database_url,
                echo=self.settings.db_echo,
                pool_size=self.settings.db_pool_size
            )
            RepositoryFactory.create_schema(self.engine)
            self.uow_factory = RepositoryFactory.create_uow_factory(self.engine)
            self.logger.info("Occupancy store initialized")

            # 2. Messaging
            self.event_bus = EventBus()
            self.dispatcher: Optional[NotificationDispatcher] = None
            gateway = NotificationGatewayFactory.create(self.settings)
            if gateway is not None:
                self.dispatcher = NotificationDispatcher(
                    gateway,
                    recipient=self.settings.notification_recipient,
                    max_workers=self.settings.notification_workers
                )
                NotificationEventHandler(self.dispatcher).register(self.event_bus)
            self.logger.info(f"Notifications via '{self.settings.notification_backend}' backend")

            # 3. Services
            self.ledger = ParkingLedgerService(
                self.uow_factory,
                event_bus=self.event_bus,
                clock=self.clock
            )
            self.async_ledger = AsyncParkingLedgerService(
                self.ledger,
                max_workers=self.settings.ledger_worker_pool_size
            )
            self.command_processor = CommandProcessor(self.ledger)
            self.logger.info("Ledger services initialized")

        except Exception as e:
            self.logger.error(f"Failed to initialize components: {str(e)}")
            raise

    def register_facility(self, name: str, capacity: int, hourly_rate: Decimal) -> Facility:
        """Insert or fetch a facility; stands in for the external registry's data load"""
        with self.uow_factory() as uow:
            existing = uow.facilities.find_by_name(name)
            if existing:
                return existing
            return uow.facilities.add(Facility(name=name, capacity=capacity, hourly_rate=hourly_rate))

    def close(self):
        """Flush notifications and release pools and connections"""
        self.async_ledger.shutdown()
        if self.dispatcher is not None:
            self.dispatcher.flush(timeout=self.settings.notification_timeout_seconds)
            self.dispatcher.close()
        self.engine.dispose()
        self.logger.info("Application shut down")


class SteppingClock:
    """Demo clock that advances a fixed step per reading"""

    def __init__(self, start: datetime, step: timedelta):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current += self.step
        return now


def load_demo_data(app: ParkingLedgerApplication) -> List[Facility]:
    """Register the demo facilities"""
    return [
        app.register_facility("Downtown Garage", capacity=3, hourly_rate=Decimal("5.00")),
        app.register_facility("Airport Long Stay", capacity=50, hourly_rate=Decimal("2.50")),
    ]


def run_demo(app: ParkingLedgerApplication) -> None:
    """Walk through admissions, a full facility, a release and the reads"""
    logger = logging.getLogger("demo")
    downtown, airport = load_demo_data(app)
    processor = app.command_processor

    commands = [
        AdmitVehicleCommand("abc123", downtown.id),
        AdmitVehicleCommand("EV2023", downtown.id),
        AdmitVehicleCommand("MOTO01", downtown.id),
        AdmitVehicleCommand("TRUCK99", downtown.id),   # facility full
        AdmitVehicleCommand("ABC123", airport.id),     # already parked
        ReleaseVehicleCommand("ABC123", downtown.id),
        ReleaseVehicleCommand("ABC123", downtown.id),  # no longer parked
        ListParkedVehiclesCommand(downtown.id),
        SearchVehiclesCommand("ev"),
    ]

    for result in processor.process_batch(commands):
        if result.success:
            logger.info(f"{result.command_type}: {result.data}")
        else:
            logger.info(f"{result.command_type} failed [{result.error_code}]: {result.error_message}")

    history = processor.process(FacilityHistoryCommand(
        downtown.id, datetime.min, datetime.max
    ))
    logger.info(f"Downtown revenue so far: ${history.data['total_revenue']}")


def main():
    """Main entry point for the application"""
    try:
        settings = LedgerSettings.from_env()
        setup_logging(settings)

        # Each reading advances 65 minutes so the demo bills partial hours
        clock = SteppingClock(datetime.now(), timedelta(minutes=65))
        app = ParkingLedgerApplication(settings, clock=clock)
        try:
            run_demo(app)
        finally:
            app.close()
    except LedgerError as e:
        logging.error(f"Ledger error in main: {e.error_code}: {e.message}")
        return 1
    except Exception as e:
        print(f"Fatal error: {str(e)}")
        logging.error(f"Fatal error in main: {str(e)}")
        return 1
    return 0


if __name__ == "__main__":
    # Set up basic console logging for startup errors
    logging.basicConfig(level=logging.ERROR)

    sys.exit(main())
