# File: src/parking_ledger/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Parking Ledger

Repositories give the application services a collection-like view of the
occupancy store while hiding SQLAlchemy. A Unit of Work scopes one ledger
operation to one session and one transaction.

Ledger invariants enforced by the schema:
- vehicles.license_plate is unique
- at most one PARKED occupancy record per vehicle (partial unique index)
- one history entry per occupancy record (unique constraint)
- explicit foreign keys, no ORM cascades

Per-facility capacity is enforced by locking the facility row
(SELECT ... FOR UPDATE) before counting. SQLite ignores FOR UPDATE, so
SQLite engines open every transaction with BEGIN IMMEDIATE instead, which
serializes writers for the whole database.
"""

from abc import ABC, abstractmethod
from typing import Type, TypeVar, Generic, Optional, List, Callable
from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy import (
    create_engine, event, text, Column, Integer, String, DateTime,
    ForeignKey, DECIMAL, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..domain.models import (
    Facility, Vehicle, OccupancyRecord, HistoryEntry, OccupancyStatus
)

T = TypeVar('T')  # Domain entity type


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()

PARKED_ONLY = text("status = 'PARKED'")


class FacilityModel(Base):
    """SQLAlchemy model for Facility (owned by the facility registry)"""
    __tablename__ = 'facilities'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    capacity = Column(Integer, nullable=False)
    hourly_rate = Column(DECIMAL(10, 2), nullable=False)
    operator_id = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('name', name='uq_facility_name'),
        CheckConstraint('capacity > 0', name='ck_facility_capacity_positive'),
        CheckConstraint('hourly_rate >= 0', name='ck_facility_rate_non_negative'),
    )


class VehicleModel(Base):
    """SQLAlchemy model for Vehicle"""
    __tablename__ = 'vehicles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    license_plate = Column(String(7), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('license_plate', name='uq_vehicle_license_plate'),
    )


class OccupancyRecordModel(Base):
    """SQLAlchemy model for OccupancyRecord"""
    __tablename__ = 'occupancy_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(Integer, ForeignKey('vehicles.id'), nullable=False)
    facility_id = Column(Integer, ForeignKey('facilities.id'), nullable=False)

    entry_time = Column(DateTime, nullable=False)
    exit_time = Column(DateTime)
    total_cost = Column(DECIMAL(10, 2))
    status = Column(String(10), nullable=False, default=OccupancyStatus.PARKED.value)

    # Read-only navigation, no cascades
    vehicle = relationship('VehicleModel')
    facility = relationship('FacilityModel')

    __table_args__ = (
        CheckConstraint("status IN ('PARKED', 'EXITED')", name='ck_occupancy_status'),
        CheckConstraint(
            'exit_time IS NULL OR exit_time >= entry_time',
            name='ck_occupancy_exit_after_entry'
        ),
        Index(
            'uq_occupancy_one_parked_per_vehicle', 'vehicle_id',
            unique=True,
            postgresql_where=PARKED_ONLY,
            sqlite_where=PARKED_ONLY,
        ),
        Index('ix_occupancy_facility_status', 'facility_id', 'status'),
    )


class HistoryEntryModel(Base):
    """SQLAlchemy model for HistoryEntry (append-only)"""
    __tablename__ = 'history_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    occupancy_record_id = Column(Integer, ForeignKey('occupancy_records.id'), nullable=False)
    license_plate = Column(String(7), nullable=False)
    facility_name = Column(String(100), nullable=False)
    entry_time = Column(DateTime, nullable=False)
    exit_time = Column(DateTime, nullable=False)
    total_cost = Column(DECIMAL(10, 2), nullable=False)
    facility_id = Column(Integer, ForeignKey('facilities.id'), nullable=False)
    vehicle_id = Column(Integer, ForeignKey('vehicles.id'), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('occupancy_record_id', name='uq_history_occupancy_record'),
        Index('ix_history_facility_exit', 'facility_id', 'exit_time'),
        Index('ix_history_license_plate', 'license_plate'),
    )


# ============================================================================
# MAPPERS (ORM <-> Domain)
# ============================================================================

class Mapper:
    """Maps between ORM models and domain entities"""

    @staticmethod
    def facility_to_orm(facility: Facility) -> FacilityModel:
        return FacilityModel(
            id=facility.id,
            name=facility.name,
            capacity=facility.capacity,
            hourly_rate=facility.hourly_rate,
            operator_id=facility.operator_id
        )

    @staticmethod
    def facility_to_domain(model: FacilityModel) -> Facility:
        return Facility(
            id=model.id,
            name=model.name,
            capacity=model.capacity,
            hourly_rate=Decimal(model.hourly_rate),
            operator_id=model.operator_id
        )

    @staticmethod
    def vehicle_to_domain(model: VehicleModel) -> Vehicle:
        return Vehicle(
            id=model.id,
            license_plate=model.license_plate,
            created_at=model.created_at
        )

    @staticmethod
    def occupancy_to_orm(record: OccupancyRecord) -> OccupancyRecordModel:
        return OccupancyRecordModel(
            id=record.id,
            vehicle_id=record.vehicle_id,
            facility_id=record.facility_id,
            entry_time=record.entry_time,
            exit_time=record.exit_time,
            total_cost=record.total_cost,
            status=record.status.value
        )

    @staticmethod
    def occupancy_to_domain(model: OccupancyRecordModel) -> OccupancyRecord:
        return OccupancyRecord(
            id=model.id,
            vehicle_id=model.vehicle_id,
            facility_id=model.facility_id,
            entry_time=model.entry_time,
            exit_time=model.exit_time,
            total_cost=Decimal(model.total_cost) if model.total_cost is not None else None,
            status=OccupancyStatus(model.status),
            license_plate=model.vehicle.license_plate if model.vehicle else None
        )

    @staticmethod
    def history_to_orm(entry: HistoryEntry) -> HistoryEntryModel:
        return HistoryEntryModel(
            occupancy_record_id=entry.occupancy_record_id,
            license_plate=entry.license_plate,
            facility_name=entry.facility_name,
            entry_time=entry.entry_time,
            exit_time=entry.exit_time,
            total_cost=entry.total_cost,
            facility_id=entry.facility_id,
            vehicle_id=entry.vehicle_id
        )

    @staticmethod
    def history_to_domain(model: HistoryEntryModel) -> HistoryEntry:
        return HistoryEntry(
            id=model.id,
            occupancy_record_id=model.occupancy_record_id,
            license_plate=model.license_plate,
            facility_name=model.facility_name,
            entry_time=model.entry_time,
            exit_time=model.exit_time,
            total_cost=Decimal(model.total_cost),
            facility_id=model.facility_id,
            vehicle_id=model.vehicle_id
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(ABC, Generic[T]):
    """
    Base SQLAlchemy repository

    Repositories never commit or roll back; the Unit of Work owns the
    transaction so a failure anywhere in an operation undoes all of it.
    """

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        """Convert ORM model to domain model"""
        pass

    def get(self, id: int) -> Optional[T]:
        model = self.session.get(self.model_class, id)
        if model:
            return self.to_domain(model)
        return None

    def count(self) -> int:
        return self.session.query(self.model_class).count()

    def _insert(self, model: Base) -> Base:
        """Add a model and flush so constraint violations surface here"""
        try:
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Inserted {self.model_class.__tablename__} row {model.id}")
            return model
        except IntegrityError as e:
            self._logger.debug(f"Integrity error inserting into {self.model_class.__tablename__}: {e.orig}")
            raise


class FacilityRepository(SQLAlchemyRepository[Facility]):
    """Read access to the facility registry"""

    @property
    def model_class(self) -> Type[Base]:
        return FacilityModel

    def to_domain(self, model: FacilityModel) -> Facility:
        return Mapper.facility_to_domain(model)

    def get_for_update(self, id: int) -> Optional[Facility]:
        """Read a facility and lock its row until the transaction ends"""
        model = self.session.query(FacilityModel).filter(
            FacilityModel.id == id
        ).with_for_update().first()

        if model:
            return self.to_domain(model)
        return None

    def exists(self, id: int) -> bool:
        return self.session.query(FacilityModel.id).filter(FacilityModel.id == id).first() is not None

    def find_by_name(self, name: str) -> Optional[Facility]:
        model = self.session.query(FacilityModel).filter(FacilityModel.name == name).first()
        if model:
            return self.to_domain(model)
        return None

    def add(self, facility: Facility) -> Facility:
        """Register a facility; used when loading registry data"""
        model = self._insert(Mapper.facility_to_orm(facility))
        facility.id = model.id
        return facility


class VehicleRepository(SQLAlchemyRepository[Vehicle]):
    """Vehicle registry keyed by normalized plate"""

    @property
    def model_class(self) -> Type[Base]:
        return VehicleModel

    def to_domain(self, model: VehicleModel) -> Vehicle:
        return Mapper.vehicle_to_domain(model)

    def find_by_license_plate(self, license_plate: str) -> Optional[Vehicle]:
        model = self.session.query(VehicleModel).filter(
            VehicleModel.license_plate == license_plate
        ).first()

        if model:
            return self.to_domain(model)
        return None

    def find_or_create(self, license_plate: str) -> Vehicle:
        """
        Return the vehicle for a plate, creating it on first sighting

        The insert runs inside a savepoint: if a concurrent transaction
        created the same plate first, only the savepoint is rolled back and
        the winner's row is read instead.
        """
        existing = self.find_by_license_plate(license_plate)
        if existing:
            return existing

        model = VehicleModel(license_plate=license_plate)
        try:
            with self.session.begin_nested():
                self.session.add(model)
                self.session.flush()
        except IntegrityError:
            self._logger.info(f"Vehicle {license_plate} was created concurrently, reusing it")
            existing = self.find_by_license_plate(license_plate)
            if existing is None:
                raise
            return existing

        self._logger.info(f"Registered new vehicle {license_plate} (ID: {model.id})")
        return self.to_domain(model)

    def search_by_plate_fragment(self, fragment: str) -> List[Vehicle]:
        models = self.session.query(VehicleModel).filter(
            VehicleModel.license_plate.contains(fragment, autoescape=True)
        ).order_by(VehicleModel.license_plate).all()
        return [self.to_domain(model) for model in models]


class OccupancyRecordRepository(SQLAlchemyRepository[OccupancyRecord]):
    """Active and closed occupancy records"""

    @property
    def model_class(self) -> Type[Base]:
        return OccupancyRecordModel

    def to_domain(self, model: OccupancyRecordModel) -> OccupancyRecord:
        return Mapper.occupancy_to_domain(model)

    def _active(self):
        return self.session.query(OccupancyRecordModel).filter(
            OccupancyRecordModel.status == OccupancyStatus.PARKED.value
        )

    def add(self, record: OccupancyRecord) -> OccupancyRecord:
        model = self._insert(Mapper.occupancy_to_orm(record))
        record.id = model.id
        return record

    def find_active_by_plate(self, license_plate: str) -> Optional[OccupancyRecord]:
        """PARKED record for a plate at any facility"""
        model = self._active().join(VehicleModel).filter(
            VehicleModel.license_plate == license_plate
        ).first()

        if model:
            return self.to_domain(model)
        return None

    def find_active_by_plate_and_facility(
        self,
        license_plate: str,
        facility_id: int
    ) -> Optional[OccupancyRecord]:
        model = self._active().join(VehicleModel).filter(
            VehicleModel.license_plate == license_plate,
            OccupancyRecordModel.facility_id == facility_id
        ).first()

        if model:
            return self.to_domain(model)
        return None

    def find_active_by_facility(self, facility_id: int) -> List[OccupancyRecord]:
        models = self._active().filter(
            OccupancyRecordModel.facility_id == facility_id
        ).order_by(OccupancyRecordModel.entry_time, OccupancyRecordModel.id).all()
        return [self.to_domain(model) for model in models]

    def count_active_by_facility(self, facility_id: int) -> int:
        return self._active().filter(
            OccupancyRecordModel.facility_id == facility_id
        ).count()

    def mark_exited(self, record: OccupancyRecord) -> bool:
        """
        Persist the PARKED -> EXITED transition of a closed record

        The update only matches a row that is still PARKED, so a concurrent
        release of the same record updates zero rows.
        Returns: True if this call performed the transition
        """
        updated = self.session.query(OccupancyRecordModel).filter(
            OccupancyRecordModel.id == record.id,
            OccupancyRecordModel.status == OccupancyStatus.PARKED.value
        ).update(
            {
                OccupancyRecordModel.exit_time: record.exit_time,
                OccupancyRecordModel.total_cost: record.total_cost,
                OccupancyRecordModel.status: OccupancyStatus.EXITED.value,
            },
            synchronize_session=False
        )

        self._logger.debug(f"Closing occupancy record {record.id} updated {updated} row(s)")
        return updated == 1


class HistoryRepository(SQLAlchemyRepository[HistoryEntry]):
    """Append-only history of closed stays"""

    @property
    def model_class(self) -> Type[Base]:
        return HistoryEntryModel

    def to_domain(self, model: HistoryEntryModel) -> HistoryEntry:
        return Mapper.history_to_domain(model)

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        model = self._insert(Mapper.history_to_orm(entry))
        return self.to_domain(model)

    def find_by_facility_between(
        self,
        facility_id: int,
        start: datetime,
        end: datetime
    ) -> List[HistoryEntry]:
        models = self.session.query(HistoryEntryModel).filter(
            HistoryEntryModel.facility_id == facility_id,
            HistoryEntryModel.exit_time >= start,
            HistoryEntryModel.exit_time <= end
        ).order_by(HistoryEntryModel.exit_time, HistoryEntryModel.id).all()
        return [self.to_domain(model) for model in models]

    def find_by_license_plate(self, license_plate: str) -> List[HistoryEntry]:
        models = self.session.query(HistoryEntryModel).filter(
            HistoryEntryModel.license_plate == license_plate
        ).order_by(HistoryEntryModel.exit_time.desc(), HistoryEntryModel.id.desc()).all()
        return [self.to_domain(model) for model in models]


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    @property
    @abstractmethod
    def facilities(self) -> FacilityRepository:
        pass

    @property
    @abstractmethod
    def vehicles(self) -> VehicleRepository:
        pass

    @property
    @abstractmethod
    def occupancy_records(self) -> OccupancyRecordRepository:
        pass

    @property
    @abstractmethod
    def history(self) -> HistoryRepository:
        pass


class SQLAlchemyUnitOfWork(UnitOfWork):
    """
    Unit of Work implementation with SQLAlchemy

    One instance serves one operation in one thread: entering opens a
    session, leaving commits (or rolls back on error) and closes it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()

        self._facilities = FacilityRepository(self.session)
        self._vehicles = VehicleRepository(self.session)
        self._occupancy_records = OccupancyRecordRepository(self.session)
        self._history = HistoryRepository(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.debug(f"Rolling back unit of work after {exc_type.__name__}: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    @property
    def facilities(self) -> FacilityRepository:
        return self._facilities

    @property
    def vehicles(self) -> VehicleRepository:
        return self._vehicles

    @property
    def occupancy_records(self) -> OccupancyRecordRepository:
        return self._occupancy_records

    @property
    def history(self) -> HistoryRepository:
        return self._history


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for engines and Unit of Work factories"""

    @staticmethod
    def create_engine(database_url: str, echo: bool = False, pool_size: int = 10) -> Engine:
        """
        Create an engine ready for concurrent ledger transactions

        SQLite gets foreign key enforcement and BEGIN IMMEDIATE transactions;
        other backends get a sized connection pool.
        """
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30}
            )
            RepositoryFactory._configure_sqlite(engine)
            return engine

        return create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            pool_pre_ping=True
        )

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(connection):
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    @staticmethod
    def create_schema(engine: Engine) -> None:
        """Create tables and indexes if they don't exist"""
        Base.metadata.create_all(bind=engine)

    @staticmethod
    def create_uow_factory(engine: Engine) -> Callable[[], SQLAlchemyUnitOfWork]:
        """Return a callable producing a fresh Unit of Work per operation"""
        session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        def uow_factory() -> SQLAlchemyUnitOfWork:
            return SQLAlchemyUnitOfWork(session_factory)

        return uow_factory
