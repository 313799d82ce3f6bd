# File: src/parking_ledger/application/commands.py
"""
Command Pattern Implementation for the Parking Ledger

Commands wrap ledger operations as first-class objects for the boundary
layer (HTTP handlers, message consumers). Each command validates its input,
runs against a ParkingLedgerService and returns a CommandResult: ledger
errors become failed results carrying a stable error code instead of
exceptions.

Command Types:
1. Write Commands - admit and release a vehicle
2. Query Commands - parked vehicles, plate search and history reads

No command supports undo: an EXITED occupancy record is immutable.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime
from decimal import Decimal
import logging
from dataclasses import dataclass, field
import uuid

from pydantic import ValidationError

from ..domain.exceptions import LedgerError, InvalidArgumentError
from .dtos import (
    AdmitRequestDTO, ReleaseRequestDTO, AdmissionResultDTO, ReleaseResultDTO,
    FacilityDTO, VehicleDTO, OccupancyRecordDTO, HistoryEntryDTO, ErrorResponseDTO
)
from .parking_service import ParkingLedgerService


INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# COMMAND RESULT
# ============================================================================

@dataclass
class CommandResult:
    """Outcome of a command execution"""
    success: bool
    command_id: str
    command_type: str
    executed_at: datetime
    data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_error_response(self) -> Optional[ErrorResponseDTO]:
        if self.success:
            return None
        return ErrorResponseDTO(
            error_code=self.error_code,
            message=self.error_message,
            details={"command_id": self.command_id, "command_type": self.command_type},
            timestamp=self.executed_at
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "success": self.success,
            "command_id": self.command_id,
            "command_type": self.command_type,
            "executed_at": self.executed_at.isoformat(),
            "data": self.data,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "metadata": self.metadata
        }


# ============================================================================
# COMMAND BASE CLASS
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    Subclasses implement validate() and _perform(); execute() turns their
    outcome into a CommandResult.
    """

    def __init__(self, command_id: Optional[str] = None, executed_by: Optional[str] = None):
        self.command_id = command_id or str(uuid.uuid4())
        self.executed_at: Optional[datetime] = None
        self.executed_by = executed_by or "system"
        self.logger = logging.getLogger(self.__class__.__name__)

        self.metadata = {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "created_at": datetime.now().isoformat()
        }

    @abstractmethod
    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate command parameters before execution

        Returns: (is_valid, error_messages)
        """
        pass

    @abstractmethod
    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        """Run the operation; return the result payload"""
        pass

    def execute(self, service: ParkingLedgerService) -> CommandResult:
        """Validate and execute the command using the provided service"""
        self.logger.info(f"Executing {self.get_description()} ({self.command_id})")

        is_valid, errors = self.validate()
        if not is_valid:
            return self._failure(f"Validation failed: {'; '.join(errors)}", InvalidArgumentError.error_code)

        try:
            data = self._perform(service)
        except LedgerError as e:
            self.logger.info(f"{self.get_description()} rejected with {e.error_code}: {e.message}")
            return self._failure(e.message, e.error_code)
        except Exception as e:
            self.logger.error(f"Error executing {self.get_description()}: {e}", exc_info=True)
            return self._failure(str(e), INTERNAL_ERROR)

        self.executed_at = datetime.now()
        return CommandResult(
            success=True,
            command_id=self.command_id,
            command_type=self.__class__.__name__,
            executed_at=self.executed_at,
            data=data,
            metadata=self.metadata
        )

    def _failure(self, message: str, error_code: str) -> CommandResult:
        return CommandResult(
            success=False,
            command_id=self.command_id,
            command_type=self.__class__.__name__,
            executed_at=datetime.now(),
            error_message=message,
            error_code=error_code,
            metadata=self.metadata
        )

    def get_description(self) -> str:
        """Get human-readable command description"""
        return self.__class__.__name__.replace("Command", "")

    def to_dict(self) -> Dict[str, Any]:
        """Convert command to dictionary for audit logging"""
        return {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "metadata": self.metadata,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "executed_by": self.executed_by
        }


def _validation_messages(error: ValidationError) -> List[str]:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return messages


# ============================================================================
# WRITE COMMANDS
# ============================================================================

class AdmitVehicleCommand(Command):
    """
    Command: Admit a vehicle into a facility

    Business Operation: Vehicle Entry
    """

    def __init__(self, license_plate: str, facility_id: int, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.payload = {"license_plate": license_plate, "facility_id": facility_id}
        self.request: Optional[AdmitRequestDTO] = None

    def validate(self) -> Tuple[bool, List[str]]:
        try:
            self.request = AdmitRequestDTO(**self.payload)
        except ValidationError as e:
            return False, _validation_messages(e)
        return True, []

    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        record_id = service.admit(self.request.license_plate, self.request.facility_id)
        return AdmissionResultDTO(occupancy_record_id=record_id).to_dict()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["payload"] = self.payload
        return data


class ReleaseVehicleCommand(Command):
    """
    Command: Release a vehicle and bill its stay

    Business Operation: Vehicle Exit and Billing
    """

    def __init__(self, license_plate: str, facility_id: int, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.payload = {"license_plate": license_plate, "facility_id": facility_id}
        self.request: Optional[ReleaseRequestDTO] = None

    def validate(self) -> Tuple[bool, List[str]]:
        try:
            self.request = ReleaseRequestDTO(**self.payload)
        except ValidationError as e:
            return False, _validation_messages(e)
        return True, []

    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        message = service.release(self.request.license_plate, self.request.facility_id)
        return ReleaseResultDTO(message=message).to_dict()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["payload"] = self.payload
        return data


# ============================================================================
# QUERY COMMANDS
# ============================================================================

class ListParkedVehiclesCommand(Command):
    """Command: list the vehicles currently parked in a facility"""

    def __init__(self, facility_id: int, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.facility_id = facility_id

    def validate(self) -> Tuple[bool, List[str]]:
        if not isinstance(self.facility_id, int) or self.facility_id <= 0:
            return False, [f"facility_id must be a positive integer, got {self.facility_id!r}"]
        return True, []

    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        records = service.list_parked(self.facility_id)
        return {
            "facility_id": self.facility_id,
            "records": [OccupancyRecordDTO.from_domain(r).to_dict() for r in records]
        }


class SearchVehiclesCommand(Command):
    """Command: find vehicles by plate fragment"""

    def __init__(self, fragment: str, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.fragment = fragment

    def validate(self) -> Tuple[bool, List[str]]:
        # Blank fragments are rejected by the ledger itself
        return True, []

    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        vehicles = service.search_by_plate_substring(self.fragment)
        return {"vehicles": [VehicleDTO.from_domain(v).to_dict() for v in vehicles]}


class FacilityHistoryCommand(Command):
    """Command: closed stays of a facility within an exit-time window"""

    def __init__(self, facility_id: int, start: datetime, end: datetime, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.facility_id = facility_id
        self.start = start
        self.end = end

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        if not isinstance(self.facility_id, int) or self.facility_id <= 0:
            errors.append(f"facility_id must be a positive integer, got {self.facility_id!r}")
        if self.start is None or self.end is None:
            errors.append("start and end are required")
        return not errors, errors

    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        facility = service.get_facility(self.facility_id)
        entries = service.history_for_facility(self.facility_id, self.start, self.end)
        dtos = HistoryEntryDTO.from_domain_list(entries)
        return {
            "facility": FacilityDTO.from_domain(facility).to_dict(),
            "entries": [dto.to_dict() for dto in dtos],
            "total_revenue": str(sum((dto.total_cost for dto in dtos), Decimal("0.00")))
        }


class VehicleHistoryCommand(Command):
    """Command: closed stays of one vehicle, newest first"""

    def __init__(self, license_plate: str, executed_by: Optional[str] = None):
        super().__init__(executed_by=executed_by)
        self.license_plate = license_plate

    def validate(self) -> Tuple[bool, List[str]]:
        return True, []

    def _perform(self, service: ParkingLedgerService) -> Dict[str, Any]:
        entries = service.history_for_plate(self.license_plate)
        return {"entries": [dto.to_dict() for dto in HistoryEntryDTO.from_domain_list(entries)]}


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Processes commands with features like:
    - Batch execution
    - Command logging
    - Bounded history of successful commands
    """

    def __init__(self, service: ParkingLedgerService, max_history_size: int = 1000):
        self.service = service
        self.logger = logging.getLogger(self.__class__.__name__)

        self.command_history: List[Command] = []
        self.max_history_size = max_history_size

    def process(self, command: Command) -> CommandResult:
        """
        Process a command

        Args:
            command: Command to execute

        Returns: Execution result
        """
        self.logger.info(f"Processing command: {command.get_description()}")

        try:
            result = command.execute(self.service)
        except Exception as e:
            self.logger.error(f"Error processing command: {e}", exc_info=True)
            return command._failure(str(e), INTERNAL_ERROR)

        if result.success:
            self._add_to_history(command)

        return result

    def process_batch(self, commands: List[Command]) -> List[CommandResult]:
        """Process multiple commands in order; a failure does not stop the batch"""
        return [self.process(command) for command in commands]

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Most recent successful commands first"""
        history = [command.to_dict() for command in reversed(self.command_history)]
        if limit is not None:
            history = history[:limit]
        return history

    def clear_history(self) -> None:
        self.command_history.clear()

    def _add_to_history(self, command: Command) -> None:
        self.command_history.append(command)
        if len(self.command_history) > self.max_history_size:
            self.command_history = self.command_history[-self.max_history_size:]
