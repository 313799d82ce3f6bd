#!/usr/bin/env python3
"""
Unit Tests for the command layer

The ledger service is mocked; these tests cover validation, error-code
mapping, DTO payloads and the processor's history.
"""

import unittest
import sys
from pathlib import Path
from unittest.mock import Mock
from datetime import datetime, timedelta
from decimal import Decimal

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from parking_ledger.application.commands import (
    CommandProcessor, AdmitVehicleCommand, ReleaseVehicleCommand,
    ListParkedVehiclesCommand, SearchVehiclesCommand, FacilityHistoryCommand,
    VehicleHistoryCommand
)
from parking_ledger.application.dtos import AdmitRequestDTO, ReleaseRequestDTO
from parking_ledger.application.parking_service import ParkingLedgerService, RELEASE_CONFIRMATION
from parking_ledger.domain.models import Facility, Vehicle, OccupancyRecord, HistoryEntry
from parking_ledger.domain.exceptions import (
    NotFoundError, ConflictError, CapacityExceededError, InvalidArgumentError, LedgerStorageError
)

from pydantic import ValidationError


ENTRY = datetime(2024, 3, 1, 9, 0)


class CommandTestBase(unittest.TestCase):
    """Base class with a mocked ledger service"""

    def setUp(self):
        self.service = Mock(spec=ParkingLedgerService)
        self.processor = CommandProcessor(self.service)


# ============================================================================
# REQUEST DTOs
# ============================================================================

class TestRequestDTOs(unittest.TestCase):
    """Input validation shared by the write commands"""

    def test_plate_normalized(self):
        request = AdmitRequestDTO(license_plate=" abc123 ", facility_id=1)
        self.assertEqual(request.license_plate, "ABC123")

    def test_invalid_plate_rejected(self):
        with self.assertRaises(ValidationError):
            ReleaseRequestDTO(license_plate="A-1", facility_id=1)

    def test_facility_id_must_be_positive(self):
        with self.assertRaises(ValidationError):
            AdmitRequestDTO(license_plate="ABC123", facility_id=0)


# ============================================================================
# WRITE COMMANDS
# ============================================================================

class TestAdmitVehicleCommand(CommandTestBase):

    def test_success_returns_record_id(self):
        self.service.admit.return_value = 42

        result = self.processor.process(AdmitVehicleCommand("abc123", 1))

        self.assertTrue(result.success)
        self.assertEqual(result.data, {"occupancy_record_id": 42})
        self.service.admit.assert_called_once_with("ABC123", 1)

    def test_invalid_plate_never_reaches_service(self):
        result = self.processor.process(AdmitVehicleCommand("bad plate!", 1))

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "INVALID_ARGUMENT")
        self.assertIn("license_plate", result.error_message)
        self.service.admit.assert_not_called()

    def test_ledger_errors_become_error_codes(self):
        cases = [
            (NotFoundError("Facility 9 not found"), "NOT_FOUND"),
            (ConflictError("already parked"), "CONFLICT"),
            (CapacityExceededError("full"), "CAPACITY_EXCEEDED"),
            (InvalidArgumentError("bad"), "INVALID_ARGUMENT"),
            (LedgerStorageError("storage"), "INTERNAL_ERROR"),
        ]
        for error, code in cases:
            with self.subTest(code=code):
                self.service.admit.side_effect = error
                result = self.processor.process(AdmitVehicleCommand("ABC123", 1))

                self.assertFalse(result.success)
                self.assertEqual(result.error_code, code)
                self.assertEqual(result.error_message, error.message)

    def test_unexpected_error_is_internal(self):
        self.service.admit.side_effect = RuntimeError("boom")

        with self.assertLogs("AdmitVehicleCommand", level="ERROR"):
            result = self.processor.process(AdmitVehicleCommand("ABC123", 1))

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "INTERNAL_ERROR")

    def test_error_response_dto(self):
        self.service.admit.side_effect = CapacityExceededError("Facility Downtown is full (3/3)")
        result = self.processor.process(AdmitVehicleCommand("ABC123", 1))

        response = result.to_error_response()
        self.assertEqual(response.error_code, "CAPACITY_EXCEEDED")
        self.assertEqual(response.details["command_type"], "AdmitVehicleCommand")


class TestReleaseVehicleCommand(CommandTestBase):

    def test_success_returns_confirmation(self):
        self.service.release.return_value = RELEASE_CONFIRMATION

        result = self.processor.process(ReleaseVehicleCommand("ABC123", 2))

        self.assertTrue(result.success)
        self.assertEqual(result.data, {"message": "Exit registered"})
        self.service.release.assert_called_once_with("ABC123", 2)

    def test_not_parked(self):
        self.service.release.side_effect = NotFoundError("Vehicle ABC123 is not parked in Downtown")

        result = self.processor.process(ReleaseVehicleCommand("ABC123", 2))

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "NOT_FOUND")


# ============================================================================
# QUERY COMMANDS
# ============================================================================

class TestQueryCommands(CommandTestBase):

    def test_list_parked_returns_records(self):
        self.service.list_parked.return_value = [
            OccupancyRecord(vehicle_id=1, facility_id=1, entry_time=ENTRY, license_plate="ABC123", id=5)
        ]

        result = self.processor.process(ListParkedVehiclesCommand(1))

        self.assertTrue(result.success)
        record = result.data["records"][0]
        self.assertEqual(record["id"], 5)
        self.assertEqual(record["status"], "PARKED")
        self.assertEqual(record["license_plate"], "ABC123")

    def test_list_parked_rejects_bad_facility_id(self):
        result = self.processor.process(ListParkedVehiclesCommand(-1))

        self.assertEqual(result.error_code, "INVALID_ARGUMENT")
        self.service.list_parked.assert_not_called()

    def test_search_returns_vehicles(self):
        self.service.search_by_plate_substring.return_value = [Vehicle(license_plate="ABC123", id=1)]

        result = self.processor.process(SearchVehiclesCommand("bc"))

        self.assertEqual(result.data["vehicles"][0]["license_plate"], "ABC123")
        self.service.search_by_plate_substring.assert_called_once_with("bc")

    def test_blank_search_reported_as_invalid(self):
        self.service.search_by_plate_substring.side_effect = InvalidArgumentError("Search fragment cannot be empty")

        result = self.processor.process(SearchVehiclesCommand("  "))

        self.assertEqual(result.error_code, "INVALID_ARGUMENT")

    def test_facility_history_totals_revenue(self):
        facility = Facility(name="Downtown", capacity=3, hourly_rate=Decimal("5.00"), id=1)
        entries = [
            HistoryEntry(
                occupancy_record_id=i, license_plate="ABC123", facility_name="Downtown",
                entry_time=ENTRY, exit_time=ENTRY + timedelta(hours=1),
                total_cost=cost, facility_id=1, vehicle_id=1, id=i
            )
            for i, cost in enumerate([Decimal("5.45"), Decimal("10.00")], start=1)
        ]
        self.service.get_facility.return_value = facility
        self.service.history_for_facility.return_value = entries

        result = self.processor.process(FacilityHistoryCommand(1, ENTRY, ENTRY + timedelta(days=1)))

        self.assertTrue(result.success)
        self.assertEqual(result.data["facility"]["name"], "Downtown")
        self.assertEqual(len(result.data["entries"]), 2)
        self.assertEqual(result.data["total_revenue"], "15.45")

    def test_vehicle_history(self):
        self.service.history_for_plate.return_value = []

        result = self.processor.process(VehicleHistoryCommand("abc123"))

        self.assertEqual(result.data, {"entries": []})
        self.service.history_for_plate.assert_called_once_with("abc123")


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class TestCommandProcessor(CommandTestBase):

    def test_history_keeps_successful_commands_only(self):
        self.service.admit.side_effect = [1, ConflictError("already parked")]

        self.processor.process(AdmitVehicleCommand("ABC123", 1))
        self.processor.process(AdmitVehicleCommand("ABC123", 2))

        history = self.processor.get_history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["payload"], {"license_plate": "ABC123", "facility_id": 1})

    def test_history_is_bounded(self):
        self.processor.max_history_size = 3
        self.service.admit.return_value = 1

        commands = [AdmitVehicleCommand(f"CAR{i:03d}", 1) for i in range(5)]
        self.processor.process_batch(commands)

        history = self.processor.get_history()
        self.assertEqual(len(history), 3)
        self.assertEqual(history[0]["command_id"], commands[-1].command_id)

    def test_batch_continues_after_failure(self):
        self.service.admit.side_effect = [CapacityExceededError("full"), 7]

        results = self.processor.process_batch([
            AdmitVehicleCommand("ABC123", 1),
            AdmitVehicleCommand("XYZ789", 1),
        ])

        self.assertEqual([r.success for r in results], [False, True])

    def test_clear_history(self):
        self.service.admit.return_value = 1
        self.processor.process(AdmitVehicleCommand("ABC123", 1))

        self.processor.clear_history()
        self.assertEqual(self.processor.get_history(), [])


if __name__ == "__main__":
    unittest.main()
