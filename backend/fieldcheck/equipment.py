from __future__ import annotations

import io
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from .auth import AuthService
from .config import Settings
from .database import Database
from .errors import Conflict, InvalidArgument, NotFound
from .models import (
    CheckpointStatus,
    Equipment,
    EquipmentStatus,
    EquipmentType,
    Inspection,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

DASHBOARD_INSPECTION_LIMIT = 50
RECENT_DAYS = 30
EDITABLE_FIELDS = ("type", "model", "serial", "location", "hours_used", "status", "task_id")


@dataclass
class InspectionSummary:
    inspection: Inspection
    technician_name: str
    critical_issues: int = 0
    non_critical_issues: int = 0

    @property
    def issue_count(self) -> int:
        return self.critical_issues + self.non_critical_issues


@dataclass
class DashboardData:
    equipment: List[Equipment]
    status_counts: Dict[EquipmentStatus, int]
    recent_inspections: List[InspectionSummary] = field(default_factory=list)
    overdue: List[Equipment] = field(default_factory=list)


@dataclass
class EquipmentService:
    database: Database
    settings: Settings

    def list_equipment(self) -> List[Equipment]:
        return self.database.list_equipment()

    def get_equipment(self, equipment_id: int) -> Equipment:
        equipment = self.database.get_equipment(equipment_id)
        if not equipment:
            raise NotFound("Equipment not found")
        return equipment

    def register(
        self,
        *,
        requester: User,
        type: EquipmentType | str,
        model: str,
        serial: str,
        location: str,
        hours_used: int = 0,
        status: EquipmentStatus | str = EquipmentStatus.OPERATIONAL,
        task_id: Optional[str] = None,
    ) -> Equipment:
        AuthService.require_role(requester, UserRole.SUPERVISOR, UserRole.ADMIN)
        return self._create(
            type=type,
            model=model,
            serial=serial,
            location=location,
            hours_used=hours_used,
            status=status,
            task_id=task_id,
        )

    def update(self, *, requester: User, equipment_id: int, **changes: Any) -> Equipment:
        AuthService.require_role(requester, UserRole.SUPERVISOR, UserRole.ADMIN)
        current = self.get_equipment(equipment_id)
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidArgument(f"Unknown equipment fields: {', '.join(sorted(unknown))}")
        fields: dict[str, Any] = {}
        if "type" in changes:
            fields["type"] = _parse_enum(EquipmentType, changes["type"], "equipment type")
        if "status" in changes:
            fields["status"] = _parse_enum(EquipmentStatus, changes["status"], "equipment status")
        for name in ("model", "location"):
            if name in changes:
                fields[name] = _required(changes[name], name)
        if "serial" in changes:
            serial = _required(changes["serial"], "serial")
            existing = self.database.get_equipment_by_serial(serial)
            if existing and existing.id != current.id:
                raise Conflict("Equipment with this serial number already exists")
            fields["serial"] = serial
        if "hours_used" in changes:
            fields["hours_used"] = _parse_hours(changes["hours_used"])
        if "task_id" in changes:
            fields["task_id"] = (changes["task_id"] or "").strip() or None
        updated = self.database.update_equipment(equipment_id, **fields)
        assert updated is not None
        return updated

    def delete(self, *, requester: User, equipment_id: int) -> None:
        AuthService.require_role(requester, UserRole.SUPERVISOR, UserRole.ADMIN)
        self.get_equipment(equipment_id)
        if self.database.count_inspections_for_equipment(equipment_id):
            raise Conflict("Equipment with recorded inspections cannot be deleted")
        self.database.delete_equipment(equipment_id)
        logger.info("Equipment %s deleted by %s", equipment_id, requester.email)

    def import_equipment(self, payload: Dict[str, Any]) -> Equipment:
        """Create equipment from an external listing record.

        A duplicate serial is a Conflict. When the record names its ``source``
        and ``sourceId``, equipment with the same type, model and location is
        treated as already imported.
        """
        missing = [name for name in ("type", "model", "serial", "location") if not payload.get(name)]
        if missing:
            raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")
        equipment_type = _parse_enum(EquipmentType, payload["type"], "equipment type")
        if payload.get("source") and payload.get("sourceId"):
            similar = self.database.find_equipment_like(
                type=equipment_type, model=payload["model"].strip(), location=payload["location"].strip()
            )
            if similar:
                raise Conflict(f"Similar equipment already exists (serial {similar.serial})")
        equipment = self._create(
            type=equipment_type,
            model=payload["model"],
            serial=payload["serial"],
            location=payload["location"],
            hours_used=payload.get("hoursUsed") or 0,
            status=EquipmentStatus.OPERATIONAL,
            task_id=payload.get("taskId"),
        )
        logger.info("Equipment %s imported from %s", equipment.id, payload.get("source") or "unknown")
        return equipment

    def dashboard(self, *, now: Optional[datetime] = None) -> DashboardData:
        now = now or _utcnow()
        equipment = self.database.list_equipment()
        status_counts = Counter(item.status for item in equipment)
        cutoff = now - timedelta(days=RECENT_DAYS)
        recent = [
            self._summarize(inspection)
            for inspection in self.database.list_inspections(limit=DASHBOARD_INSPECTION_LIMIT)
            if inspection.started_at > cutoff
        ]
        return DashboardData(
            equipment=equipment,
            status_counts={status: status_counts.get(status, 0) for status in EquipmentStatus},
            recent_inspections=recent,
            overdue=self.overdue(now=now),
        )

    def overdue(self, *, days: Optional[int] = None, now: Optional[datetime] = None) -> List[Equipment]:
        """Equipment never inspected, or whose latest inspection started more than ``days`` ago."""
        days = self.settings.OVERDUE_AFTER_DAYS if days is None else days
        now = now or _utcnow()
        overdue = []
        for item in self.database.list_equipment():
            latest = self.database.list_inspections(equipment_id=item.id, limit=1)
            if not latest or (now - latest[0].started_at).days > days:
                overdue.append(item)
        return overdue

    def by_status(self) -> Dict[EquipmentStatus, List[Equipment]]:
        groups: Dict[EquipmentStatus, List[Equipment]] = {status: [] for status in EquipmentStatus}
        for item in self.database.list_equipment():
            groups[item.status].append(item)
        return groups

    def export_workbook(self, *, generated_by: User) -> tuple[str, bytes]:
        equipment = self.database.list_equipment()
        summaries = [self._summarize(inspection) for inspection in self.database.list_inspections()]
        by_id = {item.id: item for item in equipment}
        overdue_ids = {item.id for item in self.overdue()}

        workbook = Workbook()
        summary_ws = workbook.active
        summary_ws.title = "Summary"

        now = _utcnow()
        title_font = Font(size=16, bold=True, color="1C6B78")
        header_font = Font(bold=True, color="1F2A24")
        muted_font = Font(color="5E5E5E")

        summary_ws["A1"] = "Equipment fleet snapshot"
        summary_ws["A1"].font = title_font
        summary_ws.merge_cells("A1:E1")
        summary_ws["A2"] = f"Generated for {generated_by.name}"
        summary_ws["A2"].font = muted_font
        summary_ws.merge_cells("A2:E2")
        summary_ws["A3"] = now.strftime("Created %Y-%m-%d %H:%M UTC")
        summary_ws["A3"].font = muted_font
        summary_ws.merge_cells("A3:E3")

        summary_ws["A5"], summary_ws["B5"] = "Metric", "Value"
        summary_ws["A5"].font = header_font
        summary_ws["B5"].font = header_font
        status_counts = Counter(item.status for item in equipment)
        metrics = [
            ("Equipment units", len(equipment)),
            ("Operational", status_counts.get(EquipmentStatus.OPERATIONAL, 0)),
            ("In maintenance", status_counts.get(EquipmentStatus.MAINTENANCE, 0)),
            ("Out of service", status_counts.get(EquipmentStatus.OUT_OF_SERVICE, 0)),
            ("Overdue for inspection", len(overdue_ids)),
            ("Inspections recorded", len(summaries)),
            ("Critical issues found", sum(summary.critical_issues for summary in summaries)),
        ]
        for index, (label, value) in enumerate(metrics, start=6):
            summary_ws.cell(row=index, column=1, value=label)
            summary_ws.cell(row=index, column=2, value=value)

        technician_counts = Counter(summary.technician_name for summary in summaries)
        if technician_counts:
            summary_ws["D5"] = "Most active technicians"
            summary_ws["D5"].font = header_font
            summary_ws["E5"] = "Inspections"
            summary_ws["E5"].font = header_font
            for offset, (name, count) in enumerate(technician_counts.most_common(3), start=6):
                summary_ws.cell(row=offset, column=4, value=name)
                summary_ws.cell(row=offset, column=5, value=count)

        for column, width in [(1, 26), (2, 14), (4, 28), (5, 14)]:
            summary_ws.column_dimensions[get_column_letter(column)].width = width

        equipment_ws = workbook.create_sheet("Equipment")
        equipment_ws.append(["Serial", "Model", "Type", "Location", "Hours used", "Status", "Task ID", "Overdue"])
        _style_header(equipment_ws, header_font)
        overdue_fill = PatternFill(start_color="FFF4E5", end_color="FFF4E5", fill_type="solid")
        for item in equipment:
            equipment_ws.append(
                [
                    item.serial,
                    item.model,
                    item.type.value.replace("_", " ").title(),
                    item.location,
                    item.hours_used,
                    item.status.value,
                    item.task_id or "",
                    "Yes" if item.id in overdue_ids else "No",
                ]
            )
            if item.id in overdue_ids:
                for cell in equipment_ws[equipment_ws.max_row]:
                    cell.fill = overdue_fill
        _finish_sheet(equipment_ws)

        inspections_ws = workbook.create_sheet("Inspections")
        inspections_ws.append(
            ["Inspection #", "Started (UTC)", "Completed (UTC)", "Equipment", "Technician", "Status", "Critical", "Other issues"]
        )
        _style_header(inspections_ws, header_font)
        critical_fill = PatternFill(start_color="FCE4E8", end_color="FCE4E8", fill_type="solid")
        for summary in summaries:
            inspection = summary.inspection
            unit = by_id.get(inspection.equipment_id)
            inspections_ws.append(
                [
                    inspection.id,
                    inspection.started_at.strftime("%Y-%m-%d %H:%M"),
                    inspection.completed_at.strftime("%Y-%m-%d %H:%M") if inspection.completed_at else "",
                    f"{unit.model} ({unit.serial})" if unit else f"Equipment {inspection.equipment_id}",
                    summary.technician_name,
                    inspection.status.value,
                    summary.critical_issues,
                    summary.non_critical_issues,
                ]
            )
            if summary.critical_issues:
                for cell in inspections_ws[inspections_ws.max_row]:
                    cell.fill = critical_fill
        _finish_sheet(inspections_ws)

        filename = f"equipment-export-{now.strftime('%Y%m%d-%H%M%S')}.xlsx"
        buffer = io.BytesIO()
        workbook.save(buffer)
        return filename, buffer.getvalue()

    def _create(
        self,
        *,
        type: EquipmentType | str,
        model: str,
        serial: str,
        location: str,
        hours_used: Any,
        status: EquipmentStatus | str,
        task_id: Optional[str],
    ) -> Equipment:
        serial = _required(serial, "serial")
        if self.database.get_equipment_by_serial(serial):
            raise Conflict("Equipment with this serial number already exists")
        return self.database.add_equipment(
            type=_parse_enum(EquipmentType, type, "equipment type"),
            model=_required(model, "model"),
            serial=serial,
            location=_required(location, "location"),
            hours_used=_parse_hours(hours_used),
            status=_parse_enum(EquipmentStatus, status, "equipment status"),
            task_id=(task_id or "").strip() or None,
        )

    def _summarize(self, inspection: Inspection) -> InspectionSummary:
        technician = self.database.get_user(inspection.technician_id)
        summary = InspectionSummary(
            inspection=inspection,
            technician_name=technician.name if technician else f"User {inspection.technician_id}",
        )
        for checkpoint in self.database.list_checkpoints_for_inspection(inspection.id):
            if checkpoint.status is not CheckpointStatus.ACTION_REQUIRED:
                continue
            if checkpoint.critical:
                summary.critical_issues += 1
            else:
                summary.non_critical_issues += 1
        return summary


def _style_header(sheet, font: Font) -> None:
    for cell in sheet[1]:
        cell.font = font
        cell.alignment = Alignment(horizontal="center")


def _finish_sheet(sheet) -> None:
    sheet.auto_filter.ref = sheet.dimensions
    sheet.freeze_panes = "A2"
    for column_index in range(1, sheet.max_column + 1):
        max_length = max(
            (len(str(sheet.cell(row=row, column=column_index).value or "")) for row in range(1, sheet.max_row + 1)),
            default=10,
        )
        sheet.column_dimensions[get_column_letter(column_index)].width = min(max(12, max_length + 2), 42)


def _parse_enum(enum_type, value, label: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidArgument(f"Unknown {label}: {value}") from exc


def _required(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidArgument(f"Equipment {label} is required")
    return cleaned


def _parse_hours(value: Any) -> int:
    try:
        hours = int(value or 0)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument("Hours used must be a whole number") from exc
    if hours < 0:
        raise InvalidArgument("Hours used cannot be negative")
    return hours


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
