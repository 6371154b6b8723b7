from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union

from .database import Database
from .errors import Conflict, InvalidArgument, NotFound
from .media import MediaStore
from .models import (
    Checkpoint,
    CheckpointBlueprint,
    CheckpointStatus,
    EquipmentStatus,
    Inspection,
    InspectionDetail,
    InspectionStatus,
    SectionBlueprint,
    User,
)
from .notifications import NotificationDispatcher, PostCommitEffect
from .templates import blueprints_from_template

logger = logging.getLogger(__name__)

SECTION_CODE_LENGTH = 6

# Used when neither an explicit template nor a default for the equipment type exists.
FALLBACK_SECTIONS = [
    SectionBlueprint(
        name="Platform & Basket",
        order=1,
        checkpoints=[
            CheckpointBlueprint(name="Guard Rails Secure", critical=True, order=1),
            CheckpointBlueprint(name="Gate Functions", critical=True, order=2),
            CheckpointBlueprint(name="Control Panel", critical=False, order=3),
            CheckpointBlueprint(name="Emergency Stop", critical=True, order=4),
        ],
    )
]


@dataclass
class CompletionOutcome:
    inspection: Inspection
    equipment_status: EquipmentStatus
    effects: List[PostCommitEffect] = field(default_factory=list)


def section_code(name: str) -> str:
    code = re.sub(r"[^A-Z0-9]", "", name.upper())[:SECTION_CODE_LENGTH]
    return code or "SEC"


def derive_equipment_status(checkpoints: Iterable[Checkpoint]) -> EquipmentStatus:
    has_action_required = False
    for checkpoint in checkpoints:
        if checkpoint.status is not CheckpointStatus.ACTION_REQUIRED:
            continue
        if checkpoint.critical:
            return EquipmentStatus.OUT_OF_SERVICE
        has_action_required = True
    return EquipmentStatus.MAINTENANCE if has_action_required else EquipmentStatus.OPERATIONAL


def parse_checkpoint_status(value: Union[str, CheckpointStatus, None]) -> CheckpointStatus:
    if isinstance(value, CheckpointStatus):
        return value
    try:
        return CheckpointStatus(str(value).strip().upper())
    except ValueError as exc:
        allowed = ", ".join(status.value for status in CheckpointStatus)
        raise InvalidArgument(f"Invalid checkpoint status {value!r}; expected one of {allowed}") from exc


@dataclass
class InspectionService:
    database: Database
    media: MediaStore
    dispatcher: Optional[NotificationDispatcher] = None

    def get_or_create(
        self,
        *,
        equipment_id: int,
        technician: User,
        template_id: Optional[int] = None,
        task_id: Optional[str] = None,
        serial_number: Optional[str] = None,
        freight_id: Optional[str] = None,
    ) -> Inspection:
        """Resume the equipment's in-progress inspection or start a new one.

        The existence check and the insert share one ``BEGIN IMMEDIATE``
        transaction, so concurrent callers for the same equipment all end up
        with the same inspection.
        """
        with self.database.transaction(serializable=True) as conn:
            equipment = self.database.get_equipment(equipment_id, conn)
            if not equipment:
                raise NotFound("Equipment not found")
            existing = self.database.get_in_progress_inspection(equipment_id, conn)
            if existing:
                return existing

            if template_id is not None:
                template = self.database.get_template(template_id, conn)
                if not template:
                    raise NotFound("Template not found")
            else:
                template = self.database.get_default_template(equipment.type, conn)

            if template and template.requires_freight_id and not (freight_id or "").strip():
                raise InvalidArgument(f"Template {template.name} requires a freight ID")
            blueprints = blueprints_from_template(template) if template and template.sections else FALLBACK_SECTIONS

            inspection = self.database.add_inspection(
                conn,
                equipment_id=equipment_id,
                technician_id=technician.id,
                template_id=template.id if template else None,
                task_id=_clean(task_id) or equipment.task_id,
                serial_number=_clean(serial_number),
                freight_id=_clean(freight_id),
            )
            for index, blueprint in enumerate(blueprints, start=1):
                section = self.database.add_section(
                    conn,
                    inspection_id=inspection.id,
                    name=blueprint.name,
                    code=section_code(blueprint.name),
                    order=blueprint.order or index,
                )
                for position, checkpoint in enumerate(blueprint.checkpoints, start=1):
                    self.database.add_checkpoint(
                        conn,
                        section_id=section.id,
                        name=checkpoint.name,
                        critical=checkpoint.critical,
                        order=checkpoint.order or position,
                    )
        logger.info(
            "Inspection %s started for equipment %s by %s (template %s)",
            inspection.id,
            equipment_id,
            technician.email,
            inspection.template_id or "fallback",
        )
        return inspection

    def update_checkpoint(
        self,
        *,
        checkpoint_id: int,
        status: Union[str, CheckpointStatus],
        notes: Optional[str] = None,
        estimated_hours: Optional[float] = None,
    ) -> Checkpoint:
        parsed = parse_checkpoint_status(status)
        checkpoint = self.database.get_checkpoint(checkpoint_id)
        if not checkpoint:
            raise NotFound("Checkpoint not found")
        inspection = self.database.get_inspection_for_checkpoint(checkpoint_id)
        if inspection and inspection.status is InspectionStatus.COMPLETED:
            raise Conflict("Inspection is already completed")

        if parsed.keeps_findings:
            notes = _clean(notes)
            estimated_hours = _parse_hours(estimated_hours)
        else:
            notes = None
            estimated_hours = None
            removed = self.media.delete_for_checkpoint(checkpoint_id)
            if removed:
                logger.info("Cleared %d media items from checkpoint %s", removed, checkpoint_id)

        updated = self.database.update_checkpoint(
            checkpoint_id, status=parsed, notes=notes, estimated_hours=estimated_hours
        )
        assert updated is not None
        return updated

    def mark_all_unset_as_pass(self, inspection_id: int) -> int:
        inspection = self._require_inspection(inspection_id)
        if inspection.status is InspectionStatus.COMPLETED:
            raise Conflict("Inspection is already completed")
        for checkpoint in self.database.list_checkpoints_for_inspection(inspection_id):
            if checkpoint.status is None:
                self.media.delete_for_checkpoint(checkpoint.id)
        return self.database.mark_unset_checkpoints_as_pass(inspection_id)

    def complete(self, inspection_id: int, *, allow_unset: bool = True) -> CompletionOutcome:
        """Close the inspection and write the derived equipment status.

        Unset checkpoints are accepted unless ``allow_unset`` is False. The
        returned effects have not run yet; the caller runs them after this
        method returns.
        """
        with self.database.transaction(serializable=True) as conn:
            inspection = self.database.get_inspection(inspection_id, conn)
            if not inspection:
                raise NotFound("Inspection not found")
            if inspection.status is InspectionStatus.COMPLETED:
                raise Conflict("Inspection is already completed")
            checkpoints = self.database.list_checkpoints_for_inspection(inspection_id, conn)
            unset = sum(1 for checkpoint in checkpoints if checkpoint.status is None)
            if unset and not allow_unset:
                raise InvalidArgument(f"{unset} checkpoint(s) have not been checked")
            equipment_status = derive_equipment_status(checkpoints)
            self.database.mark_inspection_completed(conn, inspection_id, _utcnow())
            self.database.set_equipment_status(inspection.equipment_id, equipment_status, conn)

        completed = self.database.get_inspection(inspection_id)
        assert completed is not None
        logger.info(
            "Inspection %s completed; equipment %s is now %s",
            inspection_id,
            completed.equipment_id,
            equipment_status.value,
        )
        effects = self.dispatcher.completion_effects(completed, equipment_status) if self.dispatcher else []
        return CompletionOutcome(inspection=completed, equipment_status=equipment_status, effects=effects)

    def stop(self, inspection_id: int) -> None:
        inspection = self._require_inspection(inspection_id)
        if inspection.status is InspectionStatus.COMPLETED:
            raise Conflict("Completed inspections cannot be stopped")
        media_items = self.database.list_media_for_inspection(inspection_id)
        self.database.delete_inspection(inspection_id)
        self.media.release_objects(media_items)
        logger.info("Inspection %s stopped and discarded", inspection_id)

    def update_technician_remarks(self, inspection_id: int, remarks: Optional[str]) -> Inspection:
        self._require_inspection(inspection_id)
        self.database.update_technician_remarks(inspection_id, _clean(remarks))
        return self._require_inspection(inspection_id)

    def get_detail(self, inspection_id: int) -> InspectionDetail:
        detail = self.database.get_inspection_detail(inspection_id)
        if not detail:
            raise NotFound("Inspection not found")
        return detail

    def find_in_progress(self, equipment_id: int) -> Optional[Inspection]:
        return self.database.get_in_progress_inspection(equipment_id)

    def list_inspections(
        self,
        *,
        equipment_id: Optional[int] = None,
        technician_id: Optional[int] = None,
        status: Optional[InspectionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Inspection]:
        return self.database.list_inspections(
            equipment_id=equipment_id, technician_id=technician_id, status=status, limit=limit
        )

    def unset_count(self, inspection_id: int) -> int:
        self._require_inspection(inspection_id)
        return self.database.count_unset_checkpoints(inspection_id)

    def _require_inspection(self, inspection_id: int) -> Inspection:
        inspection = self.database.get_inspection(inspection_id)
        if not inspection:
            raise NotFound("Inspection not found")
        return inspection


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_hours(value: Optional[float]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument("Estimated hours must be a number") from exc
    if not math.isfinite(hours):
        raise InvalidArgument("Estimated hours must be a finite number")
    if hours < 0:
        raise InvalidArgument("Estimated hours cannot be negative")
    return hours


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
