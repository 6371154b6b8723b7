from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from .auth import AuthService
from .config import Settings, settings as default_settings
from .database import Database
from .equipment import EquipmentService
from .errors import DOMAIN_ERRORS, OperationResult
from .inspections import InspectionService
from .media import LocalObjectStorage, MediaStore, ObjectStorage, UploadedFile
from .models import (
    CheckpointBlueprint,
    EquipmentStatus,
    EquipmentType,
    SectionBlueprint,
    User,
    UserRole,
)
from .notifications import EffectRunner, Mailer, NotificationDispatcher, SmtpMailer, TaskNotifier
from .reports import ReportGenerator
from .templates import TemplateService

logger = logging.getLogger(__name__)

DEFAULT_USERS = [
    ("System Administrator", "admin@system.local", "adminpass", UserRole.ADMIN),
    ("Shift Supervisor", "supervisor@system.local", "supervisorpass", UserRole.SUPERVISOR),
    ("Field Technician", "tech@system.local", "techpass", UserRole.TECHNICIAN),
]

DEFAULT_TEMPLATES = [
    (
        "Standard Boom Lift Inspection",
        EquipmentType.BOOM_LIFT,
        [
            (
                "Platform & Basket",
                [
                    ("Guard Rails Secure", True),
                    ("Gate Functions", True),
                    ("Control Panel", False),
                    ("Emergency Stop", True),
                    ("Floor Condition", False),
                ],
            ),
            (
                "Boom & Hydraulics",
                [
                    ("Hydraulic Fluid Level", True),
                    ("Cylinder Condition", True),
                    ("Hose Inspection", True),
                    ("Boom Movement", False),
                ],
            ),
        ],
    ),
    (
        "Standard Scissor Lift Inspection",
        EquipmentType.SCISSOR_LIFT,
        [
            ("Platform", [("Platform Rails", True), ("Entry Gate", True), ("Controls", False)]),
            ("Scissor Mechanism", [("Scissor Arms", True), ("Pivot Points", True)]),
        ],
    ),
    (
        "Standard Telehandler Inspection",
        EquipmentType.TELEHANDLER,
        [
            ("Boom & Fork", [("Fork Condition", True), ("Boom Extension", True), ("Load Chart", False)]),
            ("Cab & Controls", [("Seat & Seatbelt", True), ("Mirrors & Glass", False), ("Controls Operation", True)]),
        ],
    ),
]

DEFAULT_EQUIPMENT = [
    (EquipmentType.BOOM_LIFT, "JLG 600S", "JLG-2024-001", "Site A - North", 1250, EquipmentStatus.OPERATIONAL),
    (EquipmentType.SCISSOR_LIFT, "Genie GS-3246", "GN-2024-102", "Site A - South", 890, EquipmentStatus.OPERATIONAL),
    (EquipmentType.TELEHANDLER, "CAT TH514D", "CAT-2023-055", "Site B - East", 2100, EquipmentStatus.MAINTENANCE),
    (EquipmentType.BOOM_LIFT, "Genie Z-45/25", "GN-2023-203", "Site B - West", 1678, EquipmentStatus.OPERATIONAL),
    (EquipmentType.SCISSOR_LIFT, "JLG 2646ES", "JLG-2024-045", "Warehouse 1", 445, EquipmentStatus.OPERATIONAL),
    (EquipmentType.FORKLIFT, "Toyota 8FGU25", "TY-2024-089", "Warehouse 2", 3200, EquipmentStatus.OPERATIONAL),
]


@dataclass
class FieldCheckApp:
    settings: Settings
    database: Database
    auth: AuthService
    templates: TemplateService
    equipment: EquipmentService
    media: MediaStore
    reports: ReportGenerator
    dispatcher: NotificationDispatcher
    inspections: InspectionService
    effects: EffectRunner

    @classmethod
    def create(
        cls,
        database_path: Optional[Path] = None,
        *,
        settings: Optional[Settings] = None,
        mailer: Optional[Mailer] = None,
        notifier: Optional[TaskNotifier] = None,
        storage: Optional[ObjectStorage] = None,
    ) -> "FieldCheckApp":
        settings = settings or default_settings
        database = Database(Path(database_path or settings.DATABASE_PATH))
        database.initialize()
        if storage is None:
            storage = LocalObjectStorage(Path(settings.OBJECT_STORAGE_ROOT), f"{settings.SITE_URL.rstrip('/')}/objects")
        media = MediaStore(database, storage, settings)
        reports = ReportGenerator(database, media, settings)
        dispatcher = NotificationDispatcher(
            database=database,
            reports=reports,
            mailer=mailer or SmtpMailer(settings),
            notifier=notifier or TaskNotifier(settings),
            settings=settings,
        )
        return cls(
            settings=settings,
            database=database,
            auth=AuthService(database),
            templates=TemplateService(database),
            equipment=EquipmentService(database, settings),
            media=media,
            reports=reports,
            dispatcher=dispatcher,
            inspections=InspectionService(database, media, dispatcher),
            effects=EffectRunner(),
        )

    def seed_defaults(self) -> None:
        for name, email, password, role in DEFAULT_USERS:
            if not self.database.get_user_by_email(email):
                self.auth.register_user(name, email, password, role=role)
        admin = self.database.get_user_by_email(DEFAULT_USERS[0][1])
        assert admin is not None

        existing_templates = {template.name for template in self.templates.list_templates()}
        for template_name, equipment_type, sections in DEFAULT_TEMPLATES:
            if template_name in existing_templates:
                continue
            self.templates.create_template(
                requester=admin,
                name=template_name,
                equipment_type=equipment_type,
                is_default=True,
                sections=[
                    SectionBlueprint(
                        name=section_name,
                        order=index,
                        checkpoints=[
                            CheckpointBlueprint(name=checkpoint, critical=critical, order=position)
                            for position, (checkpoint, critical) in enumerate(checkpoints, start=1)
                        ],
                    )
                    for index, (section_name, checkpoints) in enumerate(sections, start=1)
                ],
            )

        for equipment_type, model, serial, location, hours_used, status in DEFAULT_EQUIPMENT:
            if not self.database.get_equipment_by_serial(serial):
                self.database.add_equipment(
                    type=equipment_type,
                    model=model,
                    serial=serial,
                    location=location,
                    hours_used=hours_used,
                    status=status,
                )

    # Inspection lifecycle boundary
    def get_or_create_inspection(
        self,
        *,
        technician: User,
        equipment_id: int,
        template_id: Optional[int] = None,
        task_id: Optional[str] = None,
        serial_number: Optional[str] = None,
        freight_id: Optional[str] = None,
    ) -> OperationResult:
        return self._guard(
            "get_or_create_inspection",
            lambda: self.inspections.get_or_create(
                equipment_id=equipment_id,
                technician=technician,
                template_id=template_id,
                task_id=task_id,
                serial_number=serial_number,
                freight_id=freight_id,
            ),
        )

    def update_checkpoint(
        self,
        *,
        checkpoint_id: int,
        status: Any,
        notes: Optional[str] = None,
        estimated_hours: Optional[float] = None,
    ) -> OperationResult:
        return self._guard(
            "update_checkpoint",
            lambda: self.inspections.update_checkpoint(
                checkpoint_id=checkpoint_id, status=status, notes=notes, estimated_hours=estimated_hours
            ),
        )

    def mark_all_checkpoints_as_pass(self, inspection_id: int) -> OperationResult:
        return self._guard("mark_all_checkpoints_as_pass", lambda: self.inspections.mark_all_unset_as_pass(inspection_id))

    def stop_inspection(self, inspection_id: int) -> OperationResult:
        return self._guard("stop_inspection", lambda: self.inspections.stop(inspection_id))

    def complete_inspection(self, *, requester: User, inspection_id: int) -> OperationResult:
        """Complete, then run the post-commit effects; their failures never fail the call.

        Technicians must have every checkpoint answered; supervisors and
        administrators may force-complete a partial inspection.
        """
        allow_unset = requester.role is not UserRole.TECHNICIAN
        result = self._guard(
            "complete_inspection",
            lambda: self.inspections.complete(inspection_id, allow_unset=allow_unset),
        )
        if not result.success:
            return result
        outcome = result.data
        effect_results = self.effects.run(outcome.effects)
        return OperationResult.ok(
            {
                "inspection": outcome.inspection,
                "equipment_status": outcome.equipment_status,
                "effects": effect_results,
            }
        )

    def update_technician_remarks(self, inspection_id: int, remarks: Optional[str]) -> OperationResult:
        return self._guard(
            "update_technician_remarks",
            lambda: self.inspections.update_technician_remarks(inspection_id, remarks),
        )

    def email_report(self, *, inspection_id: int, to: str) -> OperationResult:
        return self._guard("email_report", lambda: self.dispatcher.send_report(inspection_id, to))

    # Media and reports
    def upload_media(self, *, checkpoint_id: int, files: Sequence[UploadedFile]) -> OperationResult:
        return self._guard("upload_media", lambda: self.media.upload(checkpoint_id, files))

    def delete_media(self, media_id: int) -> OperationResult:
        return self._guard("delete_media", lambda: self.media.delete(media_id))

    def inspection_pdf(self, inspection_id: int) -> tuple[str, bytes]:
        detail = self.reports.load_detail(inspection_id)
        return f"inspection-{inspection_id}.pdf", self.reports.generate_pdf(detail)

    def list_inspections(self, *, requester: User, equipment_id: Optional[int] = None) -> List:
        technician_id = requester.id if requester.role is UserRole.TECHNICIAN else None
        return self.inspections.list_inspections(equipment_id=equipment_id, technician_id=technician_id)

    def _guard(self, operation: str, action: Callable[[], Any]) -> OperationResult:
        try:
            return OperationResult.ok(action())
        except DOMAIN_ERRORS as exc:
            logger.info("%s rejected: %s", operation, exc)
            return OperationResult.fail(str(exc))
