from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from .auth import AuthService
from .database import Database
from .errors import InvalidArgument, NotFound
from .models import (
    CheckpointBlueprint,
    EquipmentType,
    InspectionTemplate,
    SectionBlueprint,
    TemplateCheckpoint,
    TemplateSection,
    User,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"


@dataclass
class TemplateService:
    database: Database

    def list_templates(self, equipment_type: Optional[EquipmentType] = None) -> List[InspectionTemplate]:
        return self.database.list_templates(equipment_type)

    def get_template(self, template_id: int) -> InspectionTemplate:
        template = self.database.get_template(template_id)
        if not template:
            raise NotFound("Template not found")
        return template

    def create_template(
        self,
        *,
        requester: User,
        name: str,
        equipment_type: EquipmentType,
        sections: Iterable[SectionBlueprint] = (),
        description: Optional[str] = None,
        is_default: bool = False,
        requires_freight_id: bool = False,
        parent_template_id: Optional[int] = None,
    ) -> InspectionTemplate:
        AuthService.require_admin(requester)
        if not name.strip():
            raise InvalidArgument("Template name is required")
        blueprints: list[SectionBlueprint] = []
        if parent_template_id is not None:
            parent = self.get_template(parent_template_id)
            if parent.parent_template_id is not None:
                raise InvalidArgument("Templates can only inherit from a top-level template")
            blueprints.extend(blueprints_from_template(parent))
        offset = len(blueprints)
        for index, blueprint in enumerate(sections, start=1):
            blueprints.append(
                SectionBlueprint(
                    name=blueprint.name,
                    order=offset + (blueprint.order or index),
                    checkpoints=_renumber(blueprint.checkpoints),
                )
            )
        for blueprint in blueprints:
            if not blueprint.name.strip():
                raise InvalidArgument("Section name is required")
        template = self.database.add_template(
            name=name.strip(),
            description=description,
            equipment_type=equipment_type,
            is_default=is_default,
            requires_freight_id=requires_freight_id,
            parent_template_id=parent_template_id,
            sections=blueprints,
        )
        logger.info("Template %s created (%d sections)", template.id, len(template.sections))
        return template

    def update_template(
        self,
        *,
        requester: User,
        template_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        equipment_type: Optional[EquipmentType] = None,
        is_default: Optional[bool] = None,
        requires_freight_id: Optional[bool] = None,
    ) -> InspectionTemplate:
        AuthService.require_admin(requester)
        self.get_template(template_id)
        fields: dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise InvalidArgument("Template name is required")
            fields["name"] = name.strip()
        if description is not None:
            fields["description"] = description
        if equipment_type is not None:
            fields["equipment_type"] = equipment_type
        if is_default is not None:
            fields["is_default"] = is_default
        if requires_freight_id is not None:
            fields["requires_freight_id"] = requires_freight_id
        template = self.database.update_template(template_id, **fields)
        assert template is not None
        return template

    def delete_template(self, *, requester: User, template_id: int) -> None:
        AuthService.require_admin(requester)
        self.get_template(template_id)
        self.database.delete_template(template_id)

    def add_section(self, *, requester: User, template_id: int, name: str, order: Optional[int] = None) -> TemplateSection:
        AuthService.require_admin(requester)
        template = self.get_template(template_id)
        if not name.strip():
            raise InvalidArgument("Section name is required")
        if order is None:
            order = max((section.order for section in template.sections), default=0) + 1
        return self.database.add_template_section(template_id, name.strip(), order)

    def update_section(self, *, requester: User, section_id: int, name: str, order: int) -> TemplateSection:
        AuthService.require_admin(requester)
        self._get_section(section_id)
        if not name.strip():
            raise InvalidArgument("Section name is required")
        self.database.update_template_section(section_id, name=name.strip(), order=order)
        return self._get_section(section_id)

    def delete_section(self, *, requester: User, section_id: int) -> None:
        AuthService.require_admin(requester)
        self._get_section(section_id)
        self.database.delete_template_section(section_id)

    def add_checkpoint(
        self,
        *,
        requester: User,
        section_id: int,
        name: str,
        critical: bool = False,
        order: Optional[int] = None,
    ) -> TemplateCheckpoint:
        AuthService.require_admin(requester)
        section = self._get_section(section_id)
        if not name.strip():
            raise InvalidArgument("Checkpoint name is required")
        if order is None:
            order = max((checkpoint.order for checkpoint in section.checkpoints), default=0) + 1
        return self.database.add_template_checkpoint(section_id, name.strip(), critical, order)

    def update_checkpoint(
        self,
        *,
        requester: User,
        checkpoint_id: int,
        name: str,
        critical: bool,
        order: int,
    ) -> TemplateCheckpoint:
        AuthService.require_admin(requester)
        if not self.database.get_template_checkpoint(checkpoint_id):
            raise NotFound("Template checkpoint not found")
        if not name.strip():
            raise InvalidArgument("Checkpoint name is required")
        self.database.update_template_checkpoint(checkpoint_id, name=name.strip(), critical=critical, order=order)
        checkpoint = self.database.get_template_checkpoint(checkpoint_id)
        assert checkpoint is not None
        return checkpoint

    def delete_checkpoint(self, *, requester: User, checkpoint_id: int) -> None:
        AuthService.require_admin(requester)
        if not self.database.get_template_checkpoint(checkpoint_id):
            raise NotFound("Template checkpoint not found")
        self.database.delete_template_checkpoint(checkpoint_id)

    def export_template(self, template_id: int) -> tuple[str, bytes]:
        template = self.get_template(template_id)
        payload = {
            "exportVersion": EXPORT_VERSION,
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "template": {
                "name": template.name,
                "description": template.description,
                "equipmentType": template.equipment_type.value,
                "isDefault": template.is_default,
                "requiresFreightId": template.requires_freight_id,
                "sections": [
                    {
                        "name": section.name,
                        "order": section.order,
                        "checkpoints": [
                            {"name": checkpoint.name, "critical": checkpoint.critical, "order": checkpoint.order}
                            for checkpoint in section.checkpoints
                        ],
                    }
                    for section in template.sections
                ],
            },
        }
        filename = f"{re.sub(r'[^A-Za-z0-9_-]+', '_', template.name)}.template.json"
        return filename, json.dumps(payload, indent=2).encode("utf-8")

    def import_template(self, *, requester: User, payload: bytes | str | dict) -> InspectionTemplate:
        if isinstance(payload, (bytes, str)):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise InvalidArgument("Invalid import payload") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("template"), dict):
            raise InvalidArgument("Invalid import payload")
        data = payload["template"]
        if not data.get("name") or not data.get("equipmentType") or not isinstance(data.get("sections"), list):
            raise InvalidArgument("Missing required fields")
        try:
            equipment_type = EquipmentType(data["equipmentType"])
        except ValueError as exc:
            raise InvalidArgument(f"Unknown equipment type: {data['equipmentType']}") from exc
        sections = []
        for index, section in enumerate(data["sections"], start=1):
            if not isinstance(section, dict):
                raise InvalidArgument(f"Section {index} is malformed")
            entries = section.get("checkpoints") or []
            if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
                raise InvalidArgument(f"Section {index} has malformed checkpoints")
            sections.append(
                SectionBlueprint(
                    name=str(section.get("name") or ""),
                    order=_position(section.get("order"), index),
                    checkpoints=[
                        CheckpointBlueprint(
                            name=str(checkpoint.get("name") or ""),
                            critical=bool(checkpoint.get("critical")),
                            order=_position(checkpoint.get("order"), position),
                        )
                        for position, checkpoint in enumerate(entries, start=1)
                    ],
                )
            )
        return self.create_template(
            requester=requester,
            name=str(data["name"]),
            description=data.get("description"),
            equipment_type=equipment_type,
            is_default=bool(data.get("isDefault")),
            requires_freight_id=bool(data.get("requiresFreightId")),
            sections=sections,
        )

    def _get_section(self, section_id: int) -> TemplateSection:
        section = self.database.get_template_section(section_id)
        if not section:
            raise NotFound("Template section not found")
        return section


def blueprints_from_template(template: InspectionTemplate) -> List[SectionBlueprint]:
    return [
        SectionBlueprint(
            name=section.name,
            order=section.order,
            checkpoints=[
                CheckpointBlueprint(name=checkpoint.name, critical=checkpoint.critical, order=checkpoint.order)
                for checkpoint in section.checkpoints
            ],
        )
        for section in template.sections
    ]


def _renumber(checkpoints: Iterable[CheckpointBlueprint]) -> List[CheckpointBlueprint]:
    renumbered = []
    for index, checkpoint in enumerate(checkpoints, start=1):
        if not checkpoint.name.strip():
            raise InvalidArgument("Checkpoint name is required")
        renumbered.append(
            CheckpointBlueprint(name=checkpoint.name.strip(), critical=checkpoint.critical, order=checkpoint.order or index)
        )
    return renumbered


def _position(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return default
    return value
