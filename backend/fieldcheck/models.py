from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class UserRole(str, Enum):
    TECHNICIAN = "TECHNICIAN"
    SUPERVISOR = "SUPERVISOR"
    ADMIN = "ADMIN"


class EquipmentType(str, Enum):
    BOOM_LIFT = "BOOM_LIFT"
    SCISSOR_LIFT = "SCISSOR_LIFT"
    TELEHANDLER = "TELEHANDLER"
    FORKLIFT = "FORKLIFT"
    OTHER = "OTHER"


class EquipmentStatus(str, Enum):
    OPERATIONAL = "OPERATIONAL"
    MAINTENANCE = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


class InspectionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CheckpointStatus(str, Enum):
    PASS = "PASS"
    CORRECTED = "CORRECTED"
    ACTION_REQUIRED = "ACTION_REQUIRED"
    NOT_APPLICABLE = "NOT_APPLICABLE"

    @property
    def keeps_findings(self) -> bool:
        """Notes, hours and media only survive on CORRECTED / ACTION_REQUIRED."""
        return self in (CheckpointStatus.CORRECTED, CheckpointStatus.ACTION_REQUIRED)


class MediaType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


class MediaStorage(str, Enum):
    INLINE = "INLINE"
    OBJECT = "OBJECT"


@dataclass
class User:
    id: int
    name: str
    email: str
    password_hash: str
    role: UserRole
    created_at: datetime


@dataclass
class SessionToken:
    id: int
    user_id: int
    token: str
    created_at: datetime
    expires_at: datetime


@dataclass
class Equipment:
    id: int
    type: EquipmentType
    model: str
    serial: str
    location: str
    hours_used: int
    status: EquipmentStatus
    created_at: datetime
    task_id: Optional[str] = None


@dataclass
class TemplateCheckpoint:
    id: int
    section_id: int
    name: str
    critical: bool
    order: int


@dataclass
class TemplateSection:
    id: int
    template_id: int
    name: str
    order: int
    checkpoints: List[TemplateCheckpoint] = field(default_factory=list)


@dataclass
class InspectionTemplate:
    id: int
    name: str
    equipment_type: EquipmentType
    is_default: bool
    created_at: datetime
    description: Optional[str] = None
    requires_freight_id: bool = False
    parent_template_id: Optional[int] = None
    sections: List[TemplateSection] = field(default_factory=list)


@dataclass
class Inspection:
    id: int
    equipment_id: int
    technician_id: int
    status: InspectionStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    template_id: Optional[int] = None
    task_id: Optional[str] = None
    serial_number: Optional[str] = None
    freight_id: Optional[str] = None
    technician_remarks: Optional[str] = None


@dataclass
class Section:
    id: int
    inspection_id: int
    name: str
    code: str
    order: int


@dataclass
class Checkpoint:
    id: int
    section_id: int
    name: str
    critical: bool
    order: int
    status: Optional[CheckpointStatus] = None
    notes: Optional[str] = None
    estimated_hours: Optional[float] = None


@dataclass
class Media:
    id: int
    checkpoint_id: int
    type: MediaType
    storage: MediaStorage
    filename: str
    mime_type: str
    size: int
    created_at: datetime
    object_key: Optional[str] = None


@dataclass
class CheckpointBlueprint:
    name: str
    critical: bool = False
    order: int = 0


@dataclass
class SectionBlueprint:
    name: str
    order: int = 0
    checkpoints: List[CheckpointBlueprint] = field(default_factory=list)


# Nested read model handed to the report generator.


@dataclass
class CheckpointDetail:
    checkpoint: Checkpoint
    media: List[Media] = field(default_factory=list)


@dataclass
class SectionDetail:
    section: Section
    checkpoints: List[CheckpointDetail] = field(default_factory=list)


@dataclass
class InspectionDetail:
    inspection: Inspection
    equipment: Equipment
    technician: Optional[User]
    template_name: Optional[str] = None
    sections: List[SectionDetail] = field(default_factory=list)

    def iter_checkpoints(self):
        for section in self.sections:
            for entry in section.checkpoints:
                yield entry

    def iter_media(self):
        for entry in self.iter_checkpoints():
            for media in entry.media:
                yield media
