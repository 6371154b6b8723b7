from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.fieldcheck import FieldCheckApp
from backend.fieldcheck.config import Settings
from backend.fieldcheck.errors import ExternalServiceFailure
from backend.fieldcheck.models import Equipment, EquipmentStatus, Inspection, User


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    def send_email_with_pdf(self, *, to, subject, html, text, pdf_filename, pdf_bytes) -> str:
        if self.fail:
            raise ExternalServiceFailure("SMTP relay unavailable")
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
                "pdf_filename": pdf_filename,
                "pdf_bytes": pdf_bytes,
            }
        )
        return f"<message-{len(self.sent)}@test>"


class RecordingNotifier:
    configured = True

    def __init__(self) -> None:
        self.calls: list[tuple[Inspection, Optional[EquipmentStatus]]] = []
        self.fail = False

    def notify_completed(self, inspection: Inspection, equipment_status: Optional[EquipmentStatus] = None) -> bool:
        if self.fail:
            raise ExternalServiceFailure("Task tracker timed out")
        self.calls.append((inspection, equipment_status))
        return True


def make_jpeg(size: tuple[int, int] = (48, 32), color: tuple[int, int, int] = (200, 80, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        SITE_URL="https://inspect.example.com",
        DATABASE_PATH=str(tmp_path / "fieldcheck.db"),
        OBJECT_STORAGE_ROOT=str(tmp_path / "objects"),
        REPORT_FALLBACK_EMAIL="reports@example.com",
        TASK_WEBHOOK_URL="https://tasks.example.com/hooks/inspections",
        PDF_COMPRESSION=False,
    )


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def app(tmp_path: Path, settings: Settings, mailer: RecordingMailer, notifier: RecordingNotifier) -> FieldCheckApp:
    return FieldCheckApp.create(
        tmp_path / "test_inspections.db",
        settings=settings,
        mailer=mailer,
        notifier=notifier,
    )


@pytest.fixture()
def seeded_app(app: FieldCheckApp) -> FieldCheckApp:
    app.seed_defaults()
    return app


@pytest.fixture()
def admin(seeded_app: FieldCheckApp) -> User:
    user = seeded_app.database.get_user_by_email("admin@system.local")
    assert user is not None
    return user


@pytest.fixture()
def supervisor(seeded_app: FieldCheckApp) -> User:
    user = seeded_app.database.get_user_by_email("supervisor@system.local")
    assert user is not None
    return user


@pytest.fixture()
def technician(seeded_app: FieldCheckApp) -> User:
    user = seeded_app.database.get_user_by_email("tech@system.local")
    assert user is not None
    return user


@pytest.fixture()
def boom_lift(seeded_app: FieldCheckApp) -> Equipment:
    equipment = seeded_app.database.get_equipment_by_serial("JLG-2024-001")
    assert equipment is not None
    return equipment


@pytest.fixture()
def forklift(seeded_app: FieldCheckApp) -> Equipment:
    equipment = seeded_app.database.get_equipment_by_serial("TY-2024-089")
    assert equipment is not None
    return equipment
