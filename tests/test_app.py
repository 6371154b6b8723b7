from __future__ import annotations

import inspect
import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import RecordingMailer, RecordingNotifier, make_jpeg

from backend.fieldcheck import FieldCheckApp
from backend.fieldcheck.auth import TOKEN_EXPIRY_MINUTES
from backend.fieldcheck.errors import Conflict, InvalidArgument, Unauthorized
from backend.fieldcheck.media import UploadedFile
from backend.fieldcheck.models import (
    Equipment,
    EquipmentStatus,
    InspectionStatus,
    User,
    UserRole,
)


def test_dataclasses_do_not_use_slots() -> None:
    from backend.fieldcheck import app as app_module
    from backend.fieldcheck import equipment as equipment_module
    from backend.fieldcheck import inspections as inspections_module
    from backend.fieldcheck import models as models_module
    from backend.fieldcheck import notifications as notifications_module
    from backend.fieldcheck import reports as reports_module

    modules = [app_module, equipment_module, inspections_module, models_module, notifications_module, reports_module]
    dataclass_params = []
    for module in modules:
        for _, obj in inspect.getmembers(module, inspect.isclass):
            params = getattr(obj, "__dataclass_params__", None)
            if params is not None:
                dataclass_params.append(params)

    assert dataclass_params, "Expected to discover dataclasses in backend modules"
    assert all(
        not getattr(params, "slots", False) for params in dataclass_params
    ), "Dataclasses must not request slots for Python 3.9 compatibility"


def test_authentication_success(seeded_app: FieldCheckApp) -> None:
    token = seeded_app.auth.authenticate(" Tech@System.local ", "techpass")
    assert token is not None
    delta = token.expires_at - token.created_at
    assert abs(delta - timedelta(minutes=TOKEN_EXPIRY_MINUTES)) < timedelta(seconds=1)

    user = seeded_app.auth.get_user_for_token(token.token)
    assert user is not None and user.role is UserRole.TECHNICIAN

    seeded_app.auth.logout(token.token)
    assert seeded_app.auth.get_user_for_token(token.token) is None


def test_authentication_failure(seeded_app: FieldCheckApp) -> None:
    assert seeded_app.auth.authenticate("tech@system.local", "wrongpass") is None
    assert seeded_app.auth.authenticate("nobody@system.local", "techpass") is None


def test_expired_token_is_rejected(seeded_app: FieldCheckApp, technician: User) -> None:
    expired = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=1)
    seeded_app.database.add_session_token(technician.id, "stale-token", expired)

    assert seeded_app.auth.get_user_for_token("stale-token") is None


def test_user_administration_guards(
    seeded_app: FieldCheckApp, admin: User, supervisor: User, technician: User, boom_lift: Equipment
) -> None:
    with pytest.raises(Unauthorized):
        seeded_app.auth.list_users(requester=supervisor)
    with pytest.raises(Conflict):
        seeded_app.auth.delete_user(requester=admin, user_id=admin.id)
    with pytest.raises(Conflict):
        seeded_app.auth.update_user(
            requester=admin, user_id=admin.id, name=admin.name, email=admin.email, role=UserRole.SUPERVISOR
        )
    with pytest.raises(Conflict):
        seeded_app.auth.create_user(
            requester=admin, name="Dup", email="TECH@system.local", password="longenough", role=UserRole.TECHNICIAN
        )
    with pytest.raises(InvalidArgument):
        seeded_app.auth.create_user(
            requester=admin, name="Short", email="short@system.local", password="short", role=UserRole.TECHNICIAN
        )

    seeded_app.inspections.get_or_create(equipment_id=boom_lift.id, technician=technician)
    with pytest.raises(Conflict):
        seeded_app.auth.delete_user(requester=admin, user_id=technician.id)

    seeded_app.auth.delete_user(requester=admin, user_id=supervisor.id)
    assert seeded_app.database.get_user(supervisor.id) is None


def test_reset_password(seeded_app: FieldCheckApp, admin: User, technician: User, supervisor: User) -> None:
    seeded_app.auth.reset_password(requester=technician, user_id=technician.id, new_password="new-techpass")
    assert seeded_app.auth.authenticate("tech@system.local", "techpass") is None
    assert seeded_app.auth.authenticate("tech@system.local", "new-techpass") is not None

    with pytest.raises(Unauthorized):
        seeded_app.auth.reset_password(requester=technician, user_id=supervisor.id, new_password="whatever123")
    seeded_app.auth.reset_password(requester=admin, user_id=supervisor.id, new_password="whatever123")


def test_seed_defaults_is_idempotent(seeded_app: FieldCheckApp, admin: User) -> None:
    seeded_app.seed_defaults()

    assert len(seeded_app.auth.list_users(requester=admin)) == 3
    assert len(seeded_app.templates.list_templates()) == 3
    assert len(seeded_app.equipment.list_equipment()) == 6


def test_new_equipment_inspected_to_operational(
    seeded_app: FieldCheckApp, supervisor: User, technician: User, mailer: RecordingMailer
) -> None:
    unit = seeded_app.equipment.register(
        requester=supervisor,
        type="BOOM_LIFT",
        model="Genie S-65",
        serial="SN-001",
        location="Site C",
        status=EquipmentStatus.MAINTENANCE,
    )

    started = seeded_app.get_or_create_inspection(technician=technician, equipment_id=unit.id)
    assert started.success
    inspection = started.data
    checkpoints = seeded_app.database.list_checkpoints_for_inspection(inspection.id)
    assert [checkpoint.name for checkpoint in checkpoints][:2] == ["Guard Rails Secure", "Gate Functions"]
    for checkpoint in checkpoints:
        assert seeded_app.update_checkpoint(checkpoint_id=checkpoint.id, status="PASS").success

    result = seeded_app.complete_inspection(requester=technician, inspection_id=inspection.id)

    assert result.success
    assert result.data["equipment_status"] is EquipmentStatus.OPERATIONAL
    assert result.data["inspection"].status is InspectionStatus.COMPLETED
    assert seeded_app.equipment.get_equipment(unit.id).status is EquipmentStatus.OPERATIONAL
    assert [(effect.name, effect.succeeded) for effect in result.data["effects"]] == [("report-email", True)]
    [message] = mailer.sent
    assert message["to"] == "reports@example.com"
    assert message["pdf_filename"] == f"inspection-{inspection.id}.pdf"
    assert message["pdf_bytes"].startswith(b"%PDF")


def test_technician_must_answer_every_checkpoint(
    seeded_app: FieldCheckApp, technician: User, supervisor: User, boom_lift: Equipment
) -> None:
    inspection = seeded_app.get_or_create_inspection(technician=technician, equipment_id=boom_lift.id).data
    first = seeded_app.database.list_checkpoints_for_inspection(inspection.id)[0]
    seeded_app.update_checkpoint(checkpoint_id=first.id, status="ACTION_REQUIRED", notes="Rail cracked")

    refused = seeded_app.complete_inspection(requester=technician, inspection_id=inspection.id)
    assert not refused.success
    assert "8 checkpoint(s) have not been checked" in refused.error
    assert seeded_app.database.get_inspection(inspection.id).status is InspectionStatus.IN_PROGRESS

    forced = seeded_app.complete_inspection(requester=supervisor, inspection_id=inspection.id)
    assert forced.success
    assert forced.data["equipment_status"] is EquipmentStatus.OUT_OF_SERVICE

    again = seeded_app.complete_inspection(requester=supervisor, inspection_id=inspection.id)
    assert not again.success
    assert again.error == "Inspection is already completed"


def test_concurrent_completion_succeeds_once(
    seeded_app: FieldCheckApp, technician: User, supervisor: User, boom_lift: Equipment
) -> None:
    inspection = seeded_app.get_or_create_inspection(technician=technician, equipment_id=boom_lift.id).data
    barrier = threading.Barrier(2)
    results = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def start() -> None:
        barrier.wait()
        try:
            result = seeded_app.complete_inspection(requester=supervisor, inspection_id=inspection.id)
        except BaseException as exc:  # surfaced through the assertion below
            with lock:
                errors.append(exc)
            return
        with lock:
            results.append(result)

    threads = [threading.Thread(target=start) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(result.success for result in results) == [False, True]
    refused = next(result for result in results if not result.success)
    assert refused.error == "Inspection is already completed"
    assert seeded_app.database.get_inspection(inspection.id).status is InspectionStatus.COMPLETED


def test_side_effect_failures_do_not_block_completion(
    seeded_app: FieldCheckApp,
    supervisor: User,
    technician: User,
    boom_lift: Equipment,
    mailer: RecordingMailer,
    notifier: RecordingNotifier,
) -> None:
    mailer.fail = True
    notifier.fail = True
    inspection = seeded_app.get_or_create_inspection(
        technician=technician, equipment_id=boom_lift.id, task_id="T-77"
    ).data

    result = seeded_app.complete_inspection(requester=supervisor, inspection_id=inspection.id)

    assert result.success
    effects = {effect.name: effect for effect in result.data["effects"]}
    assert set(effects) == {"task-notification", "report-email"}
    assert not effects["task-notification"].succeeded
    assert effects["report-email"].error == "SMTP relay unavailable"
    assert seeded_app.database.get_inspection(inspection.id).status is InspectionStatus.COMPLETED
    assert mailer.sent == [] and notifier.calls == []


def test_completion_effects_notify_task_tracker(
    seeded_app: FieldCheckApp,
    supervisor: User,
    technician: User,
    boom_lift: Equipment,
    mailer: RecordingMailer,
    notifier: RecordingNotifier,
) -> None:
    inspection = seeded_app.get_or_create_inspection(
        technician=technician, equipment_id=boom_lift.id, task_id="T-77"
    ).data
    assert seeded_app.mark_all_checkpoints_as_pass(inspection.id).data == 9

    result = seeded_app.complete_inspection(requester=technician, inspection_id=inspection.id)

    assert all(effect.succeeded for effect in result.data["effects"])
    [(notified, status)] = notifier.calls
    assert notified.id == inspection.id and notified.task_id == "T-77"
    assert status is EquipmentStatus.OPERATIONAL
    assert "[Task T-77]" in mailer.sent[0]["subject"]


def test_email_report_boundary(
    seeded_app: FieldCheckApp, technician: User, boom_lift: Equipment, mailer: RecordingMailer
) -> None:
    inspection = seeded_app.get_or_create_inspection(technician=technician, equipment_id=boom_lift.id).data

    sent = seeded_app.email_report(inspection_id=inspection.id, to="fleet@example.com")
    assert sent.success and sent.data == "<message-1@test>"
    assert mailer.sent[0]["to"] == "fleet@example.com"

    assert not seeded_app.email_report(inspection_id=inspection.id, to="not-an-address").success
    mailer.fail = True
    failed = seeded_app.email_report(inspection_id=inspection.id, to="fleet@example.com")
    assert failed.as_dict() == {"success": False, "error": "SMTP relay unavailable"}


def test_boundary_reports_missing_records(seeded_app: FieldCheckApp, supervisor: User) -> None:
    for result in (
        seeded_app.complete_inspection(requester=supervisor, inspection_id=999),
        seeded_app.stop_inspection(999),
        seeded_app.mark_all_checkpoints_as_pass(999),
        seeded_app.update_technician_remarks(999, "All good"),
    ):
        assert result.as_dict() == {"success": False, "error": "Inspection not found"}
    assert not seeded_app.update_checkpoint(checkpoint_id=999, status="PASS").success
    assert not seeded_app.delete_media(999).success


def test_media_boundary_and_stop(seeded_app: FieldCheckApp, technician: User, boom_lift: Equipment) -> None:
    inspection = seeded_app.get_or_create_inspection(technician=technician, equipment_id=boom_lift.id).data
    checkpoint = seeded_app.database.list_checkpoints_for_inspection(inspection.id)[0]
    seeded_app.update_checkpoint(checkpoint_id=checkpoint.id, status="CORRECTED")

    uploaded = seeded_app.upload_media(
        checkpoint_id=checkpoint.id,
        files=[UploadedFile("fix.jpg", make_jpeg(), "image/jpeg"), UploadedFile("fix.mp4", b"\x00" * 64, "video/mp4")],
    )
    assert uploaded.success and len(uploaded.data) == 2
    assert seeded_app.media.storage.list_keys() != []

    assert seeded_app.stop_inspection(inspection.id).success
    assert seeded_app.database.get_inspection(inspection.id) is None
    assert seeded_app.media.storage.list_keys() == []


def test_technicians_only_list_their_own_inspections(
    seeded_app: FieldCheckApp, admin: User, supervisor: User, technician: User, boom_lift: Equipment, forklift: Equipment
) -> None:
    other = seeded_app.auth.create_user(
        requester=admin, name="Second Tech", email="tech2@system.local", password="techpass2", role=UserRole.TECHNICIAN
    )
    mine = seeded_app.get_or_create_inspection(technician=technician, equipment_id=boom_lift.id).data
    theirs = seeded_app.get_or_create_inspection(technician=other, equipment_id=forklift.id).data

    assert [item.id for item in seeded_app.list_inspections(requester=technician)] == [mine.id]
    assert {item.id for item in seeded_app.list_inspections(requester=supervisor)} == {mine.id, theirs.id}
    assert seeded_app.list_inspections(requester=other, equipment_id=boom_lift.id) == []


def test_inspection_pdf(seeded_app: FieldCheckApp, technician: User, boom_lift: Equipment) -> None:
    inspection = seeded_app.get_or_create_inspection(technician=technician, equipment_id=boom_lift.id).data

    filename, data = seeded_app.inspection_pdf(inspection.id)

    assert filename == f"inspection-{inspection.id}.pdf"
    assert data.startswith(b"%PDF")


def test_generate_mock_data(seeded_app: FieldCheckApp) -> None:
    from backend.fieldcheck.mock_data import generate_mock_data

    generate_mock_data(seeded_app, total=5, seed=7)

    inspections = seeded_app.inspections.list_inspections()
    assert len(inspections) == 5
    assert sum(1 for item in inspections if item.status is InspectionStatus.COMPLETED) == 3
    assert len(seeded_app.database.list_users_by_roles([UserRole.TECHNICIAN])) == 4
