"""Utility helpers for seeding a demo database with inspections."""

from __future__ import annotations

import argparse
import io
import logging
import random
import textwrap
from pathlib import Path

from PIL import Image

from .app import FieldCheckApp
from .models import CheckpointStatus, EquipmentStatus, InspectionStatus, UserRole

logger = logging.getLogger(__name__)

_NOTES = [
    "Hairline crack near weld, monitor weekly.",
    "Replaced worn pin and retested.",
    "Hydraulic seep at fitting, tightened.",
    "Label faded, replacement ordered.",
]


def _sample_photo(rng: random.Random) -> bytes:
    color = (rng.randint(60, 200), rng.randint(60, 200), rng.randint(60, 200))
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), color).save(buffer, format="JPEG")
    return buffer.getvalue()


def _ensure_technicians(app: FieldCheckApp, *, desired: int) -> list:
    technicians = app.database.list_users_by_roles([UserRole.TECHNICIAN])
    index = len(technicians)
    while len(technicians) < desired:
        index += 1
        email = f"mock.tech{index}@system.local"
        if app.database.get_user_by_email(email):
            continue
        technicians.append(
            app.auth.register_user(f"Mock Technician {index}", email, "password", role=UserRole.TECHNICIAN)
        )
    return technicians


def _pick_status(rng: random.Random) -> CheckpointStatus:
    roll = rng.random()
    if roll < 0.75:
        return CheckpointStatus.PASS
    if roll < 0.83:
        return CheckpointStatus.NOT_APPLICABLE
    if roll < 0.92:
        return CheckpointStatus.CORRECTED
    return CheckpointStatus.ACTION_REQUIRED


def generate_mock_data(app: FieldCheckApp, *, total: int = 24, seed: int = 42) -> None:
    rng = random.Random(seed)
    equipment = app.equipment.list_equipment()
    if not equipment:
        raise RuntimeError("No equipment available; seed defaults before generating mock data")
    technicians = _ensure_technicians(app, desired=4)

    for index in range(total):
        unit = equipment[index % len(equipment)]
        technician = technicians[index % len(technicians)]
        inspection = app.inspections.get_or_create(
            equipment_id=unit.id,
            technician=technician,
            task_id=f"TASK-{1000 + index}" if rng.random() < 0.3 else None,
        )
        for checkpoint in app.database.list_checkpoints_for_inspection(inspection.id):
            status = _pick_status(rng)
            if not status.keeps_findings:
                app.inspections.update_checkpoint(checkpoint_id=checkpoint.id, status=status)
                continue
            app.inspections.update_checkpoint(
                checkpoint_id=checkpoint.id,
                status=status,
                notes=rng.choice(_NOTES),
                estimated_hours=rng.choice([None, 0.5, 1.5, 4.0]),
            )
            if rng.random() < 0.5:
                app.media.store(checkpoint.id, _sample_photo(rng), "image/jpeg", f"finding-{checkpoint.id}.jpg")

        # The last two stay open so the dashboard shows work in progress.
        if index >= total - 2:
            continue
        outcome = app.inspections.complete(inspection.id, allow_unset=True)
        app.effects.run(outcome.effects)
        logger.debug("Completed mock inspection %s (%s)", inspection.id, outcome.equipment_status.value)


def _summarize(app: FieldCheckApp) -> str:
    inspections = app.inspections.list_inspections()
    completed = sum(1 for inspection in inspections if inspection.status is InspectionStatus.COMPLETED)
    dashboard = app.equipment.dashboard()
    out_of_service = dashboard.status_counts[EquipmentStatus.OUT_OF_SERVICE]
    return textwrap.dedent(
        f"""
        Generated {len(inspections)} inspections ({completed} completed).
        {len(dashboard.overdue)} equipment units overdue, {out_of_service} out of service.
        """
    ).strip()


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate mock inspection data.")
    parser.add_argument(
        "--database",
        default="fieldcheck.db",
        help="Path to the SQLite database file (default: %(default)s)",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=24,
        help="Number of inspections to generate (default: %(default)s)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for reproducible data (default: %(default)s)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FieldCheckApp.create(Path(args.database))
    app.seed_defaults()
    generate_mock_data(app, total=args.count, seed=args.seed)
    print(_summarize(app))


if __name__ == "__main__":  # pragma: no cover - script entry point
    main()
