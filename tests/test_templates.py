from __future__ import annotations

import json

import pytest

from backend.fieldcheck import FieldCheckApp
from backend.fieldcheck.errors import InvalidArgument, NotFound, Unauthorized
from backend.fieldcheck.models import CheckpointBlueprint, EquipmentType, SectionBlueprint, User


def _boom_template(app: FieldCheckApp):
    return app.database.get_default_template(EquipmentType.BOOM_LIFT)


def test_seeded_templates_are_defaults(seeded_app: FieldCheckApp) -> None:
    template = _boom_template(seeded_app)

    assert template.name == "Standard Boom Lift Inspection"
    assert [section.name for section in template.sections] == ["Platform & Basket", "Boom & Hydraulics"]
    assert [checkpoint.order for checkpoint in template.sections[0].checkpoints] == [1, 2, 3, 4, 5]
    assert seeded_app.database.get_default_template(EquipmentType.FORKLIFT) is None


def test_child_template_copies_parent_sections(seeded_app: FieldCheckApp, admin: User) -> None:
    parent = _boom_template(seeded_app)

    child = seeded_app.templates.create_template(
        requester=admin,
        name="Boom Lift + Cold Weather",
        equipment_type=EquipmentType.BOOM_LIFT,
        parent_template_id=parent.id,
        sections=[SectionBlueprint(name="Cold Weather", checkpoints=[CheckpointBlueprint(name="Heater", critical=True)])],
    )

    assert child.parent_template_id == parent.id
    assert [section.name for section in child.sections] == ["Platform & Basket", "Boom & Hydraulics", "Cold Weather"]
    assert child.sections[2].order == 3
    assert child.sections[2].checkpoints[0].critical is True
    assert _boom_template(seeded_app).id == parent.id

    seeded_app.templates.add_checkpoint(requester=admin, section_id=parent.sections[0].id, name="Harness Anchor")
    refreshed = seeded_app.templates.get_template(child.id)
    assert len(refreshed.sections[0].checkpoints) == 5

    with pytest.raises(InvalidArgument):
        seeded_app.templates.create_template(
            requester=admin,
            name="Grandchild",
            equipment_type=EquipmentType.BOOM_LIFT,
            parent_template_id=child.id,
        )


def test_only_admins_manage_templates(seeded_app: FieldCheckApp, supervisor: User, technician: User) -> None:
    for user in (supervisor, technician):
        with pytest.raises(Unauthorized):
            seeded_app.templates.create_template(requester=user, name="Rogue", equipment_type=EquipmentType.FORKLIFT)
    with pytest.raises(Unauthorized):
        seeded_app.templates.delete_template(requester=supervisor, template_id=_boom_template(seeded_app).id)


def test_one_default_per_equipment_type(seeded_app: FieldCheckApp, admin: User) -> None:
    original = _boom_template(seeded_app)

    replacement = seeded_app.templates.create_template(
        requester=admin,
        name="Boom Lift Annual",
        equipment_type=EquipmentType.BOOM_LIFT,
        is_default=True,
        sections=[SectionBlueprint(name="Annual", checkpoints=[CheckpointBlueprint(name="Load Test")])],
    )

    assert _boom_template(seeded_app).id == replacement.id
    assert seeded_app.templates.get_template(original.id).is_default is False

    seeded_app.templates.update_template(requester=admin, template_id=original.id, is_default=True)
    assert _boom_template(seeded_app).id == original.id
    assert seeded_app.templates.get_template(replacement.id).is_default is False


def test_section_and_checkpoint_editing(seeded_app: FieldCheckApp, admin: User) -> None:
    template = _boom_template(seeded_app)

    section = seeded_app.templates.add_section(requester=admin, template_id=template.id, name="Tires")
    assert section.order == 3
    checkpoint = seeded_app.templates.add_checkpoint(requester=admin, section_id=section.id, name="Tread Depth")
    assert checkpoint.order == 1

    updated = seeded_app.templates.update_checkpoint(
        requester=admin, checkpoint_id=checkpoint.id, name="Tread Depth > 3mm", critical=True, order=2
    )
    assert (updated.name, updated.critical, updated.order) == ("Tread Depth > 3mm", True, 2)

    seeded_app.templates.delete_section(requester=admin, section_id=section.id)
    assert [item.name for item in seeded_app.templates.get_template(template.id).sections] == [
        "Platform & Basket",
        "Boom & Hydraulics",
    ]
    with pytest.raises(NotFound):
        seeded_app.templates.delete_checkpoint(requester=admin, checkpoint_id=9999)
    with pytest.raises(InvalidArgument):
        seeded_app.templates.add_section(requester=admin, template_id=template.id, name="  ")


def test_export_then_import_creates_matching_template(seeded_app: FieldCheckApp, admin: User) -> None:
    template = _boom_template(seeded_app)

    filename, body = seeded_app.templates.export_template(template.id)
    payload = json.loads(body)

    assert filename == "Standard_Boom_Lift_Inspection.template.json"
    assert payload["exportVersion"] == "1.0.0"
    assert payload["template"]["equipmentType"] == "BOOM_LIFT"
    assert payload["template"]["sections"][0]["checkpoints"][0] == {
        "name": "Guard Rails Secure",
        "critical": True,
        "order": 1,
    }

    payload["template"]["name"] = "Imported Boom Lift"
    payload["template"]["isDefault"] = False
    imported = seeded_app.templates.import_template(requester=admin, payload=json.dumps(payload))

    assert imported.id != template.id
    assert imported.is_default is False
    assert [
        [(checkpoint.name, checkpoint.critical) for checkpoint in section.checkpoints] for section in imported.sections
    ] == [[(checkpoint.name, checkpoint.critical) for checkpoint in section.checkpoints] for section in template.sections]


@pytest.mark.parametrize(
    "payload",
    [
        b"{not json",
        {"exportVersion": "1.0.0"},
        {"template": {"name": "No sections", "equipmentType": "BOOM_LIFT"}},
        {"template": {"name": "Hovercraft", "equipmentType": "HOVERCRAFT", "sections": []}},
        {"template": {"name": "Flat", "equipmentType": "BOOM_LIFT", "sections": ["Platform"]}},
        {"template": {"name": "Flat", "equipmentType": "BOOM_LIFT", "sections": [{"name": "Deck", "checkpoints": ["Rails"]}]}},
        {"template": {"name": "Nameless", "equipmentType": "BOOM_LIFT", "sections": [{"name": None}]}},
        {
            "template": {
                "name": "Nameless",
                "equipmentType": "BOOM_LIFT",
                "sections": [{"name": "Deck", "checkpoints": [{"name": None, "critical": True}]}],
            }
        },
    ],
)
def test_import_rejects_invalid_payloads(seeded_app: FieldCheckApp, admin: User, payload) -> None:
    with pytest.raises(InvalidArgument):
        seeded_app.templates.import_template(requester=admin, payload=payload)


def test_missing_template(seeded_app: FieldCheckApp) -> None:
    with pytest.raises(NotFound):
        seeded_app.templates.get_template(4242)
