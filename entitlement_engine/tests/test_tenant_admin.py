import pytest

from entitlement_engine.conftest import NOW
from entitlement_engine.core.errors import ConflictError, PlanNotFoundError, TenantNotFoundError, ValidationError
from entitlement_engine.models.audit import AuditAction


def test_create_tenant_writes_overlay_and_audit(governance):
    tenant = governance.tenants.create_tenant("gym-1", "business", "starter", actor="ops", now=NOW)
    assert tenant.plan_key == "starter"

    overlay = governance.tenants.get_overlay("gym-1")
    assert overlay.extra_slots == {}
    assert overlay.custom_plan_key is None

    records = governance.store.list_audit(tenant_id="gym-1", action=AuditAction.TENANT_CREATED)
    assert len(records) == 1
    assert records[0].actor == "ops"


def test_create_tenant_twice_conflicts(governance, make_tenant):
    make_tenant(governance, "gym-1")
    with pytest.raises(ConflictError):
        make_tenant(governance, "gym-1")


def test_create_tenant_unknown_plan_or_category(governance):
    with pytest.raises(PlanNotFoundError):
        governance.tenants.create_tenant("gym-1", "business", "platinum", now=NOW)
    with pytest.raises(ValidationError):
        governance.tenants.create_tenant("gym-1", "government", "starter", now=NOW)


def test_grant_slots_accumulate(governance, make_tenant):
    make_tenant(governance, "gym-1")
    governance.tenants.grant_extra_slots("gym-1", "trainer", 2, now=NOW)
    overlay = governance.tenants.grant_extra_slots("gym-1", "trainer", 1, now=NOW)
    assert overlay.slots_for("trainer") == 3

    records = governance.store.list_audit(tenant_id="gym-1", action=AuditAction.SLOTS_GRANTED)
    assert [r.payload["total"] for r in records] == [2, 3]


def test_grant_slots_rejects_bad_input(governance, make_tenant):
    make_tenant(governance, "gym-1")
    make_tenant(governance, "solo-1", "individual")
    with pytest.raises(ValidationError):
        governance.tenants.grant_extra_slots("gym-1", "trainer", 0, now=NOW)
    with pytest.raises(ValidationError):
        governance.tenants.grant_extra_slots("gym-1", "spaceships", 1, now=NOW)
    with pytest.raises(ValidationError):
        governance.tenants.grant_extra_slots("solo-1", "workouts", 1, now=NOW)
    with pytest.raises(TenantNotFoundError):
        governance.tenants.grant_extra_slots("ghost", "trainer", 1, now=NOW)


def test_zero_slots_keeps_overlay(governance, make_tenant):
    make_tenant(governance, "gym-1")
    governance.tenants.grant_extra_slots("gym-1", "trainer", 2, now=NOW)
    governance.tenants.grant_extra_slots("gym-1", "member", 4, now=NOW)

    overlay = governance.tenants.zero_extra_slots("gym-1", "trainer", now=NOW)
    assert overlay.slots_for("trainer") == 0
    assert overlay.slots_for("member") == 4

    overlay = governance.tenants.zero_extra_slots("gym-1", now=NOW)
    assert overlay.slots_for("member") == 0

    records = governance.store.list_audit(tenant_id="gym-1", action=AuditAction.SLOTS_ZEROED)
    assert records[0].payload["cleared"] == {"trainer": 2}
    assert records[1].payload["cleared"] == {"trainer": 0, "member": 4}


def test_change_base_plan_checks_category(governance, make_tenant):
    make_tenant(governance, "gym-1", "starter")
    with pytest.raises(ValidationError):
        governance.tenants.change_base_plan("gym-1", "individual", now=NOW)

    tenant = governance.tenants.change_base_plan("gym-1", "professional", now=NOW)
    assert tenant.plan_key == "professional"
    records = governance.store.list_audit(tenant_id="gym-1", action=AuditAction.BASE_PLAN_CHANGED)
    assert records[0].payload == {"previous_plan_key": "starter"}


def test_custom_plan_assignment_is_audited(governance, make_tenant):
    make_tenant(governance, "gym-1")
    governance.tenants.assign_custom_plan("gym-1", {"limits": {"trainer": 9}}, actor="sales", now=NOW)
    governance.tenants.clear_custom_plan("gym-1", actor="sales", now=NOW)

    assigned = governance.store.list_audit(tenant_id="gym-1", action=AuditAction.CUSTOM_PLAN_ASSIGNED)
    cleared = governance.store.list_audit(tenant_id="gym-1", action=AuditAction.CUSTOM_PLAN_CLEARED)
    assert assigned[0].subject == "custom-gym-1"
    assert cleared[0].subject == "custom-gym-1"
    assert governance.tenants.get_overlay("gym-1").custom_plan_key is None


def test_custom_plan_category_must_match(governance, make_tenant):
    make_tenant(governance, "gym-1")
    with pytest.raises(ValidationError):
        governance.tenants.assign_custom_plan("gym-1", {"category": "individual", "limits": {"workouts": 3}}, now=NOW)


def test_update_overlay_applies_every_command(governance, make_tenant):
    make_tenant(governance, "gym-1")
    governance.tenants.grant_extra_slots("gym-1", "clients", 4, now=NOW)

    overlay = governance.tenants.update_overlay(
        "gym-1",
        zero_slots=["clients"],
        grant_slots={"trainer": 2},
        custom_plan={"limits": {"member": 40}},
        base_plan_key="professional",
        actor="sales",
        now=NOW,
    )

    assert overlay.extra_slots == {"clients": 0, "trainer": 2}
    assert overlay.custom_plan_key == "custom-gym-1"
    assert governance.tenants.get_tenant("gym-1").plan_key == "professional"


@pytest.mark.parametrize(
    "commands,error",
    [
        ({"grant_slots": {"trainer": 2}, "base_plan_key": "individual"}, ValidationError),
        ({"grant_slots": {"trainer": 2}, "base_plan_key": "platinum"}, PlanNotFoundError),
        ({"grant_slots": {"trainer": 2}, "custom_plan": {"limits": {"trainer": 0}}}, ValidationError),
        ({"zero_all_slots": True, "grant_slots": {"spaceships": 1}}, ValidationError),
        ({"zero_slots": ["clients", "spaceships"]}, ValidationError),
    ],
)
def test_rejected_overlay_update_changes_nothing(governance, make_tenant, commands, error):
    make_tenant(governance, "gym-1")
    governance.tenants.grant_extra_slots("gym-1", "clients", 4, now=NOW)
    audit_before = len(governance.store.list_audit(tenant_id="gym-1"))

    with pytest.raises(error):
        governance.tenants.update_overlay("gym-1", now=NOW, **commands)

    overlay = governance.tenants.get_overlay("gym-1")
    assert overlay.extra_slots == {"clients": 4}
    assert overlay.custom_plan_key is None
    assert governance.tenants.get_tenant("gym-1").plan_key == "starter"
    assert len(governance.store.list_audit(tenant_id="gym-1")) == audit_before
