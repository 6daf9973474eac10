"""
Tests for AuthzAdminService.

Covers:
- Policy create, replace, enable/disable, delete and listing order
- Idempotent relationship and role writes
- Role permission replacement
- Stored attributes (set, overwrite, remove)
- Policy pack installation
- Policy writes and orchestrator start-up with INFO logging enabled
"""

import json
import logging
from io import StringIO

import pytest
from sqlalchemy import select

from signing_config import get_policy_pack
from signing_config.loader import parse_policy_pack
from signing_kernel.domain.authz import Policy, PolicyEffect, RelationshipTriple
from signing_kernel.exceptions import ErrorKind, PolicyNotFoundError
from signing_kernel.logging_config import configure_logging, reset_logging
from signing_kernel.models.authz import AttributeModel, RolePermissionModel
from signing_kernel.services.authz_admin_service import AuthzAdminService
from signing_services.orchestrator import build_orchestrator


def policy(policy_id="p", priority=0, **fields) -> Policy:
    data = {
        "policy_id": policy_id,
        "type": "rbac",
        "effect": "allow",
        "priority": priority,
        "roles": ["user"],
        "resource_types": ["task"],
        "actions": ["task:complete", "task:delegate"],
    }
    data.update(fields)
    return Policy.from_dict(data)


@pytest.fixture
def admin(session, deterministic_clock):
    return AuthzAdminService(session, clock=deterministic_clock)


class TestPolicies:

    def test_put_and_get(self, admin):
        saved = admin.put_policy(policy())

        assert saved == admin.get_policy("p")
        assert {(t.resource_type, t.action) for t in saved.targets} == {
            ("task", "task:complete"), ("task", "task:delegate"),
        }

    def test_conditions_survive_storage(self, admin):
        saved = admin.put_policy(policy(
            type="abac",
            conditions=[
                {"attribute_path": "resource.amount", "operator": "gt", "value": 1000, "group": "g"},
                {"attribute_path": "user.region", "operator": "in", "value": ["eu", "uk"],
                 "group": "g", "logical_operator": "or"},
            ],
        ))

        assert saved.conditions[1].value == ("eu", "uk")
        assert saved.conditions[1].logical_operator.value == "OR"

    def test_put_replaces(self, admin):
        admin.put_policy(policy())
        admin.put_policy(policy(effect="deny", actions=["task:delegate"]))

        replaced = admin.get_policy("p")
        assert replaced.effect is PolicyEffect.DENY
        assert [t.action for t in replaced.targets] == ["task:delegate"]
        assert len(admin.list_policies()) == 1

    def test_listing_order(self, admin):
        admin.put_policy(policy("b", priority=10))
        admin.put_policy(policy("a", priority=10))
        admin.put_policy(policy("c", priority=50))

        assert [p.policy_id for p in admin.list_policies()] == ["c", "a", "b"]

    def test_enable_and_disable(self, admin):
        admin.put_policy(policy())

        assert admin.set_policy_enabled("p", False).enabled is False
        assert admin.set_policy_enabled("p", True).enabled is True

    def test_delete(self, admin):
        admin.put_policy(policy())

        admin.delete_policy("p")

        with pytest.raises(PolicyNotFoundError):
            admin.get_policy("p")

    @pytest.mark.parametrize("operation", [
        lambda admin: admin.get_policy("missing"),
        lambda admin: admin.set_policy_enabled("missing", True),
        lambda admin: admin.delete_policy("missing"),
    ])
    def test_unknown_policy(self, admin, operation):
        with pytest.raises(PolicyNotFoundError) as exc_info:
            operation(admin)

        assert exc_info.value.kind is ErrorKind.NOT_FOUND


class TestFacts:

    TRIPLE = RelationshipTriple("alice", "task_assignee", "task-1", "task")

    def test_relationship_writes_are_idempotent(self, admin):
        assert admin.add_relationship(self.TRIPLE) is True
        assert admin.add_relationship(self.TRIPLE) is False
        assert admin.relationships_of("alice") == [self.TRIPLE]

        assert admin.remove_relationship(self.TRIPLE) is True
        assert admin.remove_relationship(self.TRIPLE) is False
        assert admin.relationships_of("alice") == []

    def test_relationships_listed_in_order(self, admin):
        admin.add_relationship(RelationshipTriple("alice", "workflow_participant", "inst-2", "workflow_instance"))
        admin.add_relationship(self.TRIPLE)
        admin.add_relationship(RelationshipTriple("alice", "org_member", "org-1", "organization"))

        assert [t.object for t in admin.relationships_of("alice")] == ["org-1", "task-1", "inst-2"]

    def test_role_writes_are_idempotent(self, admin):
        assert admin.assign_role("alice", "manager") is True
        assert admin.assign_role("alice", "manager") is False

        assert admin.revoke_role("alice", "manager") is True
        assert admin.revoke_role("alice", "manager") is False

    def test_role_permissions_are_replaced(self, admin, session):
        admin.set_role_permissions("manager", ["workflow:start", "workflow:read"])
        admin.set_role_permissions("manager", ["workflow:read", "workflow:read"])

        permissions = session.execute(
            select(RolePermissionModel.permission).where(RolePermissionModel.role == "manager")
        ).scalars().all()
        assert permissions == ["workflow:read"]

    def test_attributes(self, admin, session):
        def stored():
            return {
                row.name: row.value["v"]
                for row in session.execute(select(AttributeModel)).scalars()
            }

        admin.set_attribute("user", "alice", "department", "legal")
        admin.set_attribute("resource", "doc-1", "allowed_delegators", ["alice", "bob"])
        assert stored() == {"department": "legal", "allowed_delegators": ["alice", "bob"]}

        admin.set_attribute("user", "alice", "department", "sales")
        admin.set_attribute("resource", "doc-1", "allowed_delegators", None)
        assert stored() == {"department": "sales"}

    def test_attribute_owner_kind(self, admin):
        with pytest.raises(ValueError):
            admin.set_attribute("group", "g-1", "name", "x")


class TestPolicyPacks:

    def test_install_shipped_pack(self, admin):
        pack = get_policy_pack()

        summary = admin.install_policy_pack(pack)

        assert summary["roles"] == len(pack.role_permissions)
        assert summary["policies"] == len(pack.policies)
        assert len(admin.list_policies()) == len(pack.policies)

    def test_reinstall_adds_no_facts(self, admin):
        pack = parse_policy_pack({
            "name": "seed",
            "role_permissions": {"user": ["task:complete"]},
            "policies": [
                {"policy_id": "assignees", "type": "rebac", "effect": "allow",
                 "relationships": ["task_assignee"]},
            ],
            "relationships": [
                {"subject": "alice", "relation": "org_member", "object": "org-1", "object_type": "organization"},
            ],
            "role_assignments": [{"subject": "alice", "role": "user"}],
        })

        first = admin.install_policy_pack(pack)
        second = admin.install_policy_pack(pack)

        assert first == {"roles": 1, "policies": 1, "relationships": 1, "role_assignments": 1}
        assert second == {"roles": 1, "policies": 1, "relationships": 0, "role_assignments": 0}

    def test_pack_install_logged(self, admin, captured_logs):
        admin.install_policy_pack(get_policy_pack())

        assert any(r["message"] == "policy_pack_installed" for r in captured_logs())


@pytest.fixture
def info_logging():
    """Logging configured the way production starts it (INFO, JSON lines)."""
    stream = StringIO()
    reset_logging()
    configure_logging(level=logging.INFO, stream=stream)

    def _records() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    yield _records
    reset_logging()
    configure_logging(level=logging.DEBUG)


class TestLoggingAtInfo:

    def test_put_policy_logs_whether_new(self, admin, info_logging):
        admin.put_policy(policy())
        admin.put_policy(policy(priority=5))

        saved = [r for r in info_logging() if r["message"] == "policy_saved"]
        assert [r["is_new"] for r in saved] == [True, False]
        assert saved[1]["priority"] == 5

    def test_orchestrator_builds_with_policy_pack(self, settings, session_factory, deterministic_clock,
                                                  info_logging):
        orchestrator = build_orchestrator(
            settings, clock=deterministic_clock, session_factory=session_factory,
        )
        try:
            messages = [r["message"] for r in info_logging()]
            assert "policy_pack_installed" in messages
            assert "orchestrator_ready" in messages
        finally:
            orchestrator.shutdown()
