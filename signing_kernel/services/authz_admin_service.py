"""
AuthzAdminService -- writes to the authorization stores.

Responsibility:
    Maintains policies, relationship triples, role assignments, the role
    permission map and stored ABAC attributes, and installs policy packs.
    Every write invalidates the affected decision cache entries.

Architecture position:
    Kernel > Services -- imperative shell.  Flush-only; the caller owns
    the transaction.

Invariants enforced:
    - policy_id is unique; ``put_policy`` replaces a policy in place.
    - Relationship, role and permission writes are idempotent: adding an
      existing fact is a no-op and reports ``False``.
    - Policy writes clear the whole cache; fact writes invalidate by
      subject and by resource.

Failure modes:
    - PolicyNotFoundError on enabling, disabling or deleting an unknown
      policy.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from signing_kernel.domain.authz import Policy, RelationshipTriple
from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.exceptions import PolicyNotFoundError
from signing_kernel.logging_config import get_logger
from signing_kernel.models.authz import (
    AttributeModel,
    PolicyModel,
    RelationshipModel,
    RoleAssignmentModel,
    RolePermissionModel,
)
from signing_kernel.services.authorization_service import DecisionCache

logger = get_logger("services.authz_admin")

OWNER_USER = "user"
OWNER_RESOURCE = "resource"


class PolicyPackSource(Protocol):
    role_permissions: Mapping[str, Iterable[str]]
    policies: Iterable[Policy]
    relationships: Iterable[RelationshipTriple]
    role_assignments: Iterable[tuple[str, str]]


class AuthzAdminService:
    """Administration of ADP policies and facts."""

    def __init__(
        self,
        session: Session,
        cache: DecisionCache | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._cache = cache
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def _policy_row(self, policy_id: str) -> PolicyModel | None:
        return self._session.execute(
            select(PolicyModel).where(PolicyModel.policy_id == policy_id)
        ).scalar_one_or_none()

    def get_policy(self, policy_id: str) -> Policy:
        row = self._policy_row(policy_id)
        if row is None:
            raise PolicyNotFoundError(policy_id)
        return row.to_domain()

    def list_policies(self) -> list[Policy]:
        rows = self._session.execute(
            select(PolicyModel).order_by(PolicyModel.priority.desc(), PolicyModel.policy_id)
        ).scalars().all()
        return [row.to_domain() for row in rows]

    def put_policy(self, policy: Policy) -> Policy:
        """Create or replace a policy (targets included)."""
        row = self._policy_row(policy.policy_id)
        created = row is None
        if row is None:
            row = PolicyModel(policy_id=policy.policy_id)
            self._session.add(row)
        row.apply(policy, self._clock.now())
        self._session.flush()
        self._clear_cache()
        logger.info(
            "policy_saved",
            extra={
                "policy_id": policy.policy_id,
                "type": policy.type.value,
                "effect": policy.effect.value,
                "priority": policy.priority,
                "is_new": created,
            },
        )
        return row.to_domain()

    def set_policy_enabled(self, policy_id: str, enabled: bool) -> Policy:
        row = self._policy_row(policy_id)
        if row is None:
            raise PolicyNotFoundError(policy_id)
        row.enabled = enabled
        row.updated_at = self._clock.now()
        self._session.flush()
        self._clear_cache()
        logger.info("policy_enabled_changed", extra={"policy_id": policy_id, "enabled": enabled})
        return row.to_domain()

    def delete_policy(self, policy_id: str) -> None:
        row = self._policy_row(policy_id)
        if row is None:
            raise PolicyNotFoundError(policy_id)
        self._session.delete(row)
        self._session.flush()
        self._clear_cache()
        logger.info("policy_deleted", extra={"policy_id": policy_id})

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _relationship_row(self, triple: RelationshipTriple) -> RelationshipModel | None:
        return self._session.execute(
            select(RelationshipModel).where(
                RelationshipModel.subject == triple.subject,
                RelationshipModel.relation == triple.relation,
                RelationshipModel.object_id == triple.object,
                RelationshipModel.object_type == triple.object_type,
            )
        ).scalar_one_or_none()

    def add_relationship(self, triple: RelationshipTriple) -> bool:
        if self._relationship_row(triple) is not None:
            return False
        self._session.add(
            RelationshipModel(
                subject=triple.subject,
                relation=triple.relation,
                object_id=triple.object,
                object_type=triple.object_type,
                created_at=self._clock.now(),
            )
        )
        self._session.flush()
        self._invalidate(triple.subject, triple.object)
        logger.debug(
            "relationship_added",
            extra={
                "subject": triple.subject,
                "relation": triple.relation,
                "object": triple.object,
                "object_type": triple.object_type,
            },
        )
        return True

    def remove_relationship(self, triple: RelationshipTriple) -> bool:
        row = self._relationship_row(triple)
        if row is None:
            return False
        self._session.delete(row)
        self._session.flush()
        self._invalidate(triple.subject, triple.object)
        logger.debug(
            "relationship_removed",
            extra={
                "subject": triple.subject,
                "relation": triple.relation,
                "object": triple.object,
            },
        )
        return True

    def relationships_of(self, subject: str) -> list[RelationshipTriple]:
        rows = self._session.execute(
            select(RelationshipModel)
            .where(RelationshipModel.subject == subject)
            .order_by(RelationshipModel.object_type, RelationshipModel.object_id, RelationshipModel.relation)
        ).scalars().all()
        return [row.to_domain() for row in rows]

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def assign_role(self, subject: str, role: str) -> bool:
        existing = self._session.execute(
            select(RoleAssignmentModel).where(
                RoleAssignmentModel.subject == subject,
                RoleAssignmentModel.role == role,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return False
        self._session.add(
            RoleAssignmentModel(subject=subject, role=role, created_at=self._clock.now())
        )
        self._session.flush()
        self._invalidate(subject, None)
        logger.info("role_assigned", extra={"subject": subject, "role": role})
        return True

    def revoke_role(self, subject: str, role: str) -> bool:
        result = self._session.execute(
            delete(RoleAssignmentModel).where(
                RoleAssignmentModel.subject == subject,
                RoleAssignmentModel.role == role,
            )
        )
        self._session.flush()
        self._invalidate(subject, None)
        revoked = bool(result.rowcount)
        logger.info("role_revoked", extra={"subject": subject, "role": role, "revoked": revoked})
        return revoked

    def set_role_permissions(self, role: str, permissions: Iterable[str]) -> None:
        """Replace the permissions a role grants."""
        self._session.execute(
            delete(RolePermissionModel).where(RolePermissionModel.role == role)
        )
        for permission in sorted(set(permissions)):
            self._session.add(RolePermissionModel(role=role, permission=permission))
        self._session.flush()
        self._clear_cache()

    # ------------------------------------------------------------------
    # Attributes
    # ------------------------------------------------------------------

    def set_attribute(self, owner_kind: str, owner_id: str, name: str, value: Any) -> None:
        """Store an ABAC attribute of a user or resource (``None`` removes it)."""
        if owner_kind not in (OWNER_USER, OWNER_RESOURCE):
            raise ValueError(f"owner_kind must be {OWNER_USER!r} or {OWNER_RESOURCE!r}")
        row = self._session.execute(
            select(AttributeModel).where(
                AttributeModel.owner_kind == owner_kind,
                AttributeModel.owner_id == owner_id,
                AttributeModel.name == name,
            )
        ).scalar_one_or_none()
        if value is None:
            if row is not None:
                self._session.delete(row)
        elif row is None:
            self._session.add(
                AttributeModel(
                    owner_kind=owner_kind,
                    owner_id=owner_id,
                    name=name,
                    value={"v": value},
                    updated_at=self._clock.now(),
                )
            )
        else:
            row.value = {"v": value}
            row.updated_at = self._clock.now()
        self._session.flush()
        if owner_kind == OWNER_USER:
            self._invalidate(owner_id, owner_id)
        else:
            self._invalidate(None, owner_id)

    # ------------------------------------------------------------------
    # Packs
    # ------------------------------------------------------------------

    def install_policy_pack(self, pack: PolicyPackSource) -> dict[str, int]:
        """Install every fact of a pack; existing policies are replaced."""
        for role, permissions in pack.role_permissions.items():
            self.set_role_permissions(role, permissions)
        policies = list(pack.policies)
        for policy in policies:
            self.put_policy(policy)
        added_relationships = sum(1 for t in pack.relationships if self.add_relationship(t))
        added_roles = sum(1 for subject, role in pack.role_assignments if self.assign_role(subject, role))
        summary = {
            "roles": len(pack.role_permissions),
            "policies": len(policies),
            "relationships": added_relationships,
            "role_assignments": added_roles,
        }
        logger.info("policy_pack_installed", extra=summary)
        return summary

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    def _invalidate(self, subject: str | None, resource: str | None) -> None:
        if self._cache is None:
            return
        if subject is not None:
            self._cache.invalidate_subject(subject)
        if resource is not None:
            self._cache.invalidate_resource(resource)
