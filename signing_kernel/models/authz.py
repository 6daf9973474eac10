"""
Module: signing_kernel.models.authz
Responsibility: ORM persistence for the authorization stores: policies and
    their targets, relationship triples, subject/resource attributes, role
    assignments and the role -> permission map.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - policy_id is unique; a relationship triple is stored at most once.
    - Policy lookup is by (resource_type, action) via policy_targets with
      ``*`` as wildcard, filtered by enabled, ordered by priority.

Failure modes:
    - IntegrityError on a duplicate triple, attribute or role assignment
      (AuthzAdminService checks before insert).

Audit relevance:
    Every write through AuthzAdminService invalidates the decision cache
    for the affected subject/resource, so decisions never outlive the
    facts they were computed from beyond the cache TTL.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signing_kernel.db.base import Base, UUIDString
from signing_kernel.db.types import JSONDocument, UTCDateTime
from signing_kernel.domain.authz import (
    Condition,
    Policy,
    PolicyEffect,
    PolicyTarget,
    PolicyType,
    RelationshipTriple,
)


class PolicyModel(Base):
    """Persistent ADP policy."""

    __tablename__ = "authz_policies"

    __table_args__ = (
        Index("idx_policy_enabled_priority", "enabled", "priority"),
    )

    policy_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    type: Mapped[str] = mapped_column(String(20), nullable=False)

    effect: Mapped[str] = mapped_column(String(10), nullable=False)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    roles: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    permissions: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    relationships: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument(), nullable=False, default=list)

    description: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    targets: Mapped[list[PolicyTargetModel]] = relationship(
        "PolicyTargetModel",
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_domain(self) -> Policy:
        return Policy(
            policy_id=self.policy_id,
            name=self.name,
            type=PolicyType(self.type),
            effect=PolicyEffect(self.effect),
            priority=self.priority,
            enabled=self.enabled,
            targets=tuple(
                PolicyTarget(t.resource_type, t.action)
                for t in sorted(self.targets, key=lambda t: (t.resource_type, t.action))
            ),
            roles=tuple(self.roles or ()),
            permissions=tuple(self.permissions or ()),
            relationships=tuple(self.relationships or ()),
            conditions=tuple(Condition.from_dict(c) for c in self.conditions or ()),
            description=self.description,
        )

    def apply(self, policy: Policy, now: datetime) -> None:
        """Overwrite every field from a domain policy (targets included)."""
        self.name = policy.name
        self.type = policy.type.value
        self.effect = policy.effect.value
        self.priority = policy.priority
        self.enabled = policy.enabled
        self.roles = list(policy.roles)
        self.permissions = list(policy.permissions)
        self.relationships = list(policy.relationships)
        self.conditions = [c.to_dict() for c in policy.conditions]
        self.description = policy.description
        self.updated_at = now
        self.targets = [
            PolicyTargetModel(resource_type=t.resource_type, action=t.action)
            for t in policy.targets
        ]


class PolicyTargetModel(Base):
    """(resource_type, action) a policy applies to; ``*`` matches anything."""

    __tablename__ = "authz_policy_targets"

    __table_args__ = (
        Index("idx_policy_target_lookup", "resource_type", "action"),
    )

    policy_pk: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("authz_policies.id", ondelete="CASCADE"),
        nullable=False,
    )

    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)

    action: Mapped[str] = mapped_column(String(100), nullable=False)

    policy: Mapped[PolicyModel] = relationship("PolicyModel", back_populates="targets")


class RelationshipModel(Base):
    """One ReBAC triple: subject --relation--> object (object_type)."""

    __tablename__ = "authz_relationships"

    __table_args__ = (
        UniqueConstraint(
            "subject", "relation", "object_id", "object_type",
            name="uq_relationship_triple",
        ),
        Index("idx_relationship_subject", "subject"),
        Index("idx_relationship_object", "object_id", "object_type"),
    )

    subject: Mapped[str] = mapped_column(String(255), nullable=False)

    relation: Mapped[str] = mapped_column(String(100), nullable=False)

    object_id: Mapped[str] = mapped_column(String(255), nullable=False)

    object_type: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def to_domain(self) -> RelationshipTriple:
        return RelationshipTriple(
            subject=self.subject,
            relation=self.relation,
            object=self.object_id,
            object_type=self.object_type,
        )


class AttributeModel(Base):
    """A named ABAC attribute of a subject (``user``) or a resource."""

    __tablename__ = "authz_attributes"

    __table_args__ = (
        UniqueConstraint("owner_kind", "owner_id", "name", name="uq_attribute_owner_name"),
        Index("idx_attribute_owner", "owner_kind", "owner_id"),
    )

    # "user" or "resource"
    owner_kind: Mapped[str] = mapped_column(String(20), nullable=False)

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Wrapped as {"v": value} so scalars survive JSON columns uniformly.
    value: Mapped[dict[str, Any]] = mapped_column(JSONDocument(), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class RoleAssignmentModel(Base):
    """Subject holds role."""

    __tablename__ = "authz_role_assignments"

    __table_args__ = (
        UniqueConstraint("subject", "role", name="uq_role_assignment"),
        Index("idx_role_assignment_subject", "subject"),
    )

    subject: Mapped[str] = mapped_column(String(255), nullable=False)

    role: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class RolePermissionModel(Base):
    """Role grants permission (the RBAC permission map)."""

    __tablename__ = "authz_role_permissions"

    __table_args__ = (
        UniqueConstraint("role", "permission", name="uq_role_permission"),
        Index("idx_role_permission_role", "role"),
    )

    role: Mapped[str] = mapped_column(String(100), nullable=False)

    permission: Mapped[str] = mapped_column(String(100), nullable=False)
