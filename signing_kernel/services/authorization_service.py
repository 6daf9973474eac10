"""
AuthorizationService -- the authorization decision point (ADP).

Responsibility:
    Answers ``authorize(request)`` for every mediated operation: loads the
    applicable policies and the facts they need (role assignments, role
    permission map, relationship triples, stored attributes, environment),
    delegates evaluation to the pure engine in
    ``signing_engines.authorization`` and caches the decision.

Architecture position:
    Kernel > Services -- imperative shell around a pure engine.  Opens its
    own short read transaction per evaluation and its own write
    transaction for audit records, so a denial record survives the
    rejected operation.

Invariants enforced:
    - Never raises: a store or evaluation error becomes a ``deny`` whose
      reason carries the error.
    - Cached decisions live at most ``authz_cache_ttl_seconds`` (<= 300 s)
      and are invalidated by subject and by resource on fact writes, and
      fully on policy writes.
    - Every deny is recorded as ``policy_denied`` on the ``authz`` chain;
      allows are recorded on a deterministic every-Nth sample.

Failure modes:
    - None surface to callers.  Audit write failures are logged at error
      and the decision is still returned.

Audit relevance:
    ``policy_denied`` details carry the matched policy ids and the
    evaluation id, so an operator can reproduce the decision.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, aliased, sessionmaker

from signing_engines.authorization import (
    build_attribute_map,
    environment_attributes,
    evaluate_policies,
)
from signing_kernel.db.engine import session_scope
from signing_kernel.domain.authz import (
    WILDCARD,
    AuthzDecision,
    AuthzFacts,
    AuthzRequest,
    Decision,
    Policy,
    Relations,
    ResourceTypes,
)
from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.logging_config import get_logger
from signing_kernel.models.audit_event import AUTHZ_CHAIN, AuditAction
from signing_kernel.models.authz import (
    AttributeModel,
    PolicyModel,
    PolicyTargetModel,
    RelationshipModel,
    RoleAssignmentModel,
    RolePermissionModel,
)
from signing_kernel.services.auditor_service import AuditorService
from signing_kernel.utils.hashing import hash_payload

logger = get_logger("services.authorization")

MAX_CACHE_TTL_SECONDS = 300.0

CacheKey = tuple[str, str, str, str, str]


def cache_key(request: AuthzRequest) -> CacheKey:
    """(subject, action, resource, resource_type, digest of request attributes)."""
    digest = hash_payload({
        "user": request.user_attrs,
        "resource": request.resource_attrs,
        "env": request.env_attrs,
        "client": request.client_info,
    })
    return (request.subject, request.action, request.resource, request.resource_type, digest)


@dataclass
class _CacheEntry:
    decision: AuthzDecision
    expires_at: float


class DecisionCache:
    """
    Per-process LRU of authorization decisions with a TTL.

    Contract:
        ``get`` returns a live entry (and refreshes its LRU position) or
        ``None``; ``put`` evicts the least recently used entry beyond
        ``max_entries``.  Thread-safe.

    Guarantees:
        - No entry is served more than ``ttl_seconds`` after it was stored.
        - ``invalidate_subject`` / ``invalidate_resource`` drop every entry
          keyed by that subject / resource.
    """

    def __init__(
        self,
        ttl_seconds: float = MAX_CACHE_TTL_SECONDS,
        max_entries: int = 10_000,
        clock: Clock | None = None,
    ):
        self._ttl = min(float(ttl_seconds), MAX_CACHE_TTL_SECONDS)
        self._max_entries = max(1, int(max_entries))
        self._clock = clock or SystemClock()
        self._entries: OrderedDict[CacheKey, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: CacheKey) -> AuthzDecision | None:
        if self._ttl <= 0:
            return None
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.decision

    def put(self, key: CacheKey, decision: AuthzDecision) -> None:
        if self._ttl <= 0:
            return
        expires_at = self._clock.monotonic() + self._ttl
        with self._lock:
            self._entries[key] = _CacheEntry(decision, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate_subject(self, subject: str) -> int:
        return self._invalidate(lambda key: key[0] == subject)

    def invalidate_resource(self, resource: str) -> int:
        return self._invalidate(lambda key: key[2] == resource)

    def _invalidate(self, predicate: Callable[[CacheKey], bool]) -> int:
        with self._lock:
            stale = [key for key in self._entries if predicate(key)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class AuthorizationService:
    """
    Authorization decision point.

    Contract:
        ``authorize(request)`` returns an ``AuthzDecision`` with a fresh
        ``evaluation_id`` and never raises.

    Non-goals:
        - Does NOT enforce the decision; callers raise
          ``AuthorizationDeniedError`` themselves.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        cache: DecisionCache | None = None,
        allowed_sample_every: int = 10,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self.cache = cache if cache is not None else DecisionCache(clock=self._clock)
        self._sample_every = max(0, int(allowed_sample_every))
        self._allow_counter = 0
        self._counter_lock = threading.Lock()
        self.on_audit: Callable[[Any], None] | None = None

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def authorize(self, request: AuthzRequest) -> AuthzDecision:
        key = cache_key(request)
        cached = self.cache.get(key)
        if cached is not None:
            decision = replace(cached, evaluation_id=str(uuid4()), cached=True)
        else:
            try:
                with self._session_factory() as session:
                    policies = self._load_policies(session, request)
                    facts = self._gather_facts(session, request)
                decision = evaluate_policies(policies, request, facts)
                decision = replace(decision, evaluation_id=str(uuid4()))
                self.cache.put(key, decision)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "authz_evaluation_failed",
                    extra={"subject": request.subject, "action": request.action},
                    exc_info=True,
                )
                decision = AuthzDecision(
                    decision=Decision.DENY,
                    reason=f"authorization error: {exc}",
                    evaluation_id=str(uuid4()),
                )

        logger.info(
            "authz_decision",
            extra={
                "subject": request.subject,
                "action": request.action,
                "resource": request.resource,
                "resource_type": request.resource_type,
                "decision": decision.decision.value,
                "matched_policies": list(decision.matched_policies),
                "cached": decision.cached,
                "evaluation_id": decision.evaluation_id,
            },
        )
        self._audit(request, decision)
        return decision

    def _should_sample_allow(self) -> bool:
        if self._sample_every <= 0:
            return False
        with self._counter_lock:
            self._allow_counter += 1
            return self._allow_counter % self._sample_every == 0

    def _audit(self, request: AuthzRequest, decision: AuthzDecision) -> None:
        if decision.allowed:
            if not self._should_sample_allow():
                return
            action = AuditAction.POLICY_ALLOWED
        else:
            action = AuditAction.POLICY_DENIED
        try:
            with session_scope(self._session_factory) as session:
                record = AuditorService(session, self._clock).record(
                    AUTHZ_CHAIN,
                    action,
                    request.subject,
                    details={
                        "action": request.action,
                        "resource": request.resource,
                        "resource_type": request.resource_type,
                        "decision": decision.decision.value,
                        "reason": decision.reason,
                        "matched_policies": list(decision.matched_policies),
                        "evaluation_id": decision.evaluation_id,
                        "cached": decision.cached,
                    },
                )
            if self.on_audit is not None:
                self.on_audit(record)
        except Exception:  # noqa: BLE001
            logger.error(
                "authz_audit_failed",
                extra={"subject": request.subject, "action": request.action},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    def _load_policies(self, session: Session, request: AuthzRequest) -> list[Policy]:
        rows = session.execute(
            select(PolicyModel)
            .join(PolicyTargetModel, PolicyTargetModel.policy_pk == PolicyModel.id)
            .where(
                PolicyModel.enabled.is_(True),
                PolicyTargetModel.resource_type.in_((request.resource_type, WILDCARD)),
                PolicyTargetModel.action.in_((request.action, WILDCARD)),
            )
            .distinct()
        ).scalars().all()
        return [row.to_domain() for row in rows]

    def _gather_facts(self, session: Session, request: AuthzRequest) -> AuthzFacts:
        roles = set(
            session.execute(
                select(RoleAssignmentModel.role).where(
                    RoleAssignmentModel.subject == request.subject
                )
            ).scalars()
        )
        extra_roles = request.user_attrs.get("roles") or ()
        if isinstance(extra_roles, str):
            extra_roles = (extra_roles,)
        roles.update(str(r) for r in extra_roles)

        role_permissions: dict[str, set[str]] = {}
        if roles:
            for role, permission in session.execute(
                select(RolePermissionModel.role, RolePermissionModel.permission).where(
                    RolePermissionModel.role.in_(roles)
                )
            ):
                role_permissions.setdefault(role, set()).add(permission)

        relations = set(
            session.execute(
                select(RelationshipModel.relation).where(
                    RelationshipModel.subject == request.subject,
                    RelationshipModel.object_id == request.resource,
                    RelationshipModel.object_type == request.resource_type,
                )
            ).scalars()
        )
        if request.subject == request.resource:
            relations.add(Relations.SELF)

        membership = aliased(RelationshipModel)
        org_relations = set(
            session.execute(
                select(RelationshipModel.relation)
                .join(
                    membership,
                    and_(
                        membership.object_id == RelationshipModel.subject,
                        membership.relation == Relations.ORG_MEMBER,
                        membership.object_type == ResourceTypes.ORGANIZATION,
                    ),
                )
                .where(
                    membership.subject == request.subject,
                    RelationshipModel.object_id == request.resource,
                    RelationshipModel.object_type == request.resource_type,
                )
            ).scalars()
        )

        stored_user: dict[str, Any] = {}
        stored_resource: dict[str, Any] = {}
        for row in session.execute(
            select(AttributeModel).where(
                or_(
                    and_(AttributeModel.owner_kind == "user", AttributeModel.owner_id == request.subject),
                    and_(AttributeModel.owner_kind == "resource", AttributeModel.owner_id == request.resource),
                )
            )
        ).scalars():
            target = stored_user if row.owner_kind == "user" else stored_resource
            target[row.name] = (row.value or {}).get("v")

        attributes = build_attribute_map(
            request,
            stored_user,
            stored_resource,
            environment_attributes(self._clock.now(), request.client_info),
        )
        return AuthzFacts(
            roles=frozenset(roles),
            role_permissions={r: frozenset(p) for r, p in role_permissions.items()},
            relations=frozenset(relations),
            org_relations=frozenset(org_relations),
            attributes=attributes,
        )
