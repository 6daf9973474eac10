"""
signing_services.orchestrator -- External operations of the signing core.

Responsibility:
    The facade callers use: register definitions, start workflows, act on
    tasks, cancel, read state and audit trails, subscribe to events, and
    ask the ADP.  Also the single place where the per-transaction kernel
    services are constructed and wired together.

Architecture position:
    Services -- top of the service layer.  Owns transaction boundaries:
    one transaction per operation, opened only after the ADP allowed it.

Invariants enforced:
    - Every mediated operation asks the ADP first; a deny raises
      AuthorizationDeniedError carrying the matched policy ids and
      leaves state untouched (the denial itself is audited by the ADP).
    - Mutations of one instance are serialized by ``InstanceLockRegistry``
      in-process and by the instance row version across processes.
    - A rejected completion (REQUIREMENT_UNMET) commits its ``attempts``
      increment and rejection record; every other error rolls back.
    - Audit events reach subscribers only after their transaction
      committed.
    - Relationship triples mirror the workflow: initiator and participants
      on the instance, owner and signers on documents, assignees on tasks.

Failure modes:
    - SigningKernelError subclasses propagate unchanged.
    - StaleDataError / IntegrityError become ConcurrencyConflictError.
    - Any other exception inside an operation becomes InternalError,
      logged at critical; the transaction is rolled back.

Audit relevance:
    definition_registered goes to the system chain; workflow_created and
    everything the engine and scheduler emit goes to the instance chain.

Usage:
    orchestrator = build_orchestrator()
    ref = orchestrator.create_workflow_definition(definition, actor="admin")
    started = orchestrator.start_workflow(ref.workflow_id, context, initiated_by="admin")
    orchestrator.complete_task(task_id, evidence, actor="alice")
"""

from __future__ import annotations

import secrets
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from signing_config import get_policy_pack, get_settings
from signing_config.loader import parse_workflow_definition
from signing_config.settings import OrchestratorSettings, PolicyPack
from signing_engines.audit_chain import find_chain_break
from signing_engines.graph import assert_valid, predict_duration
from signing_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from signing_kernel.domain.authz import (
    Actions,
    AuthzDecision,
    AuthzRequest,
    Relations,
    RelationshipTriple,
    ResourceTypes,
)
from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.domain.dtos import (
    AuditTrail,
    CompletionResult,
    DefinitionRef,
    DelegationResult,
    InstanceRecord,
    InstanceView,
    StartResult,
    TaskFilters,
    TaskRecord,
)
from signing_kernel.domain.ports import Notifier, ObjectStore, PkiService, TimestampAuthority
from signing_kernel.domain.task import Evidence, Participant, TaskKind, TaskStatus, TimestampToken
from signing_kernel.domain.workflow import InstanceStatus, WorkflowDefinition
from signing_kernel.exceptions import (
    AuthorizationDeniedError,
    ConcurrencyConflictError,
    InstanceNotFoundError,
    InternalError,
    InvalidInputError,
    RequirementUnmetError,
    SigningKernelError,
)
from signing_kernel.logging_config import LogContext, get_logger
from signing_kernel.models.audit_event import SYSTEM_CHAIN, AuditAction
from signing_kernel.models.task import TaskModel
from signing_kernel.models.workflow import WorkflowDefinitionModel, WorkflowInstanceModel
from signing_kernel.selectors.task_selector import TaskSelector
from signing_kernel.selectors.workflow_selector import WorkflowSelector
from signing_kernel.services.auditor_service import AuditorService
from signing_kernel.services.authorization_service import AuthorizationService, DecisionCache
from signing_kernel.services.authz_admin_service import AuthzAdminService
from signing_kernel.services.task_scheduler import TaskScheduler
from signing_kernel.utils.hashing import hash_payload, sha256_hex
from signing_services.adapters import (
    HmacTimestampAuthority,
    InMemoryObjectStore,
    InMemoryPki,
    RecordingNotifier,
)
from signing_services.event_stream import EventBroker, InstanceSubscription
from signing_services.instance_lock import InstanceLockRegistry
from signing_services.port_gateway import PortGateway
from signing_services.service_tasks import ServiceRegistry, ServiceTaskRunner
from signing_services.workflow_engine import WorkflowEngine

logger = get_logger("services.orchestrator")


@dataclass
class Ports:
    """External collaborators of the core."""

    object_store: ObjectStore
    timestamp_authority: TimestampAuthority | None = None
    notifier: Notifier | None = None
    pki: PkiService | None = None
    services: ServiceRegistry = field(default_factory=ServiceRegistry)

    @classmethod
    def in_memory(cls, clock: Clock | None = None, tsa_secret: bytes | None = None) -> Ports:
        """Reference adapters for tests and single-process deployments."""
        return cls(
            object_store=InMemoryObjectStore(),
            timestamp_authority=HmacTimestampAuthority(tsa_secret or secrets.token_bytes(32), clock),
            notifier=RecordingNotifier(),
            pki=InMemoryPki(),
        )


@dataclass
class UnitOfWork:
    """Kernel services bound to one transaction."""

    session: Session
    auditor: AuditorService
    admin: AuthzAdminService
    scheduler: TaskScheduler
    engine: WorkflowEngine


class SigningOrchestrator:
    """
    Facade over the workflow engine, task scheduler, ADP and audit log.

    Contract:
        Each public operation runs ADP mediation, then at most one
        transaction, and returns frozen DTOs.

    Guarantees:
        - Kernel services are built per transaction from shared, stateless
          collaborators (clock, gateway, ADP, ports).
        - Definitions are immutable once registered, so they are cached
          by (workflow_id, version).

    Non-goals:
        - Does NOT authenticate callers; ``actor`` is trusted input.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        ports: Ports,
        settings: OrchestratorSettings | None = None,
        clock: Clock | None = None,
        authorizer: AuthorizationService | None = None,
        locks: InstanceLockRegistry | None = None,
        broker: EventBroker | None = None,
        gateway: PortGateway | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings or OrchestratorSettings()
        self.clock = clock or SystemClock()
        self.ports = ports
        self.gateway = gateway if gateway is not None else PortGateway(self.settings.port_timeout_seconds)
        self.authorizer = authorizer or AuthorizationService(
            session_factory,
            self.clock,
            cache=DecisionCache(
                ttl_seconds=self.settings.authz_cache_ttl_seconds,
                max_entries=self.settings.authz_cache_max_entries,
                clock=self.clock,
            ),
            allowed_sample_every=self.settings.allowed_sample_every,
        )
        self.locks = locks if locks is not None else InstanceLockRegistry()
        self.broker = broker if broker is not None else EventBroker()
        self.runner = ServiceTaskRunner(
            ports.services,
            self.gateway,
            base_delay=self.settings.service_retry_base_delay_seconds,
            max_delay=self.settings.service_retry_max_delay_seconds,
            max_total_delay=self.settings.service_retry_total_delay_seconds,
        )
        self._definitions: dict[tuple[str, int], WorkflowDefinition] = {}
        self._definitions_lock = threading.Lock()

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _store_signature(self, key: str, data: bytes) -> str:
        return self.gateway.call("object_store", "put", self.ports.object_store.put, key, data)

    def _verify_timestamp(self, token: TimestampToken, digest: str) -> bool:
        tsa = self.ports.timestamp_authority
        return bool(self.gateway.call("timestamp_authority", "verify", tsa.verify, token, digest))

    def _unit(self, session: Session) -> UnitOfWork:
        auditor = AuditorService(session, self.clock)
        admin = AuthzAdminService(session, cache=self.authorizer.cache, clock=self.clock)

        def assignee_relationship(task: TaskModel) -> None:
            admin.add_relationship(
                RelationshipTriple(task.assignee_id, Relations.TASK_ASSIGNEE, str(task.id), ResourceTypes.TASK)
            )

        scheduler = TaskScheduler(
            session,
            auditor,
            self.clock,
            store_signature=self._store_signature,
            verify_timestamp=self._verify_timestamp if self.ports.timestamp_authority else None,
            trusted_issuers=self.settings.trusted_issuers,
            on_assigned=assignee_relationship,
        )
        engine = WorkflowEngine(
            auditor,
            scheduler,
            self.clock,
            gateway=self.gateway,
            notifier=self.ports.notifier,
            runner=self.runner,
            default_channel=self.settings.notification_channel,
        )
        return UnitOfWork(session, auditor, admin, scheduler, engine)

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[UnitOfWork]:
        session = self._session_factory()
        unit = self._unit(session)
        try:
            yield unit
            session.commit()
        except RequirementUnmetError:
            session.commit()
            self.broker.publish(unit.auditor.appended)
            raise
        except (StaleDataError, IntegrityError) as exc:
            session.rollback()
            logger.warning("transaction_conflict", extra={"operation": operation}, exc_info=True)
            raise ConcurrencyConflictError("transaction", operation) from exc
        except SigningKernelError as exc:
            session.rollback()
            logger.warning(
                "transaction_rolled_back",
                extra={"operation": operation, "error_code": exc.code},
            )
            raise
        except Exception as exc:
            session.rollback()
            logger.critical("operation_failed", extra={"operation": operation}, exc_info=True)
            raise InternalError(f"{operation} failed: {exc}") from exc
        finally:
            session.close()
        self.broker.publish(unit.auditor.appended)

    @contextmanager
    def instance_transaction(self, instance_id: UUID | str, operation: str) -> Iterator[UnitOfWork]:
        """Lock an instance and open a transaction (system operations)."""
        with self.locks.hold(instance_id), self._transaction(operation) as unit:
            yield unit

    @contextmanager
    def administration(self) -> Iterator[AuthzAdminService]:
        """Transaction over the authorization stores."""
        with self._transaction("administration") as unit:
            yield unit.admin

    def install_policy_pack(self, pack: PolicyPack) -> dict[str, int]:
        with self.administration() as admin:
            return admin.install_policy_pack(pack)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def load_definition(self, session: Session, workflow_id: str, version: int) -> WorkflowDefinition:
        key = (workflow_id, version)
        with self._definitions_lock:
            cached = self._definitions.get(key)
        if cached is not None:
            return cached
        definition = WorkflowSelector(session).get_definition(workflow_id, version)
        with self._definitions_lock:
            self._definitions[key] = definition
        return definition

    def load_instance(self, session: Session, instance_id: UUID | str) -> WorkflowInstanceModel:
        instance = session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.id == _uuid(instance_id, "instance_id"))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        return instance

    def _read_instance(self, instance_id: UUID | str) -> InstanceRecord:
        with self._session_factory() as session:
            return WorkflowSelector(session).get_instance(_uuid(instance_id, "instance_id"))

    def _read_task(self, task_id: UUID | str) -> tuple[TaskRecord, InstanceRecord, WorkflowDefinition]:
        with self._session_factory() as session:
            task = TaskSelector(session).get(_uuid(task_id, "task_id"))
            instance = WorkflowSelector(session).get_instance(task.instance_id)
            definition = self.load_definition(session, instance.workflow_id, instance.workflow_version)
        return task, instance, definition

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, request: AuthzRequest) -> AuthzDecision:
        """ADP decision; never raises."""
        return self.authorizer.authorize(request)

    def _enforce(
        self,
        actor: str,
        action: str,
        resource: str,
        resource_type: str,
        resource_attrs: Mapping[str, Any] | None = None,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> AuthzDecision:
        decision = self.authorizer.authorize(
            AuthzRequest(
                subject=actor,
                action=action,
                resource=str(resource),
                resource_type=resource_type,
                user_attrs=dict(actor_attrs or {}),
                resource_attrs=dict(resource_attrs or {}),
                client_info={k: v for k, v in (client_info or {}).items() if v is not None},
            )
        )
        if not decision.allowed:
            raise AuthorizationDeniedError(
                actor, action, str(resource), decision.reason, list(decision.matched_policies)
            )
        return decision

    @staticmethod
    def _instance_attrs(instance: InstanceRecord) -> dict[str, Any]:
        return {
            "organization_id": instance.organization_id,
            "workflow_id": instance.workflow_id,
            "status": instance.status.value,
            "initiated_by": instance.initiated_by,
        }

    @staticmethod
    def _task_attrs(task: TaskRecord, instance: InstanceRecord, definition: WorkflowDefinition) -> dict[str, Any]:
        attrs: dict[str, Any] = {
            "organization_id": instance.organization_id,
            "workflow_id": instance.workflow_id,
            "instance_id": str(instance.instance_id),
            "node_id": task.node_id,
            "kind": task.kind.value,
            "status": task.status.value,
            "assignee_id": task.assignee.id if task.assignee else None,
        }
        delegators = definition.node(task.node_id).config.get("allowed_delegators")
        if delegators is not None:
            attrs["allowed_delegators"] = list(delegators)
        return attrs

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def create_workflow_definition(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        actor: str | None = None,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> DefinitionRef:
        """
        Validate and register the next version of a definition.

        Raises:
            WorkflowValidationError / ConfigurationError: invalid definition.
            AuthorizationDeniedError: ``definition:create`` denied.
        """
        if not isinstance(definition, WorkflowDefinition):
            definition = parse_workflow_definition(definition)
        actor = actor or definition.created_by
        self._enforce(
            actor,
            Actions.DEFINITION_CREATE,
            definition.organization_id,
            ResourceTypes.ORGANIZATION,
            {"organization_id": definition.organization_id, "workflow_id": definition.workflow_id},
            actor_attrs,
            client_info,
        )
        assert_valid(definition)

        with LogContext.bind(workflow_id=definition.workflow_id, actor_id=actor):
            with self.locks.hold(f"definition:{definition.workflow_id}"), \
                    self._transaction("create_workflow_definition") as unit:
                version = WorkflowSelector(unit.session).latest_version(definition.workflow_id) + 1
                versioned = definition.with_version(version)
                data = versioned.to_dict()
                definition_hash = hash_payload(data)
                unit.session.add(
                    WorkflowDefinitionModel(
                        workflow_id=versioned.workflow_id,
                        version=version,
                        name=versioned.name,
                        organization_id=versioned.organization_id,
                        created_by=actor,
                        definition=data,
                        definition_hash=definition_hash,
                        created_at=self.clock.now(),
                    )
                )
                unit.session.flush()
                unit.auditor.record(
                    SYSTEM_CHAIN,
                    AuditAction.DEFINITION_REGISTERED,
                    actor,
                    details={
                        "workflow_id": versioned.workflow_id,
                        "version": version,
                        "definition_hash": definition_hash,
                        "nodes": len(versioned.nodes),
                    },
                )
            logger.info(
                "definition_registered",
                extra={"workflow_id": definition.workflow_id, "version": version},
            )
        return DefinitionRef(definition.workflow_id, version)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def start_workflow(
        self,
        workflow_id: str,
        context: Mapping[str, Any] | None,
        initiated_by: str,
        version: int | None = None,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> StartResult:
        """
        Start an instance of a registered definition.

        ``context`` may hold ``participants`` (Participant or dicts),
        ``documents`` (dicts with ``name`` and ``content`` bytes, or an
        already stored ``uri``) and ``variables``.

        Raises:
            WorkflowDefinitionNotFoundError: unknown workflow / version.
            AuthorizationDeniedError: ``workflow:start`` denied.
            InvalidInputError: malformed participants, documents or
                missing required variables.
        """
        context = dict(context or {})
        with self._session_factory() as session:
            row = WorkflowSelector(session).definition_row(workflow_id, version)
            definition = self.load_definition(session, row.workflow_id, row.version)
            definition_hash = row.definition_hash

        self._enforce(
            initiated_by,
            Actions.WORKFLOW_START,
            workflow_id,
            ResourceTypes.WORKFLOW_DEFINITION,
            {
                "organization_id": definition.organization_id,
                "workflow_id": workflow_id,
                "version": definition.version,
            },
            actor_attrs,
            client_info,
        )

        participants = _participants(context.get("participants") or ())
        variables = {**definition.default_variables(), **dict(context.get("variables") or {})}
        missing = [v.name for v in definition.variables if v.required and variables.get(v.name) is None]
        if missing:
            raise InvalidInputError("variables", f"required variables missing: {', '.join(missing)}")

        instance_id = uuid4()
        documents = self._store_documents(instance_id, context.get("documents") or ())
        now = self.clock.now()
        max_seconds = definition.settings.max_execution_seconds

        with LogContext.bind(instance_id=instance_id, workflow_id=workflow_id, actor_id=initiated_by):
            try:
                with self.instance_transaction(instance_id, "start_workflow") as unit:
                    instance = WorkflowInstanceModel(
                        id=instance_id,
                        workflow_id=definition.workflow_id,
                        workflow_version=definition.version,
                        definition_hash=definition_hash,
                        organization_id=definition.organization_id,
                        status=InstanceStatus.RUNNING.value,
                        initiated_by=initiated_by,
                        current_nodes=[],
                        variables=variables,
                        regions=[],
                        passed_nodes=[],
                        node_visits={},
                        participants=[p.to_dict() for p in participants],
                        documents=documents,
                        deadline=now + timedelta(seconds=max_seconds) if max_seconds else None,
                        started_at=now,
                        predicted_duration_seconds=predict_duration(definition),
                    )
                    unit.session.add(instance)
                    unit.session.flush()
                    unit.auditor.record(
                        str(instance_id),
                        AuditAction.WORKFLOW_CREATED,
                        initiated_by,
                        instance_id=instance_id,
                        details={
                            "workflow_id": definition.workflow_id,
                            "version": definition.version,
                            "definition_hash": definition_hash,
                            "participants": [p.id for p in participants],
                            "documents": [d["document_id"] for d in documents],
                        },
                    )
                    self._relate_instance(unit.admin, instance, participants, documents)
                    starting = unit.engine.start(instance, definition, initiated_by)
                    self._relate_signers(unit.admin, instance, documents)
            except SigningKernelError:
                self._discard_documents(documents)
                raise

        logger.info(
            "workflow_started",
            extra={"instance_id": str(instance_id), "workflow_id": workflow_id, "starting_nodes": starting},
        )
        return StartResult(instance_id=instance_id, starting_nodes=tuple(starting))

    def _store_documents(self, instance_id: UUID, documents: Any) -> list[dict[str, Any]]:
        stored: list[dict[str, Any]] = []
        try:
            for index, document in enumerate(documents):
                document = dict(document)
                document_id = str(document.get("document_id") or uuid4())
                name = str(document.get("name") or f"document-{index + 1}")
                record: dict[str, Any] = {
                    "document_id": document_id,
                    "name": name,
                    "content_type": document.get("content_type"),
                }
                content = document.get("content")
                if content is not None:
                    if isinstance(content, str):
                        content = content.encode("utf-8")
                    record["uri"] = self.gateway.call(
                        "object_store",
                        "put",
                        self.ports.object_store.put,
                        f"documents/{instance_id}/{document_id}/{name}",
                        content,
                    )
                    record["digest"] = sha256_hex(content)
                    record["size"] = len(content)
                    record["stored"] = True
                elif document.get("uri"):
                    record["uri"] = str(document["uri"])
                    record["digest"] = document.get("digest")
                else:
                    raise InvalidInputError("documents", f"document {name!r} has neither content nor uri")
                stored.append(record)
        except SigningKernelError:
            self._discard_documents(stored)
            raise
        return stored

    def _discard_documents(self, documents: list[dict[str, Any]]) -> None:
        for document in documents:
            if not document.get("stored"):
                continue
            try:
                self.gateway.call("object_store", "delete", self.ports.object_store.delete, document["uri"])
            except SigningKernelError:
                logger.warning(
                    "document_cleanup_failed",
                    extra={"document_id": document["document_id"], "uri": document["uri"]},
                    exc_info=True,
                )

    def _relate_instance(
        self,
        admin: AuthzAdminService,
        instance: WorkflowInstanceModel,
        participants: list[Participant],
        documents: list[dict[str, Any]],
    ) -> None:
        instance_key = str(instance.id)
        admin.add_relationship(
            RelationshipTriple(
                instance.initiated_by, Relations.WORKFLOW_INITIATOR, instance_key, ResourceTypes.WORKFLOW_INSTANCE
            )
        )
        for participant in participants:
            admin.add_relationship(
                RelationshipTriple(
                    participant.id, Relations.WORKFLOW_PARTICIPANT, instance_key, ResourceTypes.WORKFLOW_INSTANCE
                )
            )
        for document in documents:
            admin.add_relationship(
                RelationshipTriple(
                    instance.initiated_by, Relations.DOCUMENT_OWNER, document["document_id"], ResourceTypes.DOCUMENT
                )
            )

    def _relate_signers(
        self,
        admin: AuthzAdminService,
        instance: WorkflowInstanceModel,
        documents: list[dict[str, Any]],
    ) -> None:
        signers = sorted({
            t.assignee_id for t in instance.tasks
            if t.kind == TaskKind.SIGNATURE.value and t.assignee_id
        })
        for document in documents:
            for signer in signers:
                admin.add_relationship(
                    RelationshipTriple(signer, Relations.DOCUMENT_SIGNER, document["document_id"], ResourceTypes.DOCUMENT)
                )

    def cancel_workflow(
        self,
        instance_id: UUID | str,
        reason: str,
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> InstanceRecord:
        """
        Cancel a running instance and all its non-terminal tasks.

        Raises:
            InstanceNotRunningError: the instance already finished.
        """
        record = self._read_instance(instance_id)
        self._enforce(
            actor,
            Actions.WORKFLOW_CANCEL,
            str(record.instance_id),
            ResourceTypes.WORKFLOW_INSTANCE,
            self._instance_attrs(record),
            actor_attrs,
            client_info,
        )
        with LogContext.bind(instance_id=record.instance_id, actor_id=actor):
            with self.instance_transaction(record.instance_id, "cancel_workflow") as unit:
                instance = self.load_instance(unit.session, record.instance_id)
                unit.engine.cancel(instance, reason, actor)
                result = instance.to_dto()
        return result

    def get_workflow(
        self,
        instance_id: UUID | str,
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> InstanceView:
        record = self._read_instance(instance_id)
        self._enforce(
            actor,
            Actions.WORKFLOW_READ,
            str(record.instance_id),
            ResourceTypes.WORKFLOW_INSTANCE,
            self._instance_attrs(record),
            actor_attrs,
            client_info,
        )
        with self._session_factory() as session:
            return WorkflowSelector(session).get_view(record.instance_id)

    def subscribe_instance(
        self,
        instance_id: UUID | str,
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> InstanceSubscription:
        """Replay of the instance chain followed by events committed later."""
        record = self._read_instance(instance_id)
        self._enforce(
            actor,
            Actions.WORKFLOW_READ,
            str(record.instance_id),
            ResourceTypes.WORKFLOW_INSTANCE,
            self._instance_attrs(record),
            actor_attrs,
            client_info,
        )
        subscription = self.broker.subscribe(record.instance_id)
        with self._session_factory() as session:
            subscription.prime(AuditorService(session, self.clock).get_trace(record.instance_id).events)
        return subscription

    def get_audit_trail(
        self,
        instance_id: UUID | str,
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> AuditTrail:
        """Instance chain with its verification result."""
        record = self._read_instance(instance_id)
        self._enforce(
            actor,
            Actions.WORKFLOW_AUDIT,
            str(record.instance_id),
            ResourceTypes.WORKFLOW_INSTANCE,
            self._instance_attrs(record),
            actor_attrs,
            client_info,
        )
        with self._session_factory() as session:
            trace = AuditorService(session, self.clock).get_trace(record.instance_id)
        broken = find_chain_break(trace.events, trace.genesis_hash)
        if broken is not None:
            logger.critical(
                "audit_chain_broken",
                extra={"chain_key": trace.chain_key, "seq": broken.seq},
            )
        return AuditTrail(instance_id=record.instance_id, events=trace.events, verified=broken is None)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def begin_task(
        self,
        task_id: UUID | str,
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> TaskRecord:
        task, instance, definition = self._read_task(task_id)
        self._enforce(
            actor,
            Actions.TASK_COMPLETE,
            str(task.task_id),
            ResourceTypes.TASK,
            self._task_attrs(task, instance, definition),
            actor_attrs,
            client_info,
        )
        with LogContext.bind(instance_id=instance.instance_id, task_id=task.task_id, actor_id=actor):
            with self.instance_transaction(instance.instance_id, "begin_task") as unit:
                row = unit.scheduler.load(task.task_id, for_update=True)
                unit.scheduler.begin(row, actor)
                result = row.to_dto()
        return result

    def complete_task(
        self,
        task_id: UUID | str,
        evidence: Evidence | Mapping[str, Any],
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> CompletionResult:
        """
        Complete a human task with evidence and advance the instance.

        Idempotent on (task_id, evidence digest): a repeated call returns
        the stored result and appends nothing to the instance chain.

        Raises:
            TaskNotFoundError, InvalidTaskStateError, InstanceNotRunningError,
            EvidenceMismatchError, RequirementUnmetError,
            AuthorizationDeniedError.
        """
        if not isinstance(evidence, Evidence):
            evidence = Evidence.from_dict(dict(evidence))
        task, instance, definition = self._read_task(task_id)
        client_info = client_info or {"ip_address": evidence.client_ip, "user_agent": evidence.user_agent}
        self._enforce(
            actor,
            Actions.TASK_COMPLETE,
            str(task.task_id),
            ResourceTypes.TASK,
            self._task_attrs(task, instance, definition),
            actor_attrs,
            client_info,
        )
        with LogContext.bind(instance_id=instance.instance_id, task_id=task.task_id, actor_id=actor):
            with self.instance_transaction(instance.instance_id, "complete_task") as unit:
                row = unit.scheduler.load(task.task_id, for_update=True)
                outcome = unit.scheduler.complete(row, evidence, actor)
                if outcome.replayed:
                    return CompletionResult(
                        task=row.to_dto(),
                        newly_pending=tuple(t.to_dto() for t in outcome.newly_pending),
                    )
                model = row.instance
                unit.engine.on_task_completed(model, definition, row, actor, evidence)
                newly_pending: list[TaskModel] = []
                for promoted in unit.scheduler.promoted:
                    if promoted is row or promoted in newly_pending:
                        continue
                    if promoted.status == TaskStatus.PENDING.value:
                        newly_pending.append(promoted)
                row.newly_pending_ids = [str(t.id) for t in newly_pending]
                unit.session.flush()
                result = CompletionResult(
                    task=row.to_dto(),
                    newly_pending=tuple(t.to_dto() for t in newly_pending),
                )
        return result

    def delegate_task(
        self,
        task_id: UUID | str,
        new_assignee: Participant | Mapping[str, Any] | str,
        actor: str,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> DelegationResult:
        """
        Hand a task to another participant.

        Raises:
            AuthorizationDeniedError: ``task:delegate`` denied.
            DelegationNotAllowedError: the task's requirements forbid it.
        """
        assignee = _participants([new_assignee])[0]
        task, instance, definition = self._read_task(task_id)
        self._enforce(
            actor,
            Actions.TASK_DELEGATE,
            str(task.task_id),
            ResourceTypes.TASK,
            self._task_attrs(task, instance, definition),
            actor_attrs,
            client_info,
        )
        with LogContext.bind(instance_id=instance.instance_id, task_id=task.task_id, actor_id=actor):
            with self.instance_transaction(instance.instance_id, "delegate_task") as unit:
                row = unit.scheduler.load(task.task_id, for_update=True)
                previous_assignee = row.assignee_id
                old, new = unit.scheduler.delegate(row, assignee, actor)
                if previous_assignee:
                    unit.admin.remove_relationship(
                        RelationshipTriple(
                            previous_assignee, Relations.TASK_ASSIGNEE, str(old.id), ResourceTypes.TASK
                        )
                    )
                model = row.instance
                unit.admin.add_relationship(
                    RelationshipTriple(
                        assignee.id, Relations.WORKFLOW_PARTICIPANT, str(model.id), ResourceTypes.WORKFLOW_INSTANCE
                    )
                )
                if all(p.get("id") != assignee.id for p in model.participants or ()):
                    model.participants = list(model.participants or ()) + [assignee.to_dict()]
                unit.session.flush()
                result = DelegationResult(old_task=old.to_dto(), new_task=new.to_dto())
        return result

    def list_user_tasks(
        self,
        user_id: str,
        actor: str,
        filters: TaskFilters | None = None,
        *,
        actor_attrs: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> list[TaskRecord]:
        """Inbox of ``user_id``, ordered by due date."""
        self._enforce(
            actor,
            Actions.TASK_LIST,
            user_id,
            ResourceTypes.USER,
            None,
            actor_attrs,
            client_info,
        )
        with self._session_factory() as session:
            return TaskSelector(session).list_user_tasks(user_id, filters)

    def shutdown(self) -> None:
        self.gateway.shutdown()


# =========================================================================
# Helpers
# =========================================================================


def _uuid(value: UUID | str, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidInputError(field_name, f"{value!r} is not a valid id") from None


def _participants(values: Any) -> list[Participant]:
    participants: list[Participant] = []
    for value in values:
        if isinstance(value, Participant):
            participant = value
        elif isinstance(value, str):
            participant = Participant(id=value)
        elif isinstance(value, Mapping):
            participant = Participant.from_dict(dict(value))
        else:
            raise InvalidInputError("participants", f"unsupported participant {value!r}")
        if not participant.id:
            raise InvalidInputError("participants", "participant id must not be empty")
        participants.append(participant)
    ids = [p.id for p in participants]
    if len(set(ids)) != len(ids):
        raise InvalidInputError("participants", "participant ids must be unique")
    return participants


def build_orchestrator(
    settings: OrchestratorSettings | None = None,
    *,
    ports: Ports | None = None,
    clock: Clock | None = None,
    session_factory: sessionmaker[Session] | None = None,
    policy_pack: PolicyPack | None = None,
    install_policies: bool = True,
    create_schema: bool = True,
) -> SigningOrchestrator:
    """Build a SigningOrchestrator from configuration (single entrypoint for production).

    Args:
        settings: Orchestrator settings; default ``get_settings()``.
        ports: Port bindings; default in-memory reference adapters.
        clock: Optional clock; default SystemClock.
        session_factory: Existing session factory; default one bound to
            ``settings.database_url``.
        policy_pack: Pack to install; default the shipped policy pack.
        install_policies: Install the pack (idempotent).
        create_schema: Create missing tables.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    if session_factory is None:
        engine = init_engine_from_url(settings.database_url)
        if create_schema:
            create_tables(engine)
        session_factory = get_session_factory()
    orchestrator = SigningOrchestrator(
        session_factory,
        ports=ports or Ports.in_memory(clock),
        settings=settings,
        clock=clock,
    )
    if install_policies:
        summary = orchestrator.install_policy_pack(policy_pack or get_policy_pack())
        logger.info("orchestrator_ready", extra=summary)
    return orchestrator
