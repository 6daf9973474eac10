"""Services for the signing kernel (write side)."""

from signing_kernel.services.auditor_service import AuditorService, AuditTrace
from signing_kernel.services.authorization_service import AuthorizationService, DecisionCache
from signing_kernel.services.authz_admin_service import AuthzAdminService
from signing_kernel.services.task_scheduler import CompletionOutcome, TaskScheduler

__all__ = [
    "AuditTrace",
    "AuditorService",
    "AuthorizationService",
    "AuthzAdminService",
    "CompletionOutcome",
    "DecisionCache",
    "TaskScheduler",
]
