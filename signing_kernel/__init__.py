"""
Signing Kernel

Durable core of the signing workflow orchestrator:
- Append-only, hash-chained audit log per workflow instance
- Task state machine with write-once evidence
- Authorization decision point (RBAC, ReBAC, ABAC, hybrid) with a decision cache
- Injected clock, ports for external systems
"""

__version__ = "0.1.0"
