"""
Crash-safe audit trail.

Append-only per-attempt event logs, atomically persisted session metrics,
and the AuditSession facade that serializes writes to them.
"""

from ember.audit.logger import AgentLogger, read_agent_log
from ember.audit.metrics import MetricsTracker, load_audit_record
from ember.audit.models import AgentStatus, AttemptResult, AuditRecord
from ember.audit.paths import AuditPaths, find_session_files
from ember.audit.session import AuditSession

__all__ = [
    "AgentLogger",
    "AgentStatus",
    "AttemptResult",
    "AuditPaths",
    "AuditRecord",
    "AuditSession",
    "MetricsTracker",
    "find_session_files",
    "load_audit_record",
    "read_agent_log",
]
