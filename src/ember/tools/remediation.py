"""verify_remediation tool: move a finding through its remediation lifecycle."""

from __future__ import annotations

import asyncio

import structlog

from ember.config.context import RunContext
from ember.core.errors import ValidationError
from ember.memory.database import get_store
from ember.memory.models import RemediationStatus
from ember.tools.base import ToolResult, handle_tool_errors

logger = structlog.get_logger(__name__)

# Reopening is a re-discovery, not a verification outcome.
VERIFIABLE_STATUSES: tuple[str, ...] = (
    RemediationStatus.FIXED.value,
    RemediationStatus.VERIFIED.value,
    RemediationStatus.FALSE_POSITIVE.value,
    RemediationStatus.WONT_FIX.value,
)


@handle_tool_errors("verify_remediation")
async def verify_remediation(
    context: RunContext,
    vulnerability_id: str,
    new_status: str,
    hostname: str | None = None,
    verification_method: str | None = None,
    notes: str | None = None,
) -> ToolResult:
    """
    Change a finding's remediation status and record the history entry.

    Args:
        context: Current run.
        vulnerability_id: Identity hash of the finding.
        new_status: One of fixed, verified, false_positive, wont_fix.
        hostname: Target hostname; defaults to the run's hostname.
        verification_method: How the fix was checked.
        notes: Free-form notes.
    """
    if new_status not in VERIFIABLE_STATUSES:
        raise ValidationError(
            f"Invalid new_status '{new_status}'. Expected one of: {', '.join(VERIFIABLE_STATUSES)}",
            context={"new_status": new_status},
        )

    store = get_store(hostname or context.hostname, context.settings.exploit_memory.db_dir)
    updated, history = await asyncio.to_thread(
        store.transition_status,
        vulnerability_id,
        new_status,
        verification_method,
        notes,
    )
    old_status = history["old_status"]

    return ToolResult(
        success=True,
        output=f"Vulnerability remediation verified: {old_status} → {new_status}",
        data={
            "vulnerability_id": vulnerability_id,
            "old_status": old_status,
            "new_status": new_status,
            "history_id": history["id"],
            "vulnerability": {
                key: updated[key]
                for key in (
                    "id",
                    "vuln_type",
                    "source",
                    "path",
                    "confidence",
                    "remediation_status",
                    "last_verified_at",
                )
            },
        },
    )
