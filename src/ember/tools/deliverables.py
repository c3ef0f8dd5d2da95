"""
save_deliverable tool.

Writes an agent's deliverable into the workspace's deliverables folder.
Exploitation queues are validated before they are written and their
findings are recorded in exploit memory; exploitation evidence is scanned
for credentials.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ember.config.context import RunContext
from ember.core.agents import VULN_TYPES
from ember.core.errors import PentestError, ValidationError
from ember.core.validators import (
    analysis_deliverable_name,
    exploitation_evidence_name,
    exploitation_queue_name,
    validate_queue_json,
)
from ember.memory.credentials import extract_credentials, normalize_credential
from ember.memory.database import EXPLOITATION_DATA_FIELDS, get_store
from ember.memory.deduplicator import DEFAULT_CONFIDENCE, generate_identity_hash
from ember.tools.base import ToolResult, handle_tool_errors
from ember.utils.files import atomic_write_text

logger = structlog.get_logger(__name__)


class DeliverableType(str, Enum):
    """Deliverables an agent can save."""

    CODE_ANALYSIS = "CODE_ANALYSIS"
    RECON = "RECON"
    INJECTION_ANALYSIS = "INJECTION_ANALYSIS"
    INJECTION_QUEUE = "INJECTION_QUEUE"
    INJECTION_EVIDENCE = "INJECTION_EVIDENCE"
    XSS_ANALYSIS = "XSS_ANALYSIS"
    XSS_QUEUE = "XSS_QUEUE"
    XSS_EVIDENCE = "XSS_EVIDENCE"
    AUTH_ANALYSIS = "AUTH_ANALYSIS"
    AUTH_QUEUE = "AUTH_QUEUE"
    AUTH_EVIDENCE = "AUTH_EVIDENCE"
    SSRF_ANALYSIS = "SSRF_ANALYSIS"
    SSRF_QUEUE = "SSRF_QUEUE"
    SSRF_EVIDENCE = "SSRF_EVIDENCE"
    AUTHZ_ANALYSIS = "AUTHZ_ANALYSIS"
    AUTHZ_QUEUE = "AUTHZ_QUEUE"
    AUTHZ_EVIDENCE = "AUTHZ_EVIDENCE"
    REPORT = "REPORT"

    @property
    def is_queue(self) -> bool:
        return self.value.endswith("_QUEUE")

    @property
    def is_evidence(self) -> bool:
        return self.value.endswith("_EVIDENCE")

    @property
    def vuln_type(self) -> str | None:
        prefix = self.value.split("_", 1)[0].lower()
        return prefix if prefix in VULN_TYPES else None


def _build_filenames() -> dict[DeliverableType, str]:
    filenames = {
        DeliverableType.CODE_ANALYSIS: "code_analysis_deliverable.md",
        DeliverableType.RECON: "recon_deliverable.md",
        DeliverableType.REPORT: "comprehensive_security_assessment_report.md",
    }
    for vuln_type in VULN_TYPES:
        prefix = vuln_type.upper()
        filenames[DeliverableType(f"{prefix}_ANALYSIS")] = analysis_deliverable_name(vuln_type)
        filenames[DeliverableType(f"{prefix}_QUEUE")] = exploitation_queue_name(vuln_type)
        filenames[DeliverableType(f"{prefix}_EVIDENCE")] = exploitation_evidence_name(vuln_type)
    return filenames


DELIVERABLE_FILENAMES: dict[DeliverableType, str] = _build_filenames()


def vulnerability_payload(
    hostname: str,
    vuln: dict[str, Any],
    default_vuln_type: str | None = None,
) -> dict[str, Any]:
    """Map a queue entry onto the exploit memory finding layout."""
    return {
        "hostname": hostname,
        "vuln_type": vuln.get("type") or vuln.get("vuln_type") or default_vuln_type or "unknown",
        "source": vuln.get("source") or "unknown",
        "path": vuln.get("location") or vuln.get("path") or "unknown",
        "sink_call": vuln.get("sink") or vuln.get("sink_call"),
        "confidence": vuln.get("confidence") or DEFAULT_CONFIDENCE,
        "exploitation_data": {key: vuln.get(key) for key in EXPLOITATION_DATA_FIELDS},
    }


def save_vulnerabilities(context: RunContext, vulnerabilities: list[Any], default_vuln_type: str | None) -> int:
    """
    Record queue entries in exploit memory.

    A finding that cannot be stored is logged and skipped; the deliverable
    itself is already on disk at this point.

    Returns:
        Number of findings stored.
    """
    memory = context.settings.exploit_memory
    store = get_store(context.hostname, memory.db_dir)
    store.upsert_application()

    saved = 0
    for vuln in vulnerabilities:
        if not isinstance(vuln, dict):
            logger.warning("queue_entry_skipped", reason="not an object", hostname=context.hostname)
            continue
        payload = vulnerability_payload(context.hostname, vuln, default_vuln_type)
        try:
            vuln_id = generate_identity_hash(payload, memory.deduplication_strategy)
            store.upsert_vulnerability({"id": vuln_id, "session_id": context.session_id, **payload})
        except (PentestError, SQLAlchemyError, ValueError) as e:
            logger.warning("vulnerability_not_saved", hostname=context.hostname, error=str(e))
            continue
        saved += 1
    return saved


def save_credentials(context: RunContext, content: str) -> int:
    """Extract credentials from evidence text and record them. Returns how many were found."""
    credentials = extract_credentials(content, f"evidence_{context.session_id}")
    if not credentials:
        return 0

    store = get_store(context.hostname, context.settings.exploit_memory.db_dir)
    store.upsert_application()
    for credential in credentials:
        try:
            store.record_credentials(normalize_credential(credential, context.hostname))
        except SQLAlchemyError as e:
            logger.warning("credential_not_saved", hostname=context.hostname, error=str(e))
    logger.info("credentials_saved", hostname=context.hostname, count=len(credentials))
    return len(credentials)


@handle_tool_errors("save_deliverable")
async def save_deliverable(context: RunContext, deliverable_type: str, content: str) -> ToolResult:
    """
    Save a deliverable file, validating exploitation queues first.

    Args:
        context: Current run.
        deliverable_type: A DeliverableType value.
        content: Markdown for analyses/evidence, JSON for queues.
    """
    try:
        kind = DeliverableType(deliverable_type)
    except ValueError:
        raise ValidationError(
            f"Unknown deliverable type: {deliverable_type}",
            context={"valid_types": [t.value for t in DeliverableType]},
        ) from None
    if not content:
        raise ValidationError("Deliverable content must not be empty", context={"deliverableType": kind.value})

    queue_data: dict[str, Any] | None = None
    if kind.is_queue:
        valid, message, queue_data = validate_queue_json(content)
        if not valid:
            raise ValidationError(
                message or "Invalid queue",
                context={"deliverableType": kind.value, "expectedFormat": '{"vulnerabilities": [...]}'},
            )

    filename = DELIVERABLE_FILENAMES[kind]
    filepath = context.deliverables_dir / filename
    await asyncio.to_thread(atomic_write_text, filepath, content)
    logger.info("deliverable_saved", deliverable_type=kind.value, file=str(filepath))

    data: dict[str, Any] = {
        "filepath": str(filepath),
        "deliverableType": kind.value,
        "validated": kind.is_queue,
    }

    if context.settings.exploit_memory.enabled:
        if queue_data is not None and queue_data["vulnerabilities"]:
            data["exploit_memory_saved"] = await asyncio.to_thread(
                save_vulnerabilities, context, queue_data["vulnerabilities"], kind.vuln_type
            )
        if kind.is_evidence:
            data["credentials_found"] = await asyncio.to_thread(save_credentials, context, content)

    return ToolResult(
        success=True,
        output=f"Deliverable saved successfully: {filename}",
        data=data,
        artifacts=[str(filepath)],
    )


def deliverable_schema() -> dict[str, Any]:
    """JSON schema of the tool input, for executors that advertise tools."""
    return {
        "type": "object",
        "properties": {
            "deliverable_type": {
                "type": "string",
                "enum": [t.value for t in DeliverableType],
                "description": "Type of deliverable to save",
            },
            "content": {
                "type": "string",
                "minLength": 1,
                "description": "File content (markdown for analysis/evidence, JSON for queues)",
            },
        },
        "required": ["deliverable_type", "content"],
    }

