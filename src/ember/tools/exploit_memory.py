"""
Exploit memory tools.

``save_exploit_result`` records a finding together with one exploitation
attempt; ``query_exploit_memory`` returns what earlier sessions learned about
a hostname. ``format_exploit_memory_context`` renders a query result as a
prompt section for the vulnerability and exploitation agents.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

import structlog

from ember.config.context import RunContext
from ember.core.errors import ValidationError
from ember.memory.database import EXPLOITATION_DATA_FIELDS, get_store
from ember.memory.deduplicator import DEFAULT_CONFIDENCE, generate_identity_hash
from ember.tools.base import ToolResult, handle_tool_errors

logger = structlog.get_logger(__name__)

MAX_VULNS_PER_TYPE = 5
MAX_PATTERNS = 3
MAX_CREDENTIALS = 5


def _save_result(
    context: RunContext,
    hostname: str,
    session_id: str | None,
    vulnerability: dict[str, Any],
    attempt: dict[str, Any],
) -> dict[str, Any]:
    memory = context.settings.exploit_memory
    store = get_store(hostname, memory.db_dir)
    store.upsert_application(vulnerability.get("tech_stack"))

    payload = {
        "hostname": hostname,
        "vuln_type": vulnerability["vuln_type"],
        "source": vulnerability["source"],
        "path": vulnerability["path"],
        "sink_call": vulnerability.get("sink_call"),
        "confidence": vulnerability.get("confidence") or DEFAULT_CONFIDENCE,
        "exploitation_data": {
            key: (vulnerability.get("exploitation_data") or {}).get(key) for key in EXPLOITATION_DATA_FIELDS
        },
    }
    vuln_id = generate_identity_hash(payload, memory.deduplication_strategy)
    record, created = store.upsert_vulnerability({"id": vuln_id, "session_id": session_id, **payload})

    success = bool(attempt.get("success"))
    technique = attempt.get("technique")
    attempt_id = store.record_exploit_attempt(
        vuln_id,
        success=success,
        session_id=session_id,
        technique=technique,
        payload=attempt.get("payload"),
        response_snippet=attempt.get("response_snippet"),
    )
    if success and technique:
        store.record_attack_pattern(
            f"{payload['vuln_type']}:{technique}",
            vuln_type=payload["vuln_type"],
            description=payload["exploitation_data"].get("description"),
            example_payload=attempt.get("payload"),
        )

    return {
        "vulnerability_id": vuln_id,
        "attempt_id": attempt_id,
        "created": created,
        "remediation_status": record["remediation_status"],
    }


@handle_tool_errors("save_exploit_result")
async def save_exploit_result(
    context: RunContext,
    vulnerability: dict[str, Any],
    exploitation_attempt: dict[str, Any],
    hostname: str | None = None,
    session_id: str | None = None,
) -> ToolResult:
    """
    Record a finding and one exploitation attempt against it.

    Args:
        context: Current run.
        vulnerability: vuln_type, source and path are required; sink_call,
            confidence and exploitation_data are optional.
        exploitation_attempt: success plus optional technique, payload and
            response_snippet.
        hostname: Target hostname; defaults to the run's hostname.
        session_id: Session that made the attempt; defaults to the run's session.
    """
    missing = [key for key in ("vuln_type", "source", "path") if not vulnerability.get(key)]
    if missing:
        raise ValidationError(
            f"Vulnerability is missing required fields: {', '.join(missing)}",
            context={"missing": missing},
        )
    if "success" not in exploitation_attempt:
        raise ValidationError("Exploitation attempt must include 'success'")

    target = hostname or context.hostname
    data = await asyncio.to_thread(
        _save_result,
        context,
        target,
        session_id or context.session_id,
        vulnerability,
        exploitation_attempt,
    )
    logger.info(
        "exploit_result_saved",
        hostname=target,
        vulnerability_id=data["vulnerability_id"][:12],
        created=data["created"],
        success=bool(exploitation_attempt.get("success")),
    )
    return ToolResult(
        success=True,
        output="Exploit result saved" if data["created"] else "Exploit result merged into existing vulnerability",
        data=data,
    )


def _query(
    context: RunContext,
    hostname: str,
    vuln_type: str | None,
    remediation_status: str | None,
    include_patterns: bool,
    include_credentials: bool,
    limit: int | None,
) -> dict[str, Any]:
    store = get_store(hostname, context.settings.exploit_memory.db_dir)
    vulnerabilities = store.query_vulnerabilities(
        vuln_type=vuln_type,
        remediation_status=remediation_status,
        include_attempts=True,
        limit=limit,
    )
    result: dict[str, Any] = {
        "hostname": hostname,
        "application": store.get_application(),
        "vulnerabilities": vulnerabilities,
        "attack_patterns": store.get_attack_patterns(vuln_type=vuln_type) if include_patterns else [],
        "credentials": store.get_credentials() if include_credentials else [],
    }
    result["counts"] = {
        "vulnerabilities": len(vulnerabilities),
        "attack_patterns": len(result["attack_patterns"]),
        "credentials": len(result["credentials"]),
    }
    return result


@handle_tool_errors("query_exploit_memory")
async def query_exploit_memory(
    context: RunContext,
    hostname: str | None = None,
    vuln_type: str | None = None,
    remediation_status: str | None = None,
    include_patterns: bool = True,
    include_credentials: bool = False,
    limit: int | None = None,
) -> ToolResult:
    """Findings, attack patterns and (optionally) credentials known for a hostname."""
    target = hostname or context.hostname
    data = await asyncio.to_thread(
        _query,
        context,
        target,
        vuln_type,
        remediation_status,
        include_patterns,
        include_credentials,
        limit,
    )
    return ToolResult(
        success=True,
        output=f"Found {data['counts']['vulnerabilities']} vulnerabilities for {target}",
        data=data,
    )


def format_exploit_memory_context(memory: dict[str, Any] | None) -> str:
    """
    Render a query_exploit_memory result as a prompt section.

    Findings are grouped by type (first five per type), followed by the top
    attack patterns, known credentials (masked) and the tech stack.
    Returns an empty string when nothing is known.
    """
    if not memory or not memory.get("vulnerabilities"):
        return ""

    by_type: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for vuln in memory["vulnerabilities"]:
        by_type[vuln["vuln_type"]].append(vuln)

    lines = [
        "",
        "<exploit_memory>",
        "# Historical Vulnerability Data",
        "",
        "The following vulnerabilities were discovered in previous test sessions:",
        "",
    ]
    for vuln_type, vulns in by_type.items():
        lines += [f"## {vuln_type} ({len(vulns)} found)", ""]
        for vuln in vulns[:MAX_VULNS_PER_TYPE]:
            lines.append(f"- **{vuln['path']}** (confidence: {vuln['confidence']}%)")
            lines.append(f"  - Source: {vuln['source']}")
            if vuln.get("sink_call"):
                lines.append(f"  - Sink: {vuln['sink_call']}")
            lines.append(f"  - Status: {vuln['remediation_status']}")
            lines += [f"  - First discovered: {vuln['first_discovered_at']}", ""]
        if len(vulns) > MAX_VULNS_PER_TYPE:
            lines += [f"  ... and {len(vulns) - MAX_VULNS_PER_TYPE} more", ""]

    patterns = memory.get("attack_patterns") or []
    if patterns:
        lines += ["## Successful Attack Patterns", ""]
        for pattern in patterns[:MAX_PATTERNS]:
            lines.append(f"- **{pattern['pattern_type']}** (used {pattern['success_count']} times)")
            lines += [f"  - Last used: {pattern['last_used_at']}", ""]

    credentials = memory.get("credentials") or []
    if credentials:
        lines += [
            "## Discovered Credentials",
            "",
            f"Found {len(credentials)} credential(s) in previous sessions:",
            "",
        ]
        for cred in credentials[:MAX_CREDENTIALS]:
            lines.append(f"- **{cred['credential_type']}** ({cred.get('service_type') or 'unknown service'})")
            if cred.get("username"):
                lines.append(f"  - Username: {cred['username']}")
            lines.append(f"  - Discovered via: {cred['discovered_via']}")
            lines += [f"  - Validated: {'Yes' if cred.get('validated') else 'No'}", ""]

    tech_stack = (memory.get("application") or {}).get("tech_stack")
    if tech_stack:
        lines += ["## Known Tech Stack", "", ", ".join(tech_stack), ""]

    lines += [
        "</exploit_memory>",
        "",
        "Use this historical data to:",
        "1. Avoid testing already-verified vulnerabilities",
        "2. Focus on similar patterns that were successful before",
        "3. Build on discovered credentials for deeper exploitation",
        "",
    ]
    return "\n".join(lines) + "\n"
