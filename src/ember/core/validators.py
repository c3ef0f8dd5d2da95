"""
Agent output validation.

An attempt only counts as successful once the deliverables its agent is
responsible for exist in the workspace. Vulnerability-analysis agents must
leave a consistent pair: a markdown analysis and a JSON exploitation queue
of the form ``{"vulnerabilities": [...]}``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import structlog

from ember.core.agents import VULN_TYPES
from ember.core.errors import PentestError, QueueValidationError, ValidationError
from ember.core.executor import AgentResult

logger = structlog.get_logger(__name__)

DELIVERABLES_DIRNAME = "deliverables"


def analysis_deliverable_name(vuln_type: str) -> str:
    return f"{vuln_type}_analysis_deliverable.md"


def exploitation_queue_name(vuln_type: str) -> str:
    return f"{vuln_type}_exploitation_queue.json"


def exploitation_evidence_name(vuln_type: str) -> str:
    return f"{vuln_type}_exploitation_evidence.md"


def validate_queue_json(content: str) -> tuple[bool, str | None, dict[str, Any] | None]:
    """
    Check that queue content is ``{"vulnerabilities": [...]}``.

    An empty list is valid.

    Returns:
        (valid, message, parsed data)
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return False, "Invalid JSON structure", None

    if not isinstance(data, dict) or not isinstance(data.get("vulnerabilities"), list):
        return False, "Missing or invalid 'vulnerabilities' array", None
    return True, None, data


def validate_queue_and_deliverable(
    vuln_type: str,
    source_dir: Path | str,
    deliverables_dirname: str = DELIVERABLES_DIRNAME,
) -> dict[str, Any]:
    """
    Validate the analysis deliverable and exploitation queue of a vuln type.

    Returns:
        ``{"shouldExploit", "vulnerabilityCount", "vulnType"}``

    Raises:
        ValidationError: For an unknown vulnerability type.
        QueueValidationError: If the pair is missing, incomplete or malformed.
    """
    if vuln_type not in VULN_TYPES:
        raise ValidationError(f"Unknown vulnerability type: {vuln_type}", context={"vuln_type": vuln_type})

    deliverables = Path(source_dir) / deliverables_dirname
    deliverable_file = deliverables / analysis_deliverable_name(vuln_type)
    queue_file = deliverables / exploitation_queue_name(vuln_type)
    context = {"vuln_type": vuln_type, "deliverable": str(deliverable_file), "queue": str(queue_file)}

    has_deliverable = deliverable_file.is_file()
    has_queue = queue_file.is_file()

    if not has_deliverable and not has_queue:
        raise QueueValidationError("Analysis failed: Neither deliverable nor queue file exists", context)
    if not has_queue:
        raise QueueValidationError("Analysis incomplete: Deliverable exists but queue file missing", context)
    if not has_deliverable:
        raise QueueValidationError("Analysis incomplete: Queue exists but deliverable file missing", context)

    valid, message, data = validate_queue_json(queue_file.read_text(encoding="utf-8"))
    if not valid or data is None:
        raise QueueValidationError(f"Queue validation failed for {vuln_type}: {message}", context)

    count = len(data["vulnerabilities"])
    return {"shouldExploit": count > 0, "vulnerabilityCount": count, "vulnType": vuln_type}


def safe_validate_queue_and_deliverable(
    vuln_type: str,
    source_dir: Path | str,
    deliverables_dirname: str = DELIVERABLES_DIRNAME,
) -> dict[str, Any]:
    """Non-raising variant: ``{"success": True, "data": ...}`` or ``{"success": False, "error": ...}``."""
    try:
        return {"success": True, "data": validate_queue_and_deliverable(vuln_type, source_dir, deliverables_dirname)}
    except PentestError as e:
        return {"success": False, "error": e}


def _requires(filename: str) -> Callable[[Path], bool]:
    def validator(deliverables_dir: Path) -> bool:
        return (deliverables_dir / filename).is_file()

    validator.__name__ = f"requires_{filename}"
    return validator


def _vuln_validator(vuln_type: str) -> Callable[[Path], bool]:
    def validator(deliverables_dir: Path) -> bool:
        outcome = safe_validate_queue_and_deliverable(vuln_type, deliverables_dir.parent, deliverables_dir.name)
        if not outcome["success"]:
            logger.warning("queue_validation_failed", vuln_type=vuln_type, error=outcome["error"].message)
        return outcome["success"]

    return validator


def _build_validators() -> dict[str, Callable[[Path], bool]]:
    validators: dict[str, Callable[[Path], bool]] = {
        "pre-recon": _requires("code_analysis_deliverable.md"),
        "recon": _requires("recon_deliverable.md"),
        "report": _requires("comprehensive_security_assessment_report.md"),
    }
    for vuln_type in VULN_TYPES:
        validators[f"{vuln_type}-vuln"] = _vuln_validator(vuln_type)
        validators[f"{vuln_type}-exploit"] = _requires(exploitation_evidence_name(vuln_type))
    return validators


AGENT_VALIDATORS: dict[str, Callable[[Path], bool]] = _build_validators()


def validate_agent_output(
    result: AgentResult,
    agent_name: str,
    source_dir: Path | str,
    deliverables_dirname: str = DELIVERABLES_DIRNAME,
    validators: dict[str, Callable[[Path], bool]] | None = None,
) -> bool:
    """
    Decide whether an attempt produced what its agent is responsible for.

    An unsuccessful or empty result never validates. An agent without a
    registered validator passes with a warning.
    """
    if not result.success or not result.result:
        logger.info("agent_output_invalid", agent=agent_name, reason="unsuccessful result")
        return False

    validator = (validators if validators is not None else AGENT_VALIDATORS).get(agent_name)
    if validator is None:
        logger.warning("agent_validator_missing", agent=agent_name)
        return True

    passed = validator(Path(source_dir) / deliverables_dirname)
    logger.info("agent_output_validated", agent=agent_name, passed=passed)
    return passed
