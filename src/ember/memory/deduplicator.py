"""
Identity hashing for findings.

Two reports describe the same finding when they hash to the same identity.
How much detail takes part in the hash is the deduplication strategy:

- strict: exact (normalised) path and sink, confidence ignored
- moderate: path without query string or numeric ids, sink ignored,
  confidence in buckets of 25
- loose: hostname, vulnerability type and source file only
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Mapping

from ember.config.settings import DeduplicationStrategy

DEFAULT_CONFIDENCE = 50

_NUMERIC_SEGMENT = re.compile(r"^\d+$")
_UUID_SEGMENT = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_LINE_SUFFIX = re.compile(r":\d+(?::\d+)?$")


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _confidence(value: Any) -> int:
    try:
        confidence = int(float(value))
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    return max(0, min(100, confidence))


def normalize_path(path: Any, strategy: DeduplicationStrategy) -> str:
    """Normalise a location so cosmetic differences do not split a finding."""
    text = _text(path)
    if len(text) > 1:
        text = text.rstrip("/")
    if strategy is DeduplicationStrategy.STRICT:
        return text

    text = text.split("#", 1)[0].split("?", 1)[0]
    segments = [
        ":id" if _NUMERIC_SEGMENT.match(segment) or _UUID_SEGMENT.match(segment) else segment
        for segment in text.split("/")
    ]
    return "/".join(segments).lower()


def source_file(source: Any) -> str:
    """Strip a trailing ``:line`` or ``:line:col`` from a source reference."""
    return _LINE_SUFFIX.sub("", _text(source))


def identity_fields(vuln_data: Mapping[str, Any], strategy: DeduplicationStrategy | str) -> dict[str, Any]:
    """The subset of a finding that defines its identity under a strategy."""
    strategy = DeduplicationStrategy(strategy)
    fields: dict[str, Any] = {
        "hostname": _text(vuln_data.get("hostname")).lower(),
        "vuln_type": _text(vuln_data.get("vuln_type")).lower(),
    }

    if strategy is DeduplicationStrategy.LOOSE:
        fields["source"] = source_file(vuln_data.get("source"))
        return fields

    fields["source"] = _text(vuln_data.get("source"))
    fields["path"] = normalize_path(vuln_data.get("path"), strategy)

    if strategy is DeduplicationStrategy.STRICT:
        fields["sink_call"] = _text(vuln_data.get("sink_call"))
    else:
        confidence = _confidence(vuln_data.get("confidence", DEFAULT_CONFIDENCE))
        fields["confidence_bucket"] = confidence // 25
    return fields


def generate_identity_hash(
    vuln_data: Mapping[str, Any],
    strategy: DeduplicationStrategy | str = DeduplicationStrategy.STRICT,
) -> str:
    """
    Compute the stable identity of a finding.

    Args:
        vuln_data: Finding with hostname, vuln_type, source, path, sink_call
            and confidence. Other keys (exploitation_data, ...) are ignored.
        strategy: Deduplication strategy.

    Returns:
        SHA-256 hex digest.

    Raises:
        ValueError: If the strategy is unknown.
    """
    canonical = json.dumps(identity_fields(vuln_data, strategy), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
