"""
Credential extraction from exploitation evidence.

Evidence deliverables frequently quote the credentials an exploit
recovered. They are picked out with a fixed set of patterns, then reduced to
an identity, a SHA-256 fingerprint and a masked preview before anything is
stored; the raw secret never reaches the database.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from re import Pattern

import structlog

logger = structlog.get_logger(__name__)

# Matched against the line a credential was found on.
SERVICE_HINTS: tuple[tuple[str, str], ...] = (
    ("ssh", "ssh"),
    ("ftp", "ftp"),
    ("mysql", "mysql"),
    ("postgres", "postgresql"),
    ("mongo", "mongodb"),
    ("redis", "redis"),
    ("smtp", "smtp"),
    ("ldap", "ldap"),
    ("aws", "aws"),
    ("admin", "admin_panel"),
)


@dataclass
class CredentialPattern:
    """One way credentials show up in evidence text."""

    name: str
    credential_type: str
    pattern: str | Pattern
    username_group: int | None = None
    secret_group: int = 1
    service_type: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.pattern, str):
            self.pattern = re.compile(self.pattern, re.IGNORECASE | re.MULTILINE)


CREDENTIAL_PATTERNS: list[CredentialPattern] = [
    CredentialPattern(
        name="username_password_fields",
        credential_type="password",
        pattern=r"(?:user(?:name)?|login|email)\s*[=:]\s*[\"']?([^\s\"',;]+)[\"']?[\s,;]+(?:password|passwd|pwd)\s*[=:]\s*[\"']?([^\s\"',;]{3,})",
        username_group=1,
        secret_group=2,
    ),
    CredentialPattern(
        name="credential_pair",
        credential_type="password",
        pattern=r"(?:credentials?|creds|login)\s*[=:]\s*[`\"']?([A-Za-z0-9_.@+-]+):([^\s`\"',;]{3,})",
        username_group=1,
        secret_group=2,
    ),
    CredentialPattern(
        name="password_assignment",
        credential_type="password",
        pattern=r"(?:password|passwd|pwd)\s*[=:]\s*[\"']?([^\s\"',;]{4,})",
    ),
    CredentialPattern(
        name="jwt",
        credential_type="jwt",
        pattern=r"\b(eyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,})",
    ),
    CredentialPattern(
        name="bearer_token",
        credential_type="bearer_token",
        pattern=r"bearer\s+([A-Za-z0-9_\-.~+/]{20,}=*)",
    ),
    CredentialPattern(
        name="api_key_assignment",
        credential_type="api_key",
        pattern=r"(?:api[_-]?key|apikey|x-api-key|secret[_-]?key)\s*[=:]\s*[\"']?([A-Za-z0-9_\-]{16,})",
    ),
    CredentialPattern(
        name="prefixed_api_key",
        credential_type="api_key",
        pattern=r"\b(sk-[A-Za-z0-9_\-]{16,})",
    ),
    CredentialPattern(
        name="aws_access_key",
        credential_type="aws_access_key",
        pattern=r"\b((?:AKIA|ABIA|ACCA|ASIA)[A-Z0-9]{16})\b",
        service_type="aws",
    ),
]


@dataclass
class ExtractedCredential:
    """A credential as found in evidence, secret still in clear."""

    credential_type: str
    secret: str
    discovered_via: str
    username: str | None = None
    service_type: str | None = None
    validated: bool = False
    pattern: str = ""

    def __repr__(self) -> str:
        return (
            f"ExtractedCredential(type={self.credential_type!r}, username={self.username!r}, "
            f"secret={mask_secret(self.secret)!r})"
        )


@dataclass
class NormalizedCredential:
    """What gets stored: identity, fingerprint and masked preview only."""

    id: str
    hostname: str
    credential_type: str
    secret_fingerprint: str
    secret_preview: str
    discovered_via: str
    username: str | None = None
    service_type: str | None = None
    validated: bool = False


def mask_secret(secret: str) -> str:
    """Masked preview keeping at most the first and last two characters."""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:2]}{'*' * (len(secret) - 4)}{secret[-2:]}"


def _service_for(line: str) -> str | None:
    lowered = line.lower()
    for hint, service in SERVICE_HINTS:
        if hint in lowered:
            return service
    return None


def extract_credentials(content: str, discovered_via: str) -> list[ExtractedCredential]:
    """
    Find credentials in evidence text.

    A secret already captured together with a username is not reported a
    second time by a weaker pattern.

    Args:
        content: Evidence text.
        discovered_via: Where the text came from (recorded on each credential).
    """
    found: list[ExtractedCredential] = []
    seen_secrets: set[str] = set()

    for line in content.splitlines():
        for spec in CREDENTIAL_PATTERNS:
            for match in spec.pattern.finditer(line):
                secret = match.group(spec.secret_group).strip()
                if not secret or secret in seen_secrets:
                    continue
                username = match.group(spec.username_group) if spec.username_group else None
                seen_secrets.add(secret)
                found.append(
                    ExtractedCredential(
                        credential_type=spec.credential_type,
                        secret=secret,
                        username=username,
                        service_type=spec.service_type or _service_for(line),
                        discovered_via=discovered_via,
                        pattern=spec.name,
                    )
                )

    if found:
        logger.debug("credentials_extracted", count=len(found), source=discovered_via)
    return found


def credential_identity(
    hostname: str,
    credential_type: str,
    secret: str,
    username: str | None = None,
    service_type: str | None = None,
) -> str:
    """Stable identity of a credential on one host."""
    parts = [hostname.lower(), service_type or "", username or "", credential_type, secret]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def normalize_credential(credential: ExtractedCredential, hostname: str) -> NormalizedCredential:
    """Reduce an extracted credential to its storable form."""
    return NormalizedCredential(
        id=credential_identity(
            hostname,
            credential.credential_type,
            credential.secret,
            credential.username,
            credential.service_type,
        ),
        hostname=hostname,
        credential_type=credential.credential_type,
        username=credential.username,
        service_type=credential.service_type,
        secret_fingerprint=hashlib.sha256(credential.secret.encode("utf-8")).hexdigest(),
        secret_preview=mask_secret(credential.secret),
        discovered_via=credential.discovered_via,
        validated=credential.validated,
    )
