"""
Exploit memory models.

SQLAlchemy models for everything learned about one target across scans:
the application itself, deduplicated vulnerabilities, exploitation
attempts, discovered credentials, reusable attack patterns and the
append-only remediation history.

Timestamps are stored as UTC ISO-8601 strings so they sort lexically and
match the rest of Ember's persisted state.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ember.utils.files import utc_now_iso


class RemediationStatus(str, Enum):
    """Lifecycle of a finding after discovery."""

    OPEN = "open"
    FIXED = "fixed"
    VERIFIED = "verified"
    FALSE_POSITIVE = "false_positive"
    WONT_FIX = "wont_fix"


VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    RemediationStatus.OPEN.value: (
        RemediationStatus.FIXED.value,
        RemediationStatus.FALSE_POSITIVE.value,
        RemediationStatus.WONT_FIX.value,
    ),
    RemediationStatus.FIXED.value: (RemediationStatus.VERIFIED.value, RemediationStatus.OPEN.value),
    RemediationStatus.VERIFIED.value: (RemediationStatus.OPEN.value,),
    RemediationStatus.FALSE_POSITIVE.value: (RemediationStatus.OPEN.value,),
    RemediationStatus.WONT_FIX.value: (RemediationStatus.OPEN.value,),
}


class Base(DeclarativeBase):
    pass


class Application(Base):
    """The target application a store belongs to."""

    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hostname: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    tech_stack: Mapped[list[str]] = mapped_column(JSON, default=list)
    first_seen_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)
    last_seen_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "tech_stack": list(self.tech_stack or []),
            "first_seen_at": self.first_seen_at,
            "last_seen_at": self.last_seen_at,
        }


class Vulnerability(Base):
    """A finding, keyed by its identity hash."""

    __tablename__ = "vulnerabilities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hostname: Mapped[str] = mapped_column(String(255), index=True)
    vuln_type: Mapped[str] = mapped_column(String(50), index=True)
    source: Mapped[str] = mapped_column(String(500))
    path: Mapped[str] = mapped_column(String(1000))
    sink_call: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    confidence: Mapped[int] = mapped_column(Integer, default=50)
    exploitation_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    remediation_status: Mapped[str] = mapped_column(
        String(20), default=RemediationStatus.OPEN.value, index=True
    )
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    first_discovered_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)
    last_verified_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)

    attempts: Mapped[list["ExploitAttempt"]] = relationship(
        back_populates="vulnerability",
        cascade="all, delete-orphan",
        order_by="ExploitAttempt.id",
    )
    history: Mapped[list["RemediationHistory"]] = relationship(
        back_populates="vulnerability",
        order_by="RemediationHistory.id",
    )

    def to_dict(self, include_attempts: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "hostname": self.hostname,
            "vuln_type": self.vuln_type,
            "source": self.source,
            "path": self.path,
            "sink_call": self.sink_call,
            "confidence": self.confidence,
            "exploitation_data": dict(self.exploitation_data or {}),
            "remediation_status": self.remediation_status,
            "session_id": self.session_id,
            "first_discovered_at": self.first_discovered_at,
            "last_verified_at": self.last_verified_at,
        }
        if include_attempts:
            data["attempts"] = [attempt.to_dict() for attempt in self.attempts]
        return data


class ExploitAttempt(Base):
    """One try at exploiting a finding."""

    __tablename__ = "exploit_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vulnerability_id: Mapped[str] = mapped_column(ForeignKey("vulnerabilities.id"), index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    technique: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempted_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)

    vulnerability: Mapped["Vulnerability"] = relationship(back_populates="attempts")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vulnerability_id": self.vulnerability_id,
            "session_id": self.session_id,
            "success": self.success,
            "technique": self.technique,
            "payload": self.payload,
            "response_snippet": self.response_snippet,
            "attempted_at": self.attempted_at,
        }


class Credential(Base):
    """
    A discovered credential.

    Only a SHA-256 fingerprint and a masked preview of the secret are kept.
    """

    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hostname: Mapped[str] = mapped_column(String(255), index=True)
    credential_type: Mapped[str] = mapped_column(String(50))
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    service_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    secret_fingerprint: Mapped[str] = mapped_column(String(64))
    secret_preview: Mapped[str] = mapped_column(String(64))
    discovered_via: Mapped[str] = mapped_column(String(255))
    validated: Mapped[bool] = mapped_column(Boolean, default=False)
    times_seen: Mapped[int] = mapped_column(Integer, default=1)
    first_seen_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)
    last_seen_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "credential_type": self.credential_type,
            "username": self.username,
            "service_type": self.service_type,
            "secret_fingerprint": self.secret_fingerprint,
            "secret_preview": self.secret_preview,
            "discovered_via": self.discovered_via,
            "validated": self.validated,
            "times_seen": self.times_seen,
            "first_seen_at": self.first_seen_at,
            "last_seen_at": self.last_seen_at,
        }


class AttackPattern(Base):
    """A technique that worked and is worth trying again."""

    __tablename__ = "attack_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern_type: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    vuln_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    example_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)
    last_used_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern_type": self.pattern_type,
            "vuln_type": self.vuln_type,
            "description": self.description,
            "example_payload": self.example_payload,
            "success_count": self.success_count,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }


class RemediationHistory(Base):
    """Append-only record of one remediation status transition."""

    __tablename__ = "remediation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vulnerability_id: Mapped[str] = mapped_column(ForeignKey("vulnerabilities.id"), index=True)
    old_status: Mapped[str] = mapped_column(String(20))
    new_status: Mapped[str] = mapped_column(String(20))
    verification_method: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[str] = mapped_column(String(40), default=utc_now_iso)

    vulnerability: Mapped["Vulnerability"] = relationship(back_populates="history")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vulnerability_id": self.vulnerability_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "verification_method": self.verification_method,
            "notes": self.notes,
            "changed_at": self.changed_at,
        }
