"""
Exploit memory: deduplicated findings, credentials and attack patterns.

One SQLite store per target hostname, shared by every session that tests
that target.
"""

from ember.memory.credentials import (
    ExtractedCredential,
    NormalizedCredential,
    extract_credentials,
    normalize_credential,
)
from ember.memory.database import ExploitMemoryStore, close_all_stores, get_store
from ember.memory.deduplicator import generate_identity_hash
from ember.memory.models import VALID_TRANSITIONS, RemediationStatus

__all__ = [
    "ExploitMemoryStore",
    "ExtractedCredential",
    "NormalizedCredential",
    "RemediationStatus",
    "VALID_TRANSITIONS",
    "close_all_stores",
    "extract_credentials",
    "generate_identity_hash",
    "get_store",
    "normalize_credential",
]
