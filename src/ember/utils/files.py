"""
Crash-safe file helpers.

JSON documents are replaced atomically (temp file + fsync + rename) so a
crash mid-write leaves either the previous or the new document on disk,
never a truncated one.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def atomic_write_text(path: Path, content: str) -> None:
    """
    Write text to a file atomically via temp + fsync + rename.

    The temp file is created in the destination directory so the final
    rename never crosses a filesystem boundary.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = None
    tmp = None
    try:
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = None
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        tmp = None
    finally:
        if fd is not None:
            os.close(fd)
        if tmp is not None and os.path.exists(tmp):
            os.unlink(tmp)


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize ``data`` as indented JSON and write it atomically."""
    atomic_write_text(path, json.dumps(data, indent=2, default=str) + "\n")


def read_json(path: Path) -> Any:
    """Read a JSON document. Raises FileNotFoundError / json.JSONDecodeError."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def hostname_from_url(web_url: str) -> str:
    """Extract the hostname from a URL, falling back to the raw string."""
    parsed = urlparse(web_url if "://" in web_url else f"http://{web_url}")
    return parsed.hostname or web_url


def sanitize_hostname(hostname: str) -> str:
    """Make a hostname safe for use in a directory name."""
    return re.sub(r"[^a-zA-Z0-9-]", "-", hostname)
