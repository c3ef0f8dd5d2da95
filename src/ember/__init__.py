"""
Ember: checkpointed multi-agent penetration test orchestration.

Copyright (c) 2024-2025 Adem Kök. All Rights Reserved.

This software is proprietary and confidential. Unauthorized copying, modification,
distribution, or use of this software, via any medium, is strictly prohibited.
See LICENSE file for details.

Ember drives an ordered pipeline of autonomous security agents against a target,
keeping a git-backed workspace, a crash-safe audit trail and a deduplicated
exploit memory consistent with each other across crashes, retries and rollbacks.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ember")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["__version__"]
