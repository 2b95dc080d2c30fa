"""
Cronkeeper: ID Generation Utilities

Helper functions for generating the opaque identifiers used by the
coordination tables (run IDs and lock tokens).

External dependencies:
- uuid: Standard library UUID generation

Thread safety: Thread-safe (stateless functions)
"""

from __future__ import annotations

import uuid
from typing import Optional


def generate_uuid() -> str:
    """Generate a random UUIDv4 string."""

    return str(uuid.uuid4())


def generate_lock_token() -> str:
    """Generate an unguessable token identifying one lock acquisition."""

    return generate_uuid()


def generate_run_id(prefix: Optional[str] = None) -> str:
    """Generate a unique run ID for a job execution.

    Args:
        prefix: Optional prefix to prepend to the UUID (e.g. the job
            name). If provided, the returned ID will be of the form
            ``prefix_uuid``.
    """

    base_id = generate_uuid()
    if prefix:
        return f"{prefix}_{base_id}"
    return base_id
