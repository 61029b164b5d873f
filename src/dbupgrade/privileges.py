"""Operating system privilege checks."""

from __future__ import annotations

import os


def current_user_is_administrator() -> bool:
    """Return True if the process runs with root privileges."""
    return os.geteuid() == 0
