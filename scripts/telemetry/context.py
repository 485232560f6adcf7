"""
Context utilities for the event pipeline.

Provides the per-run session identifier shared by every captured event.
"""

import os
import random
import string
import threading
import time
from typing import Optional

SESSION_ENV_VAR = 'ACTIVITY_SESSION_ID'

_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    """Build a fresh ``session_<epoch-ms>_<random>`` identifier."""
    suffix = ''.join(random.choice(_ALPHABET) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class SessionManager:
    """
    Lazily creates and memoizes one session ID for the process lifetime.

    The ID is written once under a lock and read without contention
    afterwards.
    """

    def __init__(self, session_id: Optional[str] = None):
        self._session_id = session_id
        self._lock = threading.Lock()

    def current_session(self) -> str:
        """
        Get the current session ID, creating it on first use.

        Returns:
            Session ID from environment or a generated fallback
        """
        if self._session_id is not None:
            return self._session_id

        with self._lock:
            if self._session_id is None:
                self._session_id = os.environ.get(SESSION_ENV_VAR) or generate_session_id()
            return self._session_id

    __call__ = current_session


_default_manager = SessionManager()


def get_current_session_id() -> str:
    """
    Get the process-wide session ID.

    Returns:
        Memoized session identifier
    """
    return _default_manager.current_session()
