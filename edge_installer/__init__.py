"""IoT Edge installer for Windows hosts.

Core design goals:
- Host state is inspected, never persisted
- Every transition re-enterable after a restart
- Offline-first package acquisition
- Config edits that preserve the operator's document
- Centralized logging
"""

__all__ = []
