"""In-process diagnostic state (test/dev only).

Holds the latest report of every context manager in this process so the
test-support routes can show which contexts are live and how they were
obtained. Nothing here drives behaviour; managers only write to it.
"""

from __future__ import annotations

from typing import Dict

# manager_id -> latest ContextReport as a JSON-ready dict
CONTEXT_REPORTS: Dict[str, Dict] = {}

__all__ = ["CONTEXT_REPORTS"]
