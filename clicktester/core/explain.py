"""
EXPLAIN output parsing: scanned granules and projection usage.
"""

from __future__ import annotations

import re

# Lines like "Granules: 123/456" (scanned/total) from `EXPLAIN indexes=1`.
GRANULES_RE = re.compile(r"Granules:\s*(\d+)/(\d+)")

_PROJECTION_MARKER = "projection"


def extract_granules(explain_text: str) -> int:
    """
    Return the smallest scanned-granule count found in EXPLAIN output.

    Every index step prints its own "Granules: X/Y" pair; the minimum X is
    what survives all pruning. Returns 0 when no pair is present.
    """
    scanned = [int(m.group(1)) for m in GRANULES_RE.finditer(explain_text or "")]
    return min(scanned, default=0)


def projection_used(explain_text: str) -> bool:
    """True if the planner output mentions a projection (case-insensitive)."""
    return _PROJECTION_MARKER in (explain_text or "").lower()
