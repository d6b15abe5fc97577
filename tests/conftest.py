"""Pytest configuration.

The project does not need an editable install for development. When `pytest`
runs without the repository root on `sys.path`, imports like
`import lob_core` break; this file makes the root importable.
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
