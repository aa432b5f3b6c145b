"""Test bootstrap for voice-agent-bench."""

from __future__ import annotations

import sys
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
for package_root in (TESTS_DIR.parent, TESTS_DIR):
    path_str = str(package_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)
