"""Serverless handler: the platform imports ``app`` from this file.

The deployment bundle is not pip-installed, so ``src`` is put on the import
path before the package is loaded.
"""

from __future__ import annotations

import sys
from pathlib import Path

_SRC_DIR = str(Path(__file__).resolve().parent.parent / "src")
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)

from flowchart_ai.api.asgi import app  # noqa: E402

__all__ = ["app"]
