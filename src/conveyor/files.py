from __future__ import annotations

import logging
import os
from pathlib import Path

from conveyor.prompts import IGNORED_DIRECTORIES

logger = logging.getLogger(__name__)


def list_project_files(root: Path) -> list[str]:
    """Relative paths of project files, skipping hidden and dependency folders."""
    ignored = set(IGNORED_DIRECTORIES)
    files: list[str] = []
    for current, dirnames, filenames in os.walk(root, onerror=lambda exc: logger.warning("%s", exc)):
        dirnames[:] = [
            name for name in dirnames if not name.startswith(".") and name not in ignored
        ]
        base = Path(current)
        for filename in filenames:
            files.append((base / filename).relative_to(root).as_posix())
    return sorted(files)
