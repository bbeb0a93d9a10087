# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Small file helpers that never leave a half-written JSON document behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


def safe_write_json(
    path: Path,
    data: Any,
    logger: logging.Logger,
    atomic: bool = True,
    indent: Optional[int] = 2,
) -> bool:
    """
    Write data as JSON to path.

    With atomic=True the document is written to a temp file in the same
    directory, fsynced, then swapped in with os.replace().

    Returns:
        True on success, False if the write failed (already logged)
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, indent=indent)

        if not atomic:
            path.write_text(content, encoding="utf-8")
            return True

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write {path.name}: {e}")
        return False


def safe_read_json(path: Path, logger: logging.Logger) -> Optional[Any]:
    """
    Read a JSON document.

    Returns None if the file does not exist or cannot be decoded.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to load state from {path.name}: {e}")
        return None
