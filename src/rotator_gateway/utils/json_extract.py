# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import re
from typing import Any, Optional

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", str(text or "")).strip()


def extract_first_json_object(text: str) -> Optional[Any]:
    """
    Best-effort extraction of a JSON value from model output.

    Tries the whole (fence-stripped) text first, then the span between the
    first '{' and the last '}'. Returns None when neither decodes.
    """
    cleaned = strip_code_fences(text)
    if not cleaned:
        return None

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
    return None
