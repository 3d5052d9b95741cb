from __future__ import annotations

import math
from typing import Any, Optional


def coerce_int(
    value: Any,
    *,
    default: int,
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> int:
    """Coerce a loosely-typed value into an int clamped to [min_value, max_value].

    Settings arrive from YAML and environment variables, so values may be
    strings like "19000". Unparsable values map to the provided default.
    """
    if isinstance(value, bool):
        n = int(default)
    else:
        try:
            n = int(str(value).strip()) if isinstance(value, str) else int(value)
        except Exception:
            n = int(default)
    if min_value is not None and n < min_value:
        n = min_value
    if max_value is not None and n > max_value:
        n = max_value
    return n


def coerce_float(
    value: Any,
    *,
    default: float,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> float:
    if isinstance(value, bool):
        x = float(default)
    else:
        try:
            x = float(str(value).strip()) if isinstance(value, str) else float(value)
        except Exception:
            x = float(default)
        if math.isnan(x) or math.isinf(x):
            x = float(default)
    if min_value is not None and x < min_value:
        x = min_value
    if max_value is not None and x > max_value:
        x = max_value
    return x
