from __future__ import annotations

import os
from pathlib import Path


def termrelay_home() -> Path:
    env = os.environ.get("TERMRELAY_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".termrelay").resolve()
