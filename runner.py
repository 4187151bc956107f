"""Repository-level CLI entrypoint for the digital-twin engine.

    python runner.py <config.json> [--output-dir results/] [--ticks N]

Delegates to :mod:`twin_engine.runner`.
"""

from __future__ import annotations

import sys
from pathlib import Path

from twin_engine.runner import main


def _rewrite_config_path_arg(argv: list[str]) -> list[str]:
    """Rewrite the config argument to ``twin_engine/<name>`` when needed.

    Lets ``python runner.py config_default.json`` work from the repository
    root although the bundled config lives under ``twin_engine/``.
    """
    if len(argv) < 2:
        return argv

    candidate = Path(argv[1])
    if candidate.exists():
        return argv

    alt = Path("twin_engine") / candidate
    if alt.exists():
        out = list(argv)
        out[1] = str(alt)
        return out

    return argv


if __name__ == "__main__":
    sys.argv = _rewrite_config_path_arg(sys.argv)
    main()
