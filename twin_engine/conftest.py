# conftest.py — package directory
#
# Puts the repository root on sys.path so that both ``twin_engine`` and the
# root-level ``runner.py`` wrapper import without a package install.
#
# Usage:
#   pytest twin_engine/tests/ -v

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
