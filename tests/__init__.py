"""Test package for oasisbuild.

Making `tests/` a package keeps test module names fully qualified so that
files sharing a basename in different directories do not collide.
"""

import sys
from pathlib import Path

# Ensure src directory is in Python path for all test modules
_src_path = Path(__file__).resolve().parent.parent / "src"

if str(_src_path) not in sys.path:
    sys.path.insert(0, str(_src_path))
