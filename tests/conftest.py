"""
Pytest configuration: add project root to sys.path
so 'from asm2d_simulation import ...' works without installing.
"""
import sys
import os

# Project root (the flat module layout lives there)
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)
