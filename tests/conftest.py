"""Pytest configuration: make the flat top-level modules importable and keep
test runs from writing a log file into the working directory."""

import os
import sys

os.environ["STANDINGS_LOGFILE"] = ""

# Project root = parent directory of this tests/ folder
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
