"""Centralized path definitions for mailfetch.

Single source of truth for every on-disk location the tool touches.
Nothing here is created at import time.
"""

from pathlib import Path

# Base application directory
MAILFETCH_DIR = Path.home() / ".mailfetch"

# Subdirectories
LOGS_DIR = MAILFETCH_DIR / "logs"

# Specific files
CONFIG_PATH = MAILFETCH_DIR / "config.json"
