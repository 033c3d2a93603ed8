"""
Runtime configuration, read once from the environment.
"""

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

DATA_DIR = Path(os.getenv("PROGRESS_DATA_DIR", str(Path.home() / ".lingua" / "progress")))
LOG_LEVEL = os.getenv("PROGRESS_LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# Trend and progression windows
# ---------------------------------------------------------------------------

TREND_WINDOW_DAYS = int(os.getenv("TREND_WINDOW_DAYS", "7"))
ROLLING_AVERAGE_DAYS = int(os.getenv("ROLLING_AVERAGE_DAYS", "30"))
MIN_ASSESSMENTS = int(os.getenv("MIN_ASSESSMENTS", "3"))
CONSISTENCY_WINDOW = int(os.getenv("CONSISTENCY_WINDOW", "5"))
CONSISTENCY_MAX_STDDEV = float(os.getenv("CONSISTENCY_MAX_STDDEV", "15"))
MAX_PATTERN_EXAMPLES = int(os.getenv("MAX_PATTERN_EXAMPLES", "10"))

# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

SESSION_CACHE_TTL_SECONDS = int(os.getenv("SESSION_CACHE_TTL_SECONDS", str(3600 * 4)))
IDLE_THRESHOLD_SECONDS = int(os.getenv("IDLE_THRESHOLD_SECONDS", "1800"))
MAX_SESSION_HOURS = float(os.getenv("MAX_SESSION_HOURS", "4"))

# Optional JSON file with {"modules": {id: title}, "scenarios": {id: title}}
CURRICULUM_PATH = os.getenv("PROGRESS_CURRICULUM_PATH")
