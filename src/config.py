"""
Global settings for the exam session engine.
Values can be overridden through environment variables where noted.
"""

import os
from pathlib import Path

# Page
PAGE_TITLE = "Exam Marker"
PAGE_ICON = "📝"

# Storage
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.getenv("EXAM_ENGINE_DB_PATH", str(PROJECT_ROOT / "data" / "exam_engine.db")))
SNAPSHOT_KEY = "gcse_marker_state"

# AI provider
CHAT_MODEL = os.getenv("EXAM_ENGINE_MODEL", "gpt-4o")
VISION_MODEL = os.getenv("EXAM_ENGINE_VISION_MODEL", CHAT_MODEL)
EXTRACTION_TEMPERATURE = 0.1
MARKING_TEMPERATURE = 0.2
TUTOR_TEMPERATURE = 0.3
API_KEY_ENV = "OPENAI_API_KEY"

# Text-first extraction is skipped below this many characters (likely a scanned PDF).
MIN_TEXT_FOR_TEXT_EXTRACTION = 250
MIN_INSERT_TEXT = 50

# Parsing
QUESTION_REVEAL_DELAY_S = float(os.getenv("EXAM_ENGINE_REVEAL_DELAY", "0.1"))
MAX_QUESTION_MARKS = 200

# Document viewer
DEFAULT_SCALE = 1.5
MIN_SCALE = 0.5
MAX_SCALE = 3.0
SCALE_STEP = 0.2

# Graph paper
GRAPH_WIDTH = 600
GRAPH_HEIGHT = 400
GRAPH_PADDING = 50

# Grade boundaries (percentage, grade), checked top down
GRADE_BOUNDARIES = [
    (90, "9"),
    (80, "8"),
    (70, "7"),
    (50, "5"),
    (40, "4"),
]
FALLBACK_GRADE = "U"

# Symbols offered by the math keyboard
MATH_SYMBOLS = [
    "²", "³", "½", "¼", "√", "∞", "×", "÷", "±", "≈", "≠", "≡", "≤", "≥",
    "°", "℃", "℉", "µ", "π", "Ω", "λ", "Δ", "Σ", "→", "←", "↔", "↑", "↓",
]
