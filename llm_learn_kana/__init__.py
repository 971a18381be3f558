"""
LLM Learn Kana Plugin

Hiragana, katakana and beginner kanji flashcards with daily goals, a
revision list and multiple-choice quizzes, optionally written by an LLM.
"""

from . import catalog
from . import distractors
from . import progress
from . import quiz
from . import study
from . import db
from . import controller
from . import plugin

__version__ = "0.1.0"
__all__ = ["catalog", "distractors", "progress", "quiz", "study", "db", "controller", "plugin"]
