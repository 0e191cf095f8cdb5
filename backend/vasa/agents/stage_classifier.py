# backend/vasa/agents/stage_classifier.py
"""
Core Symbol Set stage classifier.

Maps an utterance to one of the six symbolic therapeutic stages using an
ordered list of keyword rules. Rule order is a priority list: the first rule
that matches decides the stage. When nothing matches, the caller's current
stage is returned unchanged.

Also carries the breakthrough and theme pattern tables used to tag turns.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple
import re


class Stage(Enum):
    """The six Core Symbol Set stages, in journey order."""
    POINTED_ORIGIN = "pointed_origin"
    FOCUS_BIND = "focus_bind"
    SUSPENSION = "suspension"
    GESTURE_TOWARD = "gesture_toward"
    COMPLETION = "completion"
    TERMINAL_SYMBOL = "terminal_symbol"

    @property
    def symbol(self) -> str:
        return STAGE_INFO[self]["symbol"]

    @property
    def level(self) -> int:
        return STAGE_INFO[self]["level"]

    @property
    def description(self) -> str:
        return STAGE_INFO[self]["description"]

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, value, default: "Stage" = None) -> "Stage":
        """Accept a Stage, its value ("focus_bind") or its symbol ("•")."""
        if isinstance(value, Stage):
            return value
        raw = (value or "").strip() if isinstance(value, str) else ""
        for stage in cls:
            if raw == stage.value or raw == stage.symbol:
                return stage
        # legacy browser client used the circled-dot variants
        if raw in ("⊙", "◎"):
            return cls.POINTED_ORIGIN
        if raw == "⊘":
            return cls.TERMINAL_SYMBOL
        if default is not None:
            return default
        raise ValueError(f"Unknown stage: {value!r}")


DEFAULT_STAGE = Stage.POINTED_ORIGIN


STAGE_INFO: Dict[Stage, Dict[str, object]] = {
    Stage.POINTED_ORIGIN: {"symbol": "Ⓞ", "level": 1, "description": "Revealing Fragmentation"},
    Stage.FOCUS_BIND: {"symbol": "•", "level": 2, "description": "Introducing CVDC"},
    Stage.SUSPENSION: {"symbol": "_", "level": 3, "description": "Navigating Liminality"},
    Stage.GESTURE_TOWARD: {"symbol": "1", "level": 4, "description": "Facilitating Thend"},
    Stage.COMPLETION: {"symbol": "2", "level": 5, "description": "Cultivating CYVC"},
    Stage.TERMINAL_SYMBOL: {"symbol": "Ø", "level": 6, "description": "Meta-reflection"},
}


# Priority order. Do not sort: several rules can match the same utterance.
STAGE_RULES: List[Tuple[re.Pattern, Stage]] = [
    (re.compile(r"contradiction|CVDC|hold.*tension|suspend|between", re.IGNORECASE), Stage.SUSPENSION),
    (re.compile(r"integration|CYVC|completion|whole|unified|resolved", re.IGNORECASE), Stage.COMPLETION),
    (re.compile(r"begin|fragment|reveal|origin|start|initial", re.IGNORECASE), Stage.POINTED_ORIGIN),
    (re.compile(r"gesture|movement|toward|direction|shift|change", re.IGNORECASE), Stage.GESTURE_TOWARD),
    (re.compile(r"terminal|loop|end|cycle|closure|recursive", re.IGNORECASE), Stage.TERMINAL_SYMBOL),
    (re.compile(r"focus|bind|attention|concentrate|present", re.IGNORECASE), Stage.FOCUS_BIND),
]


BREAKTHROUGH_PATTERNS: List[re.Pattern] = [
    re.compile(r"suddenly (understand|realize|see)", re.IGNORECASE),
    re.compile(r"that makes sense now", re.IGNORECASE),
    re.compile(r"i never thought of it that way", re.IGNORECASE),
    re.compile(r"revelation|epiphany|breakthrough", re.IGNORECASE),
    re.compile(r"everything clicked", re.IGNORECASE),
    re.compile(r"now i get it", re.IGNORECASE),
]


THEME_PATTERNS: Dict[str, re.Pattern] = {
    "contradiction": re.compile(r"contradiction|paradox|conflicting|opposing", re.IGNORECASE),
    "completion": re.compile(r"completion|finished|whole|complete|resolved", re.IGNORECASE),
    "fragmentation": re.compile(r"fragment|pieces|broken|scattered|disconnected", re.IGNORECASE),
    "integration": re.compile(r"integration|bringing together|unifying|connecting", re.IGNORECASE),
    "identity": re.compile(r"who am i|sense of self|identity|belonging", re.IGNORECASE),
    "relationship": re.compile(r"relationship|connection|family|friends", re.IGNORECASE),
    "trauma": re.compile(r"trauma|painful|hurt|wound|healing", re.IGNORECASE),
    "growth": re.compile(r"growth|development|progress|journey", re.IGNORECASE),
}


def detect_stage(utterance: str) -> Optional[Stage]:
    """Stage of the first matching rule, or None."""
    if not utterance or not isinstance(utterance, str):
        return None
    for pattern, stage in STAGE_RULES:
        if pattern.search(utterance):
            return stage
    return None


def classify(utterance: str, current_stage: Stage = DEFAULT_STAGE) -> Stage:
    """Classify an utterance; returns current_stage when no rule matches."""
    detected = detect_stage(utterance)
    return detected if detected is not None else current_stage


def detect_breakthrough(utterance: str) -> Optional[Dict[str, str]]:
    if not utterance or not isinstance(utterance, str):
        return None
    for pattern in BREAKTHROUGH_PATTERNS:
        match = pattern.search(utterance)
        if match:
            return {
                "type": "insight",
                "trigger": "conversation",
                "description": utterance[:200],
                "keywords": match.group(0),
            }
    return None


def detect_themes(utterance: str) -> List[str]:
    if not utterance or not isinstance(utterance, str):
        return []
    return [theme for theme, pattern in THEME_PATTERNS.items() if pattern.search(utterance)]
