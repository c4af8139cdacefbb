"""Attune — Text Matcher

Picks the preference record a free-text prompt most likely refers to.
Tokens are lowercased, stop-word filtered and Snowball-stemmed into a set;
keys are scored by cosine similarity over token presence.
"""

from __future__ import annotations
import logging
import math
from typing import FrozenSet, Optional

import snowballstemmer

from models.models import Environment, PreferenceSet, sanitize_log

logger = logging.getLogger("attune.text_matcher")

STOP_WORDS = frozenset({
    "the", "is", "to", "a", "and", "for", "on", "in", "of", "with",
    "set", "enable", "disable",
})

_stemmer = snowballstemmer.stemmer("english")


def normalize(text: str) -> FrozenSet[str]:
    words = [w for w in text.lower().split() if w not in STOP_WORDS]
    return frozenset(_stemmer.stemWords(words))


def similarity(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / (math.sqrt(len(a)) * math.sqrt(len(b)))


def best_match(prompt: str, preferences: PreferenceSet,
               environment: Environment) -> Optional[str]:
    """Key with the strictly highest score, or None when nothing overlaps.

    Only keys with a command template for `environment` are candidates.
    Ties keep the earliest key in the set's insertion order.
    """
    prompt_tokens = normalize(prompt)
    best_key: Optional[str] = None
    best_score = 0.0

    for key, setting in preferences.items():
        if not setting.command_for(environment):
            continue
        score = similarity(prompt_tokens, normalize(key))
        if score > best_score:
            best_score = score
            best_key = key

    logger.debug(
        f"best_match prompt={sanitize_log(prompt)[:120]!r} "
        f"key={best_key!r} score={best_score:.3f}"
    )
    return best_key
