"""Domain vocabulary shared by the section detector, chunker and table detector."""

from __future__ import annotations

import re

RULE_TERMS = (
    "injury", "wound", "damage", "attack", "defense", "armour", "armor",
    "skill", "ability", "trait", "equipment", "weapon", "item",
    "exploration", "loot", "treasure", "encounter", "event",
    "advancement", "experience", "level", "upgrade",
    "warband", "unit", "model", "hero", "henchman",
    "deployment", "scenario", "mission", "objective",
    "movement", "shooting", "combat", "melee", "ranged",
    "morale", "rout", "flee", "recovery",
    "d6", "d66", "d3", "d10", "d20", "dice", "roll",
    "table", "chart", "list",
)

TABLE_TERMS = (
    "injury", "exploration", "advancement", "skill", "loot",
    "encounter", "event", "critical", "fumble", "misfire",
    "weapon", "armour", "armor", "equipment", "spell",
)

_WORD_EDGES = re.compile(r"^[^\w]+|[^\w]+$")


def find_terms(text: str, terms: tuple[str, ...]) -> list[str]:
    """Return the terms that occur (as substrings) in *text*, in vocabulary order."""
    lower = text.lower()
    return [term for term in terms if term in lower]


def extract_keywords(text: str) -> list[str]:
    return find_terms(text, RULE_TERMS)


def title_words(title: str | None, min_length: int = 4) -> list[str]:
    if not title:
        return []
    words = (_WORD_EDGES.sub("", w) for w in title.lower().split())
    return [w for w in words if len(w) >= min_length]


def dedupe(items: list[str]) -> list[str]:
    """Drop repeats while keeping first-seen order."""
    return list(dict.fromkeys(items))
