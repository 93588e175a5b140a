"""Short, pronounceable ids for fragments, branches, chain entries and blocks."""
from __future__ import annotations

import secrets
import uuid

PREFIXES: dict[str, str] = {
    "prose": "pr",
    "character": "ch",
    "guideline": "gl",
    "knowledge": "kn",
    "image": "im",
    "icon": "ic",
    "marker": "mk",
}

# Consonant-vowel alternation keeps ids readable when quoted back by a model.
_CONSONANTS = "bdfgkmnprstvz"
_VOWELS = "aeiou"


def _syllables(length: int = 6) -> str:
    return "".join(
        secrets.choice(_CONSONANTS if i % 2 == 0 else _VOWELS)
        for i in range(length)
    )


def generate_fragment_id(fragment_type: str) -> str:
    prefix = PREFIXES.get(fragment_type, fragment_type[:4].lower())
    return f"{prefix}-{_syllables()}"


def generate_branch_id() -> str:
    return f"br-{_syllables()}"


def generate_entry_id() -> str:
    return f"ce-{uuid.uuid4().hex[:12]}"


def generate_block_id() -> str:
    return f"cb-{_syllables()}"


def generate_run_id() -> str:
    return f"ar-{uuid.uuid4().hex}"
