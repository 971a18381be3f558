import json
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

HIRAGANA = "hiragana"
KATAKANA = "katakana"
KANJI = "kanji"
SCRIPTS = (HIRAGANA, KATAKANA, KANJI)

# Section order in characters.json is the study order.
CATALOG_SECTIONS = ("hiragana", "hiragana_dakuten", "katakana", "katakana_dakuten", "kanji_n5")

DATA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "characters.json")


@dataclass(frozen=True)
class Character:
    glyph: str
    romaji: str
    script: str
    group: str

    @property
    def id(self) -> str:
        return character_id(self)

    def describe(self) -> str:
        return f"{self.glyph} ({self.romaji}) [{self.script}, group: {self.group}]"


def character_id(character: Character) -> str:
    """Composite key: the same romaji exists in several scripts, so the script is part of it."""
    return f"{character.script}-{character.romaji}"


def parse_character_id(char_id: str) -> Tuple[str, str]:
    script, sep, romaji = char_id.partition("-")
    if not sep or script not in SCRIPTS or not romaji:
        raise ValueError(f"Not a character id: {char_id!r}")
    return script, romaji


def load_catalog(path: str = DATA_PATH) -> Tuple[Character, ...]:
    """Load every character from the JSON catalog, in study order.

    Raises ValueError if two entries share a composite id.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    characters: List[Character] = []
    seen: set = set()
    for section in CATALOG_SECTIONS:
        for entry in raw.get(section, []):
            character = Character(
                glyph=entry["char"],
                romaji=entry["romaji"],
                script=entry["type"],
                group=entry["group"],
            )
            if character.script not in SCRIPTS:
                raise ValueError(f"Unknown script {character.script!r} for {character.glyph}")
            if character.id in seen:
                raise ValueError(f"Duplicate character id {character.id!r} in {path}")
            seen.add(character.id)
            characters.append(character)
    return tuple(characters)


ALL_CHARACTERS: Tuple[Character, ...] = load_catalog()
_BY_ID: Dict[str, Character] = {c.id: c for c in ALL_CHARACTERS}


def get_character(char_id: str) -> Optional[Character]:
    return _BY_ID.get(char_id)


def characters_by_ids(ids: Iterable[str], catalog: Iterable[Character] = ALL_CHARACTERS) -> List[Character]:
    """Resolve ids to characters in catalog order; unknown ids are skipped."""
    wanted = set(ids)
    return [c for c in catalog if c.id in wanted]


def characters_by_script(script: str, catalog: Iterable[Character] = ALL_CHARACTERS) -> List[Character]:
    return [c for c in catalog if c.script == script]
