import os
import random
from typing import Dict, Iterable, List, Sequence, TypeVar

from .catalog import KATAKANA, Character

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

DISTRACTOR_COUNT = 3
KATAKANA_SUFFIX = "_kata"

T = TypeVar("T")

# OS-backed CSPRNG so learners cannot learn the option order.
_rng = random.SystemRandom()


def rand_int(upper: int) -> int:
    """Uniform integer in [0, upper)."""
    return _rng.randrange(upper)


def shuffle(items: Iterable[T]) -> List[T]:
    """Return a shuffled copy (Fisher-Yates on the system CSPRNG)."""
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rand_int(i + 1)
        out[i], out[j] = out[j], out[i]
    return out


# Hand-authored clusters of visually confusable characters (hooks, loops,
# stroke direction). Some entries are one-directional on purpose; keep as is.
VISUAL_SIMILARITY: Dict[str, List[str]] = {
    # ろ る ら れ
    "ro": ["ru", "ra", "re"],
    "ru": ["ro", "re", "ra"],
    "ra": ["ro", "ru", "re"],
    "re": ["ru", "ro", "ra"],
    # し つ そ
    "shi": ["tsu", "so"],
    "tsu": ["shi", "so"],
    "so": ["shi", "tsu"],
    # ん り
    "n": ["ri"],
    "ri": ["n"],
    # わ ら
    "wa": ["ra", "fu"],
    # か け
    "ka": ["ke"],
    "ke": ["ka"],
    # は ほ
    "ha": ["ho"],
    "ho": ["ha"],
    # ま む
    "ma": ["mu"],
    "mu": ["ma"],
    # ぬ め
    "nu": ["me"],
    "me": ["nu"],
    # あ お
    "a": ["o"],
    "o": ["a"],
    # や な
    "ya": ["na"],
    "na": ["ya"],
    # き さ
    "ki": ["sa"],
    "sa": ["ki"],
    # こ ゆ
    "ko": ["yu"],
    "yu": ["ko"],
    # ふ わ
    "fu": ["wa"],
    # ノ フ ソ
    "no": ["fu", "so"],
    # シ ツ ソ
    "shi_kata": ["tsu_kata", "so_kata"],
    "tsu_kata": ["shi_kata", "so_kata"],
    "so_kata": ["shi_kata", "tsu_kata"],
}


def normalize_key(character: Character) -> str:
    if character.script == KATAKANA:
        return f"{character.romaji}{KATAKANA_SUFFIX}"
    return character.romaji


def visual_cluster(target: Character, pool: Sequence[Character]) -> List[Character]:
    """Resolve the confusion cluster of `target` to pool characters of the same script.

    Katakana-specific keys win; otherwise the plain romaji key is used.
    """
    similar = VISUAL_SIMILARITY.get(normalize_key(target)) or VISUAL_SIMILARITY.get(target.romaji) or []
    resolved: List[Character] = []
    for key in similar:
        romaji = key[: -len(KATAKANA_SUFFIX)] if key.endswith(KATAKANA_SUFFIX) else key
        match = next(
            (c for c in pool if c.romaji == romaji and c.script == target.script),
            None,
        )
        if match is not None:
            resolved.append(match)
    return resolved


def select_distractors(target: Character, candidate_pool: Sequence[Character]) -> List[str]:
    """Pick up to three wrong romaji answers for `target`.

    Priority, each stage only filling the remaining slots:
      1. visual-confusion cluster (first two members when it has two or more)
      2. same phonetic group and script, shuffled
      3. same script, shuffled

    A result shorter than three means no question can be built for this target.
    """
    used = {target.romaji}
    out: List[str] = []

    def add(c: Character) -> None:
        if len(out) < DISTRACTOR_COUNT and c.romaji not in used:
            used.add(c.romaji)
            out.append(c.romaji)

    cluster = visual_cluster(target, candidate_pool)
    if len(cluster) >= 2:
        for c in cluster[:2]:
            add(c)
    else:
        for c in cluster:
            add(c)

    same_group = [
        c for c in candidate_pool
        if c.group == target.group and c.script == target.script and c.romaji != target.romaji
    ]
    for c in shuffle(same_group):
        add(c)

    same_script = [c for c in candidate_pool if c.script == target.script and c.romaji != target.romaji]
    for c in shuffle(same_script):
        add(c)

    if DEBUG_MODE:
        print(f"🔎 Distractors for {target.glyph} ({target.id}): {out}")
    return out
