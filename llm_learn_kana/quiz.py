import json
import os
import concurrent.futures
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .catalog import ALL_CHARACTERS, Character
from .distractors import DISTRACTOR_COUNT, rand_int, select_distractors, shuffle

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

RECENT_SIZE = 7
MIN_LEARNED_FOR_QUIZ = DISTRACTOR_COUNT + 1
OPTION_COUNT = DISTRACTOR_COUNT + 1
REMOTE_BATCH_SIZE = 5
REMOTE_TIMEOUT_SECONDS = 20.0

NOT_ENOUGH_LEARNED = "not_enough_learned"
NO_DISTRACTORS = "no_distractors"


@dataclass(frozen=True)
class QuizQuestion:
    target_glyph: str
    correct_answer: str
    options: tuple
    target_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetChar": self.target_glyph,
            "correctAnswer": self.correct_answer,
            "options": list(self.options),
            "targetId": self.target_id,
        }


@dataclass(frozen=True)
class QuizUnavailable:
    """No question could be built. Expected state, not an error."""
    reason: str


QuizResult = Union[QuizQuestion, QuizUnavailable]


class RecentMemory:
    """Last few shown character ids, oldest evicted first. Lives only in memory."""

    def __init__(self, size: int = RECENT_SIZE) -> None:
        self._items: deque = deque(maxlen=size)

    def remember(self, char_id: str) -> None:
        self._items.append(char_id)

    def __contains__(self, char_id: object) -> bool:
        return char_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[str]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()


def learned_pool(learned_ids: Iterable[str], catalog: Sequence[Character] = ALL_CHARACTERS) -> List[Character]:
    learned = set(learned_ids)
    return [c for c in catalog if c.id in learned]


def pick_target(pool: Sequence[Character], recent: RecentMemory) -> Character:
    """Uniform pick, preferring characters not shown recently."""
    fresh = [c for c in pool if c.id not in recent]
    source = fresh if fresh else list(pool)
    picked = source[rand_int(len(source))]
    recent.remember(picked.id)
    return picked


def next_question(
    learned_ids: Iterable[str],
    recent: RecentMemory,
    catalog: Sequence[Character] = ALL_CHARACTERS,
) -> QuizResult:
    """Build one multiple-choice question from the learner's known characters.

    Distractors come from the whole catalog; they need not be learned.
    """
    pool = learned_pool(learned_ids, catalog)
    if len(pool) < MIN_LEARNED_FOR_QUIZ:
        return QuizUnavailable(NOT_ENOUGH_LEARNED)

    target = pick_target(pool, recent)
    distractors = select_distractors(target, catalog)
    if len(distractors) < DISTRACTOR_COUNT:
        if DEBUG_MODE:
            print(f"⚠️ Only {len(distractors)} distractors for {target.id}")
        return QuizUnavailable(NO_DISTRACTORS)

    options = shuffle([target.romaji] + distractors[:DISTRACTOR_COUNT])
    return QuizQuestion(
        target_glyph=target.glyph,
        correct_answer=target.romaji,
        options=tuple(options),
        target_id=target.id,
    )


# ----------------------------------------------------------------------
# Question sources
# ----------------------------------------------------------------------

class QuestionSource:
    """Produces quiz questions for a learner's known characters."""

    def next_question(self, learned_ids: Sequence[str], recent: RecentMemory) -> QuizResult:
        raise NotImplementedError

    def cancel(self) -> None:
        """Drop anything in flight or buffered (e.g. the learner switched modes)."""

    def close(self) -> None:
        """Release resources; the source is not used afterwards."""
        self.cancel()


class LocalQuestionSource(QuestionSource):
    def __init__(self, catalog: Sequence[Character] = ALL_CHARACTERS) -> None:
        self.catalog = catalog

    def next_question(self, learned_ids: Sequence[str], recent: RecentMemory) -> QuizResult:
        return next_question(learned_ids, recent, self.catalog)


REMOTE_SYSTEM_PROMPT = "You are a Japanese language quiz generator. Return ONLY valid JSON."


def build_remote_prompt(characters: Sequence[Character], count: int) -> str:
    character_list = ", ".join(c.describe() for c in characters)
    return f"""Generate {count} challenging quiz questions.

LEARNED CHARACTERS ({len(characters)} total):
{character_list}

Return a JSON array of objects with this structure:
[
  {{
    "question": "<Japanese character to display>",
    "targetChar": "<same as question>",
    "correctAnswer": "<romaji reading>",
    "options": ["<romaji1>", "<romaji2>", "<romaji3>", "<romaji4>"]
  }}
]

DISTRACTOR RULES (priority order):
1. VISUAL SIMILARITY: similar strokes, hooks, loops, direction
   (e.g. ろ/る/ら, し/つ/そ, ん/り). Include at least 2 when possible.
2. SAME PHONETIC GROUP: characters from the same row.
3. COMMON CONFUSIONS that beginners mix up.

REQUIREMENTS for EACH question:
- The target is one character from the learned list.
- Exactly 3 distractors, all from the learned list.
- All 4 options are unique romaji readings.
- The correct answer may be at any position.
- Vary the target characters across the {count} questions.

Return ONLY the raw JSON array. No markdown, no explanation."""


def parse_remote_response(text: str) -> Any:
    raw = text.strip()
    if raw.startswith("```"):
        lines = raw.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        raw = "\n".join(lines)
    return json.loads(raw)


def validate_remote_question(item: Any, learned: Sequence[Character]) -> Optional[QuizQuestion]:
    """Turn one remote item into a QuizQuestion, or None if it breaks the contract."""
    if not isinstance(item, dict):
        return None
    glyph = item.get("targetChar") or item.get("question")
    correct = item.get("correctAnswer")
    options = item.get("options")
    if not isinstance(glyph, str) or not glyph or not isinstance(correct, str) or not correct:
        return None
    if not isinstance(options, list) or len(options) != OPTION_COUNT:
        return None
    if not all(isinstance(o, str) for o in options) or len(set(options)) != OPTION_COUNT:
        return None
    if correct not in options:
        return None
    learned_romaji = {c.romaji for c in learned}
    if not all(o in learned_romaji for o in options):
        return None

    # The glyph must read as the claimed answer, or a right answer gets graded wrong
    target = next((c for c in learned if c.glyph == glyph and c.romaji == correct), None)
    if target is None:
        return None
    return QuizQuestion(
        target_glyph=glyph,
        correct_answer=correct,
        options=tuple(options),
        target_id=target.id,
    )


class RemoteQuestionSource(QuestionSource):
    """Questions from an LLM, with the local generator as the safety net.

    `model` is anything with `prompt(text, system=...)` returning an object
    with `text()`: an `llm` model or the app's OpenAI wrapper. Every failure
    (no model, network, timeout, bad JSON, invalid items) ends in the local
    source. Each fetch carries a ticket; `cancel()` invalidates outstanding
    tickets so late results are thrown away.
    """

    def __init__(
        self,
        model: Any,
        fallback: Optional[QuestionSource] = None,
        catalog: Sequence[Character] = ALL_CHARACTERS,
        batch_size: int = REMOTE_BATCH_SIZE,
        timeout: float = REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model
        self.fallback = fallback or LocalQuestionSource(catalog)
        self.catalog = catalog
        self.batch_size = batch_size
        self.timeout = timeout
        self._buffer: deque = deque()
        self._generation = 0
        self._lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        self._inflight: Optional[concurrent.futures.Future] = None

    # -- tickets ---------------------------------------------------------

    def begin_request(self) -> int:
        with self._lock:
            return self._generation

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            self._buffer.clear()

    def close(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def accept(self, ticket: int, questions: Sequence[QuizQuestion]) -> bool:
        """Buffer a batch unless its request was superseded."""
        with self._lock:
            if ticket != self._generation:
                if DEBUG_MODE:
                    print(f"🔎 Discarding stale remote batch (ticket {ticket}, now {self._generation})")
                return False
            self._buffer.extend(questions)
            return True

    # -- fetching --------------------------------------------------------

    def fetch_batch(self, learned: Sequence[Character], count: int) -> List[QuizQuestion]:
        """One remote round trip. Returns only valid questions; raises on transport errors."""
        response = self.model.prompt(build_remote_prompt(learned, count), system=REMOTE_SYSTEM_PROMPT)
        data = parse_remote_response(response.text())
        if not isinstance(data, list):
            print("⚠️ Remote quiz source did not return an array")
            return []
        questions = [q for q in (validate_remote_question(item, learned) for item in data) if q is not None]
        if DEBUG_MODE:
            print(f"✅ Remote quiz batch: {len(questions)}/{len(data)} valid")
        return questions

    def refill(self, learned: Sequence[Character]) -> int:
        if self._inflight is not None and not self._inflight.done():
            # A timed-out call still holds the worker; do not queue behind it
            print("⚠️ Previous remote quiz request still running, using local generator")
            return 0
        ticket = self.begin_request()
        future = self._executor.submit(self.fetch_batch, learned, self.batch_size)
        self._inflight = future
        try:
            batch = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            print(f"⚠️ Remote quiz source timed out after {self.timeout}s, using local generator")
            return 0
        except Exception as e:
            print(f"⚠️ Remote quiz generation failed: {e}")
            return 0
        return len(batch) if self.accept(ticket, batch) else 0

    def _pop(self) -> Optional[QuizQuestion]:
        with self._lock:
            return self._buffer.popleft() if self._buffer else None

    def next_question(self, learned_ids: Sequence[str], recent: RecentMemory) -> QuizResult:
        learned = learned_pool(learned_ids, self.catalog)
        if len(learned) < MIN_LEARNED_FOR_QUIZ:
            return QuizUnavailable(NOT_ENOUGH_LEARNED)

        if self.model is not None:
            question = self._pop()
            if question is None and self.refill(learned):
                question = self._pop()
            if question is not None:
                if question.target_id:
                    recent.remember(question.target_id)
                return question

        return self.fallback.next_question(learned_ids, recent)


def make_question_source(
    ai_mode: bool,
    model: Any = None,
    catalog: Sequence[Character] = ALL_CHARACTERS,
    timeout: float = REMOTE_TIMEOUT_SECONDS,
) -> QuestionSource:
    local = LocalQuestionSource(catalog)
    if ai_mode and model is not None:
        return RemoteQuestionSource(model, fallback=local, catalog=catalog, timeout=timeout)
    return local
