import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import db
from . import progress as prog
from .catalog import ALL_CHARACTERS, Character, get_character
from .progress import LearnerProgress
from .quiz import (
    NO_DISTRACTORS,
    QuestionSource,
    QuizQuestion,
    QuizResult,
    RecentMemory,
    make_question_source,
    REMOTE_TIMEOUT_SECONDS,
)
from .study import RevisionQueue, StudySession

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

QUESTION_ATTEMPTS = 3


def bootstrap() -> Optional[db.Profile]:
    """One-time startup: make sure tables exist and fold in legacy data."""
    if not db.is_db_initialized():
        db.init_db()
        if DEBUG_MODE:
            print("✅ Database initialized")
    return db.migrate_legacy_progress()


class LearnerController:
    """Owns one profile's progress for the lifetime of the process.

    Every update replaces the whole progress object and is persisted right
    away. Quiz anti-repeat memory and the question source live here rather
    than at module level, so separate instances never share state.
    """

    def __init__(
        self,
        profile_id: str,
        catalog: Sequence[Character] = ALL_CHARACTERS,
        model: Any = None,
        ai_mode: Optional[bool] = None,
        timeout: float = REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self.profile_id = profile_id
        self.catalog = catalog
        self.model = model
        self.timeout = timeout
        self.recent = RecentMemory()
        self._progress = db.load_progress(profile_id)
        self.ai_mode = db.get_ai_quiz_mode() if ai_mode is None else ai_mode
        self.source: QuestionSource = make_question_source(self.ai_mode, model, catalog, timeout)
        self.study: Optional[StudySession] = None
        self.revision: Optional[RevisionQueue] = None

    @property
    def progress(self) -> LearnerProgress:
        return self._progress

    def _commit(self, updated: LearnerProgress) -> LearnerProgress:
        self._progress = updated
        db.save_progress(self.profile_id, updated)
        if self.revision is not None:
            self.revision.refresh(updated)
        return updated

    def apply(self, update: Callable[[LearnerProgress], LearnerProgress]) -> LearnerProgress:
        return self._commit(update(self._progress))

    # -- study -----------------------------------------------------------

    def start_study(self, unlocked: bool = False, today: Optional[str] = None) -> StudySession:
        self.study = StudySession.start(self._progress, self.catalog, today, unlocked)
        return self.study

    def _active_study(self) -> StudySession:
        if self.study is None:
            return self.start_study()
        return self.study

    def study_seen(self) -> StudySession:
        session = self._active_study()
        self._commit(session.mark_seen(self._progress))
        return session

    def study_revise(self) -> StudySession:
        session = self._active_study()
        self._commit(session.mark_for_revision(self._progress))
        return session

    # -- revision --------------------------------------------------------

    def open_revision(self) -> RevisionQueue:
        self.revision = RevisionQueue(self._progress, self.catalog)
        return self.revision

    def revision_keep(self) -> Optional[Character]:
        queue = self.revision or self.open_revision()
        return queue.keep()

    def revision_mastered(self) -> RevisionQueue:
        queue = self.revision or self.open_revision()
        self._commit(queue.mastered(self._progress))
        return queue

    # -- quiz ------------------------------------------------------------

    def set_ai_mode(self, enabled: bool) -> None:
        """Switch question source; anything the old source had in flight is dropped."""
        self.source.close()
        self.ai_mode = enabled
        db.set_ai_quiz_mode(enabled)
        self.source = make_question_source(enabled, self.model, self.catalog, self.timeout)

    def next_question(self) -> QuizResult:
        result = self.source.next_question(self._progress.learned_ids, self.recent)
        attempts = 1
        while getattr(result, "reason", None) == NO_DISTRACTORS and attempts < QUESTION_ATTEMPTS:
            result = self.source.next_question(self._progress.learned_ids, self.recent)
            attempts += 1
        return result

    def answer(self, question: QuizQuestion, chosen: str, now: Optional[int] = None) -> bool:
        """Record the learner's choice; a miss puts the character up for revision."""
        is_correct = chosen == question.correct_answer
        updated = prog.record_answer(self._progress, is_correct, now=now)
        if not is_correct:
            char_id = question.target_id or self._find_id(question)
            if char_id:
                updated = prog.add_to_revision(updated, char_id)
        self._commit(updated)
        return is_correct

    def _find_id(self, question: QuizQuestion) -> Optional[str]:
        for c in self.catalog:
            if c.glyph == question.target_glyph and c.romaji == question.correct_answer:
                return c.id
        return None

    # -- dashboard / settings -------------------------------------------

    def learn(self, char_id: str, today: Optional[str] = None) -> LearnerProgress:
        self._require_known(char_id)
        return self.apply(lambda p: prog.mark_seen(p, char_id, today))

    def unlearn(self, char_id: str) -> LearnerProgress:
        self._require_known(char_id)
        return self.apply(lambda p: prog.unlearn(p, char_id))

    def flag_for_revision(self, char_id: str) -> LearnerProgress:
        self._require_known(char_id)
        return self.apply(lambda p: prog.add_to_revision(p, char_id))

    def set_daily_goal(self, goal: int) -> LearnerProgress:
        return self.apply(lambda p: prog.set_daily_goal(p, goal))

    def character_board(self, script: Optional[str] = None) -> List[Tuple[Character, bool, bool]]:
        """Every catalog character with its learned and revision flags."""
        learned = set(self._progress.learned_ids)
        flagged = set(self._progress.revision_ids)
        return [
            (c, c.id in learned, c.id in flagged)
            for c in self.catalog
            if script is None or c.script == script
        ]

    def summary(self) -> Dict[str, Any]:
        return prog.summarize(self._progress, self.catalog)

    def _require_known(self, char_id: str) -> None:
        if get_character(char_id) is None:
            raise ValueError(f"Unknown character id {char_id!r}")
