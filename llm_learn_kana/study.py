from typing import List, Optional, Sequence

from .catalog import ALL_CHARACTERS, Character, characters_by_ids
from . import progress as prog
from .progress import LearnerProgress

IN_SESSION = "in_session"
COMPLETE = "complete"

QUOTA_REACHED = "quota_reached"
ALL_LEARNED = "all_learned"
QUEUE_FINISHED = "queue_finished"


class StudySessionComplete(Exception):
    """Raised when an action is attempted on a finished study session."""


def unlearned_characters(progress: LearnerProgress, catalog: Sequence[Character] = ALL_CHARACTERS) -> List[Character]:
    learned = set(progress.learned_ids)
    return [c for c in catalog if c.id not in learned]


def build_queue(
    progress: LearnerProgress,
    catalog: Sequence[Character] = ALL_CHARACTERS,
    today: Optional[str] = None,
    unlocked: bool = False,
) -> List[Character]:
    """Today's new cards: the first unlearned characters in catalog order, up to the quota."""
    if unlocked:
        remaining = len(catalog)
    else:
        remaining = max(0, progress.daily_goal - prog.todays_count(progress, today))
    return unlearned_characters(progress, catalog)[:remaining]


class StudySession:
    """One pass through today's new cards.

    Always built fresh from the current progress; nothing is resumed from a
    previous instance, so re-entering never double-counts.
    """

    def __init__(
        self,
        queue: List[Character],
        catalog: Sequence[Character],
        today: Optional[str],
        state: str,
        reason: Optional[str] = None,
    ) -> None:
        self.queue = queue
        self.catalog = catalog
        self.today = today
        self.state = state
        self.reason = reason
        self.cursor = 0

    @classmethod
    def start(
        cls,
        progress: LearnerProgress,
        catalog: Sequence[Character] = ALL_CHARACTERS,
        today: Optional[str] = None,
        unlocked: bool = False,
    ) -> "StudySession":
        if not unlearned_characters(progress, catalog):
            return cls([], catalog, today, COMPLETE, ALL_LEARNED)
        queue = build_queue(progress, catalog, today, unlocked)
        if not queue:
            return cls([], catalog, today, COMPLETE, QUOTA_REACHED)
        return cls(queue, catalog, today, IN_SESSION)

    @property
    def current(self) -> Optional[Character]:
        if self.state != IN_SESSION:
            return None
        return self.queue[self.cursor]

    @property
    def position(self) -> int:
        return min(self.cursor + 1, len(self.queue))

    def _require_current(self) -> Character:
        current = self.current
        if current is None:
            raise StudySessionComplete(f"Study session already complete ({self.reason})")
        return current

    def _advance(self, progress: LearnerProgress) -> None:
        self.cursor += 1
        if self.cursor < len(self.queue):
            return
        self.state = COMPLETE
        if not unlearned_characters(progress, self.catalog):
            self.reason = ALL_LEARNED
        elif prog.todays_count(progress, self.today) >= progress.daily_goal:
            self.reason = QUOTA_REACHED
        else:
            self.reason = QUEUE_FINISHED

    def mark_seen(self, progress: LearnerProgress) -> LearnerProgress:
        character = self._require_current()
        updated = prog.mark_seen(progress, character.id, self.today)
        self._advance(updated)
        return updated

    def mark_for_revision(self, progress: LearnerProgress) -> LearnerProgress:
        character = self._require_current()
        updated = prog.add_to_revision(progress, character.id)
        self._advance(updated)
        return updated


class RevisionQueue:
    """Cards flagged for review, in catalog order, with a wrapping cursor."""

    def __init__(self, progress: LearnerProgress, catalog: Sequence[Character] = ALL_CHARACTERS) -> None:
        self.catalog = catalog
        self.cursor = 0
        self.items: List[Character] = []
        self.refresh(progress)

    def refresh(self, progress: LearnerProgress) -> None:
        """Re-read the flagged ids, staying on the current card if it is still flagged."""
        shown = self.current
        self.items = characters_by_ids(progress.revision_ids, self.catalog)
        if shown is not None and shown in self.items:
            self.cursor = self.items.index(shown)
        elif self.cursor >= len(self.items):
            self.cursor = 0

    def __len__(self) -> int:
        return len(self.items)

    @property
    def current(self) -> Optional[Character]:
        if not self.items:
            return None
        return self.items[self.cursor]

    def keep(self) -> Optional[Character]:
        """Leave the card flagged and move on."""
        if self.items:
            self.cursor = (self.cursor + 1) % len(self.items)
        return self.current

    def mastered(self, progress: LearnerProgress) -> LearnerProgress:
        """Clear the review flag of the current card.

        The card is not added to the learned set.
        """
        current = self.current
        if current is None:
            return progress
        was_last = self.cursor >= len(self.items) - 1
        updated = prog.remove_from_revision(progress, current.id)
        if was_last:
            self.cursor = 0
        self.refresh(updated)
        return updated
