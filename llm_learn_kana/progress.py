"""
Learner progress: the single per-profile state blob and its pure update functions.

Every update returns a new LearnerProgress; nothing is edited in place, so the
owner can swap the whole structure and persist it in one write.
"""
from __future__ import annotations

import datetime
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .catalog import ALL_CHARACTERS, Character

DEFAULT_DAILY_GOAL = 5
BURST_GAP_MS = 5 * 60 * 1000


def today_iso() -> str:
    return datetime.datetime.now(datetime.UTC).date().isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class DailyCounter:
    date: str
    count: int = 0


@dataclass(frozen=True)
class QuizBurst:
    start_time: int
    end_time: int
    correct: int = 0
    total: int = 0


@dataclass(frozen=True)
class DailyStats:
    date: str
    study_count: int = 0
    quiz_correct: int = 0
    quiz_total: int = 0
    sessions: Tuple[QuizBurst, ...] = ()


@dataclass(frozen=True)
class LearnerProgress:
    learned_ids: Tuple[str, ...] = ()
    revision_ids: Tuple[str, ...] = ()
    daily_counter: DailyCounter = field(default_factory=lambda: DailyCounter(date=today_iso()))
    history: Tuple[DailyStats, ...] = ()
    daily_goal: int = DEFAULT_DAILY_GOAL


def default_progress(today: Optional[str] = None) -> LearnerProgress:
    return LearnerProgress(daily_counter=DailyCounter(date=today or today_iso()))


# ----------------------------------------------------------------------
# Daily counter
# ----------------------------------------------------------------------

def effective_counter(stored: DailyCounter, today: str) -> DailyCounter:
    """Counter as seen on `today`: a counter from another date reads as zero."""
    if stored.date != today:
        return DailyCounter(date=today, count=0)
    return stored


def todays_count(progress: LearnerProgress, today: Optional[str] = None) -> int:
    return effective_counter(progress.daily_counter, today or today_iso()).count


# ----------------------------------------------------------------------
# Learned / revision sets
# ----------------------------------------------------------------------

def _with(ids: Tuple[str, ...], char_id: str) -> Tuple[str, ...]:
    return ids if char_id in ids else ids + (char_id,)


def _without(ids: Tuple[str, ...], char_id: str) -> Tuple[str, ...]:
    return tuple(i for i in ids if i != char_id)


def _history_index(history: Tuple[DailyStats, ...], date: str) -> int:
    for i, entry in enumerate(history):
        if entry.date == date:
            return i
    return -1


def _replace_entry(history: Tuple[DailyStats, ...], index: int, entry: DailyStats) -> Tuple[DailyStats, ...]:
    if index < 0:
        return history + (entry,)
    return history[:index] + (entry,) + history[index + 1:]


def mark_seen(progress: LearnerProgress, char_id: str, today: Optional[str] = None) -> LearnerProgress:
    """Learner saw a new card: learn it, clear its revision flag, count it for today."""
    today = today or today_iso()
    counter = effective_counter(progress.daily_counter, today)

    index = _history_index(progress.history, today)
    if index >= 0:
        entry = progress.history[index]
        entry = replace(entry, study_count=entry.study_count + 1)
    else:
        entry = DailyStats(date=today, study_count=1)

    return replace(
        progress,
        learned_ids=_with(progress.learned_ids, char_id),
        revision_ids=_without(progress.revision_ids, char_id),
        daily_counter=DailyCounter(date=today, count=counter.count + 1),
        history=_replace_entry(progress.history, index, entry),
    )


def add_to_revision(progress: LearnerProgress, char_id: str) -> LearnerProgress:
    return replace(progress, revision_ids=_with(progress.revision_ids, char_id))


def remove_from_revision(progress: LearnerProgress, char_id: str) -> LearnerProgress:
    return replace(progress, revision_ids=_without(progress.revision_ids, char_id))


def unlearn(progress: LearnerProgress, char_id: str) -> LearnerProgress:
    """Drop a character from the learned set (revision flag untouched)."""
    return replace(progress, learned_ids=_without(progress.learned_ids, char_id))


def set_daily_goal(progress: LearnerProgress, goal: int) -> LearnerProgress:
    if goal < 1:
        raise ValueError("Daily goal must be at least 1")
    return replace(progress, daily_goal=int(goal))


# ----------------------------------------------------------------------
# Quiz answers
# ----------------------------------------------------------------------

def record_answer(
    progress: LearnerProgress,
    is_correct: bool,
    now: Optional[int] = None,
    today: Optional[str] = None,
) -> LearnerProgress:
    """Log one quiz answer in today's history.

    Answers less than five minutes after the last burst's end extend that
    burst; otherwise a new burst starts.
    """
    now = now_ms() if now is None else now
    today = today or today_iso()
    hit = 1 if is_correct else 0

    index = _history_index(progress.history, today)
    entry = progress.history[index] if index >= 0 else DailyStats(date=today)

    sessions = entry.sessions
    last = sessions[-1] if sessions else None
    if last is not None and now - last.end_time < BURST_GAP_MS:
        burst = replace(last, end_time=now, total=last.total + 1, correct=last.correct + hit)
        sessions = sessions[:-1] + (burst,)
    else:
        sessions = sessions + (QuizBurst(start_time=now, end_time=now, correct=hit, total=1),)

    entry = replace(
        entry,
        quiz_total=entry.quiz_total + 1,
        quiz_correct=entry.quiz_correct + hit,
        sessions=sessions,
    )
    return replace(progress, history=_replace_entry(progress.history, index, entry))


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------

def compute_streak(history: Iterable[DailyStats], today: Optional[str] = None) -> Dict[str, int]:
    """Current and longest run of consecutive active days.

    The current streak may start today or yesterday, so an unfinished day
    does not break it.
    """
    active = set()
    for entry in history:
        if entry.study_count > 0 or entry.quiz_total > 0:
            try:
                active.add(datetime.date.fromisoformat(entry.date))
            except ValueError:
                continue

    day = datetime.date.fromisoformat(today or today_iso())
    current = 0
    check = day if day in active else day - datetime.timedelta(days=1)
    while check in active:
        current += 1
        check -= datetime.timedelta(days=1)

    longest = 0
    if active:
        ordered = sorted(active)
        run = 1
        for i in range(1, len(ordered)):
            if ordered[i] - ordered[i - 1] == datetime.timedelta(days=1):
                run += 1
            else:
                longest = max(longest, run)
                run = 1
        longest = max(longest, run)

    return {"current": current, "longest": longest}


def recent_history(progress: LearnerProgress, days: int = 14, today: Optional[str] = None) -> List[DailyStats]:
    """History entries within the last `days` days, oldest first."""
    end = datetime.date.fromisoformat(today or today_iso())
    start = end - datetime.timedelta(days=days - 1)
    rows = []
    for entry in progress.history:
        try:
            day = datetime.date.fromisoformat(entry.date)
        except ValueError:
            continue
        if start <= day <= end:
            rows.append(entry)
    return sorted(rows, key=lambda e: e.date)


def summarize(
    progress: LearnerProgress,
    catalog: Iterable[Character] = ALL_CHARACTERS,
    today: Optional[str] = None,
) -> Dict[str, Any]:
    today = today or today_iso()
    catalog = list(catalog)
    known = {c.id for c in catalog}
    quiz_total = sum(e.quiz_total for e in progress.history)
    quiz_correct = sum(e.quiz_correct for e in progress.history)
    return {
        "learned": len([i for i in progress.learned_ids if i in known]),
        "total": len(catalog),
        "revision": len(progress.revision_ids),
        "today": todays_count(progress, today),
        "daily_goal": progress.daily_goal,
        "quiz_total": quiz_total,
        "quiz_correct": quiz_correct,
        "accuracy": round(quiz_correct / quiz_total * 100, 1) if quiz_total else 0.0,
        "streak": compute_streak(progress.history, today),
    }


# ----------------------------------------------------------------------
# JSON shape
# ----------------------------------------------------------------------

def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _as_str_tuple(value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    out: List[str] = []
    for item in value:
        if isinstance(item, str) and item not in out:
            out.append(item)
    return tuple(out)


def _burst_from_dict(raw: Any) -> Optional[QuizBurst]:
    if not isinstance(raw, dict):
        return None
    return QuizBurst(
        start_time=_as_int(raw.get("startTime")),
        end_time=_as_int(raw.get("endTime")),
        correct=_as_int(raw.get("correct")),
        total=_as_int(raw.get("total")),
    )


def _stats_from_dict(raw: Any) -> Optional[DailyStats]:
    if not isinstance(raw, dict) or not isinstance(raw.get("date"), str):
        return None
    sessions = raw.get("sessions") if isinstance(raw.get("sessions"), list) else []
    bursts = tuple(b for b in (_burst_from_dict(s) for s in sessions) if b is not None)
    return DailyStats(
        date=raw["date"],
        study_count=_as_int(raw.get("studyCount")),
        quiz_correct=_as_int(raw.get("quizCorrect")),
        quiz_total=_as_int(raw.get("quizTotal")),
        sessions=bursts,
    )


def progress_from_dict(raw: Any, today: Optional[str] = None) -> LearnerProgress:
    """Merge whatever fields survive in `raw` over the defaults, field by field."""
    base = default_progress(today)
    if not isinstance(raw, dict):
        return base

    counter = base.daily_counter
    daily = raw.get("dailyProgress")
    if isinstance(daily, dict) and isinstance(daily.get("date"), str):
        counter = DailyCounter(date=daily["date"], count=max(0, _as_int(daily.get("count"))))

    history_raw = raw.get("history") if isinstance(raw.get("history"), list) else []
    history = tuple(s for s in (_stats_from_dict(h) for h in history_raw) if s is not None)

    goal = base.daily_goal
    settings = raw.get("settings")
    if isinstance(settings, dict):
        candidate = _as_int(settings.get("dailyGoal"), base.daily_goal)
        if candidate >= 1:
            goal = candidate

    return LearnerProgress(
        learned_ids=_as_str_tuple(raw.get("learned")),
        revision_ids=_as_str_tuple(raw.get("revisionList")),
        daily_counter=counter,
        history=history,
        daily_goal=goal,
    )


def progress_to_dict(progress: LearnerProgress) -> Dict[str, Any]:
    return {
        "learned": list(progress.learned_ids),
        "revisionList": list(progress.revision_ids),
        "dailyProgress": {"date": progress.daily_counter.date, "count": progress.daily_counter.count},
        "history": [
            {
                "date": e.date,
                "studyCount": e.study_count,
                "quizCorrect": e.quiz_correct,
                "quizTotal": e.quiz_total,
                "sessions": [
                    {"startTime": s.start_time, "endTime": s.end_time, "correct": s.correct, "total": s.total}
                    for s in e.sessions
                ],
            }
            for e in progress.history
        ],
        "settings": {"dailyGoal": progress.daily_goal},
    }
