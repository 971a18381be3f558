import json
import os
import tempfile
import pytest
from typing import Any, Generator
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from llm_learn_kana import db
from llm_learn_kana.catalog import ALL_CHARACTERS
from llm_learn_kana.controller import LearnerController, bootstrap
from llm_learn_kana.progress import todays_count
from llm_learn_kana.quiz import (
    NO_DISTRACTORS,
    LocalQuestionSource,
    QuizQuestion,
    QuizUnavailable,
    RemoteQuestionSource,
)
from llm_learn_kana.study import COMPLETE, IN_SESSION, QUOTA_REACHED


@pytest.fixture(scope="function")
def temp_db() -> Generator[None, None, None]:
    """Setup transient SQLite DB for testing."""
    fd, path = tempfile.mkstemp()
    os.close(fd)
    db.engine = create_engine(f"sqlite:///{path}")
    db.SessionLocal = sessionmaker(bind=db.engine, expire_on_commit=False)
    yield
    db.engine.dispose()
    os.unlink(path)


@pytest.fixture
def profile(temp_db: Any) -> db.Profile:
    bootstrap()
    return db.create_profile("Aiko")


def test_bootstrap_creates_tables_and_migrates(temp_db: Any) -> None:
    assert not db.is_db_initialized()
    db.init_db()
    db.kv_set(db.LEGACY_PROGRESS_KEY, json.dumps({"learned": ["hiragana-a"]}))
    migrated = bootstrap()
    assert migrated is not None
    assert LearnerController(migrated.id).progress.learned_ids == ("hiragana-a",)
    assert bootstrap() is None


def test_bootstrap_on_empty_file(temp_db: Any) -> None:
    assert bootstrap() is None
    assert db.is_db_initialized()


def test_every_change_is_persisted(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    controller.start_study()
    controller.study_seen()
    controller.study_revise()

    reloaded = db.load_progress(profile.id)
    assert reloaded == controller.progress
    assert len(reloaded.learned_ids) == 1
    assert len(reloaded.revision_ids) == 1


def test_study_day_then_quota(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    session = controller.start_study()
    while session.state == IN_SESSION:
        controller.study_seen()
    assert session.reason == QUOTA_REACHED
    assert todays_count(controller.progress) == 5

    again = LearnerController(profile.id).start_study()
    assert again.state == COMPLETE
    assert again.reason == QUOTA_REACHED


def test_wrong_answer_flags_for_revision(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    question = QuizQuestion("あ", "a", ("a", "o", "i", "u"), "hiragana-a")
    assert controller.answer(question, "o") is False
    assert "hiragana-a" in controller.progress.revision_ids
    assert controller.answer(question, "a") is True
    entry = controller.progress.history[-1]
    assert (entry.quiz_total, entry.quiz_correct) == (2, 1)


def test_wrong_answer_without_id_resolves_glyph(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    question = QuizQuestion("ア", "a", ("a", "o", "i", "u"))
    controller.answer(question, "u")
    assert controller.progress.revision_ids == ("katakana-a",)


def test_next_question_retries_no_distractors(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    good = QuizQuestion("あ", "a", ("a", "o", "i", "u"), "hiragana-a")
    source = MagicMock()
    source.next_question.side_effect = [QuizUnavailable(NO_DISTRACTORS), good]
    controller.source = source
    assert controller.next_question() == good
    assert source.next_question.call_count == 2


def test_next_question_gives_up_after_attempts(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    source = MagicMock()
    source.next_question.return_value = QuizUnavailable(NO_DISTRACTORS)
    controller.source = source
    assert controller.next_question() == QuizUnavailable(NO_DISTRACTORS)
    assert source.next_question.call_count == 3


def test_quiz_from_learned_characters(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    for c in ALL_CHARACTERS[:6]:
        controller.learn(c.id)
    question = controller.next_question()
    assert isinstance(question, QuizQuestion)
    assert question.target_id in controller.progress.learned_ids
    assert len(controller.recent) == 1


def test_switching_quiz_mode_cancels_and_persists(profile: db.Profile) -> None:
    model = MagicMock()
    controller = LearnerController(profile.id, model=model, ai_mode=False)
    assert isinstance(controller.source, LocalQuestionSource)

    controller.set_ai_mode(True)
    remote = controller.source
    assert isinstance(remote, RemoteQuestionSource)
    assert db.get_ai_quiz_mode() is True

    ticket = remote.begin_request()
    controller.set_ai_mode(False)
    assert remote.accept(ticket, []) is False
    assert isinstance(controller.source, LocalQuestionSource)
    assert db.get_ai_quiz_mode() is False


def test_revision_through_controller(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    controller.flag_for_revision("hiragana-a")
    controller.flag_for_revision("hiragana-ka")
    assert controller.open_revision().current.id == "hiragana-a"
    assert controller.revision_keep().id == "hiragana-ka"
    controller.revision_mastered()
    assert db.load_progress(profile.id).revision_ids == ("hiragana-a",)


def test_open_revision_follows_study_and_quiz(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    controller.flag_for_revision("hiragana-a")
    controller.flag_for_revision("hiragana-i")
    assert controller.open_revision().current.id == "hiragana-a"

    # studying hiragana-a clears its flag while the revision view is open
    controller.start_study()
    controller.study_seen()
    assert controller.revision.current.id == "hiragana-i"
    assert len(controller.revision) == 1
    assert controller.revision_keep().id == "hiragana-i"

    controller.answer(QuizQuestion("か", "ka", ("ka", "a", "i", "u"), "hiragana-ka"), "a")
    assert [c.id for c in controller.revision.items] == ["hiragana-i", "hiragana-ka"]
    assert controller.revision.current.id == "hiragana-i"


def test_character_board_flags(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    controller.learn("hiragana-a")
    controller.flag_for_revision("katakana-ka")
    board = {c.id: (learned, flagged) for c, learned, flagged in controller.character_board()}
    assert len(board) == len(ALL_CHARACTERS)
    assert board["hiragana-a"] == (True, False)
    assert board["katakana-ka"] == (False, True)
    assert board["hiragana-i"] == (False, False)
    assert all(c.script == "kanji" for c, _, _ in controller.character_board("kanji"))


def test_unlearn_and_goal(profile: db.Profile) -> None:
    controller = LearnerController(profile.id)
    controller.learn("hiragana-a")
    controller.unlearn("hiragana-a")
    assert db.load_progress(profile.id).learned_ids == ()
    with pytest.raises(ValueError):
        controller.unlearn("hiragana-xx")

    controller.set_daily_goal(10)
    assert db.load_progress(profile.id).daily_goal == 10
    with pytest.raises(ValueError):
        controller.set_daily_goal(0)
    assert db.load_progress(profile.id).daily_goal == 10


def test_controllers_do_not_share_recent_memory(profile: db.Profile) -> None:
    first = LearnerController(profile.id)
    second = LearnerController(profile.id)
    first.recent.remember("hiragana-a")
    assert "hiragana-a" not in second.recent
