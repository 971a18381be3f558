import base64
import json
import os
import tempfile
import pytest
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from llm_learn_kana import db
from llm_learn_kana.progress import default_progress, mark_seen, progress_to_dict


@pytest.fixture(scope="function")
def temp_db() -> Generator[None, None, None]:
    """Setup transient SQLite DB for testing."""
    fd, path = tempfile.mkstemp()
    os.close(fd)
    db.engine = create_engine(f"sqlite:///{path}")
    db.SessionLocal = sessionmaker(bind=db.engine, expire_on_commit=False)
    db.Base.metadata.create_all(bind=db.engine)
    yield
    db.engine.dispose()
    os.unlink(path)


def _data_uri(size: int) -> str:
    return "data:image/png;base64," + base64.b64encode(b"\x00" * size).decode("ascii")


def test_kv_round_trip(temp_db: Any) -> None:
    assert db.kv_get("missing") is None
    db.kv_set("k", "v1")
    db.kv_set("k", "v2")
    assert db.kv_get("k") == "v2"
    db.kv_delete("k")
    assert db.kv_get("k") is None


def test_create_and_list_profiles_in_insertion_order(temp_db: Any) -> None:
    first = db.create_profile("  Aiko  ")
    second = db.create_profile("Ben")
    assert first.name == "Aiko"
    assert [p.id for p in db.list_profiles()] == [first.id, second.id]
    stored = json.loads(db.kv_get(db.SESSIONS_KEY))
    assert stored[0] == {"id": first.id, "name": "Aiko", "lastActive": first.last_active}


def test_blank_profile_name_rejected(temp_db: Any) -> None:
    with pytest.raises(ValueError):
        db.create_profile("   ")
    assert db.list_profiles() == []


def test_select_and_last_profile(temp_db: Any) -> None:
    profile = db.create_profile("Aiko")
    assert db.get_last_profile_id() is None
    db.select_profile(profile.id)
    assert db.get_last_profile_id() == profile.id
    with pytest.raises(db.ProfileNotFound):
        db.select_profile("nope")


def test_rename_profile(temp_db: Any) -> None:
    profile = db.create_profile("Aiko")
    renamed = db.rename_profile(profile.id, "Aiko S.")
    assert renamed.name == "Aiko S."
    assert db.get_profile(profile.id).name == "Aiko S."


def test_delete_profile_removes_progress_and_selection(temp_db: Any) -> None:
    keep = db.create_profile("Keep")
    gone = db.create_profile("Gone")
    db.save_progress(gone.id, mark_seen(default_progress(), "hiragana-a"))
    db.select_profile(gone.id)

    db.delete_profile(gone.id)

    assert [p.id for p in db.list_profiles()] == [keep.id]
    assert db.kv_get(db.progress_key(gone.id)) is None
    assert db.kv_get(db.LAST_SESSION_KEY) is None
    with pytest.raises(db.ProfileNotFound):
        db.delete_profile(gone.id)


def test_avatar_accepted(temp_db: Any) -> None:
    profile = db.create_profile("Aiko")
    uri = _data_uri(1024)
    updated = db.set_avatar(profile.id, uri)
    assert updated.avatar == uri
    assert db.get_profile(profile.id).to_dict()["avatar"] == uri
    cleared = db.set_avatar(profile.id, None)
    assert "avatar" not in cleared.to_dict()


def test_oversized_avatar_rejected_without_change(temp_db: Any) -> None:
    profile = db.create_profile("Aiko")
    before = db.kv_get(db.SESSIONS_KEY)
    with pytest.raises(db.AvatarTooLarge):
        db.set_avatar(profile.id, _data_uri(db.MAX_AVATAR_BYTES + 1))
    assert db.kv_get(db.SESSIONS_KEY) == before


def test_avatar_at_limit_accepted() -> None:
    db.validate_avatar(_data_uri(db.MAX_AVATAR_BYTES))


@pytest.mark.parametrize("uri", [
    "https://example.com/cat.png",
    "data:text/plain;base64,aGVsbG8=",
    "data:image/png,raw-bytes",
    "data:image/png;base64,***",
])
def test_invalid_avatar(uri: str) -> None:
    with pytest.raises(db.InvalidAvatar):
        db.validate_avatar(uri)


def test_theme_and_ai_mode(temp_db: Any) -> None:
    assert db.get_theme() == "light"
    assert db.toggle_theme() == "dark"
    assert db.get_theme() == "dark"
    with pytest.raises(ValueError):
        db.set_theme("sepia")
    assert db.get_theme() == "dark"

    assert db.get_ai_quiz_mode() is False
    db.set_ai_quiz_mode(True)
    assert db.get_ai_quiz_mode() is True


def test_progress_round_trip(temp_db: Any) -> None:
    profile = db.create_profile("Aiko")
    progress = mark_seen(default_progress("2024-03-10"), "hiragana-a", "2024-03-10")
    db.save_progress(profile.id, progress)
    assert db.load_progress(profile.id, "2024-03-10") == progress


def test_corrupt_progress_loads_defaults(temp_db: Any, capsys: Any) -> None:
    db.kv_set(db.progress_key("p1"), "{not json")
    loaded = db.load_progress("p1", "2024-03-10")
    assert loaded == default_progress("2024-03-10")
    assert "⚠️" in capsys.readouterr().out


def test_legacy_migration_creates_single_profile(temp_db: Any) -> None:
    legacy = progress_to_dict(mark_seen(default_progress("2024-01-01"), "hiragana-a", "2024-01-01"))
    legacy_raw = json.dumps(legacy)
    db.kv_set(db.LEGACY_PROGRESS_KEY, legacy_raw)

    profile = db.migrate_legacy_progress()

    assert profile is not None
    assert profile.name == db.DEFAULT_PROFILE_NAME
    assert [p.id for p in db.list_profiles()] == [profile.id]
    assert db.kv_get(db.progress_key(profile.id)) == legacy_raw
    assert db.load_progress(profile.id).learned_ids == ("hiragana-a",)

    # a second run finds profiles and does nothing
    assert db.migrate_legacy_progress() is None
    assert len(db.list_profiles()) == 1


def test_no_migration_when_profiles_exist(temp_db: Any) -> None:
    db.create_profile("Aiko")
    db.kv_set(db.LEGACY_PROGRESS_KEY, "{}")
    assert db.migrate_legacy_progress() is None
    assert len(db.list_profiles()) == 1


def test_no_migration_without_legacy_data(temp_db: Any) -> None:
    assert db.migrate_legacy_progress() is None
    assert db.list_profiles() == []
