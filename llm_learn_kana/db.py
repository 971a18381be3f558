from __future__ import annotations
from sqlalchemy import create_engine, String, Text, DateTime
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session, Mapped, mapped_column
import base64
import binascii
import datetime
import json
import os
import time
import uuid
from dataclasses import dataclass, replace
from typing import Optional, List, Any, Dict

from .progress import LearnerProgress, progress_from_dict, progress_to_dict

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"


class Base(DeclarativeBase):
    pass
DB_PATH: str = os.environ.get("LLM_KANA_DB", "kana_learning.db")
engine = create_engine(f"sqlite:///{DB_PATH}")
# Prevent attribute expiration on commit so returned objects remain accessible
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

SESSIONS_KEY = "nihongo_sessions"
LAST_SESSION_KEY = "nihongo_last_session_id"
THEME_KEY = "nihongo_theme"
AI_QUIZ_MODE_KEY = "nihongo_ai_quiz_mode"
LEGACY_PROGRESS_KEY = "nihongo_progress_zen"
PROGRESS_KEY_PREFIX = "nihongo_progress_"

THEMES = ("light", "dark")
DEFAULT_THEME = "light"
DEFAULT_PROFILE_NAME = "Default User"
MAX_AVATAR_BYTES = 2 * 1024 * 1024


class KeyValue(Base):
    """Local key-value storage; every logical record is one JSON string."""
    __tablename__ = "kv_store"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.datetime.now(datetime.UTC),
        onupdate=lambda: datetime.datetime.now(datetime.UTC),
    )


class ProfileNotFound(ValueError):
    pass


class InvalidAvatar(ValueError):
    pass


class AvatarTooLarge(InvalidAvatar):
    pass


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    last_active: int
    avatar: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name, "lastActive": self.last_active}
        if self.avatar:
            data["avatar"] = self.avatar
        return data


def is_db_initialized() -> bool:
    """Check if the key-value table exists."""
    from sqlalchemy import inspect
    inspector = inspect(engine)
    return KeyValue.__tablename__ in set(inspector.get_table_names())


def init_db() -> None:
    """Initialize the database by creating all tables."""
    Base.metadata.create_all(bind=engine)


def get_session() -> Session:
    return SessionLocal()


# ----------------------------------------------------------------------
# Raw key-value access
# ----------------------------------------------------------------------

def _put(session: Session, key: str, value: str) -> None:
    row = session.get(KeyValue, key)
    if row is None:
        session.add(KeyValue(key=key, value=value))
    else:
        row.value = value


def kv_get(key: str) -> Optional[str]:
    session: Session = get_session()
    row = session.get(KeyValue, key)
    session.close()
    return row.value if row else None


def kv_set(key: str, value: str) -> None:
    session: Session = get_session()
    _put(session, key, value)
    session.commit()
    session.close()


def kv_delete(key: str) -> None:
    session: Session = get_session()
    row = session.get(KeyValue, key)
    if row is not None:
        session.delete(row)
        session.commit()
    session.close()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ----------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------

def _profile_from_dict(raw: Any) -> Optional[Profile]:
    if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
        return None
    last_active = raw.get("lastActive")
    avatar = raw.get("avatar")
    return Profile(
        id=raw["id"],
        name=str(raw.get("name") or DEFAULT_PROFILE_NAME),
        last_active=int(last_active) if isinstance(last_active, (int, float)) else 0,
        avatar=avatar if isinstance(avatar, str) and avatar else None,
    )


def list_profiles() -> List[Profile]:
    raw = kv_get(SESSIONS_KEY)
    if raw is None:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        print("⚠️ Profile list is not valid JSON, ignoring it")
        return []
    if not isinstance(data, list):
        return []
    return [p for p in (_profile_from_dict(item) for item in data) if p is not None]


def _dump_profiles(profiles: List[Profile]) -> str:
    return json.dumps([p.to_dict() for p in profiles], ensure_ascii=False)


def save_profiles(profiles: List[Profile]) -> None:
    kv_set(SESSIONS_KEY, _dump_profiles(profiles))


def get_profile(profile_id: str) -> Profile:
    for profile in list_profiles():
        if profile.id == profile_id:
            return profile
    raise ProfileNotFound(f"No profile with id {profile_id!r}")


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Profile name must not be empty")
    return cleaned


def create_profile(name: str) -> Profile:
    profile = Profile(id=str(uuid.uuid4()), name=_clean_name(name), last_active=_now_ms())
    save_profiles(list_profiles() + [profile])
    if DEBUG_MODE:
        print(f"✅ Created profile {profile.name} ({profile.id})")
    return profile


def _update_profile(profile_id: str, **changes: Any) -> Profile:
    profiles = list_profiles()
    for i, profile in enumerate(profiles):
        if profile.id == profile_id:
            profiles[i] = replace(profile, **changes)
            save_profiles(profiles)
            return profiles[i]
    raise ProfileNotFound(f"No profile with id {profile_id!r}")


def rename_profile(profile_id: str, name: str) -> Profile:
    return _update_profile(profile_id, name=_clean_name(name))


def delete_profile(profile_id: str) -> None:
    """Remove the profile together with its progress."""
    profiles = list_profiles()
    remaining = [p for p in profiles if p.id != profile_id]
    if len(remaining) == len(profiles):
        raise ProfileNotFound(f"No profile with id {profile_id!r}")

    session: Session = get_session()
    _put(session, SESSIONS_KEY, _dump_profiles(remaining))
    row = session.get(KeyValue, progress_key(profile_id))
    if row is not None:
        session.delete(row)
    last = session.get(KeyValue, LAST_SESSION_KEY)
    if last is not None and last.value == profile_id:
        session.delete(last)
    session.commit()
    session.close()


def select_profile(profile_id: str) -> Profile:
    profile = _update_profile(profile_id, last_active=_now_ms())
    kv_set(LAST_SESSION_KEY, profile_id)
    return profile


def get_last_profile_id() -> Optional[str]:
    """The last selected profile, if it still exists."""
    last = kv_get(LAST_SESSION_KEY)
    if last and any(p.id == last for p in list_profiles()):
        return last
    return None


def clear_last_profile() -> None:
    kv_delete(LAST_SESSION_KEY)


def validate_avatar(data_uri: str) -> None:
    """Check an avatar data URI before anything is stored.

    Raises InvalidAvatar for anything that is not a base64 image data URI and
    AvatarTooLarge when the decoded image exceeds MAX_AVATAR_BYTES.
    """
    if not isinstance(data_uri, str) or not data_uri.startswith("data:image/"):
        raise InvalidAvatar("Avatar must be an image data URI")
    header, sep, payload = data_uri.partition(",")
    if not sep or ";base64" not in header:
        raise InvalidAvatar("Avatar data URI must be base64 encoded")
    # Cheap bound before decoding: base64 inflates by 4/3.
    if len(payload) * 3 // 4 > MAX_AVATAR_BYTES + 3:
        raise AvatarTooLarge(f"Avatar exceeds {MAX_AVATAR_BYTES // (1024 * 1024)} MB")
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidAvatar("Avatar payload is not valid base64")
    if len(decoded) > MAX_AVATAR_BYTES:
        raise AvatarTooLarge(f"Avatar exceeds {MAX_AVATAR_BYTES // (1024 * 1024)} MB")


def set_avatar(profile_id: str, data_uri: Optional[str]) -> Profile:
    if data_uri:
        validate_avatar(data_uri)
    return _update_profile(profile_id, avatar=data_uri or None)


# ----------------------------------------------------------------------
# Preferences
# ----------------------------------------------------------------------

def get_theme() -> str:
    theme = kv_get(THEME_KEY)
    return theme if theme in THEMES else DEFAULT_THEME


def set_theme(theme: str) -> str:
    if theme not in THEMES:
        raise ValueError(f"Theme must be one of {', '.join(THEMES)}")
    kv_set(THEME_KEY, theme)
    return theme


def toggle_theme() -> str:
    return set_theme("dark" if get_theme() == "light" else "light")


def get_ai_quiz_mode() -> bool:
    return kv_get(AI_QUIZ_MODE_KEY) == "true"


def set_ai_quiz_mode(enabled: bool) -> None:
    kv_set(AI_QUIZ_MODE_KEY, "true" if enabled else "false")


# ----------------------------------------------------------------------
# Progress blobs
# ----------------------------------------------------------------------

def progress_key(profile_id: str) -> str:
    return f"{PROGRESS_KEY_PREFIX}{profile_id}"


def load_progress(profile_id: str, today: Optional[str] = None) -> LearnerProgress:
    """Load a profile's progress, falling back to defaults for anything unreadable."""
    raw = kv_get(progress_key(profile_id))
    if raw is None:
        return progress_from_dict(None, today)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"⚠️ Progress for profile {profile_id} is corrupt ({e}), starting from defaults")
        data = None
    return progress_from_dict(data, today)


def save_progress(profile_id: str, progress: LearnerProgress) -> None:
    kv_set(progress_key(profile_id), json.dumps(progress_to_dict(progress), ensure_ascii=False))


# ----------------------------------------------------------------------
# Legacy single-profile data
# ----------------------------------------------------------------------

def migrate_legacy_progress() -> Optional[Profile]:
    """Wrap pre-profile progress into a new default profile.

    Runs only while no profiles exist and the legacy key is present. The
    legacy blob is copied as-is under the new profile's key.
    """
    if list_profiles():
        return None
    legacy = kv_get(LEGACY_PROGRESS_KEY)
    if legacy is None:
        return None

    profile = Profile(id=str(uuid.uuid4()), name=DEFAULT_PROFILE_NAME, last_active=_now_ms())
    session: Session = get_session()
    _put(session, SESSIONS_KEY, _dump_profiles([profile]))
    _put(session, progress_key(profile.id), legacy)
    session.commit()
    session.close()
    print(f"✅ Migrated legacy progress into profile '{profile.name}' ({profile.id})")
    return profile
