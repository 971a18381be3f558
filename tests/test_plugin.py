import os
import tempfile
import pytest
from typing import Any, Generator

import click
from click.testing import CliRunner
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from llm_learn_kana import db, plugin


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
def cli(temp_db: Any) -> click.Group:
    @click.group()
    def group() -> None:
        pass

    plugin.register_commands(group)
    return group


@pytest.mark.parametrize("args", [
    ["kana-use-profile", "nope"],
    ["kana-rename-profile", "nope", "Ken"],
    ["kana-delete-profile", "nope", "--yes"],
])
def test_profile_commands_on_fresh_database(cli: click.Group, args: list) -> None:
    result = CliRunner().invoke(cli, args)
    assert result.exit_code == 1
    assert "No profile with id 'nope'" in result.output
    assert db.is_db_initialized()


def test_learn_and_flag(cli: click.Group) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["kana-learn", "hiragana-a"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(cli, ["kana-flag", "katakana-ka"])
    assert result.exit_code == 0, result.output

    progress = db.load_progress(db.get_last_profile_id())
    assert progress.learned_ids == ("hiragana-a",)
    assert progress.revision_ids == ("katakana-ka",)

    listing = runner.invoke(cli, ["kana-characters", "--script", "hiragana"]).output
    assert "L-  あ  a" in listing
    assert "katakana-ka" not in listing
    assert "-R  カ" in runner.invoke(cli, ["kana-characters", "--script", "katakana"]).output


def test_unknown_character_is_rejected(cli: click.Group) -> None:
    runner = CliRunner()
    for command in ("kana-learn", "kana-flag"):
        result = runner.invoke(cli, [command, "kanji-nothing"])
        assert result.exit_code == 1
        assert "Unknown character id" in result.output
