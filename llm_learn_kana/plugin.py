from . import db
from typing import Any, Optional

try:
    import llm  # type: ignore
    hookimpl = llm.hookimpl  # type: ignore
except ImportError:
    import pluggy
    hookimpl = pluggy.HookimplMarker("llm")


def _active_profile() -> db.Profile:
    """The last selected profile, creating a default one on first use."""
    from .controller import bootstrap
    bootstrap()
    last = db.get_last_profile_id()
    if last:
        return db.get_profile(last)
    profiles = db.list_profiles()
    profile = profiles[0] if profiles else db.create_profile(db.DEFAULT_PROFILE_NAME)
    return db.select_profile(profile.id)


def _load_model(model: Optional[str]) -> Any:
    if not model:
        return None
    import llm  # type: ignore
    try:
        return llm.get_model(model)
    except Exception as e:
        print(f"⚠️ Could not load model {model}: {e}")
        return None


@hookimpl  # type: ignore[misc]
def register_commands(cli: Any) -> None:
    import click
    from .controller import LearnerController
    from .study import IN_SESSION, ALL_LEARNED, QUOTA_REACHED
    from .quiz import QuizQuestion, NOT_ENOUGH_LEARNED
    from .catalog import SCRIPTS

    @cli.command("kana-init-db")  # type: ignore[misc]
    def init_db() -> None:
        """Initialize the kana learning database."""
        db.init_db()
        migrated = db.migrate_legacy_progress()
        click.echo("Database initialized.")
        if migrated:
            click.echo(f"Legacy progress moved into profile '{migrated.name}'.")

    @cli.command("kana-profiles")  # type: ignore[misc]
    def profiles() -> None:
        """List learner profiles."""
        from .controller import bootstrap
        bootstrap()
        last = db.get_last_profile_id()
        found = db.list_profiles()
        if not found:
            click.echo("No profiles yet. Create one with 'llm kana-new-profile <name>'.")
            return
        for p in found:
            marker = "*" if p.id == last else " "
            click.echo(f"{marker} {p.name}  ({p.id})")

    @cli.command("kana-new-profile")  # type: ignore[misc]
    @click.argument("name")
    def new_profile(name: str) -> None:
        """Create a profile and switch to it."""
        from .controller import bootstrap
        bootstrap()
        try:
            profile = db.create_profile(name)
        except ValueError as e:
            raise click.ClickException(str(e))
        db.select_profile(profile.id)
        click.echo(f"Profile '{profile.name}' created ({profile.id}).")

    @cli.command("kana-use-profile")  # type: ignore[misc]
    @click.argument("profile_id")
    def use_profile(profile_id: str) -> None:
        """Switch to another profile."""
        from .controller import bootstrap
        bootstrap()
        try:
            profile = db.select_profile(profile_id)
        except db.ProfileNotFound as e:
            raise click.ClickException(str(e))
        click.echo(f"Now studying as '{profile.name}'.")

    @cli.command("kana-rename-profile")  # type: ignore[misc]
    @click.argument("profile_id")
    @click.argument("name")
    def rename_profile(profile_id: str, name: str) -> None:
        """Rename a profile."""
        from .controller import bootstrap
        bootstrap()
        try:
            profile = db.rename_profile(profile_id, name)
        except ValueError as e:
            raise click.ClickException(str(e))
        click.echo(f"Profile renamed to '{profile.name}'.")

    @cli.command("kana-delete-profile")  # type: ignore[misc]
    @click.argument("profile_id")
    @click.confirmation_option(prompt="Delete this profile and all of its progress?")
    def delete_profile(profile_id: str) -> None:
        """Delete a profile together with its progress."""
        from .controller import bootstrap
        bootstrap()
        try:
            db.delete_profile(profile_id)
        except db.ProfileNotFound as e:
            raise click.ClickException(str(e))
        click.echo("Profile deleted.")

    @cli.command("kana-study")  # type: ignore[misc]
    @click.option("--unlock", is_flag=True, help="Ignore today's quota and keep going through unlearned characters")
    def study(unlock: bool) -> None:
        """Learn today's new characters one card at a time."""
        controller = LearnerController(_active_profile().id)
        session = controller.start_study(unlocked=unlock)
        while session.state == IN_SESSION:
            card = session.current
            click.echo(f"\n[{session.position}/{len(session.queue)}]  {card.glyph}   {card.romaji}  ({card.script}, {card.group})")
            choice = click.prompt("[s]een / [r]evise later / [q]uit", type=click.Choice(["s", "r", "q"]), default="s")
            if choice == "q":
                return
            if choice == "s":
                controller.study_seen()
            else:
                controller.study_revise()

        if session.reason == ALL_LEARNED:
            click.echo("🎉 Every character is learned!")
        elif session.reason == QUOTA_REACHED:
            click.echo("✅ Daily goal reached. Come back tomorrow, or use --unlock to keep going.")
        else:
            click.echo("✅ Session finished.")

    @cli.command("kana-quiz")  # type: ignore[misc]
    @click.option("--ai/--no-ai", "ai", default=None, help="Use the AI question source (remembered for next time)")
    @click.option("--model", default="gpt-4o-mini", help="LLM model name used for AI questions")
    @click.option("--count", default=10, type=int, help="Number of questions")
    def quiz(ai: Optional[bool], model: str, count: int) -> None:
        """Multiple-choice reading quiz over learned characters."""
        profile = _active_profile()
        ai_mode = db.get_ai_quiz_mode() if ai is None else ai
        controller = LearnerController(profile.id, model=_load_model(model) if ai_mode else None)
        if ai is not None:
            controller.set_ai_mode(ai)

        correct = 0
        asked = 0
        for _ in range(count):
            result = controller.next_question()
            if not isinstance(result, QuizQuestion):
                if result.reason == NOT_ENOUGH_LEARNED:
                    click.echo("Learn at least 4 characters first ('llm kana-study').")
                else:
                    click.echo("Could not build a question right now.")
                break
            click.echo(f"\n  {result.target_glyph}")
            for i, option in enumerate(result.options, 1):
                click.echo(f"  {i}. {option}")
            picked = click.prompt("Answer", type=click.IntRange(1, len(result.options)))
            chosen = result.options[picked - 1]
            asked += 1
            if controller.answer(result, chosen):
                correct += 1
                click.echo("⭕ Correct!")
            else:
                click.echo(f"❌ It was '{result.correct_answer}'. Added to revision.")
        if asked:
            click.echo(f"\nScore: {correct}/{asked}")

    @cli.command("kana-revise")  # type: ignore[misc]
    def revise() -> None:
        """Walk through characters flagged for revision."""
        controller = LearnerController(_active_profile().id)
        queue = controller.open_revision()
        if not len(queue):
            click.echo("Nothing to revise.")
            return
        while queue.current is not None:
            card = queue.current
            click.echo(f"\n({len(queue)} left)  {card.glyph}")
            click.prompt("Press enter to reveal", default="", show_default=False)
            click.echo(f"  {card.romaji}")
            choice = click.prompt("[m]astered / [k]eep / [q]uit", type=click.Choice(["m", "k", "q"]), default="k")
            if choice == "q":
                return
            if choice == "m":
                controller.revision_mastered()
            else:
                controller.revision_keep()
        click.echo("🎉 Revision list cleared!")

    @cli.command("kana-progress")  # type: ignore[misc]
    def show_progress() -> None:
        """Show learning progress for the active profile."""
        profile = _active_profile()
        summary = LearnerController(profile.id).summary()
        click.echo(f"Progress for {profile.name}:")
        click.echo(f"  Learned: {summary['learned']}/{summary['total']}")
        click.echo(f"  Today: {summary['today']}/{summary['daily_goal']}")
        click.echo(f"  Waiting for revision: {summary['revision']}")
        click.echo(f"  Quiz accuracy: {summary['accuracy']:.1f}% ({summary['quiz_correct']}/{summary['quiz_total']})")
        click.echo(f"  Streak: {summary['streak']['current']} days (best {summary['streak']['longest']})")

    @cli.command("kana-goal")  # type: ignore[misc]
    @click.argument("goal", type=int)
    def goal(goal: int) -> None:
        """Set how many new characters to learn per day."""
        try:
            LearnerController(_active_profile().id).set_daily_goal(goal)
        except ValueError as e:
            raise click.ClickException(str(e))
        click.echo(f"Daily goal set to {goal}.")

    @cli.command("kana-theme")  # type: ignore[misc]
    @click.argument("theme", required=False, type=click.Choice(list(db.THEMES)))
    def theme(theme: Optional[str]) -> None:
        """Show the theme, or set it."""
        from .controller import bootstrap
        bootstrap()
        if theme:
            db.set_theme(theme)
        click.echo(f"Theme: {db.get_theme()}")

    @cli.command("kana-unlearn")  # type: ignore[misc]
    @click.argument("char_id")
    def unlearn(char_id: str) -> None:
        """Move a character (e.g. hiragana-ka) back to unlearned."""
        try:
            LearnerController(_active_profile().id).unlearn(char_id)
        except ValueError as e:
            raise click.ClickException(str(e))
        click.echo(f"'{char_id}' is unlearned.")

    @cli.command("kana-learn")  # type: ignore[misc]
    @click.argument("char_id")
    def learn(char_id: str) -> None:
        """Mark a character (e.g. hiragana-ka) as learned without studying it."""
        try:
            LearnerController(_active_profile().id).learn(char_id)
        except ValueError as e:
            raise click.ClickException(str(e))
        click.echo(f"'{char_id}' is learned.")

    @cli.command("kana-flag")  # type: ignore[misc]
    @click.argument("char_id")
    def flag(char_id: str) -> None:
        """Put a character up for revision."""
        try:
            LearnerController(_active_profile().id).flag_for_revision(char_id)
        except ValueError as e:
            raise click.ClickException(str(e))
        click.echo(f"'{char_id}' added to revision.")

    @cli.command("kana-characters")  # type: ignore[misc]
    @click.option("--script", type=click.Choice(list(SCRIPTS)), default=None, help="Only list one script")
    def characters(script: Optional[str]) -> None:
        """List characters with their learned (L) and revision (R) flags."""
        controller = LearnerController(_active_profile().id)
        for character, learned, flagged in controller.character_board(script):
            marks = ("L" if learned else "-") + ("R" if flagged else "-")
            click.echo(f"{marks}  {character.glyph}  {character.romaji:<5} {character.id}")
