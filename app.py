#!/usr/bin/env python3
"""
Kana Learning App - Flask JSON API
Profiles, daily study, revision and quizzes over hiragana, katakana and
beginner kanji. AI-written quiz questions are optional; without an OpenAI
key every question comes from the local generator.
"""

import os
import sys
import traceback
from typing import List, Optional, Dict, Any

from flask import Flask, request, jsonify

# Check for test mode
TEST_MODE = os.environ.get("TEST_MODE", "0") == "1"
MAX_COMPLETION_TOKENS = 4096

try:
    from openai import OpenAI
except ImportError:
    if not TEST_MODE:
        print("Error: OpenAI library is required")
        print("Please install it with: pip install openai")
        sys.exit(1)
    else:
        OpenAI = None  # type: ignore

# Global AI client state
client = None
ai_model = None

# Add the current directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from llm_learn_kana import db
from llm_learn_kana import progress as prog
from llm_learn_kana.controller import LearnerController, bootstrap
from llm_learn_kana.catalog import SCRIPTS
from llm_learn_kana.quiz import QuizQuestion, REMOTE_TIMEOUT_SECONDS
from llm_learn_kana.study import IN_SESSION, StudySession, StudySessionComplete, RevisionQueue

# Check for debug mode
DEBUG = os.environ.get("DEBUG", "0") == "1"


class OpenAIModel:
    """Wrapper for OpenAI API to match the `prompt(...).text()` interface."""
    def __init__(self, client: Any, model_name: str = "gpt-4o-mini", timeout: float = REMOTE_TIMEOUT_SECONDS):
        self.client = client
        self.model_name = model_name
        self.timeout = timeout

    def prompt(self, prompt_text: str, system: str = "") -> Any:
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt_text})

        if DEBUG:
            print(f"🤖 OpenAI API Call: model={self.model_name}, prompt={len(prompt_text)} chars")

        try:
            response = self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,  # type: ignore
                max_completion_tokens=MAX_COMPLETION_TOKENS,
                timeout=self.timeout,
            )
            content = response.choices[0].message.content or ""
            if DEBUG:
                print(f"✅ OpenAI API Response: {len(content)} characters, usage {response.usage}")

            class Response:
                def __init__(self, content: str) -> None:
                    self.content = content
                def text(self) -> str:
                    return self.content

            return Response(content)

        except Exception as e:
            if DEBUG:
                print(f"❌ OpenAI API call failed: {str(e)}")
            raise


def init_ai(api_key: Optional[str] = None,
            base_url: Optional[str] = None,
            model_name: str = "gpt-4o-mini",
            timeout: float = REMOTE_TIMEOUT_SECONDS) -> None:
    """Initialize the OpenAI client used for AI quiz questions."""
    global client, ai_model

    if TEST_MODE:
        return

    if not api_key:
        api_key = os.environ.get("OPENAI_API_KEY")

    if not api_key:
        print("Warning: No API key provided. AI quiz mode will use the local generator.")
        return

    if OpenAI is None:
        print("Error: OpenAI library is required but not installed.")
        return

    try:
        client_kwargs = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url
        client = OpenAI(**client_kwargs)
        ai_model = OpenAIModel(client, model_name=model_name, timeout=timeout)
        print(f"✅ AI initialized with model: {model_name}")
    except Exception as e:
        print(f"❌ Failed to initialize AI: {e}")


app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
# Avatars travel as data URIs inside JSON bodies
app.config['MAX_CONTENT_LENGTH'] = 4 * 1024 * 1024

if not TEST_MODE:
    init_ai()

# One controller per profile, kept for the life of the process
controllers: Dict[str, LearnerController] = {}
pending_questions: Dict[str, QuizQuestion] = {}


def reset_state() -> None:
    """Forget cached controllers (profile switch in tests, DB rebinding)."""
    for controller in controllers.values():
        controller.source.close()
    controllers.clear()
    pending_questions.clear()


@app.before_request
def initialize_app() -> None:
    """Create tables and migrate legacy data once."""
    if not getattr(app, '_database_initialized', False):
        try:
            migrated = bootstrap()
            if migrated:
                db.select_profile(migrated.id)
        except Exception as e:
            print(f"❌ Database startup check failed: {str(e)}")
        setattr(app, "_database_initialized", True)


def error(message: str, code: int = 400) -> Any:
    return jsonify({'status': 'error', 'message': message}), code


def active_profile_id() -> str:
    profile_id = request.args.get('profile_id')
    if not profile_id and request.is_json:
        profile_id = (request.get_json(silent=True) or {}).get('profile_id')
    if not profile_id:
        profile_id = db.get_last_profile_id()
    if not profile_id:
        raise db.ProfileNotFound("No profile selected")
    db.get_profile(profile_id)
    return profile_id


def get_controller(profile_id: Optional[str] = None) -> LearnerController:
    profile_id = profile_id or active_profile_id()
    controller = controllers.get(profile_id)
    if controller is None:
        controller = LearnerController(profile_id, model=ai_model)
        controllers[profile_id] = controller
    return controller


def body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def card_payload(character: Any) -> Optional[Dict[str, Any]]:
    if character is None:
        return None
    return {
        'id': character.id,
        'char': character.glyph,
        'romaji': character.romaji,
        'type': character.script,
        'group': character.group,
    }


def study_payload(session: StudySession, controller: LearnerController) -> Dict[str, Any]:
    return {
        'status': 'success' if session.state == IN_SESSION else 'complete',
        'state': session.state,
        'reason': session.reason,
        'card': card_payload(session.current),
        'position': session.position,
        'total': len(session.queue),
        'today': prog.todays_count(controller.progress),
        'daily_goal': controller.progress.daily_goal,
    }


def revision_payload(queue: RevisionQueue) -> Dict[str, Any]:
    return {
        'status': 'success' if len(queue) else 'empty',
        'card': card_payload(queue.current),
        'remaining': len(queue),
        'position': queue.cursor + 1 if len(queue) else 0,
    }


def handle(fn: Any) -> Any:
    """Run a handler body with the app's error envelope."""
    try:
        return fn()
    except db.ProfileNotFound as e:
        return error(str(e), 404)
    except StudySessionComplete as e:
        return error(str(e), 409)
    except ValueError as e:
        return error(str(e), 400)
    except Exception as e:
        if DEBUG:
            traceback.print_exc()
        return error(f'Error: {str(e)}', 500)


# ----------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------

@app.route('/api/profiles', methods=['GET', 'POST'])
def api_profiles() -> Any:
    def run() -> Any:
        if request.method == 'POST':
            profile = db.create_profile(str(body().get('name', '')))
            db.select_profile(profile.id)
            return jsonify({'status': 'success', 'profile': db.get_profile(profile.id).to_dict()}), 201
        return jsonify({
            'status': 'success',
            'profiles': [p.to_dict() for p in db.list_profiles()],
            'last_profile_id': db.get_last_profile_id(),
        })
    return handle(run)


@app.route('/api/profiles/<profile_id>', methods=['PATCH', 'DELETE'])
def api_profile(profile_id: str) -> Any:
    def run() -> Any:
        if request.method == 'DELETE':
            db.delete_profile(profile_id)
            stale = controllers.pop(profile_id, None)
            if stale is not None:
                stale.source.close()
            pending_questions.pop(profile_id, None)
            return jsonify({'status': 'success'})
        profile = db.rename_profile(profile_id, str(body().get('name', '')))
        return jsonify({'status': 'success', 'profile': profile.to_dict()})
    return handle(run)


@app.route('/api/profiles/<profile_id>/select', methods=['POST'])
def api_select_profile(profile_id: str) -> Any:
    return handle(lambda: jsonify({'status': 'success', 'profile': db.select_profile(profile_id).to_dict()}))


@app.route('/api/profiles/<profile_id>/avatar', methods=['PUT', 'DELETE'])
def api_profile_avatar(profile_id: str) -> Any:
    def run() -> Any:
        data_uri = None if request.method == 'DELETE' else body().get('avatar')
        if request.method == 'PUT' and not data_uri:
            raise ValueError("Missing 'avatar' data URI")
        profile = db.set_avatar(profile_id, data_uri)
        return jsonify({'status': 'success', 'profile': profile.to_dict()})
    return handle(run)


# ----------------------------------------------------------------------
# Study
# ----------------------------------------------------------------------

@app.route('/api/study', methods=['GET', 'POST'])
def api_study() -> Any:
    """GET shows the running session; POST starts a fresh one."""
    def run() -> Any:
        controller = get_controller()
        if request.method == 'POST' or controller.study is None:
            controller.start_study(unlocked=bool(body().get('unlocked', False)))
        return jsonify(study_payload(controller.study, controller))
    return handle(run)


@app.route('/api/study/seen', methods=['POST'])
def api_study_seen() -> Any:
    def run() -> Any:
        controller = get_controller()
        return jsonify(study_payload(controller.study_seen(), controller))
    return handle(run)


@app.route('/api/study/revise', methods=['POST'])
def api_study_revise() -> Any:
    def run() -> Any:
        controller = get_controller()
        return jsonify(study_payload(controller.study_revise(), controller))
    return handle(run)


# ----------------------------------------------------------------------
# Revision
# ----------------------------------------------------------------------

@app.route('/api/revise', methods=['GET', 'POST'])
def api_revise() -> Any:
    """GET opens the revision list; POST with {'action': 'keep'} moves on."""
    def run() -> Any:
        controller = get_controller()
        if request.method == 'GET' or controller.revision is None:
            queue = controller.open_revision()
        else:
            queue = controller.revision
        if request.method == 'POST':
            action = body().get('action', 'keep')
            if action != 'keep':
                raise ValueError(f"Unknown revision action {action!r}")
            controller.revision_keep()
        return jsonify(revision_payload(queue))
    return handle(run)


@app.route('/api/revise/mastered', methods=['POST'])
def api_revise_mastered() -> Any:
    def run() -> Any:
        controller = get_controller()
        return jsonify(revision_payload(controller.revision_mastered()))
    return handle(run)


# ----------------------------------------------------------------------
# Quiz
# ----------------------------------------------------------------------

@app.route('/api/quiz/next')
def api_quiz_next() -> Any:
    def run() -> Any:
        profile_id = active_profile_id()
        controller = get_controller(profile_id)
        result = controller.next_question()
        if not isinstance(result, QuizQuestion):
            pending_questions.pop(profile_id, None)
            return jsonify({'status': 'unavailable', 'reason': result.reason})
        pending_questions[profile_id] = result
        question = result.to_dict()
        # The answer stays server-side until it is submitted
        question.pop('correctAnswer')
        return jsonify({'status': 'success', 'question': question, 'ai_mode': controller.ai_mode})
    return handle(run)


@app.route('/api/quiz/answer', methods=['POST'])
def api_quiz_answer() -> Any:
    def run() -> Any:
        profile_id = active_profile_id()
        question = pending_questions.pop(profile_id, None)
        if question is None:
            raise ValueError("No question pending; fetch one from /api/quiz/next first")
        chosen = str(body().get('answer', ''))
        is_correct = get_controller(profile_id).answer(question, chosen)
        return jsonify({
            'status': 'success',
            'is_correct': is_correct,
            'correct_answer': question.correct_answer,
        })
    return handle(run)


# ----------------------------------------------------------------------
# Progress and settings
# ----------------------------------------------------------------------

@app.route('/api/progress')
def api_progress() -> Any:
    def run() -> Any:
        controller = get_controller()
        return jsonify({
            'status': 'success',
            'summary': controller.summary(),
            'progress': prog.progress_to_dict(controller.progress),
        })
    return handle(run)


@app.route('/api/history')
def api_history() -> Any:
    def run() -> Any:
        days = max(1, min(request.args.get('days', 14, type=int), 365))
        controller = get_controller()
        rows = prog.recent_history(controller.progress, days=days)
        return jsonify({
            'status': 'success',
            'history': [
                {
                    'date': e.date,
                    'studyCount': e.study_count,
                    'quizCorrect': e.quiz_correct,
                    'quizTotal': e.quiz_total,
                    'sessions': len(e.sessions),
                }
                for e in rows
            ],
            'streak': prog.compute_streak(controller.progress.history),
        })
    return handle(run)


@app.route('/api/settings', methods=['GET', 'POST'])
def api_settings() -> Any:
    def run() -> Any:
        if request.method == 'POST':
            data = body()
            # Validate everything before anything is written
            if 'theme' in data and data['theme'] not in db.THEMES:
                raise ValueError(f"Theme must be one of {', '.join(db.THEMES)}")
            if 'daily_goal' in data:
                goal = data['daily_goal']
                if isinstance(goal, bool) or not isinstance(goal, int) or goal < 1:
                    raise ValueError("Daily goal must be at least 1")
            if 'ai_quiz_mode' in data and not isinstance(data['ai_quiz_mode'], bool):
                raise ValueError("ai_quiz_mode must be true or false")
            controller = get_controller() if 'daily_goal' in data else None
            if 'theme' in data:
                db.set_theme(data['theme'])
            if controller is not None:
                controller.set_daily_goal(data['daily_goal'])
            if 'ai_quiz_mode' in data:
                enabled = data['ai_quiz_mode']
                db.set_ai_quiz_mode(enabled)
                # The flag is global; every live controller swaps its source
                for live in controllers.values():
                    live.set_ai_mode(enabled)

        settings: Dict[str, Any] = {
            'theme': db.get_theme(),
            'ai_quiz_mode': db.get_ai_quiz_mode(),
            'ai_available': ai_model is not None,
        }
        if db.get_last_profile_id() or request.args.get('profile_id'):
            settings['daily_goal'] = get_controller().progress.daily_goal
        return jsonify({'status': 'success', 'settings': settings})
    return handle(run)


@app.route('/api/characters')
def api_characters() -> Any:
    """Catalog grid with the learner's learned and revision state."""
    def run() -> Any:
        script = request.args.get('script')
        if script and script not in SCRIPTS:
            raise ValueError(f"Script must be one of {', '.join(SCRIPTS)}")
        controller = get_controller()
        characters = []
        for character, learned, flagged in controller.character_board(script):
            card = card_payload(character)
            card['learned'] = learned
            card['revision'] = flagged
            characters.append(card)
        return jsonify({'status': 'success', 'characters': characters})
    return handle(run)


@app.route('/api/learn', methods=['POST'])
def api_learn() -> Any:
    """Mark any catalog character as seen, outside a study session."""
    def run() -> Any:
        char_id = str(body().get('id', ''))
        controller = get_controller()
        controller.learn(char_id)
        return jsonify({'status': 'success', 'summary': controller.summary()})
    return handle(run)


@app.route('/api/revise/flag', methods=['POST'])
def api_revise_flag() -> Any:
    def run() -> Any:
        char_id = str(body().get('id', ''))
        controller = get_controller()
        controller.flag_for_revision(char_id)
        return jsonify({'status': 'success', 'summary': controller.summary()})
    return handle(run)


@app.route('/api/unlearn', methods=['POST'])
def api_unlearn() -> Any:
    def run() -> Any:
        char_id = str(body().get('id', ''))
        controller = get_controller()
        controller.unlearn(char_id)
        return jsonify({'status': 'success', 'summary': controller.summary()})
    return handle(run)


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Kana Learning App')
    parser.add_argument('--host', default='127.0.0.1', help='Host IP to bind to (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=5000, help='Port to bind to (default: 5000)')
    parser.add_argument('--openai-key', help='OpenAI API Key')
    parser.add_argument('--model', default='gpt-4o-mini', help='AI model used for quiz questions')
    parser.add_argument('--timeout', type=float, default=REMOTE_TIMEOUT_SECONDS, help='Seconds to wait for AI questions before falling back')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    args = parser.parse_args()

    if args.debug:
        DEBUG = True

    if args.openai_key or args.model:
        init_ai(api_key=args.openai_key, model_name=args.model, timeout=args.timeout)

    try:
        migrated = bootstrap()
        if migrated:
            db.select_profile(migrated.id)
        print("✅ Database ready")
    except Exception as e:
        print(f"❌ Database initialization failed: {str(e)}")

    print(f"🚀 Starting server on http://{args.host}:{args.port}")
    app.run(debug=DEBUG, host=args.host, port=args.port)
