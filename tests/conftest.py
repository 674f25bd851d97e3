import os
import tempfile
from types import SimpleNamespace

# Configure the app before it is imported: in-memory database, no real AI key.
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SECRET_KEY'] = 'test-secret'
os.environ['AI_API_KEY'] = 'test-key'
os.environ['SOCKETIO_ASYNC_MODE'] = 'threading'
os.environ['UPLOAD_FOLDER'] = tempfile.mkdtemp(prefix='studybuddy-uploads-')

import pytest

import ai_service
from app import app as flask_app, db, presence


SAMPLE_REPLY = """Here are your questions:

Q: What is the capital of France?
Options: A) Paris, B) London, C) Berlin, D) Madrid
Answer: A) Paris

Q: Which gas do plants absorb from the air?
Options: Oxygen, Carbon dioxide, Nitrogen, Helium
Answer: Carbon dioxide

Q: What is 2 + 2?
Options: 3, 4, 5, 6
Answer: B
"""


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    presence.clear()

    yield flask_app

    with flask_app.app_context():
        db.session.remove()
        db.drop_all()
    presence.clear()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def register(app):
    """Register (and log in) a user on a fresh test client."""
    def _register(username='alice', client=None, **extra):
        client = client or app.test_client()
        payload = {
            'full_name': username.title(),
            'username': username,
            'email': f'{username}@example.com',
            'password': 'secret123',
            'confirm_password': 'secret123',
            'country': 'India',
            'subject': 'Biology',
        }
        payload.update(extra)
        response = client.post('/user/reg', json=payload)
        assert response.status_code == 201, response.get_json()
        return client, response.get_json()['user']
    return _register


@pytest.fixture
def fake_ai(monkeypatch):
    """Replace the AI provider with queued replies (strings or exceptions)."""
    state = SimpleNamespace(replies=[], prompts=[])

    def generate_text(prompt):
        state.prompts.append(prompt)
        reply = state.replies.pop(0) if state.replies else ''
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(ai_service, 'generate_text', generate_text)
    return state


@pytest.fixture
def sample_reply():
    return SAMPLE_REPLY
