"""
Test Configuration and Fixtures
"""
import pytest

from wattle import create_app
from wattle.errors import UpstreamError
from wattle.storage import MemoryStorage
from wattle.store import MemoryStore


class FakeAssistant:
    """Scripted stand-in for the OpenAI client"""

    def __init__(self):
        self.chat_replies = []
        self.respond_replies = []
        self.chat_calls = []
        self.respond_calls = []
        self.transcribe_calls = []
        self.speech_calls = []
        self.transcript = "hello there"
        self.audio = b"ID3fake-mp3"
        self.fail_chat = False
        self.fail_respond = False
        self.fail_speech = False
        self.transcribe_error = None

    def ready(self):
        return True, ""

    def chat(self, messages, temperature=None, max_tokens=None):
        self.chat_calls.append(messages)
        if self.fail_chat:
            raise UpstreamError("LLM request failed: APIError: boom")
        if self.chat_replies:
            return self.chat_replies.pop(0)
        return "Generic analysis"

    def respond(self, input, instructions=None, previous_response_id=None):
        self.respond_calls.append(
            {"input": input, "instructions": instructions, "previous_response_id": previous_response_id}
        )
        if self.fail_respond:
            raise UpstreamError("LLM request failed: APIError: boom")
        if self.respond_replies:
            return self.respond_replies.pop(0)
        return "<ANSWER>You are doing fine.</ANSWER>", f"resp_{len(self.respond_calls)}"

    def transcribe(self, audio, filename):
        self.transcribe_calls.append((audio, filename))
        if self.transcribe_error:
            raise UpstreamError(self.transcribe_error)
        return self.transcript

    def speech(self, text, voice="alloy"):
        self.speech_calls.append((text, voice))
        if self.fail_speech:
            raise UpstreamError("Speech synthesis failed")
        return self.audio


@pytest.fixture(scope='function')
def assistant():
    return FakeAssistant()


@pytest.fixture(scope='function')
def store():
    return MemoryStore()


@pytest.fixture(scope='function')
def storage():
    return MemoryStorage()


@pytest.fixture(scope='function')
def app(store, storage, assistant):
    """Create application for testing.

    No app context is pushed here: each test-client request gets its own, so
    the logged-in user never carries over between requests.
    """
    return create_app('testing', store=store, storage=storage, assistant=assistant)


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture(scope='function')
def auth_headers():
    """Bearer token for user-1"""
    return {'Authorization': 'Bearer test-token'}


@pytest.fixture(scope='function')
def other_headers():
    """Bearer token for user-2"""
    return {'Authorization': 'Bearer other-token'}


@pytest.fixture(scope='function')
def services(app):
    return app.extensions['wattle']
