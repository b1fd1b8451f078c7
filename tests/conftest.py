import pytest
from unittest.mock import MagicMock

from opsdesk.auth import register_user
from opsdesk.config import AgentConfig
from opsdesk.models import Message
from opsdesk.notifications import Notifier
from opsdesk.registry import build_registry
from opsdesk.store import build_session_factory

# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


class ScriptedModel:
    """Stands in for ChatModel: replays responses, records what it was shown."""

    name = "scripted/test-model"

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def infer(self, system_prompt, messages, tools, temperature, max_tokens):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "tools": tools,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


def user(text):
    return Message(role="user", content=text)


def assistant(text):
    return Message(role="assistant", content=text)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'opsdesk.db'}"


@pytest.fixture
def session_factory(database_url):
    return build_session_factory(database_url)


@pytest.fixture
def config(database_url):
    return AgentConfig(api_key="test-key", database_url=database_url)


@pytest.fixture
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def admin(session_factory):
    principal, _ = register_user(session_factory, "admin@example.com", "SENIOR_ADMIN", "Ada", "Admin", token="admin-token")
    return principal


@pytest.fixture
def sales_agent(session_factory):
    principal, _ = register_user(session_factory, "sam@example.com", "SALES_AGENT", "Sam", "Sales", token="sales-token")
    return principal


@pytest.fixture
def make_registry(session_factory, notifier, config):
    def _make(principal, catalog=None):
        return build_registry(principal, session_factory, notifier, config, catalog=catalog)

    return _make

