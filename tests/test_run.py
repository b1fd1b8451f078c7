import pytest
from unittest.mock import patch

from conftest import ScriptedModel
from opsdesk.config import DEFAULT_MODEL, AgentConfig
from opsdesk.models import ModelResponse, OperationRequest
from opsdesk.run import main


@pytest.fixture
def env(monkeypatch, database_url):
    for name in ("OPSDESK_MAX_ROUNDS", "OPSDESK_MODEL", "OPSDESK_TRACE", "OPSDESK_OPERATION_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", database_url)
    return monkeypatch

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_config_reads_environment(env, database_url):
    env.setenv("OPSDESK_MAX_ROUNDS", "3")
    env.setenv("OPSDESK_OPERATION_TIMEOUT", "4.5")
    env.setenv("OPSDESK_TRACE", "true")
    config = AgentConfig.from_env()

    assert config.api_key == "test-key"
    assert config.database_url == database_url
    assert config.max_rounds == 3
    assert config.operation_timeout == 4.5
    assert config.trace is True

def test_blank_variables_use_defaults(env):
    env.setenv("OPSDESK_MODEL", "")
    config = AgentConfig.from_env()
    assert config.model == DEFAULT_MODEL
    assert config.max_rounds == 5
    assert config.history_limit == 2

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_cli_seeds_user_and_answers(env):
    model = ScriptedModel(
        [
            ModelResponse(requested_operations=[OperationRequest(name="list_leads", parameters={})]),
            ModelResponse(text="There are no leads yet."),
        ]
    )
    with patch("opsdesk.harness.ChatModel", return_value=model):
        code = main(["--seed-user", "ops@example.com", "manager", "--trace", "List my leads"])

    assert code == 0
    assert len(model.calls) == 2
    assert "Tool execution results:" in model.calls[1]["messages"][-1].content

def test_cli_requires_a_credential(env):
    with patch("opsdesk.harness.ChatModel", return_value=ScriptedModel([ModelResponse(text="hi")])):
        assert main(["hello"]) == 2

def test_cli_rejects_unknown_token(env):
    with patch("opsdesk.harness.ChatModel", return_value=ScriptedModel([ModelResponse(text="hi")])):
        assert main(["--token", "nobody", "hello"]) == 1

def test_cli_halts_without_api_key(env):
    env.delenv("OPENROUTER_API_KEY")
    assert main(["hello"]) == 2
