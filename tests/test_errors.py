import pytest

from m_agent.config.schema import Config
from m_agent.errors import GenerationError, classify_generation_error, should_failover_model
from m_agent.providers.credentials import OPENROUTER_BASE, EnvCredentialResolver

# ── classification ─────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("raw", "category", "message_fragment"),
    [
        ("401 Unauthorized", "authentication", "authentication failed"),
        ("403 Forbidden", "authentication", "access denied"),
        ("invalid_api_key provided", "authentication", "Invalid API key"),
        ("429 Too Many Requests", "rate_limited", "Rate limit exceeded"),
        ("Your credit balance is too low", "rate_limited", "billing issue"),
        ("prompt exceeds maximum context length", "context_too_long", "too long"),
        ("503 Service Unavailable", "transient_service", "overloaded"),
        ("502 Bad Gateway", "transient_service", "temporarily unavailable"),
        ("Request timed out", "transient_service", "timed out"),
        ("ECONNREFUSED 127.0.0.1", "transient_service", "Could not connect"),
        ("something odd", "unknown", "something odd"),
    ],
)
def test_classify_generation_error(raw: str, category: str, message_fragment: str):
    error = classify_generation_error(RuntimeError(raw))
    assert error.category == category
    assert message_fragment in error.user_message
    assert error.detail == raw


def test_builtin_network_errors_are_transient():
    assert classify_generation_error(TimeoutError()).category == "transient_service"


def test_classified_errors_pass_through():
    original = GenerationError("rate_limited", "slow down")
    assert classify_generation_error(original) is original


def test_failover_categories():
    assert should_failover_model(GenerationError("authentication", "x"))
    assert should_failover_model(GenerationError("transient_service", "x"))
    assert not should_failover_model(GenerationError("context_too_long", "x"))
    assert should_failover_model(GenerationError("unknown", "x", detail="NotFoundError: model not found"))
    assert not should_failover_model(GenerationError("unknown", "x", detail="bad request"))


# ── credentials ────────────────────────────────────────────────────────────


def test_anthropic_models_accept_openrouter_key():
    resolver = EnvCredentialResolver(environ={"OPENROUTER_API_KEY": "sk-or"})
    credential = resolver.resolve("anthropic/claude-opus-4-5")
    assert credential.provider == "openrouter"
    assert credential.api_base == OPENROUTER_BASE


def test_direct_key_is_preferred():
    resolver = EnvCredentialResolver(environ={"OPENROUTER_API_KEY": "sk-or", "ANTHROPIC_API_KEY": "sk-ant"})
    assert resolver.resolve("anthropic/claude-opus-4-5").provider == "anthropic"


def test_openrouter_models_need_openrouter_key():
    resolver = EnvCredentialResolver(environ={"ANTHROPIC_API_KEY": "sk-ant"})
    assert resolver.resolve("openrouter/meta/llama") is None


def test_config_keys_win_over_environment():
    config = Config()
    config.providers.openai.api_key = "from-config"
    config.providers.openai.api_base = "http://proxy.local/v1"
    resolver = EnvCredentialResolver(config, environ={"OPENAI_API_KEY": "from-env"})
    credential = resolver.resolve("gpt-4o")
    assert credential.api_key == "from-config"
    assert credential.api_base == "http://proxy.local/v1"


def test_unknown_model_uses_any_key():
    resolver = EnvCredentialResolver(environ={"OPENAI_API_KEY": "sk"})
    assert resolver.resolve("mistral-large").provider == "openai"
    assert EnvCredentialResolver(environ={}).resolve("mistral-large") is None
