"""Shared pytest fixtures."""

from pathlib import Path

import pytest

from config.config_loader import (
    AppConfig,
    ContextConfig,
    DefaultsConfig,
    PromptsConfig,
    ProviderConfig,
    StreamingConfig,
)
from consensus.models import Conversation
from tests.fakes import JUDGE, MODELS, SEARCHER, SYNTHESIZER, TITLER, FakeChatClient


@pytest.fixture
def prompts_config() -> PromptsConfig:
    return PromptsConfig(
        rebuttal="Critique the other answers and revise yours.",
        convergence="Decide whether the models converged. JSON only.",
        synthesis="Synthesize the debate into one answer.",
        ensemble_vote="Score the answers. JSON only.",
        ensemble_synthesis="Synthesize using the weights.",
        summary="Summarize the conversation.",
        title="Write a short title. JSON only.",
        web_search="Search the web for the question.",
    )


@pytest.fixture
def defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        models=list(MODELS),
        synthesizer=SYNTHESIZER,
        judge=JUDGE,
        mode="debate",
        max_rounds=3,
        title_model=TITLER,
        web_search_model=SEARCHER,
        output_dir=tmp_path / "output",
        conversations_file=tmp_path / "data" / "conversations.json",
        max_concurrency=4,
    )


@pytest.fixture
def app_config(defaults_config: DefaultsConfig, prompts_config: PromptsConfig) -> AppConfig:
    providers = {
        "openrouter": ProviderConfig(
            name="openrouter",
            api_key_env="OPENROUTER_API_KEY",
            timeout_sec=60,
            base_url="https://openrouter.ai/api/v1",
            ping_model="openai/gpt-4o-mini",
        ),
        "anthropic": ProviderConfig(
            name="anthropic",
            api_key_env="ANTHROPIC_API_KEY",
            timeout_sec=60,
            max_tokens=4096,
            ping_model="claude-3-5-haiku-latest",
        ),
    }
    return AppConfig(
        defaults=defaults_config,
        providers=providers,
        prompts=prompts_config,
        streaming=StreamingConfig(stall_timeout_sec=15),
        context=ContextConfig(),
        available_providers=set(),
    )


@pytest.fixture
def fake_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def conversation() -> Conversation:
    return Conversation(title="Should we use YAML or JSON for config?")
