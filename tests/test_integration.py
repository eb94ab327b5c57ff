"""Integration tests: real API calls, no mocks. Requires OPENROUTER_API_KEY in .env."""

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

load_dotenv()

pytestmark = pytest.mark.integration

if not os.environ.get("OPENROUTER_API_KEY", "").strip():
    pytestmark = pytest.mark.skip(reason="OPENROUTER_API_KEY not set")

_CHEAP_MODELS = ["openai/gpt-4o-mini", "google/gemini-2.0-flash-001"]


async def test_full_debate_pipeline(tmp_path: Path):
    """Run a real one-round debate through the in-process gateway, verify no crash."""
    from config.config_loader import load_config
    from consensus.client import LocalGatewayClient
    from consensus.gateway import Gateway
    from consensus.models import Conversation
    from consensus.orchestrator import Orchestrator
    from consensus.output import save_to_file
    from consensus.store import ConversationStore

    config = load_config()
    client = LocalGatewayClient(Gateway(config))
    store = ConversationStore(tmp_path / "conversations.json")
    conversation = Conversation()
    orchestrator = Orchestrator(
        client,
        conversation,
        config,
        store=store,
        synthesizer="openai/gpt-4o-mini",
        judge="openai/gpt-4o-mini",
        max_rounds=1,
    )

    turn = await orchestrator.start(
        "Should a small team use a monorepo or separate repos for a Python microservices project?",
        models=_CHEAP_MODELS,
    )
    await orchestrator.wait_background()

    assert len(turn.rounds) == 1
    assert any(s.status == "complete" and s.content for s in turn.rounds[0].streams)
    assert turn.synthesis.status == "complete"
    assert len(turn.synthesis.content) > 50
    assert store.get(conversation.id) is not None

    saved = save_to_file(conversation, tmp_path / "output")
    assert "Synthesis" in saved.read_text(encoding="utf-8")


async def test_stream_through_gateway():
    """One streamed request ends in exactly one terminal event."""
    from config.config_loader import load_config
    from consensus.gateway import ChatRequest, Gateway

    gateway = Gateway(load_config())
    events = [
        e
        async for e in gateway.stream(
            ChatRequest("openai/gpt-4o-mini", [{"role": "user", "content": "Reply with OK."}], stream=True)
        )
    ]

    assert [e.type for e in events].count("done") == 1
    assert "".join(e.delta or "" for e in events if e.type == "content")
