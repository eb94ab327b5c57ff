"""Tests for consensus/titles.py."""

from consensus.providers.base import ProviderError
from consensus.titles import fallback_title, generate_title, parse_title_response
from tests.fakes import TITLER


def test_parse_json_title():
    result = parse_title_response('{"title": "YAML vs JSON", "description": "Picking a config format."}')
    assert result.title == "YAML vs JSON"
    assert result.description == "Picking a config format."


def test_parse_fenced_json_title():
    result = parse_title_response('```json\n{"title": "Config Formats"}\n```')
    assert result.title == "Config Formats"
    assert result.description == ""


def test_parse_plain_title_strips_quotes():
    assert parse_title_response('"Config Formats"\n').title == "Config Formats"


def test_parse_rejects_empty_and_overlong():
    assert parse_title_response("") is None
    assert parse_title_response(None) is None
    assert parse_title_response('{"title": ""}') is None
    assert parse_title_response("x" * 150) is None


def test_fallback_title_truncates():
    assert fallback_title("short question").title == "short question"
    assert fallback_title("q" * 80).title == "q" * 50 + "..."


async def test_generate_title_sends_prompt_and_answer(fake_client):
    fake_client.complete_script[TITLER] = ['{"title": "Formats", "description": "YAML or JSON"}']

    result = await generate_title(fake_client, TITLER, "Title it.", "YAML or JSON?", "Use YAML.")

    assert result.title == "Formats"
    model, messages = fake_client.complete_calls[0]
    assert model == TITLER
    assert messages[0].content == "Title it."
    assert 'User asked: "YAML or JSON?"' in messages[1].content
    assert 'Synthesized answer: "Use YAML."' in messages[1].content


async def test_generate_title_falls_back_on_error(fake_client):
    fake_client.complete_script[TITLER] = [ProviderError("openrouter", "down")]
    result = await generate_title(fake_client, TITLER, "Title it.", "What should we name the new service?")
    assert result.title == "What should we name the new service?"


async def test_generate_title_falls_back_on_junk(fake_client):
    fake_client.complete_script[TITLER] = ["{not json at all but has a brace"]
    result = await generate_title(fake_client, TITLER, "Title it.", "YAML or JSON?")
    assert result.title == "YAML or JSON?"
