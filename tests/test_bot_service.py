from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from bot_config import CallSettings
from services.bot_service import (
    END_CALL_MARKER, ApiError, AuthFailed, ConversationAgent, RateLimited, Timeout
)
from services.call_sessions import ConversationTurn

REQUEST = httpx.Request("POST", "https://example.openai.azure.com/openai/deployments/gpt-4o/chat/completions")


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_agent(settings: CallSettings, result=None, error=None) -> ConversationAgent:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=result, side_effect=error)
    return ConversationAgent(settings, client=client)


def status_error(cls, status_code):
    return cls("failed", response=httpx.Response(status_code, request=REQUEST), body=None)


@pytest.mark.asyncio
async def test_reply_continues_conversation(settings, patient):
    agent = make_agent(settings, completion("That's great to hear. Any side effects?"))
    history = [ConversationTurn('assistant', "Hello Maria!"), ConversationTurn('user', "I picked it up")]

    reply = await agent.generate_reply(history, "I picked it up", patient)

    assert reply.text == "That's great to hear. Any side effects?"
    assert reply.is_final is False
    messages = agent.client.chat.completions.create.call_args.kwargs["messages"]
    assert messages[0]["role"] == "system"
    assert "Maria" in messages[0]["content"]
    assert "Lisinopril" in messages[0]["content"]
    assert [m["role"] for m in messages[1:]] == ["assistant", "user"]


@pytest.mark.asyncio
async def test_end_marker_makes_reply_final(settings, patient):
    agent = make_agent(settings, completion(f"Take care, Maria! {END_CALL_MARKER}"))

    reply = await agent.generate_reply([], "No more questions", patient)

    assert reply.is_final is True
    assert reply.text == "Take care, Maria!"
    messages = agent.client.chat.completions.create.call_args.kwargs["messages"]
    assert messages[-1] == {"role": "user", "content": "No more questions"}


@pytest.mark.asyncio
async def test_max_turns_makes_reply_final(settings, patient):
    settings.max_conversation_turns = 2
    agent = make_agent(settings, completion("Anything else?"))
    history = [ConversationTurn('user', "one"), ConversationTurn('user', "two")]

    reply = await agent.generate_reply(history, "two", patient)

    assert reply.is_final is True


@pytest.mark.asyncio
@pytest.mark.parametrize("error, expected", [
    (status_error(openai.RateLimitError, 429), RateLimited),
    (status_error(openai.AuthenticationError, 401), AuthFailed),
    (status_error(openai.InternalServerError, 503), ApiError),
    (openai.APITimeoutError(request=REQUEST), Timeout),
    (openai.APIConnectionError(request=REQUEST), ApiError),
])
async def test_openai_errors_are_typed(settings, patient, error, expected):
    agent = make_agent(settings, error=error)

    with pytest.raises(expected) as excinfo:
        await agent.generate_reply([], "hello", patient)
    assert excinfo.value.__cause__ is error


@pytest.mark.asyncio
async def test_empty_completion_is_an_error(settings, patient):
    agent = make_agent(settings, completion("   "))
    with pytest.raises(ApiError):
        await agent.generate_reply([], "hello", patient)


@pytest.mark.asyncio
async def test_unconfigured_agent_refuses(settings, patient):
    agent = ConversationAgent(settings)
    assert agent.is_configured is False
    with pytest.raises(ApiError):
        await agent.generate_reply([], "hello", patient)


def test_greeting_mentions_patient_doctor_and_medication(settings, patient):
    greeting = ConversationAgent(settings).greeting_for(patient)
    assert greeting.startswith("Hello Maria!")
    assert "Dr. Lee" in greeting
    assert "Lisinopril" in greeting


def test_greeting_without_patient_uses_defaults(settings):
    greeting = ConversationAgent(settings).greeting_for(None)
    assert greeting.startswith("Hello there!")
    assert "Dr. your doctor" in greeting


@pytest.mark.parametrize("utterance, topic", [
    ("My knee still hurts", "pain"),
    ("I forgot a pill yesterday", "medication"),
    ("Can I schedule a visit", "appointment"),
    ("Sure", "yes"),
])
def test_fallback_reply_keywords(settings, utterance, topic):
    reply = ConversationAgent(settings).fallback_reply(utterance)
    assert reply.text == settings.script.fallback_replies[topic]
    assert reply.is_final is False


def test_fallback_reply_generic_and_closing(settings):
    agent = ConversationAgent(settings)
    assert agent.fallback_reply("The weather is nice").text == settings.script.generic_fallback

    settings.max_conversation_turns = 1
    reply = agent.fallback_reply("Sure", history=[ConversationTurn('user', "Sure")])
    assert reply.is_final is True
    assert reply.text == settings.script.closing_fallback
