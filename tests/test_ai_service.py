# tests/test_ai_service.py

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from unittest.mock import AsyncMock, patch

from chatrelay.core.cache import BoundedCache
from chatrelay.services.ai_service import AIService
from chatrelay.services.prompts import get_reply_prompt
from chatrelay.services.state import ConversationState


def test_reply_prompt_includes_history_and_question():
    prompt = get_reply_prompt().format_messages(
        platform="WhatsApp", user_name="Ada", history=[], question="What now?"
    )
    assert "WhatsApp" in prompt[0].content
    assert "Ada" in prompt[0].content
    assert prompt[-1].content == "What now?"


def test_conversation_is_trimmed():
    state = ConversationState(phone_number="111", config_id="cfg")
    for i in range(ConversationState.MAX_MESSAGES + 5):
        state.add_message("user", str(i))
    assert len(state.messages) == ConversationState.MAX_MESSAGES
    assert state.messages[0].content == "5"


@pytest.mark.asyncio
async def test_generate_reply_uses_history():
    service = AIService(api_key="sk-test")
    fake = FakeListChatModel(responses=["  Sure, done.  "])
    state = ConversationState(phone_number="111", config_id="cfg")
    state.add_message("user", "Plan my day")
    state.add_message("assistant", "Here is a plan")

    with patch.object(service, "_get_llm", return_value=fake):
        reply = await service.generate_reply(state, "Thanks", user_name="Ada")

    assert reply == "Sure, done."


@pytest.mark.asyncio
async def test_select_model_reads_through_cache(clock):
    resolver = AsyncMock(return_value="gpt-4o")
    service = AIService(default_model="gpt-4o-mini", model_cache=BoundedCache("aiModels", clock=clock), model_resolver=resolver)

    assert await service.select_model("u1") == "gpt-4o"
    assert await service.select_model("u1") == "gpt-4o"
    resolver.assert_awaited_once_with("u1")


@pytest.mark.asyncio
async def test_select_model_falls_back_to_default():
    resolver = AsyncMock(return_value=None)
    service = AIService(default_model="gpt-4o-mini", model_cache=BoundedCache("aiModels"), model_resolver=resolver)
    assert await service.select_model("u1") == "gpt-4o-mini"
    assert await service.select_model(None) == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_container_resolves_user_model(container, seeded, session):
    from chatrelay.models import User

    user = session.get(User, "user-1")
    user.ai_model = "gpt-4.1"
    session.add(user)
    session.commit()

    # The container fixture injects a mock AI service, so wire a real one here
    service = AIService(model_cache=container.cache.ai_models, model_resolver=container._user_model)
    assert await service.select_model("user-1") == "gpt-4.1"
    assert await service.select_model("ghost") == "gpt-4o-mini"
