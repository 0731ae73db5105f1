# chatrelay/services/ai_service.py

from langchain_openai import ChatOpenAI
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.output_parsers import StrOutputParser
from typing import Awaitable, Callable, Dict, Optional
import logging

from chatrelay.core.cache import BoundedCache
from chatrelay.services.prompts import get_reply_prompt
from chatrelay.services.state import ConversationState

logger = logging.getLogger(__name__)

_ROLE_TO_MESSAGE = {"user": HumanMessage, "assistant": AIMessage, "system": SystemMessage}


class AIService:
    """Generates chat replies with an OpenAI chat model through LangChain"""

    def __init__(
        self,
        default_model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        model_cache: Optional[BoundedCache] = None,
        model_resolver: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
    ):
        self.default_model = default_model
        self.api_key = api_key
        self.model_cache = model_cache
        self.model_resolver = model_resolver
        self._llms: Dict[str, ChatOpenAI] = {}

    def _get_llm(self, model: str) -> ChatOpenAI:
        # Built on first use; ChatOpenAI refuses to construct without a key
        if model not in self._llms:
            self._llms[model] = ChatOpenAI(model=model, temperature=0.3, api_key=self.api_key)
        return self._llms[model]

    async def select_model(self, user_id: Optional[str]) -> str:
        """Model for this user, read through the AI model cache"""
        if not user_id or self.model_cache is None or self.model_resolver is None:
            return self.default_model

        async def _load():
            return await self.model_resolver(user_id) or self.default_model

        return await self.model_cache.get_or_set(f"ai-model:{user_id}", _load)

    async def generate_reply(
        self,
        conversation: ConversationState,
        question: str,
        user_name: Optional[str] = None,
        platform: str = "whatsapp",
        model: Optional[str] = None,
    ) -> str:
        """Answer ``question`` given the earlier turns of ``conversation``.

        Callers guarding the model call with a breaker should resolve ``model``
        first so a failed lookup is not charged to the model provider.
        """
        if model is None:
            model = await self.select_model(conversation.user_id)
        history = [_ROLE_TO_MESSAGE[m.role](content=m.content) for m in conversation.messages]

        chain = get_reply_prompt() | self._get_llm(model) | StrOutputParser()
        response = await chain.ainvoke(
            {
                "platform": platform,
                "user_name": user_name or "the user",
                "history": history,
                "question": question,
            }
        )
        logger.info(f"Generated reply with {model} for {conversation.phone_number}")
        return response.strip()
