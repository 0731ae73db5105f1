# chatrelay/services/prompts.py

"""
Prompt templates for the chat assistant.
"""

from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

# Main system prompt that defines the assistant's role and capabilities
SYSTEM_PROMPT = """You are a productivity assistant reachable over {platform}.
You help {user_name} manage goals, outcomes, actions and their daily plan.

You should:
- Keep answers short, chat messages are read on a phone
- Ask a clarifying question when a request is ambiguous
- Never invent tasks, dates or projects the user did not mention
"""

# Sent when the sender is not linked to an account
UNREGISTERED_SENDER_MESSAGE = (
    "Hi! This number isn't linked to an account yet. "
    "Open Settings > Integrations in the app to connect it, then message me again."
)


def get_reply_prompt() -> ChatPromptTemplate:
    """Returns the prompt template for replying to a chat message"""
    return ChatPromptTemplate.from_messages(
        [
            ("system", SYSTEM_PROMPT),
            MessagesPlaceholder("history"),
            ("human", "{question}"),
        ]
    )
