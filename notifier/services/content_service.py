import os
from functools import lru_cache
from typing import List, Protocol

from langchain_core.prompts import PromptTemplate
from langchain_ollama import ChatOllama

from notifier.config.settings import Settings, settings as default_settings

DAILY_MESSAGE_TEMPLATE = """You write short daily encouragement messages for a habit tracking app.
Write one message for the user's {time_of_day} notification.
Keep it under 200 characters, warm and concrete, with no hashtags or emojis.
Reply with the message text only."""


class ContentGenerator(Protocol):
    def generate_message(self, user_id: str, window_type: str) -> str: ...


class LangChainContentGenerator:
    """Notification text from the conversational model (Ollama via LangChain)"""

    def __init__(self, settings: Settings = default_settings):
        self.ollama_base_url = settings.OLLAMA_BASE_URL
        self.ollama_model = settings.OLLAMA_MODEL
        self.settings = settings

        self._set_env_variables()

    def _set_env_variables(self):
        """Sets necessary environment variables to enable LangSmith tracing"""

        os.environ["LANGSMITH_TRACING"] = self.settings.LANGSMITH_TRACING or ""
        os.environ["LANGSMITH_API_KEY"] = self.settings.LANGSMITH_API_KEY or ""
        os.environ["LANGSMITH_ENDPOINT"] = self.settings.LANGSMITH_ENDPOINT or ""
        os.environ["LANGSMITH_PROJECT"] = self.settings.LANGSMITH_PROJECT or ""

    @lru_cache(maxsize=1)
    def get_ollama_chat_model(self) -> ChatOllama:
        """Returns a cached instance of the Ollama chat model."""
        return ChatOllama(
            model=self.ollama_model,
            base_url=self.ollama_base_url,
            temperature=0.7,
        )

    def get_custom_prompt_template(
        self,
        input_variables: List[str],
        template: str,
    ) -> PromptTemplate:
        """Returns a custom prompt template with the provided variables."""
        return PromptTemplate(input_variables=input_variables, template=template)

    def generate_message(self, user_id: str, window_type: str) -> str:
        prompt = self.get_custom_prompt_template(
            input_variables=["time_of_day"], template=DAILY_MESSAGE_TEMPLATE
        ).format(time_of_day=time_of_day(window_type))

        response = self.get_ollama_chat_model().invoke(prompt)
        text = str(response.content).strip().strip('"')
        if not text:
            raise ValueError(f"Empty message generated for {user_id}")
        return text


def time_of_day(window_type: str) -> str:
    if window_type.endswith("morning"):
        return "morning"
    if window_type.endswith("evening"):
        return "evening"
    return "daily"


def fallback_message(window_type: str) -> str:
    """Greeting used when the content generator is unavailable."""
    greeting = {
        "morning": "Good morning!",
        "evening": "Good evening!",
    }.get(time_of_day(window_type), "Hello!")
    return f"{greeting} Take one small step on your habits today."
