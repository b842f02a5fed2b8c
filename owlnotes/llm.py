import asyncio

from llama_index.llms.openai_like import OpenAILike

from owlnotes.logger import logger


class LLM:
    """Text completion against an OpenAI compatible endpoint.

    Each instance owns its client, nothing is registered globally.
    """

    def __init__(self, settings, temperature: float = 0.4, max_tokens: int | None = None):
        self.model_name = settings.LLM_MODEL
        self.url = settings.LLM_URL
        self.api_key = settings.LLM_API_KEY
        self.context_window = settings.LLM_CONTEXT_WINDOW
        self.timeout = settings.LLM_TIMEOUT
        self.temperature = temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        if not self.api_key:
            raise ValueError("LLM_API_KEY required to use LLM")

        self.client = OpenAILike(
            model=self.model_name,
            api_base=self.url,
            api_key=self.api_key,
            context_window=self.context_window,
            is_chat_model=True,
            is_function_calling_model=False,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )

    async def complete(self, prompt: str) -> str:
        logger.debug("LLM completion", model=self.model_name, prompt_length=len(prompt))
        response = await asyncio.wait_for(
            self.client.acomplete(prompt), timeout=self.timeout
        )
        return str(response.text).strip()
