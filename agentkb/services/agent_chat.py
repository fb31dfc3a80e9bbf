"""
Chat with a provisioned agent through its OpenAI-compatible endpoint.

Only used for best-effort work after provisioning (pre-populating derived
fields from an initial document), so callers treat every error as
"feature unavailable".
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from openai import AsyncOpenAI, APIError, AuthenticationError

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 60_000

CURRENT_MEDICATIONS_PROMPT = (
    "From the document below, list the patient's current medications, one per line, "
    "with dose and frequency where stated. Reply with the list only.\n\n{document}"
)


@dataclass
class AgentReply:
    content: str
    model: str
    tokens_total: int


class AgentChatService:
    def __init__(self, endpoint: str, api_key: str, model: str = "n/a", timeout: float = 120.0):
        self.client = AsyncOpenAI(base_url=endpoint, api_key=api_key, timeout=timeout, max_retries=1)
        self.model = model

    async def complete(self, messages: List[Dict[str, str]], max_tokens: Optional[int] = None) -> AgentReply:
        kwargs = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs,
        )
        choice = response.choices[0]
        usage = response.usage
        return AgentReply(
            content=choice.message.content or "",
            model=response.model or self.model,
            tokens_total=usage.total_tokens if usage else 0,
        )

    async def summarize_document(self, text: str) -> str:
        prompt = CURRENT_MEDICATIONS_PROMPT.format(document=text[:MAX_DOCUMENT_CHARS])
        reply = await self.complete([{"role": "user", "content": prompt}])
        return reply.content.strip()

    async def close(self) -> None:
        await self.client.close()


__all__ = ["AgentChatService", "AgentReply", "APIError", "AuthenticationError"]
