"""
Text Classification Adapter — OpenAI chat completion via LangChain

The categorization engine owns the prompt and the response parsing; this
module only turns a prompt into raw completion text. Any exception raised
here (timeout, provider error, empty content) is caught by the engine and
routed to the keyword fallback.

Timeout policy:
  Every call is bounded by asyncio.wait_for with
  settings.classifier_timeout_seconds (default 20 s). The LangChain client
  also carries its own request_timeout and max_retries=1 so a hung socket
  cannot outlive the caller-side bound by much.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from assessment_docs.core.config import settings

logger = logging.getLogger(__name__)


class TextClassifier(ABC):
    """Free-text completion service used to label documents."""

    @abstractmethod
    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        """Return the raw completion text for a single user prompt."""


class OpenAIClassifier(TextClassifier):
    """
    ChatOpenAI-backed classifier.

    A chat model is built per (max_tokens, temperature) pair on first use
    and reused afterwards; the engine always calls with the same pair.
    """

    def __init__(
        self,
        model: str | None = None,
        timeout_seconds: float | None = None,
        llm: BaseChatModel | None = None,
    ) -> None:
        self._model   = model or settings.classifier_model
        self._timeout = timeout_seconds or settings.classifier_timeout_seconds
        self._llm     = llm
        self._cache: dict[tuple[int, float], BaseChatModel] = {}

    def _build_llm(self, max_tokens: int, temperature: float) -> BaseChatModel:
        if self._llm is not None:
            return self._llm

        key = (max_tokens, temperature)
        if key not in self._cache:
            from langchain_openai import ChatOpenAI

            self._cache[key] = ChatOpenAI(
                model=self._model,
                api_key=settings.openai_api_key,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self._timeout,
                max_retries=1,
            )
        return self._cache[key]

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        llm = self._build_llm(max_tokens, temperature)

        t0 = time.perf_counter()
        result = await asyncio.wait_for(
            llm.ainvoke([HumanMessage(content=prompt)]),
            timeout=self._timeout,
        )
        latency_ms = (time.perf_counter() - t0) * 1000

        content = result.content if isinstance(result.content, str) else ""
        if not content.strip():
            raise ValueError("Empty completion from classifier")

        logger.info(
            "Classifier ok | model=%s chars=%d latency_ms=%.0f",
            self._model, len(content), latency_ms,
        )
        return content
