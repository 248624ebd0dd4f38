from __future__ import annotations

import inspect
import logging
import time
from functools import lru_cache
from typing import TYPE_CHECKING, AsyncGenerator

import openai
from langchain_core.messages import HumanMessage, SystemMessage

from config import env

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI

logger = logging.getLogger("newsdigest.generation")

SYSTEM_PROMPT = (
    "You are an advanced language model that summarizes news articles while "
    "maintaining key details. Always return the summary in the same language "
    "as the original article."
)


class ProviderError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def build_prompt(article_text: str) -> str:
    return (
        "Summarize the following news article concisely, keeping the key points "
        "and important details. Here is the original article:\n\n"
        f"{article_text}\n\n"
        "Summary:"
    )


def _llm_kwargs(
    api_key: str,
    model: str,
    base_url: str | None,
    temperature: float,
    max_tokens: int | None,
) -> dict:
    from langchain_openai import ChatOpenAI

    params = inspect.signature(ChatOpenAI.__init__).parameters
    kwargs: dict[str, object] = {"model": model, "streaming": True}

    if "api_key" in params:
        kwargs["api_key"] = api_key
    if "openai_api_key" in params:
        kwargs["openai_api_key"] = api_key
    if base_url:
        if "base_url" in params:
            kwargs["base_url"] = base_url
        if "openai_api_base" in params:
            kwargs["openai_api_base"] = base_url
    if "temperature" in params:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        if "max_tokens" in params:
            kwargs["max_tokens"] = max_tokens
        elif "max_completion_tokens" in params:
            kwargs["max_completion_tokens"] = max_tokens

    return kwargs


@lru_cache(maxsize=1)
def get_llm() -> "ChatOpenAI":
    from langchain_openai import ChatOpenAI

    api_key = env("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set.")

    return ChatOpenAI(
        **_llm_kwargs(
            api_key=api_key,
            model=env("OPENAI_MODEL", "gpt-4.1-mini") or "gpt-4.1-mini",
            base_url=env("OPENAI_BASE_URL"),
            temperature=float(env("OPENAI_TEMPERATURE", "0.3") or 0.3),
            max_tokens=int(env("OPENAI_MAX_TOKENS", "300") or 300),
        )
    )


def _provider_error(exc: Exception) -> ProviderError:
    if isinstance(exc, openai.APIStatusError):
        message = exc.message
        body = exc.body
        if isinstance(body, dict):
            error = body.get("error") if isinstance(body.get("error"), dict) else body
            message = str(error.get("message") or message)
        return ProviderError(exc.status_code, message)
    if isinstance(exc, openai.APIError):
        return ProviderError(502, exc.message)
    return ProviderError(502, str(exc) or "Summary provider failed.")


async def stream_summary(article_text: str) -> AsyncGenerator[str, None]:
    """Yield summary text chunks as the provider produces them."""
    messages = [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=build_prompt(article_text))]
    started = time.monotonic()
    try:
        async for chunk in get_llm().astream(messages):
            content = getattr(chunk, "content", None)
            if content:
                yield content
    except ProviderError:
        raise
    except Exception as exc:
        logger.exception("Summary provider call failed.")
        raise _provider_error(exc) from exc
    logger.info("Summary stream finished in %d ms", int((time.monotonic() - started) * 1000))
