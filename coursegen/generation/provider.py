"""
Generation provider client.

Wraps Claude (via langchain_anthropic) behind a single
`generate(kind, prompt, context, timeout)` call and maps every SDK failure
onto the pipeline's error taxonomy so the Job Queue can pick the right
retry strategy.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

import anthropic
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from coursegen.config import config
from coursegen.errors import PermanentError, RateLimitedError, TransientError
from coursegen.utils.logging import get_logger

logger = get_logger("provider")


class GenerationKind(str, Enum):
    COURSE_OUTLINE = "course_outline"
    ARTICLE_CONTENT = "article_content"
    QUIZ = "quiz"


def _retry_after(error: anthropic.APIStatusError) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def map_provider_error(error: BaseException) -> Exception:
    """
    Translate an SDK/transport exception into RateLimited / Transient / Permanent.

    429 -> RateLimitedError, timeouts / connection errors / 5xx -> TransientError,
    any other status -> PermanentError.
    """
    if isinstance(error, anthropic.RateLimitError):
        return RateLimitedError(str(error), retry_after=_retry_after(error))
    if isinstance(error, (asyncio.TimeoutError, anthropic.APITimeoutError)):
        return TransientError(f"Provider call timed out: {error}")
    if isinstance(error, anthropic.APIConnectionError):
        return TransientError(f"Provider connection failed: {error}")
    if isinstance(error, anthropic.APIStatusError):
        if error.status_code == 429:
            return RateLimitedError(str(error), retry_after=_retry_after(error))
        if error.status_code >= 500:
            return TransientError(f"Provider error {error.status_code}: {error}")
        return PermanentError(f"Provider rejected request ({error.status_code}): {error}")
    return TransientError(str(error) or error.__class__.__name__)


class GenerationProvider:
    """
    Calls Claude for outlines, articles and quizzes.

    The SDK's own retries are disabled: retrying belongs to the Job Queue,
    which knows the per-queue budget and backoff.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[int] = None
    ):
        self.model_name = model_name or config.GENERATION_MODEL
        self.max_tokens = max_tokens or config.GENERATION_MAX_TOKENS
        self.timeout_seconds = timeout_seconds or config.GENERATION_TIMEOUT_SECONDS
        self._llm: Optional[ChatAnthropic] = None

    @property
    def llm(self) -> ChatAnthropic:
        if self._llm is None:
            if not config.ANTHROPIC_API_KEY:
                raise PermanentError("ANTHROPIC_API_KEY is not configured", short_circuit=True)
            self._llm = ChatAnthropic(
                model=self.model_name,
                temperature=config.GENERATION_TEMPERATURE,
                max_tokens=self.max_tokens,
                anthropic_api_key=config.ANTHROPIC_API_KEY,
                timeout=float(self.timeout_seconds),
                max_retries=0,
            )
        return self._llm

    async def generate(
        self,
        kind: GenerationKind,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> str:
        """
        Run one generation call under a hard timeout.

        Returns:
            The generated text

        Raises:
            RateLimitedError, TransientError, PermanentError
        """
        timeout = timeout or self.timeout_seconds
        start_time = time.time()

        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke([HumanMessage(content=prompt)]),
                timeout=timeout,
            )
        except (RateLimitedError, TransientError, PermanentError):
            raise
        except Exception as e:
            mapped = map_provider_error(e)
            logger.warning(
                "Generation call failed",
                kind=kind.value,
                error_kind=getattr(mapped, "kind", "transient"),
                error=str(e),
                **(context or {}),
            )
            raise mapped from e

        text = _content_text(response.content)
        if not text.strip():
            raise PermanentError(f"Provider returned empty {kind.value} response")

        logger.info(
            "Generation call finished",
            kind=kind.value,
            seconds=round(time.time() - start_time, 2),
            chars=len(text),
            **(context or {}),
        )
        return text


def _content_text(content: Any) -> str:
    """Message content is a string or a list of content blocks"""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


# Global provider instance (created on first use)
_provider: Optional[GenerationProvider] = None


def get_provider() -> GenerationProvider:
    global _provider
    if _provider is None:
        _provider = GenerationProvider()
    return _provider
