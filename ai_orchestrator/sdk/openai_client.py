"""
Completion provider adapter.

Sends composed prompts to any OpenAI-compatible chat-completion endpoint
and reports token usage and cost.
"""

import time
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..config.loader import ProviderSettings
from ..core.pricing import calculate_cost
from ..core.retry import NO_RETRY, RetryPolicy
from ..core.token_counter import TokenUsage, estimate_tokens
from ..logger import get_logger
from ..storage.models import CompletionRequest, CompletionResult
from .errors import ProviderError, ProviderUnavailable

logger = get_logger(__name__)


def create_client(settings: ProviderSettings) -> OpenAI:
    """Build an OpenAI SDK client for a provider slot.

    Raises:
        ProviderUnavailable: If the provider's API key is not set
    """
    api_key = settings.api_key()
    if not api_key:
        raise ProviderUnavailable(
            f"Missing environment variable: {settings.api_key_env}",
            settings.provider_id,
        )
    kwargs: Dict[str, Any] = {"api_key": api_key}
    if settings.base_url:
        kwargs["base_url"] = settings.base_url
    return OpenAI(**kwargs)


def translate_error(error: Exception, provider: str) -> ProviderError:
    """Map an openai SDK exception onto ProviderError.

    Connection failures, timeouts, rate limits and 5xx responses are
    retryable; other 4xx responses are not.
    """
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, openai.APIConnectionError):
        return ProviderError(f"{provider} connection failed: {error}", provider, retryable=True)
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        retryable = status == 429 or status >= 500
        return ProviderError(
            f"{provider} returned HTTP {status}: {error.message}",
            provider,
            retryable=retryable,
            status_code=status,
        )
    return ProviderError(f"{provider} call failed: {error}", provider)


class CompletionClient:
    """Chat-completion adapter that meters every call.

    Failures are raised as ProviderError; the caller decides how to degrade.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        retry_policy: RetryPolicy = NO_RETRY,
        client: Optional[OpenAI] = None,
    ):
        """Initialize the completion adapter.

        Args:
            settings: Provider slot settings (endpoint and API key variable)
            retry_policy: Policy applied to each call
            client: Pre-built SDK client; created lazily from settings when omitted
        """
        self.settings = settings
        self.retry_policy = retry_policy
        self._client = client

    @property
    def provider(self) -> str:
        return self.settings.provider_id

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = create_client(self.settings)
        return self._client

    def complete(self, request: CompletionRequest) -> CompletionResult:
        """Execute a completion request.

        Args:
            request: Composed prompt, history and model settings

        Returns:
            CompletionResult with text, token usage and cost

        Raises:
            ProviderUnavailable: If the API key is not configured
            ProviderError: If the provider fails or returns no text
            ValueError: If the model has no pricing entry
        """
        if not request.model:
            raise ValueError("model is required and cannot be empty")

        messages = request.to_messages()
        logger.info(
            "llm.complete",
            extra={
                "event": "llm.complete.start",
                "provider": self.provider,
                "model": request.model,
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "message_count": len(messages),
            },
        )

        start_time = time.time()
        try:
            result = self.retry_policy.call(
                lambda: self._complete_once(request, messages),
                description=f"{self.provider}.complete",
            )
        except Exception as e:
            elapsed_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "llm.complete.error",
                extra={
                    "event": "llm.complete.error",
                    "provider": self.provider,
                    "model": request.model,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "elapsed_ms": elapsed_ms,
                },
            )
            raise

        logger.info(
            "llm.complete.success",
            extra={
                "event": "llm.complete.success",
                "provider": self.provider,
                "model": result.model,
                "request_id": result.request_id,
                "elapsed_ms": result.elapsed_ms,
                "prompt_tokens": result.prompt_tokens,
                "completion_tokens": result.completion_tokens,
                "cost": str(result.cost_estimate),
            },
        )
        return result

    def _complete_once(self, request: CompletionRequest, messages: List[Dict[str, str]]) -> CompletionResult:
        start_time = time.time()
        try:
            response = self.client.chat.completions.create(
                model=request.model,
                messages=messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except openai.OpenAIError as e:
            raise translate_error(e, self.provider) from e
        elapsed_ms = int((time.time() - start_time) * 1000)

        if not response.choices:
            raise ProviderError(f"No choices in {self.provider} response", self.provider)
        text = response.choices[0].message.content or ""
        if not text.strip():
            raise ProviderError(f"Empty response from {self.provider}", self.provider)

        usage = response.usage
        if usage:
            token_usage = TokenUsage(
                prompt_tokens=usage.prompt_tokens or 0,
                completion_tokens=usage.completion_tokens or 0,
            )
        else:
            # Provider omitted usage; estimate so the ledger still sees the call
            prompt_text = "\n".join(m["content"] for m in messages)
            token_usage = TokenUsage(
                prompt_tokens=estimate_tokens(prompt_text),
                completion_tokens=estimate_tokens(text),
            )

        return CompletionResult(
            text=text,
            prompt_tokens=token_usage.prompt_tokens,
            completion_tokens=token_usage.completion_tokens,
            cost_estimate=calculate_cost(request.model, token_usage),
            model=request.model,
            request_id=getattr(response, "id", None),
            elapsed_ms=elapsed_ms,
        )
