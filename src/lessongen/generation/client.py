"""HTTP client for the external text completion service."""

import logging
from typing import Any

import httpx

from lessongen.errors import (
    ProviderError,
    ProviderPaymentRequiredError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from lessongen.resilience import CircuitBreaker

logger = logging.getLogger(__name__)


class CompletionClient:
    """
    Prompt-in, text-out client for an OpenAI-compatible chat endpoint.

    Makes exactly one request per call and translates the outcome into
    the provider error taxonomy; retry policy belongs to the caller:
    - 429 -> ProviderRateLimitError (back off, then retry)
    - 402 -> ProviderPaymentRequiredError (terminal)
    - timeout -> ProviderTimeoutError
    - connection errors, 5xx and other statuses -> ProviderError
    """

    DEFAULT_RATE_LIMIT_WAIT = 20.0

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        model: str = "google/gemini-2.5-flash",
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the completion client.

        Args:
            base_url: Provider base URL (``/chat/completions`` is appended)
            api_key: Bearer key for the provider
            model: Default model identifier
            timeout: Default per-call timeout in seconds
            breaker: Optional circuit breaker shared by all calls
            transport: Optional httpx transport (tests use MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._breaker = breaker
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        if not api_key:
            logger.warning("No completion API key configured - provider calls will likely fail")

    @property
    def model(self) -> str:
        return self._model

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    def _retry_after(self, response: httpx.Response) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return self.DEFAULT_RATE_LIMIT_WAIT

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        timeout: float | None = None,
        model: str | None = None,
    ) -> str:
        """
        Send one chat completion request.

        Args:
            system_prompt: Instruction for the system role
            user_prompt: Content for the user role
            temperature: Sampling temperature
            timeout: Override for the default timeout
            model: Override for the default model

        Returns:
            The reply text

        Raises:
            ProviderRateLimitError: Provider answered 429
            ProviderPaymentRequiredError: Provider answered 402
            ProviderTimeoutError: Call exceeded its timeout
            ProviderError: Any other transport or provider failure
        """
        is_probe = self._breaker.before_call() if self._breaker is not None else False

        try:
            text = await self._send(system_prompt, user_prompt, temperature, timeout, model)
        except ProviderRateLimitError:
            # Throttling says nothing about provider health
            raise
        except ProviderError:
            if self._breaker is not None:
                self._breaker.record_failure()
            raise
        else:
            if self._breaker is not None:
                self._breaker.record_success()
        finally:
            # 429, 402 or cancellation end the probe without a verdict
            if is_probe:
                self._breaker.release_probe()
        return text

    async def _send(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout: float | None,
        model: str | None,
    ) -> str:
        client = await self._get_client()
        payload: dict[str, Any] = {
            "model": model or self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }

        try:
            response = await client.post(
                "/chat/completions",
                json=payload,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Completion request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Completion request failed: {e}") from e

        if response.status_code == 429:
            raise ProviderRateLimitError(self._retry_after(response))

        if response.status_code == 402:
            raise ProviderPaymentRequiredError("Provider credits exhausted")

        if response.status_code >= 400:
            # Raw provider text stays in the logs
            logger.error(f"Provider error {response.status_code}: {response.text[:500]}")
            raise ProviderError(
                f"Provider returned status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Malformed provider response: {response.text[:500]}")
            raise ProviderError("Malformed provider response") from e

        if not isinstance(content, str) or not content.strip():
            raise ProviderError("Provider returned empty content")

        return content

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.info("Completion client closed")

    async def __aenter__(self) -> "CompletionClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
