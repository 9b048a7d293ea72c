"""HTTP client for the language model endpoint.

Uses httpx with configurable timeouts and tenacity for retry with
exponential backoff on 503 (model loading) and connection errors. Speaks
either the Ollama generate API or an OpenAI-compatible chat completions API.
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from medrecon.config import settings
from medrecon.errors import ModelCallError, ModelUnavailable, ResponseDecodeError

logger = logging.getLogger(__name__)

API_STYLES = ("ollama", "openai")


def decode_completion(payload) -> str:
    """Pull the generated text out of a completion response.

    Accepts the known response shapes: ``response`` (Ollama),
    ``generations[0].text``, ``output`` and ``choices[0].message.content``
    (OpenAI-compatible).

    Raises:
        ResponseDecodeError: If the payload matches none of them.
    """
    if not isinstance(payload, dict):
        raise ResponseDecodeError(f"Expected a JSON object, got {type(payload).__name__}")

    if isinstance(payload.get("response"), str):
        return payload["response"]

    generations = payload.get("generations")
    if isinstance(generations, list) and generations:
        first = generations[0]
        if isinstance(first, dict) and isinstance(first.get("text"), str):
            return first["text"]

    if isinstance(payload.get("output"), str):
        return payload["output"]

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            message = first.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
            if isinstance(first.get("text"), str):
                return first["text"]

    raise ResponseDecodeError(
        f"Unrecognized completion response with keys: {', '.join(sorted(payload)) or 'none'}"
    )


def decode_embedding(payload) -> Optional[list[float]]:
    """Pull an embedding vector out of an embeddings response, or None."""
    if not isinstance(payload, dict):
        return None
    vector = payload.get("embedding")
    if vector is None:
        data = payload.get("data")
        if isinstance(data, list) and data and isinstance(data[0], dict):
            vector = data[0].get("embedding")
    if not isinstance(vector, list) or not vector:
        return None
    return [float(v) for v in vector]


class LLMClient:
    """HTTP client for a text generation endpoint with retry and backoff."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        api_style: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        connect_timeout: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        retry_backoff: Optional[float] = None,
        embedding_model: Optional[str] = None,
    ):
        self.base_url = (base_url or settings.llm_host).rstrip("/")
        self.model = model or settings.llm_model
        self.api_style = api_style or settings.llm_api_style
        if self.api_style not in API_STYLES:
            raise ValueError(f"api_style must be one of {API_STYLES}, got {self.api_style!r}")
        self.embedding_model = embedding_model or settings.llm_embedding_model
        self._retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.llm_retry_attempts
        )
        self._retry_delay = retry_delay if retry_delay is not None else settings.llm_retry_delay
        self._retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.llm_retry_backoff
        )

        read_timeout = timeout if timeout is not None else settings.llm_timeout_seconds
        conn_timeout = connect_timeout if connect_timeout is not None else settings.llm_connect_timeout

        headers = {}
        key = api_key if api_key is not None else settings.llm_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=float(conn_timeout),
                read=float(read_timeout),
                write=30.0,
                pool=30.0,
            ),
        )

    def close(self):
        self._client.close()

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        stop: Optional[list[str]] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Generate a completion for a prompt.

        Raises ModelUnavailable (after retries) or ModelCallError.
        """
        temperature = temperature if temperature is not None else settings.llm_temperature
        max_tokens = max_tokens or settings.llm_max_tokens
        stop = stop or []

        if self.api_style == "ollama":
            path = "/api/generate"
            payload = {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": temperature,
                    "top_p": settings.llm_top_p,
                    "num_predict": max_tokens,
                    "stop": stop,
                },
            }
            if system:
                payload["system"] = system
        else:
            path = "/chat/completions"
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            payload = {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "top_p": settings.llm_top_p,
                "max_tokens": max_tokens,
                "stream": False,
            }
            if stop:
                payload["stop"] = stop

        data = self._post_with_retry(path, payload)
        text = decode_completion(data)
        logger.debug("Completion of %d characters from %s", len(text), self.model)
        return text

    def embed(self, text: str) -> Optional[list[float]]:
        """Embed text, or return None if embeddings are unavailable.

        Never raises for endpoint failures; a missing vector is reported as
        None rather than substituted.
        """
        if self.api_style == "ollama":
            path = "/api/embeddings"
            payload = {"model": self.embedding_model, "prompt": text}
        else:
            path = "/embeddings"
            payload = {"model": self.embedding_model, "input": text}

        try:
            data = self._post_with_retry(path, payload)
        except ModelCallError as e:
            logger.warning("Embeddings unavailable: %s", e)
            return None

        vector = decode_embedding(data)
        if vector is None:
            logger.warning("Embeddings response carried no vector")
        return vector

    def _post_with_retry(self, path: str, payload: dict) -> dict:
        """Retry wrapper, configured from the client's settings."""

        @retry(
            retry=retry_if_exception_type(ModelUnavailable),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(
                multiplier=self._retry_delay,
                exp_base=self._retry_backoff,
                max=60,
            ),
            reraise=True,
            before_sleep=lambda state: logger.warning(
                "Model endpoint unavailable, retrying in %.1fs (attempt %d/%d)",
                state.next_action.sleep,  # type: ignore[union-attr]
                state.attempt_number,
                self._retry_attempts,
            ),
        )
        def _do_post() -> dict:
            return self._send(path, payload)

        return _do_post()

    def _send(self, path: str, payload: dict) -> dict:
        """Send a single request to the model endpoint."""
        try:
            resp = self._client.post(path, json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.warning("Model endpoint connection failed: %s", e)
            raise ModelUnavailable(f"Cannot connect to model endpoint: {e}") from e
        except httpx.ReadTimeout as e:
            logger.warning("Model endpoint read timeout: %s", e)
            raise ModelUnavailable(f"Model endpoint read timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.error("Model endpoint HTTP error: %s", e)
            raise ModelCallError(f"Model endpoint HTTP error: {e}") from e

        if resp.status_code == 503:
            logger.warning("Model endpoint returned 503: %s", resp.text[:200])
            raise ModelUnavailable(f"Model endpoint unavailable: {resp.text[:200]}")

        if resp.status_code != 200:
            logger.error("Model endpoint error %d: %s", resp.status_code, resp.text[:200])
            raise ModelCallError(f"HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            return resp.json()
        except ValueError as e:
            raise ResponseDecodeError(f"Model endpoint returned invalid JSON: {e}") from e

    def health(self) -> dict:
        """Check endpoint health. Returns a status dict, never raises."""
        path = "/api/tags" if self.api_style == "ollama" else "/models"
        try:
            resp = self._client.get(path, timeout=10.0)
        except httpx.HTTPError as e:
            logger.warning("Model health check failed: %s", e)
            return {"status": "unreachable", "error": str(e)}
        if resp.status_code != 200:
            return {"status": "error", "error": f"HTTP {resp.status_code}"}
        return {"status": "ok", "model": self.model, "api_style": self.api_style}
