"""Clients that deliver an analysis request to an external model endpoint."""

from __future__ import annotations

import concurrent.futures
import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import httpx
import ollama

from analysis_pipeline.config_utils import InferenceSettings, build_ollama_options
from analysis_pipeline.prompts import JSON_SYSTEM_MESSAGE
from analysis_pipeline.schema import (
    AUTH_FAILURE,
    EMPTY_RESPONSE,
    SERVICE_ERROR,
    TRANSPORT_FAILURE,
    AnalysisRequest,
)

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = {401, 403}
TOKEN_REFRESH_SKEW_SECONDS = 60.0
TOKEN_COMMAND_TIMEOUT = 30.0
VERTEX_SCOPE_HOST = "aiplatform.googleapis.com"


class InferenceErrorKind(str, Enum):
    AUTH_FAILURE = AUTH_FAILURE
    TRANSPORT_FAILURE = TRANSPORT_FAILURE
    SERVICE_ERROR = SERVICE_ERROR
    EMPTY_RESPONSE = EMPTY_RESPONSE


class InferenceError(RuntimeError):
    """Raised when a single inference attempt cannot produce raw text."""

    def __init__(self, kind: InferenceErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {super().__str__()}"


class InferenceClient(Protocol):
    """Port used by the analyzer; implementations make exactly one attempt."""

    def complete(self, request: AnalysisRequest, *, timeout: float | None = None) -> str:
        ...


def validate_request(request: AnalysisRequest, max_prompt_chars: int) -> None:
    """Reject requests that must never reach the network."""
    if not request.text.strip():
        raise InferenceError(InferenceErrorKind.SERVICE_ERROR, "Request text is empty")
    if len(request.text) > max_prompt_chars:
        raise InferenceError(
            InferenceErrorKind.SERVICE_ERROR,
            f"Request text has {len(request.text)} chars; limit is {max_prompt_chars}",
        )


def _effective_timeout(configured: float, budget: float | None) -> float:
    if budget is None:
        return configured
    return max(min(configured, budget), 0.001)


def call_with_timeout(func: Callable[[], Any], timeout: float | None) -> Any:
    """Run ``func`` in a worker thread and give up once ``timeout`` elapses.

    A call still running at the deadline is abandoned; its thread is not
    joined.
    """
    if timeout is None:
        return func()
    if timeout <= 0:
        raise InferenceError(
            InferenceErrorKind.TRANSPORT_FAILURE,
            "Run deadline reached before the request was sent",
        )

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="inference"
    )
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        future.cancel()
        raise InferenceError(
            InferenceErrorKind.TRANSPORT_FAILURE,
            f"Inference request exceeded {timeout:.2f}s",
        ) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


class DisabledInferenceClient:
    """Client used when inference is switched off; every call fails fast."""

    def complete(self, request: AnalysisRequest, *, timeout: float | None = None) -> str:
        raise InferenceError(
            InferenceErrorKind.SERVICE_ERROR, "Inference disabled by configuration"
        )


class OllamaInferenceClient:
    """Send requests to an Ollama server through the ``ollama`` client."""

    def __init__(self, settings: InferenceSettings):
        self.settings = settings
        self.options = build_ollama_options(settings)

    def _chat(self, request: AnalysisRequest, timeout: float) -> Any:
        client = ollama.Client(host=self.settings.host, timeout=timeout)
        options = dict(self.options)
        options["temperature"] = request.temperature
        options["num_predict"] = request.max_output_tokens
        return client.chat(
            model=self.settings.model,
            messages=[
                {"role": "system", "content": JSON_SYSTEM_MESSAGE},
                {"role": "user", "content": request.text},
            ],
            options=options,
        )

    def complete(self, request: AnalysisRequest, *, timeout: float | None = None) -> str:
        validate_request(request, self.settings.max_prompt_chars)
        request_timeout = _effective_timeout(self.settings.timeout_seconds, timeout)
        logger.debug(
            "Sending Ollama analysis request to %s (model=%s, prompt length=%d)",
            self.settings.host or "default host",
            self.settings.model,
            len(request.text),
        )
        try:
            response = self._chat(request, request_timeout)
        except ollama.ResponseError as exc:
            kind = (
                InferenceErrorKind.AUTH_FAILURE
                if exc.status_code in AUTH_STATUS_CODES
                else InferenceErrorKind.SERVICE_ERROR
            )
            raise InferenceError(kind, f"Ollama returned {exc.status_code}: {exc.error}") from exc
        except httpx.TimeoutException as exc:
            raise InferenceError(
                InferenceErrorKind.TRANSPORT_FAILURE,
                f"Ollama request timed out after {request_timeout:.2f}s",
            ) from exc
        except (httpx.TransportError, ConnectionError) as exc:
            raise InferenceError(
                InferenceErrorKind.TRANSPORT_FAILURE, f"Ollama unreachable: {exc}"
            ) from exc

        try:
            content = response["message"]["content"]
        except (KeyError, TypeError):
            content = None
        if not content or not str(content).strip():
            raise InferenceError(
                InferenceErrorKind.EMPTY_RESPONSE, "Ollama returned no content"
            )
        return str(content)


TokenFetcher = Callable[[], tuple[str, float]]


def env_token_fetcher(variable: str, lifetime_seconds: float = 3300.0) -> TokenFetcher:
    """Read a bearer token from an environment variable."""

    def _fetch() -> tuple[str, float]:
        token = os.getenv(variable, "").strip()
        if not token:
            raise InferenceError(
                InferenceErrorKind.AUTH_FAILURE,
                f"No access token found in ${variable}",
            )
        return token, lifetime_seconds

    return _fetch


def command_token_fetcher(
    argv: Sequence[str], lifetime_seconds: float = 3300.0
) -> TokenFetcher:
    """Obtain a bearer token by running a command such as ``gcloud``."""
    command = list(argv)

    def _fetch() -> tuple[str, float]:
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=True,
                timeout=TOKEN_COMMAND_TIMEOUT,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise InferenceError(
                InferenceErrorKind.AUTH_FAILURE,
                f"Token command {command[0] if command else '?'} failed: {exc}",
            ) from exc
        token = completed.stdout.strip()
        if not token:
            raise InferenceError(
                InferenceErrorKind.AUTH_FAILURE, "Token command printed no token"
            )
        return token, lifetime_seconds

    return _fetch


def chained_token_fetcher(*fetchers: TokenFetcher) -> TokenFetcher:
    """Try each fetcher in order and return the first token obtained."""

    def _fetch() -> tuple[str, float]:
        last_error: InferenceError | None = None
        for fetcher in fetchers:
            try:
                return fetcher()
            except InferenceError as exc:
                logger.debug("Token source failed: %s", exc)
                last_error = exc
        raise last_error or InferenceError(
            InferenceErrorKind.AUTH_FAILURE, "No token sources configured"
        )

    return _fetch


@dataclass
class _CachedToken:
    value: str
    expires_at: float


class AccessTokenCache:
    """Process-lifetime bearer token cache, refreshed shortly before expiry."""

    def __init__(
        self,
        fetcher: TokenFetcher,
        *,
        skew_seconds: float = TOKEN_REFRESH_SKEW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._skew = skew_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._token: _CachedToken | None = None

    def get(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token is None or now >= self._token.expires_at - self._skew:
                token, lifetime = self._fetcher()
                self._token = _CachedToken(value=token, expires_at=now + lifetime)
                logger.debug("Fetched new access token valid for %.0fs", lifetime)
            return self._token.value

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


class VertexInferenceClient:
    """Call a Vertex AI ``generateContent`` endpoint over HTTPS."""

    def __init__(
        self,
        settings: InferenceSettings,
        tokens: AccessTokenCache,
        *,
        http_client: httpx.Client | None = None,
    ):
        self.settings = settings
        self.tokens = tokens
        self.http_client = http_client

    @property
    def endpoint(self) -> str:
        vertex = self.settings.vertex
        base_url = vertex.base_url or f"https://{vertex.location}-{VERTEX_SCOPE_HOST}"
        return (
            f"{base_url.rstrip('/')}/v1/projects/{vertex.project_id}"
            f"/locations/{vertex.location}/publishers/google/models/"
            f"{self.settings.model}:generateContent"
        )

    def _payload(self, request: AnalysisRequest) -> dict[str, Any]:
        vertex = self.settings.vertex
        return {
            "systemInstruction": {"parts": [{"text": JSON_SYSTEM_MESSAGE}]},
            "contents": [{"role": "user", "parts": [{"text": request.text}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_output_tokens,
                "topP": vertex.top_p,
                "topK": vertex.top_k,
            },
        }

    def _post(self, payload: dict[str, Any], token: str, timeout: float) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        if self.http_client is not None:
            return self.http_client.post(
                self.endpoint, json=payload, headers=headers, timeout=timeout
            )
        with httpx.Client(timeout=timeout) as client:
            return client.post(self.endpoint, json=payload, headers=headers)

    def complete(self, request: AnalysisRequest, *, timeout: float | None = None) -> str:
        validate_request(request, self.settings.max_prompt_chars)
        request_timeout = _effective_timeout(self.settings.timeout_seconds, timeout)
        token = self.tokens.get()
        logger.debug(
            "Sending Vertex analysis request (model=%s, prompt length=%d)",
            self.settings.model,
            len(request.text),
        )
        try:
            response = self._post(self._payload(request), token, request_timeout)
        except httpx.TimeoutException as exc:
            raise InferenceError(
                InferenceErrorKind.TRANSPORT_FAILURE,
                f"Vertex request timed out after {request_timeout:.2f}s",
            ) from exc
        except httpx.TransportError as exc:
            raise InferenceError(
                InferenceErrorKind.TRANSPORT_FAILURE, f"Vertex unreachable: {exc}"
            ) from exc

        if response.status_code in AUTH_STATUS_CODES:
            self.tokens.invalidate()
            raise InferenceError(
                InferenceErrorKind.AUTH_FAILURE,
                f"Vertex rejected credentials ({response.status_code})",
            )
        if not response.is_success:
            raise InferenceError(
                InferenceErrorKind.SERVICE_ERROR,
                f"Vertex returned {response.status_code}: {response.text[:200]}",
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise InferenceError(
                InferenceErrorKind.SERVICE_ERROR, "Vertex returned a non-JSON body"
            ) from exc
        text = _extract_candidate_text(body)
        if not text.strip():
            raise InferenceError(
                InferenceErrorKind.EMPTY_RESPONSE, "Vertex returned no candidate text"
            )
        return text


def _extract_candidate_text(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    candidates = body.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(
        part.get("text", "") for part in parts if isinstance(part, dict)
    )


def build_token_cache(settings: InferenceSettings) -> AccessTokenCache:
    vertex = settings.vertex
    fetchers: list[TokenFetcher] = [
        env_token_fetcher(vertex.token_env, vertex.token_lifetime_seconds)
    ]
    if vertex.token_command:
        fetchers.append(
            command_token_fetcher(vertex.token_command, vertex.token_lifetime_seconds)
        )
    return AccessTokenCache(chained_token_fetcher(*fetchers))


def build_inference_client(
    settings: InferenceSettings,
    *,
    tokens: AccessTokenCache | None = None,
) -> InferenceClient:
    """Construct the client selected by ``settings.provider``."""
    if settings.provider == "disabled":
        return DisabledInferenceClient()
    if settings.provider == "vertex":
        return VertexInferenceClient(settings, tokens or build_token_cache(settings))
    return OllamaInferenceClient(settings)
