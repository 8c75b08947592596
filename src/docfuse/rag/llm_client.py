"""LiteLLM client wrapper with retry, backoff, timeouts and API key validation.

All text-generation and embedding calls route through this module.
LiteLLM's built-in retry is used (``num_retries``, exponential backoff) and
every call carries its own ``timeout``. Failures that survive the retries are
raised as ExternalServiceError; ``asyncio.CancelledError`` is never caught.
"""

from __future__ import annotations

import os

import litellm

from docfuse.errors import ExternalServiceError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def provider_of(model: str) -> str:
    return model.split("/")[0].lower() if "/" in model else "openai"


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = provider_of(model)
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


async def acomplete(
    model: str,
    messages: list[dict],
    max_tokens: int = 150,
    temperature: float = 0.0,
    num_retries: int = 3,
    timeout: float = 60.0,
) -> str:
    """Call litellm.acompletion() with retry/backoff. Returns the content string.

    Raises:
        ExternalServiceError: On persistent failure after retries.
    """
    try:
        response = await litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            num_retries=num_retries,
            timeout=timeout,
        )
    except Exception as exc:
        raise ExternalServiceError(
            f"Text generation with '{model}' failed: {exc}", provider=provider_of(model)
        ) from exc
    return response.choices[0].message.content or ""


async def aembed(
    model: str,
    texts: list[str],
    num_retries: int = 3,
    timeout: float = 60.0,
) -> list[list[float]]:
    """Call litellm.aembedding() for one batch. Returns vectors in input order.

    Providers report each vector's input position in ``index``; results are
    re-ordered by it rather than trusting response order.

    Raises:
        ExternalServiceError: On persistent failure or a short/garbled response.
    """
    try:
        response = await litellm.aembedding(
            model=model,
            input=texts,
            num_retries=num_retries,
            timeout=timeout,
        )
    except Exception as exc:
        raise ExternalServiceError(
            f"Embedding with '{model}' failed: {exc}", provider=provider_of(model)
        ) from exc

    items = list(response.data)
    if len(items) != len(texts):
        raise ExternalServiceError(
            f"Embedding with '{model}' returned {len(items)} vectors for {len(texts)} inputs",
            provider=provider_of(model),
        )
    ordered = sorted(enumerate(items), key=lambda pair: _index_of(pair[1], pair[0]))
    return [list(item["embedding"]) for _, item in ordered]


def _index_of(item, default: int) -> int:
    try:
        return int(item["index"])
    except (KeyError, TypeError):
        return default
