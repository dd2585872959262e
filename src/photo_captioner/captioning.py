"""
Caption generation with a vision-language model through pydantic-ai.

The image travels inline with the request (``BinaryContent``), next to a prompt that asks
for a short, search-friendly caption and, when the photo already carries a caption or
keywords, points the model at that context.
"""

import os
import time
from http import HTTPStatus

import httpx
from loguru import logger
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from photo_captioner.imaging import ExistingMetadata


DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "gpt-4.1-mini")
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1000"))
DEFAULT_RETRIES = int(os.getenv("RETRIES", "2"))

DEFAULT_CAPTION_PROMPT = (
    "Write a brief caption for this photo. Be specific and include terms that might be useful "
    "for search later while still writing it in a natural voice. It should help tell the story "
    "of the photo. Avoid inferring too much: if you're not confident in a specific action, "
    "don't hypothesize in the output, just include what you are reasonably confident of. "
    "Output only the caption, nothing else."
)

CONTEXT_INSTRUCTION = "Use the image metadata to inform your caption."
NAMES_INSTRUCTION = (
    "Try to include any names from the metadata in your caption, "
    "but be careful not to infer too much."
)


class CaptionGenerationError(RuntimeError):
    """The model call failed or returned no usable caption."""


def build_caption_prompt(
    base_prompt: str = DEFAULT_CAPTION_PROMPT,
    existing: ExistingMetadata | None = None,
) -> str:
    """
    Extend the base prompt with existing caption/keyword context, if there is any.

    Without context the base prompt is returned unchanged.

    Examples:
        >>> build_caption_prompt("Caption this.", ExistingMetadata()) == "Caption this."
        True
        >>> "EXIF Keywords: Lisbon, Ana" in build_caption_prompt(
        ...     "Caption this.",
        ...     ExistingMetadata(tags=["Lisbon", "Ana"]),
        ... )
        True

    """
    if existing is None or existing.is_empty:
        return base_prompt

    context_lines: list[str] = []
    if existing.caption:
        context_lines.append(f'EXIF Caption: "{existing.caption}"')
    if existing.tags:
        context_lines.append("EXIF Keywords: " + ", ".join(existing.tags))

    metadata_block = 'Image metadata: """\n' + "\n".join(context_lines) + '\n"""'
    return "\n\n".join(
        [
            f"{base_prompt.strip()} {CONTEXT_INSTRUCTION}",
            metadata_block,
            NAMES_INSTRUCTION,
        ],
    )


async def generate_caption(
    image_bytes: bytes,
    agent: Agent[None, str],
    *,
    existing: ExistingMetadata | None = None,
    base_prompt: str = DEFAULT_CAPTION_PROMPT,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> str:
    """
    Ask the vision-language model for a caption of a JPEG image.

    Args:
        image_bytes: JPEG bytes (already resized and stripped)
        agent: Configured Pydantic AI Agent with plain text output
        existing: Caption/keyword context found in the original file
        base_prompt: Instruction text before any metadata context is added
        temperature: Sampling temperature for generation (0.0-1.0)
        max_tokens: Maximum tokens to generate in the response

    Returns:
        The caption on a single line, whitespace runs collapsed to one space

    Raises:
        CaptionGenerationError: If the request fails or the model returns no content

    """
    prompt = build_caption_prompt(base_prompt, existing)
    logger.info("requesting_caption", with_context=prompt != base_prompt)
    _t0 = time.perf_counter()

    try:
        result: AgentRunResult[str] = await agent.run(
            [
                prompt,
                BinaryContent(data=image_bytes, media_type="image/jpeg"),
            ],
            model_settings=ModelSettings(
                temperature=temperature,
                max_tokens=max_tokens,
            ),
        )
        caption = " ".join((result.output or "").split())
        if not caption:
            msg = "No caption generated"
            raise CaptionGenerationError(msg)  # noqa: TRY301
    except Exception as exc:
        msg = f"Failed to generate caption: {exc}"
        raise CaptionGenerationError(msg) from exc

    logger.info(
        "caption_generated",
        seconds=round(time.perf_counter() - _t0, 3),
        length=len(caption),
    )
    logger.debug("caption_text", caption=caption)
    return caption


class ModelListingError(RuntimeError):
    """The endpoint's model listing could not be fetched or understood."""


def list_endpoint_models(api_base_url: str, api_key: str | None) -> list[str]:
    """
    Return the model ids advertised by the ``/models`` listing of an OpenAI-compatible API.

    Raises:
        ModelListingError: If the URL is unusable, the endpoint is unreachable, rejects the
            credential or answers with something other than a model listing

    """
    try:
        url = httpx.URL(api_base_url.rstrip("/") + "/models")
    except httpx.InvalidURL as exc:
        msg = f"Invalid API base URL: {api_base_url}"
        raise ModelListingError(msg) from exc
    if url.scheme not in {"http", "https"} or not url.host:
        msg = f"API base URL must be http(s) with a host, got {api_base_url}"
        raise ModelListingError(msg)

    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(str(url), headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        msg = f"Cannot reach {url}: {exc}"
        raise ModelListingError(msg) from exc

    if response.status_code in {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}:
        msg = f"{url} rejected the API key (HTTP {response.status_code})"
        raise ModelListingError(msg)
    if response.status_code != HTTPStatus.OK:
        msg = f"{url} answered HTTP {response.status_code}: {response.text[:200]}"
        raise ModelListingError(msg)

    try:
        entries = response.json().get("data", [])
    except (ValueError, AttributeError) as exc:
        msg = f"{url} did not return a model listing"
        raise ModelListingError(msg) from exc

    return [str(entry["id"]) for entry in entries if isinstance(entry, dict) and "id" in entry]


def validate_model_available(
    api_base_url: str,
    model_name: str,
    api_key: str | None,
    *,
    key_source: str = "OPENAI_API_KEY",
) -> None:
    """Exit early when a custom endpoint is unusable or does not serve ``model_name``."""
    try:
        models = list_endpoint_models(api_base_url, api_key)
    except ModelListingError as exc:
        logger.error(
            "endpoint_check_failed",
            endpoint=api_base_url,
            key_source=key_source if api_key else None,
            error=str(exc),
        )
        raise SystemExit(1) from exc

    if model_name not in models:
        logger.error(
            "model_not_served",
            endpoint=api_base_url,
            requested=model_name,
            available=models,
        )
        raise SystemExit(1)

    logger.debug("model_validated", endpoint=api_base_url, model=model_name)


def create_agent(
    model_name: str,
    *,
    api_key: str,
    api_base_url: str | None = None,
    retries: int = DEFAULT_RETRIES,
    key_source: str = "OPENAI_API_KEY",
) -> Agent[None, str]:
    logger.info(
        "provider_config_resolved",
        url=api_base_url or "default",
        model=model_name,
    )
    if api_base_url:
        validate_model_available(api_base_url, model_name, api_key, key_source=key_source)

    provider = OpenAIProvider(base_url=api_base_url, api_key=api_key)
    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(chat_model, output_type=str, retries=retries)
