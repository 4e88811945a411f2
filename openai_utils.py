"""
Utilities for structured output from OpenAI-compatible chat endpoints.

This module provides helpers to:
- Build an AsyncOpenAI client for a configured base URL (Groq, OpenAI, ...)
- Parse JSON-mode output into Pydantic models
"""

import json
from typing import Any, Dict, List, Sequence, Type, TypeVar, cast

import openai
from pydantic import BaseModel, ValidationError

from config import LLMConfig

T = TypeVar("T", bound=BaseModel)


def build_client(config: LLMConfig) -> "openai.AsyncOpenAI":
    """AsyncOpenAI client pointed at the configured endpoint."""
    return openai.AsyncOpenAI(
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout_seconds,
        max_retries=0,
    )


def _normalize_messages_input(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Coerce chat messages to role/content dicts with string content."""
    normalized: List[Dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        normalized.append({"role": msg.get("role", "user"), "content": str(content) if content is not None else ""})
    return normalized


def extract_message_text(response: Any) -> str:
    """
    Extract plain text from a chat completion response.

    Handles both SDK objects and dict responses.
    Returns an empty string if nothing is found.
    """
    if hasattr(response, "choices") and response.choices:
        message = response.choices[0].message
        content = getattr(message, "content", None)
        return content.strip() if content else ""
    if isinstance(response, dict):
        choices = response.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
            return content.strip()
    return ""


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


async def parse_pydantic_response(
    client: Any,
    *,
    model: str,
    messages: Sequence[Dict[str, Any]],
    response_format: Type[T],
    temperature: float = 0.1,
    max_tokens: int = 600,
) -> T:
    """
    Parse structured output into the provided Pydantic model type.

    Uses JSON mode with a schema instruction. Raises RuntimeError when the
    model output is empty, not JSON, or does not match the schema.
    """
    normalized = _normalize_messages_input(messages)

    schema_str = json.dumps(response_format.model_json_schema(), indent=2)
    schema_instruction = {
        "role": "system",
        "content": (
            "You must respond with ONLY a single valid JSON object that matches the following JSON Schema. "
            "Do not include any prose, code fences, markdown, or additional text. "
            "Output pure JSON only.\n\n"
            f"JSON Schema:\n{schema_str}"
        ),
    }
    messages_with_schema = [schema_instruction] + normalized

    try:
        response = await client.chat.completions.create(
            model=model,
            messages=messages_with_schema,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
    except openai.BadRequestError:
        # Endpoint without JSON mode support
        response = await client.chat.completions.create(
            model=model,
            messages=messages_with_schema,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    text_value = extract_message_text(response)
    if not text_value:
        raise RuntimeError("Structured output parsing failed: no content found in API response.")

    text_value = strip_code_fences(text_value)
    try:
        data = json.loads(text_value)
    except json.JSONDecodeError as exc:
        raise RuntimeError(
            f"Structured output parsing failed: invalid JSON in model output: {exc}\nOutput: {text_value[:500]}"
        )

    # Some models return a bare list for single-field wrappers
    if isinstance(data, list):
        fields = list(response_format.model_fields)
        if len(fields) == 1:
            data = {fields[0]: data}

    try:
        return cast(T, response_format.model_validate(data))
    except ValidationError as exc:
        raise RuntimeError(f"Structured output did not match schema: {exc}")
