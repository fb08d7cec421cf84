"""
AI provider access: a single prompt-in/text-out call plus the JSON cleanup every
caller runs before parsing a response.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from config import CHAT_MODEL

LOGGER = logging.getLogger("exam_engine.llm")


class MissingCredentialError(ValueError):
    """Raised before any request is made when no API key was supplied."""


class ProviderError(RuntimeError):
    """Raised when the provider rejects the request or returns a non-success status."""


@dataclass(frozen=True)
class Attachment:
    """Binary document sent alongside a prompt."""

    mime_type: str
    base64_data: str
    filename: str = "document.pdf"


def _require_credential(api_key: str | None) -> str:
    if not (api_key and api_key.strip()):
        raise MissingCredentialError("API key is missing. Please enter your API key.")
    return api_key.strip()


def _build_content(prompt: str, attachments: list[Attachment]) -> str | list[Any]:
    if not attachments:
        return prompt
    content: list[Any] = [{"type": "text", "text": prompt}]
    for att in attachments:
        data_url = f"data:{att.mime_type};base64,{att.base64_data}"
        if att.mime_type.startswith("image/"):
            content.append({"type": "image_url", "image_url": {"url": data_url, "detail": "auto"}})
        else:
            content.append({"type": "file", "file": {"filename": att.filename, "file_data": data_url}})
    return content


def _classify_error(e: Exception) -> ProviderError:
    err_msg = str(e).lower()
    if "invalid" in err_msg or "authentication" in err_msg or "incorrect api key" in err_msg:
        return ProviderError("API key was rejected by the provider.")
    if "insufficient_quota" in err_msg or "quota" in err_msg or "rate limit" in err_msg:
        return ProviderError("Provider quota exhausted or rate limited, try again later.")
    return ProviderError(f"Provider request failed: {e!s}")


async def _call_llm(
    prompt: str,
    attachments: list[Attachment],
    api_key: str,
    model: str,
    temperature: float,
    system_prompt: str | None,
) -> str:
    """
    Invoke the chat model once and return the assistant text.

    Raises:
        ProviderError: If the provider call fails for any reason.
    """
    messages: list[Any] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=_build_content(prompt, attachments)))
    try:
        llm = ChatOpenAI(model=model, api_key=api_key, temperature=temperature)
        response = await llm.ainvoke(messages)
    except Exception as e:
        error = _classify_error(e)
        LOGGER.warning("%s call failed: %s", model, error)
        raise error from e
    content = response.content
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return content or ""


class LLMProcessor:
    """Thin wrapper around the chat model used by every exam AI operation."""

    def __init__(self, model: str = CHAT_MODEL) -> None:
        self.model = model

    def complete(
        self,
        prompt: str,
        attachments: list[Attachment] | None = None,
        api_key: str = "",
        *,
        system_prompt: str | None = None,
        temperature: float = 0.2,
        model: str | None = None,
    ) -> Awaitable[str]:
        """
        Start a completion request.

        The credential is checked before the coroutine is created, so a missing key
        fails at the call site rather than when the result is awaited.

        Args:
            prompt: User prompt text.
            attachments: Optional base64 documents (PDF or images).
            api_key: Caller-supplied provider key.
            system_prompt: Optional system message.
            temperature: Model temperature.
            model: Override for the configured model name.

        Returns:
            Awaitable resolving to the raw response text.

        Raises:
            MissingCredentialError: If api_key is empty.
        """
        key = _require_credential(api_key)
        return _call_llm(
            prompt,
            list(attachments or []),
            key,
            model or self.model,
            temperature,
            system_prompt,
        )


# ──────────────────────────────────────────────────────────────
# JSON cleanup
# ──────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json|javascript|js|txt)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fence markers and surrounding whitespace."""
    return _FENCE_RE.sub("", text or "").strip()


def clean_json_text(text: str) -> str:
    """
    Reduce a model response to the span between its first '{' and last '}'.

    Falls back to the fence-stripped text when no such span exists.
    """
    if not text:
        return ""
    stripped = strip_code_fences(text)
    first = stripped.find("{")
    last = stripped.rfind("}")
    if first != -1 and last > first:
        return stripped[first : last + 1]
    return stripped


def _first_balanced_object(text: str) -> str | None:
    """Return the first top-level {...} object, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _apply_fixes(candidate: str) -> str:
    out = re.sub(r",\s*([}\]])", r"\1", candidate)
    out = out.replace("“", '"').replace("”", '"')
    return out.replace("‘", "'").replace("’", "'")


def parse_json_with_fixes(text: str) -> Any:
    """
    Parse JSON out of a model response.

    Tries the cleaned span, then the first balanced object, then both again with
    trailing commas and smart quotes repaired.

    Raises:
        ValueError: If nothing parses.
    """
    cleaned = clean_json_text(text)
    if not cleaned:
        raise ValueError("No JSON found in response.")
    candidates = [cleaned]
    balanced = _first_balanced_object(cleaned)
    if balanced and balanced != cleaned:
        candidates.append(balanced)
    last_error: Exception | None = None
    for fix in (False, True):
        for candidate in candidates:
            try:
                return json.loads(_apply_fixes(candidate) if fix else candidate)
            except json.JSONDecodeError as e:
                last_error = e
    raise ValueError(f"Invalid JSON in response: {last_error}")
