import os
import asyncio
import logging
from typing import List, Optional

import httpx

from .errors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_IMPROVE_MODEL = "gpt-4o-mini"
SYSTEM_PROMPT = "You are an expert QA automation engineer specializing in Gherkin scripts."

_META_PREFIXES = ("# META:", "#META:")


def extract_metadata(text: str) -> List[str]:
    """Return the text of every ``# META:`` comment line in a feature file."""
    metadata = []
    for line in text.split("\n"):
        trimmed = line.strip()
        if trimmed.startswith(_META_PREFIXES):
            metadata.append(trimmed[trimmed.index(":") + 1 :].strip())
    return metadata


def add_metadata(text: str, info: str) -> str:
    return f"# META: {info}\n{text}"


def build_prompt(original_text: str, metadata: List[str]) -> str:
    prompt = (
        "You are an expert QA automation engineer specializing in writing high-quality Gherkin scripts. "
        "Please improve the following Gherkin script to make it more comprehensive, maintainable, "
        "and aligned with best practices. "
    )
    if metadata:
        prompt += "\n\nUSE THIS METADATA TO GUIDE THE IMPROVEMENTS:\n" + "\n".join(metadata) + "\n\n"

    prompt += "\nORIGINAL GHERKIN SCRIPT:\n```gherkin\n" + original_text + "\n```\n\n"
    prompt += (
        "Return ONLY the improved Gherkin script without any explanations or additional text. "
        "Your response should be in valid Gherkin format that can be directly used in "
        "Cucumber/Behave frameworks. "
        "IMPORTANT: DO NOT include ```gherkin or ``` markers in your response. "
        "Just return the raw Gherkin content starting with Feature: with no markdown formatting."
    )
    return prompt


def _strip_code_fences(content: str) -> str:
    lines = content.strip().split("\n")
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return "\n".join(lines).strip()


class GherkinImprover:
    """Asks an OpenAI-compatible chat model to rewrite a Gherkin script."""

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model or os.getenv("HERCULES_IMPROVE_MODEL", DEFAULT_IMPROVE_MODEL)
        self.base_url = base_url or os.getenv("OPENAI_API_BASE_URL", DEFAULT_OPENAI_BASE_URL)
        self.timeout = timeout
        self._transport = transport

    async def improve(
        self,
        text: str,
        metadata: Optional[List[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Return the improved script, or ``None`` if cancelled or nothing came back.

        Cancellation is checked before the request is sent and after it
        returns; an in-flight request is not aborted.
        """
        if metadata is None:
            metadata = extract_metadata(text)
        prompt = build_prompt(text, metadata)

        if cancel_event is not None and cancel_event.is_set():
            return None

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.5,
            "max_tokens": 2000,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        logger.info(f"Requesting Gherkin improvement from {self.model}")
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout
            ) as client:
                resp = await client.post(
                    f"{self.base_url.rstrip('/')}/chat/completions",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error(f"Chat completion request failed: {e}")
            raise ApiError(
                "No response received from the API. Please check your internet connection."
            ) from e

        if resp.status_code >= 400:
            raise ApiError(f"API Error: {resp.status_code} - {resp.text}")

        if cancel_event is not None and cancel_event.is_set():
            return None

        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(f"API Error: invalid JSON in response: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            return None
        content = (choices[0].get("message") or {}).get("content")
        if not content:
            return None
        return _strip_code_fences(content)
