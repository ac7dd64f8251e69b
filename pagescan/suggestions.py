"""Fix suggestions for findings, produced by an OpenAI-compatible chat endpoint."""
from __future__ import annotations

import logging
import os
import re
from typing import Callable

import httpx

from pagescan.errors import SuggestionError

LOGGER = logging.getLogger(__name__)

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
MISSING_KEY_MESSAGE = "AI fix suggestions require an OpenAI API key."

SYSTEM_PROMPT = (
    "You are a security expert who provides concise, practical fixes for web security vulnerabilities. "
    "Keep your answers under 150 words, focused only on the direct solution. "
    "Format your answer as plain text without markdown. "
    "Start directly with the solution, no introductions."
)

SuggestFn = Callable[[str, str, str], str]


def clean_suggestion(text: str) -> str:
    text = re.sub(r"```[\s\S]*?```", "", text)
    text = text.replace("**", "").replace("*", "")
    text = re.sub(r"^#+\s+", "", text, flags=re.M)
    return re.sub(r"\s+", " ", text).strip()


def build_messages(vulnerability_type: str, description: str, code_snippet: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"I found a {vulnerability_type} vulnerability: {description}. "
                f'Here\'s the relevant code snippet: "{code_snippet}". '
                "Provide a clear, direct fix for this specific issue."
            ),
        },
    ]


def generate_fix_suggestion(
    vulnerability_type: str,
    description: str,
    code_snippet: str,
    api_key: str | None = None,
    model: str = "gpt-3.5-turbo",
    max_tokens: int = 200,
    temperature: float = 0.5,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> str:
    api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "")
    if not api_key:
        LOGGER.info("OpenAI API key not found, skipping fix suggestion")
        return MISSING_KEY_MESSAGE

    payload = {
        "model": model,
        "messages": build_messages(vulnerability_type, description, code_snippet),
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    try:
        with httpx.Client(base_url=OPENAI_BASE_URL, timeout=timeout, transport=transport) as client:
            response = client.post("/chat/completions", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise SuggestionError(f"fix suggestion request failed: {exc}") from exc

    try:
        content = data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as exc:
        raise SuggestionError("unexpected fix suggestion response shape") from exc
    return clean_suggestion(content)


def suggester_from_settings(settings: dict) -> SuggestFn:
    options = settings.get("suggestions", {})

    def suggest(vulnerability_type: str, description: str, code_snippet: str) -> str:
        return generate_fix_suggestion(
            vulnerability_type,
            description,
            code_snippet,
            model=options.get("model", "gpt-3.5-turbo"),
            max_tokens=int(options.get("max_tokens", 200)),
            temperature=float(options.get("temperature", 0.5)),
            timeout=float(options.get("timeout_seconds", 30)),
        )

    return suggest
