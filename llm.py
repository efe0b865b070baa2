from __future__ import annotations

import json
import logging
from http.client import HTTPException
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from outcome import Outcome
from text_utils import dedupe_lines, strip_bullet

logger = logging.getLogger(__name__)

MIN_LINE_LENGTH = 8


def parse_model_lines(text: str, limit: int) -> list[str]:
    """Split a completion into short lines: bullets stripped, fragments dropped."""
    candidates = [strip_bullet(line) for line in (text or "").splitlines()]
    kept = [line for line in candidates if len(line) >= MIN_LINE_LENGTH]
    return dedupe_lines(kept, limit=limit)


class LanguageModelClient:
    """Chat-completions client for an OpenAI-compatible endpoint."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def complete(self, system: str, prompt: str, *, temperature: float = 0.3) -> Outcome[str]:
        api_key = self.settings.llm_api_key
        if not api_key:
            return Outcome.degrade("language model key not configured")

        body = json.dumps(
            {
                "model": self.settings.llm_model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                "temperature": temperature,
            }
        ).encode("utf-8")
        req = Request(
            self.settings.llm_api_url,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=self.settings.llm_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            logger.warning(f"llm_complete: status={exc.code}")
            return Outcome.degrade(f"language model returned HTTP {exc.code}")
        except (URLError, TimeoutError, OSError, HTTPException, ValueError) as exc:
            logger.warning(f"llm_complete: unavailable error={exc}")
            return Outcome.degrade("language model unreachable")

        try:
            content = str(payload["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError):
            return Outcome.degrade("unexpected language model response")
        if not content:
            return Outcome.degrade("language model returned empty content")
        return Outcome.success(content)

    def complete_lines(self, system: str, prompt: str, limit: int) -> Outcome[list[str]]:
        completion = self.complete(system, prompt)
        if not completion.ok:
            return Outcome.degrade(completion.degraded or "")
        lines = parse_model_lines(completion.value_or(""), limit)
        if not lines:
            return Outcome.degrade("language model returned no usable lines")
        return Outcome.success(lines)
