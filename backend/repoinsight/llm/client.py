from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from openai import BadRequestError

from repoinsight.config import Settings, require_setting, settings as default_settings

logger = logging.getLogger(__name__)


def parse_json_payload(text: Optional[str]) -> Dict[str, Any]:
    """Parse a model reply as a JSON object, tolerating prose around the braces."""
    if not text:
        return {"_raw": ""}
    try:
        payload = json.loads(text)
    except ValueError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return {"_raw": text}
        try:
            payload = json.loads(text[start:end + 1])
        except ValueError:
            return {"_raw": text}
    if not isinstance(payload, dict):
        return {"_raw": text}
    return payload


class LLMClient:
    """Async OpenAI client running chat completions in JSON mode."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or default_settings
        api_key = require_setting("OPENAI_API_KEY", self.config)
        self.client = client or AsyncOpenAI(api_key=api_key)
        # Expose model for metrics callers
        self.model = self.config.LLM_MODEL
        self._sem = asyncio.Semaphore(self.config.LLM_CONCURRENCY)

    async def _create(self, messages: List[Dict[str, Any]], json_mode: bool):
        kwargs: Dict[str, Any] = dict(
            model=self.model,
            temperature=self.config.LLM_TEMPERATURE,
            max_tokens=self.config.LLM_MAX_TOKENS,
            messages=messages,
        )
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return await asyncio.wait_for(
            self.client.chat.completions.create(**kwargs),
            timeout=self.config.LLM_PER_CALL_TIMEOUT,
        )

    async def acomplete_json(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Return structured JSON by running in JSON mode."""
        async with self._sem:
            try:
                res = await self._create(messages, json_mode=True)
            except BadRequestError as e:
                # Some models reject response_format; retry as plain chat
                logger.warning(f"JSON mode rejected by {self.model}, retrying without it: {e}")
                res = await self._create(messages, json_mode=False)

        usage = getattr(res, "usage", None)
        if usage is not None:
            logger.debug(f"LLM call {self.model}: {usage.prompt_tokens} in / {usage.completion_tokens} out")
        return parse_json_payload(res.choices[0].message.content)
