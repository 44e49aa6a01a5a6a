import asyncio
import json
import os
import re
from typing import Optional


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.endswith("```"):
            text = text[:-3]
        elif "```" in text:
            text = text[:text.rfind("```")]
    return text.strip()


def parse_json_object(text: str) -> Optional[dict]:
    """Parse a model reply into a dict, tolerating fences and surrounding prose."""
    if not text:
        return None
    text = strip_code_fences(text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            return None
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


class TextService:
    """One-shot Gemini text completions.

    Both entry points return None on any failure (missing key, timeout, API
    error, unparsable JSON). Callers pick their own fallback.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout_s: float = 15.0):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        self.model = model or os.getenv("TEXT_MODEL", "gemini-2.5-flash-lite")
        self.timeout_s = timeout_s
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _generate(self, prompt: str, max_tokens: int, as_json: bool) -> Optional[str]:
        if not self.api_key:
            print("[LLM] GEMINI_API_KEY is not set.")
            return None
        try:
            from google.genai import types

            config = types.GenerateContentConfig(
                max_output_tokens=max_tokens,
                response_mime_type="application/json" if as_json else "text/plain",
            )
            client = self._get_client()
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    client.models.generate_content,
                    model=self.model,
                    contents=prompt,
                    config=config,
                ),
                timeout=self.timeout_s,
            )
            return (response.text or "").strip()
        except asyncio.TimeoutError:
            print(f"[LLM] Timed out after {self.timeout_s}s")
            return None
        except Exception as e:
            print(f"[LLM] Generation error: {e}")
            return None

    async def complete_text(self, prompt: str, max_tokens: int = 100) -> Optional[str]:
        text = await self._generate(prompt, max_tokens, as_json=False)
        return text or None

    async def complete_json(self, prompt: str, max_tokens: int = 300) -> Optional[dict]:
        text = await self._generate(prompt, max_tokens, as_json=True)
        data = parse_json_object(text or "")
        if data is None and text:
            print(f"[LLM] Unparsable JSON reply: {text[:120]}")
        return data
