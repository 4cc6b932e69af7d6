import json
import re
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

import requests

from .config import AppConfig


CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
SUPPORTED_PROVIDERS = {"deepseek", "openai"}


class LLMClient:
    """Chat-completions client used by the optional manual-text extractor."""

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str,
        base_url: str,
        timeout: int = 60,
        max_retries: int = 2,
        post_fn: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = _normalize_base_url(base_url)
        self.timeout = timeout
        self.max_retries = max_retries
        self._post = post_fn or requests.post

    @classmethod
    def from_config(cls, config: AppConfig, post_fn: Optional[Callable[..., Any]] = None) -> "LLMClient":
        return cls(
            provider=config.llm_provider,
            model=config.llm_model_name,
            api_key=config.llm_api_key,
            base_url=config.llm_base_url,
            timeout=config.llm_timeout_seconds,
            max_retries=config.llm_max_retries,
            post_fn=post_fn,
        )

    def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        temperature: float = 0.0,
    ) -> Dict[str, Any]:
        provider = self.provider.lower().strip()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {self.provider}")
        if not self.api_key:
            raise RuntimeError("LLM_API_KEY is not configured")

        content = user_prompt
        if schema:
            content += (
                "\n\n只输出符合以下JSON Schema的JSON，不要使用markdown：\n"
                + json.dumps(schema, ensure_ascii=False)
            )
        payload = {
            "model": self.model,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = self._post_with_retry(f"{self.base_url}{CHAT_COMPLETIONS_PATH}", headers, payload)
        return _safe_json_parse(data["choices"][0]["message"]["content"])

    def _post_with_retry(self, url: str, headers: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        last_err: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                resp = self._post(url, headers=headers, json=payload, timeout=self.timeout)
                resp.raise_for_status()
                return resp.json()
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                last_err = exc
                if attempt < self.max_retries:
                    time.sleep(min(2 ** attempt, 4))
        raise RuntimeError(f"LLM request failed after {self.max_retries + 1} attempts") from last_err


def _safe_json_parse(text: str) -> Dict[str, Any]:
    text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip())
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def _normalize_base_url(base_url: str) -> str:
    """Accept a root URL, a /v1 URL or the full chat completions endpoint."""
    raw = (base_url or "").strip()
    if not raw:
        return ""
    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.netloc:
        return raw.rstrip("/")

    path = parsed.path.rstrip("/")
    for suffix in ("/chat/completions", "/v1"):
        if path.lower().endswith(suffix):
            path = path[: -len(suffix)]
    normalized = parsed._replace(path=path, params="", query="", fragment="")
    return urlunparse(normalized).rstrip("/")
