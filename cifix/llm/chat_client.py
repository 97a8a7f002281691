from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import httpx

from cifix.errors import PatchError, TransportError


# Rate limits and gateway hiccups are worth another attempt; anything else in 4xx is not.
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class ChatClient(Protocol):
    def chat(self, *, model: str, messages: List[Dict[str, str]], max_tokens: int = 2048) -> str: ...


def _message_content(data: Any) -> str:
    try:
        return data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as e:
        raise PatchError(f"unexpected chat completion shape: {str(data)[:500]}") from e


@dataclass(frozen=True)
class ChatCompletionsClient:
    """
    Calls any OpenAI-compatible chat completions API.

    Endpoint: POST {base_url}/chat/completions
    """

    api_key: str
    base_url: str = "https://api.openai.com/v1"
    timeout_s: float = 60.0
    temperature: float = 0.1
    max_retries: int = 3
    retry_backoff_s: float = 0.8

    def chat(self, *, model: str, messages: List[Dict[str, str]], max_tokens: int = 2048) -> str:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": max(1, min(int(max_tokens), 8192)),
        }

        attempts = max(1, int(self.max_retries))
        with httpx.Client(timeout=self.timeout_s) as client:
            for attempt in range(1, attempts + 1):
                try:
                    r = client.post(url, headers=headers, json=payload)
                except httpx.TransportError as e:
                    failure = f"{type(e).__name__}: {e}"
                else:
                    if r.status_code == 200:
                        return _message_content(r.json())
                    failure = f"HTTP {r.status_code}: {r.text[:500]}"
                    if r.status_code not in _RETRYABLE_STATUS:
                        raise TransportError(
                            f"chat completion rejected ({failure})", details={"status": r.status_code}
                        )
                if attempt == attempts:
                    raise TransportError(
                        f"chat completion failed after {attempts} attempts ({failure})",
                        details={"attempts": attempts},
                    )
                time.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
