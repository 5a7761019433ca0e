from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from canister_deploy.constants import (
    CODEGEN_BACKOFF_INITIAL,
    CODEGEN_BACKOFF_MAX,
    CODEGEN_REQUEST_MAX_RETRIES,
    CODEGEN_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_CODEGEN_BASE_URL,
)
from canister_deploy.utils import safe_parse_float, safe_parse_int, tail_text

logger = logging.getLogger(__name__)


class CodeGenService(Protocol):
    """Anything that turns a prompt into text. No guarantee the text is well formed."""

    def generate(self, prompt: str) -> str: ...


@dataclass(frozen=True)
class CodeGenConfig:
    api_key: str
    base_url: str
    model: str
    temperature: float = 0.2
    max_tokens: int | None = None
    max_request_retries: int = CODEGEN_REQUEST_MAX_RETRIES
    request_timeout_s: float = CODEGEN_REQUEST_TIMEOUT_SECONDS


def _env_get(*keys: str) -> str | None:
    for k in keys:
        v = os.environ.get(k)
        if v:
            return v
    return None


def load_codegen_config(env_overrides: dict[str, str] | None = None) -> CodeGenConfig:
    """
    Resolve the code generation client settings.

    For each key, process env wins over `env_overrides` (a loaded .env), so
    operators can override a stable .env without editing it.

    Raises:
        ValueError: If no API key or no model is configured.
    """
    env_overrides = env_overrides or {}

    def get(*keys: str) -> str | None:
        for k in keys:
            v = _env_get(k) or env_overrides.get(k)
            if v:
                return v
        return None

    api_key = get("CDEPLOY_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY", "GROQ_API_KEY")
    if not api_key:
        raise ValueError("missing API key (set CDEPLOY_API_KEY, OPENAI_API_KEY, OPENROUTER_API_KEY or GROQ_API_KEY)")

    base_url = get("CDEPLOY_API_BASE_URL", "OPENROUTER_BASE_URL", "OPENAI_BASE_URL") or DEFAULT_CODEGEN_BASE_URL
    model = get("CDEPLOY_MODEL", "OPENAI_MODEL")
    if not model:
        raise ValueError("missing model (set CDEPLOY_MODEL or OPENAI_MODEL)")

    max_tokens_s = get("CDEPLOY_MAX_TOKENS")
    return CodeGenConfig(
        api_key=api_key,
        base_url=base_url.rstrip("/"),
        model=model,
        temperature=safe_parse_float(
            get("CDEPLOY_TEMPERATURE") or 0.2, 0.2, min_val=0.0, max_val=2.0, name="CDEPLOY_TEMPERATURE"
        ),
        max_tokens=(
            safe_parse_int(max_tokens_s, 4096, min_val=1, max_val=100000, name="CDEPLOY_MAX_TOKENS")
            if max_tokens_s
            else None
        ),
        max_request_retries=safe_parse_int(
            get("CDEPLOY_MAX_REQUEST_RETRIES") or CODEGEN_REQUEST_MAX_RETRIES,
            CODEGEN_REQUEST_MAX_RETRIES,
            min_val=1,
            max_val=20,
            name="CDEPLOY_MAX_REQUEST_RETRIES",
        ),
    )


SYSTEM_PROMPT = (
    "You are an expert Motoko developer for the Internet Computer. "
    "You fix canister source so that it compiles with `moc --check`. Output only valid JSON."
)


def build_rewrite_prompt(*, module_name: str, source: str, diagnostic: str) -> str:
    return f"""The Motoko canister `{module_name}` fails to compile.

COMPILER OUTPUT:
{tail_text(diagnostic, max_chars=3000)}

SOURCE:
```motoko
{source}
```

Rewrite the canister so it compiles. Keep its public interface where possible.
Only import from the `mo:base` package.

Return ONLY a JSON object of this shape, with no markdown and no explanation:
{{"canisterCode": "<complete corrected Motoko source>"}}
"""


class OpenAICompatibleCodeGen:
    """
    Code generation over an OpenAI-compatible chat completions endpoint:
      POST {base_url}/chat/completions

    Works with OpenAI, OpenRouter, Groq and other compatible providers.
    """

    def __init__(self, cfg: CodeGenConfig, client: httpx.Client | None = None) -> None:
        self.cfg = cfg
        self._client = client or httpx.Client(timeout=cfg.request_timeout_s)
        self.is_openrouter = "openrouter.ai" in cfg.base_url.lower()

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.cfg.api_key}"}
        if self.is_openrouter:
            headers["X-Title"] = "canister-deploy"
        return headers

    def generate(self, prompt: str) -> str:
        """
        Send one prompt and return the assistant text.

        Retries 429/5xx and transport errors with capped exponential backoff.

        Raises:
            RuntimeError: On auth/endpoint errors or when retries run out.
            ValueError: If the response has no usable content.
        """
        url = f"{self.cfg.base_url}/chat/completions"
        payload: dict[str, object] = {
            "model": self.cfg.model,
            "temperature": self.cfg.temperature,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        if self.cfg.max_tokens is not None:
            payload["max_tokens"] = self.cfg.max_tokens

        backoff_s = CODEGEN_BACKOFF_INITIAL
        last_exc: Exception | None = None
        last_status: int | None = None

        for attempt in range(self.cfg.max_request_retries):
            try:
                r = self._client.post(url, headers=self._headers(), json=payload)
            except httpx.TransportError as e:
                last_exc = e
                logger.warning(f"Code generation request failed (attempt {attempt + 1}): {type(e).__name__}: {e}")
                time.sleep(backoff_s)
                backoff_s = min(backoff_s * 2, CODEGEN_BACKOFF_MAX)
                continue

            last_status = r.status_code
            if r.status_code == 404:
                raise RuntimeError(f"endpoint not found (404): {url}")
            if r.status_code in (401, 403):
                raise RuntimeError(f"auth failed ({r.status_code}): {r.text[:400]}")
            if r.status_code in (429, 500, 502, 503, 504):
                sleep_s = backoff_s
                retry_after = r.headers.get("retry-after")
                if retry_after:
                    try:
                        sleep_s = float(retry_after)
                    except (ValueError, TypeError) as e:
                        logger.warning(f"Failed to parse retry-after header '{retry_after}': {e}")
                logger.info(f"Code generation API busy (status={r.status_code}), backing off {sleep_s}s")
                time.sleep(sleep_s)
                backoff_s = min(backoff_s * 2, CODEGEN_BACKOFF_MAX)
                continue
            r.raise_for_status()
            try:
                data = r.json()
            except json.JSONDecodeError as e:
                raise ValueError(f"response is not JSON: {r.text[:200]!r}") from e
            break
        else:
            raise RuntimeError(f"request failed after {self.cfg.max_request_retries} attempts (last_status={last_status})") from last_exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            try:
                content = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError):
                raise ValueError(f"unexpected response shape: {str(data)[:200]}") from e

        if not isinstance(content, str) or not content.strip():
            raise ValueError("model returned empty content")
        return content
