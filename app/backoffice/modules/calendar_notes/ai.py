from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any


class AiError(RuntimeError):
    pass


@dataclass(frozen=True)
class OpenAIClient:
    api_key: str
    model: str
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: int = 60

    def chat_completion(self, payload: dict[str, Any], *, retries: int = 2) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + "/chat/completions"
        data = json.dumps({"model": self.model, **payload}).encode("utf-8")

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method="POST")
                req.add_header("Authorization", f"Bearer {self.api_key}")
                req.add_header("Content-Type", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                try:
                    return json.loads(raw.decode("utf-8"))
                except ValueError as e:
                    raise AiError("Invalid JSON from OpenAI") from e
            except urllib.error.HTTPError as e:
                if e.code == 429 or e.code >= 500:
                    last_err = e
                    time.sleep(min(2 * (attempt + 1), 10))
                    continue
                body = e.read().decode("utf-8", errors="ignore")
                raise AiError(f"HTTP {e.code} from OpenAI: {body[:300]}") from e
            except urllib.error.URLError as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise AiError(f"OpenAI request failed after retries: {last_err}")

    def complete_json(self, messages: list[dict[str, str]], *, schema_name: str, schema: dict[str, Any], **options: Any) -> Any:
        """Chat completion constrained to a JSON schema; returns the parsed content."""
        j = self.chat_completion(
            {
                "messages": messages,
                "response_format": {"type": "json_schema", "json_schema": {"name": schema_name, "schema": schema}},
                **options,
            }
        )
        try:
            content = j["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AiError("OpenAI returned no content.") from e
        if not content:
            raise AiError("OpenAI returned no content.")
        if not isinstance(content, str):
            return content
        try:
            return json.loads(content)
        except ValueError as e:
            raise AiError("Failed to parse AI response.") from e


def ai_client_from_config(config: dict) -> OpenAIClient | None:
    key = (config.get("OPENAI_API_KEY") or "").strip()
    if not key:
        return None
    return OpenAIClient(
        api_key=key,
        model=(config.get("OPENAI_MODEL") or "gpt-4o-mini").strip(),
        base_url=(config.get("OPENAI_BASE_URL") or "https://api.openai.com/v1").strip(),
    )
