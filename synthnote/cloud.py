from typing import Any, Dict, Iterable, List, Optional

import httpx

from .config import ModelEndpoint
from .errors import AuthError, InvalidInput, ModelError
from .llm import chat_content, extract_json_object, send_json
from .prompts import build_synthesizer_prompt
from .schemas import SynthesisResult


SERVICE = "Cloud model provider"


def normalize_tags(raw: Any) -> List[str]:
    """Lowercase and deduplicate tags, keeping first-seen order.

    Tags with embedded whitespace are rejected because note-graph consumers read
    tags positionally.
    """
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise ModelError("Cloud model returned a malformed tag list.", detail=repr(raw)[:200])
    tags: List[str] = []
    seen = set()
    for item in raw:
        if not isinstance(item, str):
            raise ModelError("Cloud model returned a non-string tag.", detail=repr(item)[:200])
        tag = item.strip().lstrip("#").strip().lower()
        if not tag or any(ch.isspace() for ch in tag):
            continue
        if tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    return tags


def parse_synthesis(content: str) -> Dict[str, Any]:
    payload = extract_json_object(content)
    if payload is None:
        raise ModelError("Cloud model response did not contain a JSON object.", detail=(content or "")[:500])
    body = payload.get("body_text", payload.get("body"))
    if not isinstance(body, str) or not body.strip():
        raise ModelError("Cloud model response is missing the body text.")
    tags = normalize_tags(payload.get("header_tags", payload.get("tags")))
    return {"body": body.strip(), "tags": tags}


def _sort_models(models: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    def is_free(model: Dict[str, Any]) -> bool:
        pricing = model.get("pricing") or {}
        return str(pricing.get("prompt")) == "0" and str(pricing.get("completion")) == "0"

    return sorted(models, key=lambda m: (not is_free(m), str(m.get("name") or m.get("id") or "")))


class CloudModelClient:
    """Synthesis against an OpenRouter-style chat completions API."""

    def __init__(self, api_key_prefix: str = "sk-or-"):
        self.api_key_prefix = api_key_prefix
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    def check_api_key(self, api_key: Optional[str]) -> str:
        key = (api_key or "").strip()
        if not key:
            raise AuthError("No cloud API key is configured.")
        if self.api_key_prefix and not key.startswith(self.api_key_prefix):
            raise InvalidInput(f"Cloud API key must start with '{self.api_key_prefix}'.")
        return key

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def synthesize(
        self,
        query_text: str,
        proposal_text: str,
        model: ModelEndpoint,
        api_key: Optional[str],
    ) -> SynthesisResult:
        key = self.check_api_key(api_key)
        if not model.model_id.strip():
            raise InvalidInput("No cloud model is configured.")
        payload = {
            "model": model.model_id,
            "messages": [{"role": "user", "content": build_synthesizer_prompt(query_text, proposal_text)}],
            "max_tokens": model.max_tokens,
            "response_format": {"type": "json_object"},
        }
        data = await send_json(
            self.client,
            "POST",
            f"{model.base_url.rstrip('/')}/chat/completions",
            service=SERVICE,
            timeout=model.timeout_s,
            retries=model.transient_retries,
            payload=payload,
            headers=self._headers(key),
        )
        content = chat_content(data)
        if not isinstance(content, str) or not content.strip():
            raise ModelError("Cloud model returned an empty response.")
        parsed = parse_synthesis(content)
        return SynthesisResult(
            body=parsed["body"],
            tags=tuple(parsed["tags"]),
            query_text=query_text,
            proposal_text=proposal_text,
            model=model.model_id,
        )

    async def list_models(self, model: ModelEndpoint, api_key: Optional[str]) -> List[Dict[str, Any]]:
        key = self.check_api_key(api_key)
        data = await send_json(
            self.client,
            "GET",
            f"{model.base_url.rstrip('/')}/models",
            service=SERVICE,
            timeout=model.timeout_s,
            headers=self._headers(key),
        )
        raw = data.get("data") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            raise ModelError("Cloud model list has an unexpected shape.")
        models = [
            {
                "id": m.get("id"),
                "name": m.get("name") or m.get("id"),
                "context_length": m.get("context_length"),
                "pricing": m.get("pricing") or {},
            }
            for m in raw
            if isinstance(m, dict) and m.get("id")
        ]
        return _sort_models(models)

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
