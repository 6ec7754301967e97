import json
import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from .config import LocalProvider, ModelEndpoint
from .errors import AuthError, InvalidInput, ModelError, NetworkError, PipelineError, RequestTimeout
from .prompts import build_proposer_prompt
from .schemas import Proposal


logger = logging.getLogger("uvicorn.error")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def normalize_base_url(value: str) -> str:
    base = (value or "").strip().rstrip("/")
    if base and not _SCHEME_RE.match(base):
        base = f"http://{base}"
    return base


def _openai_root(base_url: str) -> str:
    base = normalize_base_url(base_url)
    if base.endswith("/v1"):
        base = base[: -len("/v1")]
    return base


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first JSON object embedded in model output, fenced or not."""
    if not text:
        return None
    candidates = [m.group(1) for m in _FENCE_RE.finditer(text)]
    candidates.append(text)
    decoder = json.JSONDecoder()
    for candidate in candidates:
        idx = candidate.find("{")
        while idx != -1:
            try:
                obj, _ = decoder.raw_decode(candidate, idx)
            except ValueError:
                obj = None
            if isinstance(obj, dict):
                return obj
            idx = candidate.find("{", idx + 1)
    return None


def _status_error(exc: httpx.HTTPStatusError, service: str) -> PipelineError:
    response = exc.response
    status = response.status_code
    detail = response.text[:500]
    if status in (401, 403):
        return AuthError(f"{service} rejected the credentials (HTTP {status}).", detail=detail)
    if status == 429 or status >= 500:
        return NetworkError(f"{service} is unavailable (HTTP {status}).", detail=detail)
    return ModelError(f"{service} returned an unexpected error (HTTP {status}).", detail=detail)


async def send_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    service: str,
    timeout: float,
    retries: int = 0,
    payload: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """Send a request and decode its JSON body, mapping httpx failures to pipeline errors.

    Transport failures are retried immediately up to ``retries`` times. Timeouts are
    not retried: the deadline has already been spent once.
    """
    attempt = 0
    while True:
        try:
            resp = await client.request(method, url, json=payload, headers=headers, timeout=timeout)
            resp.raise_for_status()
            break
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"{service} did not answer within {timeout:g}s.", detail=str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            raise _status_error(exc, service) from exc
        except httpx.TransportError as exc:
            if attempt < retries:
                attempt += 1
                logger.warning("%s transport error (%s); retrying %d/%d", service, exc, attempt, retries)
                continue
            raise NetworkError(f"{service} is unreachable at {url}.", detail=str(exc)) from exc
    try:
        return resp.json()
    except ValueError as exc:
        raise ModelError(f"{service} returned a non-JSON response.", detail=resp.text[:500]) from exc


def parse_proposals(text: str, limit: int) -> List[Proposal]:
    payload = extract_json_object(text)
    if payload is None:
        raise ModelError("No JSON object found in local model response.", detail=(text or "")[:500])
    items = payload.get("proposals")
    if not isinstance(items, list):
        raise ModelError("Local model response has no 'proposals' list.", detail=json.dumps(payload)[:500])
    proposals: List[Proposal] = []
    for item in items:
        if len(proposals) >= limit:
            break
        rationale: Optional[str] = None
        if isinstance(item, str):
            body = item.strip()
        elif isinstance(item, dict):
            body = str(item.get("question") or item.get("text") or "").strip()
            rationale = str(item.get("context") or item.get("rationale") or "").strip() or None
        else:
            continue
        if not body:
            continue
        proposals.append(Proposal(id=len(proposals), text=body, rationale=rationale))
    if not proposals:
        raise ModelError("Local model returned no proposals.")
    return proposals


class LocalModelClient:
    """Proposal generation against a local Ollama or OpenAI-compatible server."""

    def __init__(
        self,
        provider: LocalProvider = "auto",
        proposal_count: int = 3,
        detect_timeout_s: float = 5.0,
    ):
        self.provider = provider
        self.proposal_count = max(1, proposal_count)
        self.detect_timeout_s = detect_timeout_s
        self.client = httpx.AsyncClient(timeout=60)
        self.provider_cache: Dict[str, Dict[str, Any]] = {}
        self.provider_cache_ttl = 300.0

    async def detect_provider(self, base_url: str) -> str:
        if self.provider != "auto":
            return self.provider
        base = normalize_base_url(base_url)
        now = time.monotonic()
        cached = self.provider_cache.get(base)
        if cached and now - cached["ts"] < self.provider_cache_ttl:
            return cached["provider"]
        candidates = [("ollama", f"{base}/api/tags"), ("openai", f"{_openai_root(base)}/v1/models")]
        if "1234" in base or base.endswith("/v1"):
            candidates.reverse()
        detected = "ollama"
        for name, url in candidates:
            try:
                resp = await self.client.get(url, timeout=self.detect_timeout_s)
            except httpx.HTTPError:
                continue
            if resp.is_success:
                detected = name
                break
        self.provider_cache[base] = {"ts": now, "provider": detected}
        return detected

    async def list_models(self, model: ModelEndpoint) -> List[str]:
        provider = await self.detect_provider(model.base_url)
        if provider == "ollama":
            data = await send_json(
                self.client,
                "GET",
                f"{normalize_base_url(model.base_url)}/api/tags",
                service="Local model server",
                timeout=self.detect_timeout_s,
            )
            return [m.get("name") for m in data.get("models", []) if isinstance(m, dict) and m.get("name")]
        data = await send_json(
            self.client,
            "GET",
            f"{_openai_root(model.base_url)}/v1/models",
            service="Local model server",
            timeout=self.detect_timeout_s,
        )
        return [m.get("id") for m in data.get("data", []) if isinstance(m, dict) and m.get("id")]

    async def generate(self, prompt: str, model: ModelEndpoint) -> str:
        if not model.model_id.strip():
            raise InvalidInput("No local model is configured.")
        if not normalize_base_url(model.base_url):
            raise InvalidInput("No local endpoint is configured.")
        provider = await self.detect_provider(model.base_url)
        if provider == "ollama":
            data = await send_json(
                self.client,
                "POST",
                f"{normalize_base_url(model.base_url)}/api/generate",
                service="Local model server",
                timeout=model.timeout_s,
                retries=model.transient_retries,
                payload={
                    "model": model.model_id,
                    "prompt": prompt,
                    "stream": False,
                    "options": {"temperature": model.temperature, "num_predict": model.max_tokens},
                },
            )
            text = data.get("response") if isinstance(data, dict) else None
        else:
            data = await send_json(
                self.client,
                "POST",
                f"{_openai_root(model.base_url)}/v1/chat/completions",
                service="Local model server",
                timeout=model.timeout_s,
                retries=model.transient_retries,
                payload={
                    "model": model.model_id,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": model.max_tokens,
                    "temperature": model.temperature,
                    "stream": False,
                },
            )
            text = chat_content(data)
        if not isinstance(text, str) or not text.strip():
            raise ModelError("Local model returned an empty response.")
        return text

    async def propose(self, query_text: str, model: ModelEndpoint) -> List[Proposal]:
        prompt = build_proposer_prompt(query_text, self.proposal_count)
        text = await self.generate(prompt, model)
        return parse_proposals(text, self.proposal_count)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def chat_content(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message") or {}
    content = message.get("content")
    if content is None or content == "":
        # Reasoning models sometimes leave content empty and answer in the reasoning field.
        content = message.get("reasoning") or message.get("reasoning_content")
    return content
