"""Modernization suggestions with guardrails."""
#
# PURPOSE:
# Turns the synthesized scan context (features, architecture, security
# snapshot) into a short list of actionable suggestions.
#
# HOW IT WORKS:
# - Rule-based generator runs locally and always works
# - Optional Ollama-compatible endpoint (httpx) when configured and the
#   token bucket allows it; any provider failure falls back to the rules
# - Every item passes through sanitize_suggestion before it is returned
# - Secrets are redacted from the context before it leaves the process
#
# CONTRACT:
# generate() never raises. The worst case is {"items": []}.
#

from __future__ import annotations

import json
import logging
import re
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from compatscan.base.config import SuggestionConfig

logger = logging.getLogger(__name__)

ALLOWED_SEVERITIES = ("Low", "Medium", "High")
ALLOWED_CATEGORIES = ("modernize", "secure", "performance", "cleanup")

REDACT_PATTERNS = (
    re.compile(r"ghp_[A-Za-z0-9]{20,}"),
    re.compile(r"sk-[A-Za-z0-9]{20,}"),
    re.compile(r"Bearer\s+[A-Za-z0-9\-_.]+", re.IGNORECASE),
    re.compile(r"(password|secret|token)\s*[:=]\s*[^\s\"']+", re.IGNORECASE),
    re.compile(r"AWS_[A-Z_]+=\S+"),
)

UNSAFE_PATTERNS = (
    re.compile(r"\bexfiltrate\b", re.IGNORECASE),
    re.compile(r"\bcurl\s+http", re.IGNORECASE),
    re.compile(r"rm\s+-rf", re.IGNORECASE),
    re.compile(r"shutdown", re.IGNORECASE),
)


class TokenBucket:
    """Refills to full capacity once per refill window."""

    def __init__(self, capacity: int = 10, refill_ms: int = 60_000, clock: Callable[[], float] = time.monotonic):
        self.capacity = max(1, int(capacity))
        self.refill_seconds = max(0.25, refill_ms / 1000.0)
        self._clock = clock
        self._tokens = self.capacity
        self._last_refill = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        with self._lock:
            now = self._clock()
            if now - self._last_refill >= self.refill_seconds:
                self._tokens = self.capacity
                self._last_refill = now
            if self._tokens > 0:
                self._tokens -= 1
                return True
            return False

    @property
    def tokens(self) -> int:
        return self._tokens


def redact(text: str) -> Tuple[str, int]:
    """Replace secrets with [REDACTED]. Returns the text and the number of hits."""
    count = 0
    redacted = str(text or "")
    for pattern in REDACT_PATTERNS:
        redacted, n = pattern.subn("[REDACTED]", redacted)
        count += n
    return redacted, count


def sanitize_suggestion(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Clamp fields to the allowed shape. Unsafe suggestions come back as None."""
    if not isinstance(item, dict):
        return None
    description = str(item.get("description") or "")[:400]
    if any(p.search(description) for p in UNSAFE_PATTERNS):
        return None
    severity = item.get("severity")
    category = item.get("category")
    return {
        "id": str(item.get("id") or uuid.uuid4()),
        "title": str(item.get("title") or ""),
        "description": description,
        "severity": severity if severity in ALLOWED_SEVERITIES else "Medium",
        "category": category if category in ALLOWED_CATEGORIES else "modernize",
        "file": str(item.get("file") or "README.md"),
        "patch": str(item.get("patch") or "")[:2000],
        "hint": str(item.get("hint") or "")[:300],
    }


def rule_based_suggestions(context: Dict[str, Any]) -> List[Dict[str, Any]]:
    features = set((context.get("projectFeatures") or {}).get("detectedFeatures") or [])
    architecture = context.get("architecture") or {}
    config_files = set(architecture.get("configFiles") or [])
    frameworks = set(architecture.get("frameworks") or [])
    security = context.get("securityAndPerformance") or {}
    items: List[Dict[str, Any]] = []

    if "XMLHttpRequest" in features and "fetch" not in features:
        items.append({
            "title": "Migrate XHR to fetch",
            "description": "Replace legacy XMLHttpRequest calls with the modern fetch API for simpler code and better streaming support.",
            "severity": "Medium",
            "category": "modernize",
            "file": "src/index.js",
            "patch": "--- a/src/index.js\n+++ b/src/index.js\n@@\n-const xhr = new XMLHttpRequest();\n+const res = await fetch(\"/api\");",
            "hint": "Use AbortController for cancellable requests.",
        })
    if any(f.startswith("core-js/") and "promise" in f for f in features) and "async-await" in features:
        items.append({
            "title": "Remove Promise polyfill",
            "description": "Drop the core-js Promise polyfill since async/await is supported in target browsers.",
            "severity": "Low",
            "category": "cleanup",
            "file": "package.json",
            "patch": "--- a/package.json\n+++ b/package.json\n@@\n-  \"dependencies\": { \"core-js\": \"^3\" }\n+  \"dependencies\": {}",
            "hint": "Confirm baseline coverage before removal.",
        })
    if "fetch" in features and "AbortController" not in features:
        items.append({
            "title": "Enable AbortController",
            "description": "Add AbortController to cancel in-flight fetch requests and avoid memory leaks.",
            "severity": "Medium",
            "category": "performance",
            "file": "src/api/client.js",
            "patch": "--- a/src/api/client.js\n+++ b/src/api/client.js\n@@\n+const controller = new AbortController();\n+await fetch(url, { signal: controller.signal });",
            "hint": "Wire cancellation into retry logic.",
        })
    if security.get("missingPolicies"):
        items.append({
            "title": "Add CSP via helmet",
            "description": "Introduce a Content Security Policy to mitigate XSS and data injection attacks.",
            "severity": "High",
            "category": "secure",
            "file": "server.js",
            "patch": "--- a/server.js\n+++ b/server.js\n@@\n+const helmet = require(\"helmet\");\n+app.use(helmet.contentSecurityPolicy({ directives: { defaultSrc: [\"'self'\"] } }));",
            "hint": "Tailor CSP for required domains.",
        })
    if "Next.js" in frameworks and not config_files & {"next.config.js", "next.config.mjs"}:
        items.append({
            "title": "Add next.config.js",
            "description": "Create next.config.js with performance-focused flags (reactStrictMode).",
            "severity": "Low",
            "category": "performance",
            "file": "next.config.js",
            "patch": "--- /dev/null\n+++ b/next.config.js\n@@\n+module.exports = { reactStrictMode: true };",
            "hint": "Consider image optimization settings.",
        })
    return items


class OllamaSuggestionClient:
    """Minimal async client for an Ollama-compatible /api/generate endpoint."""

    SYSTEM_PROMPT = (
        "You review web projects for browser-compatibility modernization. "
        "Reply with JSON: {\"items\": [{\"title\", \"description\", \"severity\" (Low|Medium|High), "
        "\"category\" (modernize|secure|performance|cleanup), \"file\", \"patch\", \"hint\"}]}."
    )

    def __init__(self, base_url: str, model: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client

    async def generate(self, prompt: str) -> List[Dict[str, Any]]:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "system": self.SYSTEM_PROMPT,
            "stream": False,
            "format": "json",
        }
        url = f"{self.base_url}/api/generate"
        if self._client is not None:
            resp = await self._client.post(url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload)
        resp.raise_for_status()
        body = json.loads(resp.json().get("response") or "{}")
        items = body.get("items") if isinstance(body, dict) else body
        return items if isinstance(items, list) else []


class SuggestionGenerator:
    def __init__(
        self,
        config: Optional[SuggestionConfig] = None,
        provider: Optional[OllamaSuggestionClient] = None,
        bucket: Optional[TokenBucket] = None,
    ):
        self.config = config or SuggestionConfig()
        self.bucket = bucket or TokenBucket(self.config.rate_capacity, self.config.rate_refill_ms)
        if provider is None and self.config.provider_url:
            provider = OllamaSuggestionClient(
                self.config.provider_url, self.config.model, self.config.request_timeout
            )
        self.provider = provider

    @property
    def model_name(self) -> str:
        return self.provider.model if self.provider else "stub"

    async def generate(self, context: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._generate(context)
        except Exception as e:
            logger.warning(f"[Suggestions] Generation failed, returning no items: {e}")
            return {"items": [], "meta": {"error": str(e), "model": self.model_name}}

    async def _generate(self, context: Dict[str, Any]) -> Dict[str, Any]:
        allowed = self.config.rate_disabled or self.bucket.allow()
        scoped = {
            "projectFeatures": context.get("projectFeatures") or {},
            "architecture": {k: v for k, v in (context.get("architecture") or {}).items() if k != "fileTree"},
            "securityAndPerformance": context.get("securityAndPerformance") or {},
            "environment": context.get("environment") or {},
        }
        redacted, count = redact(json.dumps(scoped, default=str))
        meta = {
            "rateLimited": not allowed,
            "model": "stub",
            "redactions": count,
            "redactedInputSample": redacted[:512],
        }

        if self.config.disabled:
            raw_items: List[Dict[str, Any]] = []
        elif self.provider is not None and allowed:
            try:
                raw_items = await self.provider.generate(redacted)
                meta["model"] = self.provider.model
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[Suggestions] Provider unavailable ({e}); using rule-based suggestions")
                raw_items = rule_based_suggestions(scoped)
        else:
            raw_items = rule_based_suggestions(scoped)

        items = [s for s in (sanitize_suggestion(i) for i in raw_items) if s]
        return {
            "items": items,
            "meta": meta,
            "rationale": [
                {"label": "features", "detail": "Suggestions derived from detected features and configs"},
                {"label": "guardrails", "detail": "Secrets redacted; unsafe actions filtered; rate limited"},
            ],
        }
