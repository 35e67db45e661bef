"""Feature key -> cross-browser support verdict."""
#
# PURPOSE:
# Resolves each detected feature key (e.g. "optional-chaining",
# "css-has-pseudo") to a per-browser support map and one global status.
#
# FALLBACK CHAIN:
# 1. Static feature map (bundled feature_mapping.json + optional override)
# 2. Alias lookup into a browser-compat-data style dataset
# 3. Fuzzy name/slug match in a web-features style dataset
# 4. Unknown everywhere, with an explanatory note
#
# AGGREGATION:
# Worst case wins: unsupported(3) > partial(2) > supported(1) > unknown(0).
#

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from compatscan.base.config import CompatConfig
from compatscan.engine.models import BaselineEntry, SupportStatus

logger = logging.getLogger(__name__)

BROWSERS: Tuple[str, ...] = ("chrome", "firefox", "safari", "edge")

BUNDLED_FEATURE_MAP = Path(__file__).with_name("feature_mapping.json")

UNKNOWN_NOTE = "No baseline mapping available (fallback)"

BCD_ALIASES: Dict[str, str] = {
    # JavaScript
    "async-await": "javascript.operators.await",
    "optional-chaining": "javascript.operators.optional_chaining",
    "nullish-coalescing": "javascript.operators.nullish_coalescing",
    "dynamic-import": "javascript.statements.import.dynamic_import",
    "class-fields": "javascript.classes.class_fields.public_class_fields",
    "private-class-fields": "javascript.classes.class_fields.private_class_fields",
    "promise-allSettled": "javascript.builtins.Promise.allSettled",
    "string-replaceAll": "javascript.builtins.String.replaceAll",
    "top-level-await": "javascript.operators.await.top_level_await",
    # Web APIs
    "XMLHttpRequest": "api.XMLHttpRequest",
    "Worker": "api.Worker",
    "SharedWorker": "api.SharedWorker",
    "IntersectionObserver": "api.IntersectionObserver",
    "ResizeObserver": "api.ResizeObserver",
    "AbortController": "api.AbortController",
    "ServiceWorker": "api.ServiceWorker",
    "WebSockets": "api.WebSocket",
    "WebRTC": "api.RTCPeerConnection",
    "WebGL": "api.WebGLRenderingContext",
    "WebAudio": "api.AudioContext",
    "IndexedDB": "api.IDBDatabase",
    "navigator.clipboard": "api.Clipboard",
    "WebShare": "api.Navigator.share",
    "CustomElements": "api.CustomElementRegistry",
    # CSS
    "css-variables": "css.properties.--*",
    "css-backdrop-filter": "css.properties.backdrop-filter",
    "css-grid": "css.features.grid",
    "css-flexbox": "css.features.flexbox",
    "css-clamp": "css.types.clamp",
    "css-has-pseudo": "css.selectors.has",
    "css-subgrid": "css.features.subgrid",
    "css-container-queries": "css.at-rules.container",
    "css-nesting": "css.selectors.nesting",
}

_SYNONYMS = {
    "unsupported": SupportStatus.UNSUPPORTED,
    "no": SupportStatus.UNSUPPORTED,
    "n": SupportStatus.UNSUPPORTED,
    "partial": SupportStatus.PARTIAL,
    "a": SupportStatus.PARTIAL,
    "supported": SupportStatus.SUPPORTED,
    "yes": SupportStatus.SUPPORTED,
    "y": SupportStatus.SUPPORTED,
}

_RANK = {
    SupportStatus.UNSUPPORTED: 3,
    SupportStatus.PARTIAL: 2,
    SupportStatus.SUPPORTED: 1,
    SupportStatus.UNKNOWN: 0,
}
_BY_RANK = {rank: status for status, rank in _RANK.items()}


def normalize_status(value: Any) -> SupportStatus:
    """Map a raw status (including yes/no/a/y/n shorthands) onto SupportStatus."""
    if isinstance(value, SupportStatus):
        return value
    if value is None:
        return SupportStatus.UNKNOWN
    return _SYNONYMS.get(str(value).strip().lower(), SupportStatus.UNKNOWN)


def aggregate_status(support: Mapping[str, Any], browsers: Iterable[str] = BROWSERS) -> str:
    """Global status = the most restrictive status across the tracked browsers."""
    worst = max((_RANK[normalize_status(support.get(b))] for b in browsers), default=0)
    return _BY_RANK[worst].value


def classify_bcd_entry(entry: Any) -> str:
    """Classify one browser's support statement from a browser-compat-data node."""
    if entry is None:
        return SupportStatus.UNKNOWN.value
    pick = entry[-1] if isinstance(entry, list) else entry
    if not isinstance(pick, dict) or not pick:
        return SupportStatus.UNSUPPORTED.value
    added = pick.get("version_added")
    if added is None or added is False or pick.get("version_removed"):
        return SupportStatus.UNSUPPORTED.value
    if pick.get("partial_implementation"):
        return SupportStatus.PARTIAL.value
    if pick.get("flags") or pick.get("prefix") or pick.get("alternative_name"):
        return SupportStatus.PARTIAL.value
    return SupportStatus.SUPPORTED.value


def _load_json(path: Optional[Path], label: str) -> Any:
    if path is None:
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as e:
        logger.warning(f"[Resolver] Ignoring {label} at {path}: {e}")
        return None
    logger.info(f"[Resolver] Loaded {label} from {path}")
    return data


def _get_by_path(obj: Any, dotted: str) -> Any:
    cur = obj
    for part in dotted.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


class CompatibilityResolver:
    """
    Pure lookup over fixed static data.

    The same key always yields the same BaselineEntry; the per-instance
    cache only avoids recomputing it.
    """

    def __init__(
        self,
        feature_map: Optional[Dict[str, Any]] = None,
        bcd_data: Optional[Dict[str, Any]] = None,
        web_features: Any = None,
        browsers: Tuple[str, ...] = BROWSERS,
    ):
        self.browsers = tuple(browsers)
        self._feature_map: Dict[str, Any] = dict(feature_map or {})
        self._bcd = bcd_data
        self._web_features = self._flatten_web_features(web_features)
        self._cache: Dict[str, BaselineEntry] = {}

    @classmethod
    def from_config(cls, config: CompatConfig) -> "CompatibilityResolver":
        feature_map = _load_json(BUNDLED_FEATURE_MAP, "bundled feature map") or {}
        override = _load_json(config.feature_map_path, "feature map override")
        if isinstance(override, dict):
            feature_map.update(override)
        return cls(
            feature_map=feature_map,
            bcd_data=_load_json(config.bcd_path, "browser-compat-data"),
            web_features=_load_json(config.web_features_path, "web-features"),
        )

    @staticmethod
    def _flatten_web_features(data: Any) -> List[Dict[str, Any]]:
        if not data:
            return []
        features = data.get("features", data) if isinstance(data, dict) else data
        if isinstance(features, dict):
            # {"id": {...}} layout: the id doubles as the slug
            return [dict(v, slug=v.get("slug", k)) for k, v in features.items() if isinstance(v, dict)]
        if isinstance(features, list):
            return [f for f in features if isinstance(f, dict)]
        return []

    def lookup(self, feature_key: str) -> BaselineEntry:
        key = str(feature_key).strip() if feature_key is not None else ""
        cached = self._cache.get(key)
        if cached is None:
            cached = self._resolve(key)
            self._cache[key] = cached
        return replace(cached, support=dict(cached.support))

    def _unknown(self, key: str) -> BaselineEntry:
        return BaselineEntry(
            feature=key,
            status=SupportStatus.UNKNOWN.value,
            support={b: SupportStatus.UNKNOWN.value for b in self.browsers},
            notes=UNKNOWN_NOTE,
        )

    def _resolve(self, key: str) -> BaselineEntry:
        if not key:
            return self._unknown(key)

        entry = self._from_static_map(key)
        if entry is not None and entry.status != SupportStatus.UNKNOWN.value:
            return entry

        for fallback in (self._from_bcd, self._from_web_features):
            entry = fallback(key)
            if entry is not None:
                return entry

        return self._unknown(key)

    def _from_static_map(self, key: str) -> Optional[BaselineEntry]:
        value = self._feature_map.get(key)
        if isinstance(value, dict):
            support = {b: normalize_status(value.get(b)).value for b in self.browsers}
            return BaselineEntry(key, aggregate_status(support, self.browsers), support)
        if isinstance(value, str):
            status = normalize_status(value).value
            return BaselineEntry(key, status, {b: status for b in self.browsers})
        return None

    def _from_bcd(self, key: str) -> Optional[BaselineEntry]:
        alias = BCD_ALIASES.get(key)
        if not self._bcd or not alias:
            return None
        node = _get_by_path(self._bcd, alias)
        compat = node.get("__compat") if isinstance(node, dict) else None
        if not isinstance(compat, dict) or not isinstance(compat.get("support"), dict):
            return None
        raw = compat["support"]
        support = {b: classify_bcd_entry(raw.get(b)) for b in self.browsers}
        status_block = compat.get("status") or {}
        notes = status_block.get("message") or f"From browser-compat-data '{alias}'"
        return BaselineEntry(key, aggregate_status(support, self.browsers), support, notes)

    def _from_web_features(self, key: str) -> Optional[BaselineEntry]:
        if not self._web_features:
            return None
        q = key.lower()
        for feature in self._web_features:
            name = str(feature.get("name") or feature.get("title") or "").lower()
            slug = str(feature.get("slug") or "").lower()
            if q in name or q in slug:
                break
        else:
            return None

        browsers = (feature.get("compat") or {}).get("browsers") or {}
        support = {}
        for b in self.browsers:
            info = browsers.get(b)
            raw = info.get("status") if isinstance(info, dict) else info
            support[b] = normalize_status(raw).value
        label = feature.get("slug") or feature.get("name")
        return BaselineEntry(
            key,
            aggregate_status(support, self.browsers),
            support,
            f"Fallback from web-features for '{label}'",
        )
