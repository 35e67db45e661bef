"""Project-level snapshots and final result assembly for a scan."""
#
# PURPOSE:
# After per-file analysis, the Synthesize stage looks at the workspace as a
# whole and merges everything into one result document:
#   - environment: package manager, engines, browserslist, target browsers
#   - architecture: config files, frameworks, build tools, languages
#   - securityAndPerformance: insecure API calls, missing policies, ...
#   - baseline: per-file and per-feature compatibility verdicts
#
# Everything here is synchronous file I/O; the pipeline runs it in a
# worker thread.
#

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from compatscan import __version__
from compatscan.base.config import ScanConfig
from compatscan.compat.resolver import CompatibilityResolver
from compatscan.engine.models import FeatureRecord, SupportStatus
from compatscan.engine.walker import FileWalker

logger = logging.getLogger(__name__)

CONFIG_CANDIDATES = frozenset({
    ".browserslistrc", "browserslist", "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "angular.json", "nx.json", "workspace.json", "lerna.json",
    "tsconfig.json", "tsconfig.app.json", "tsconfig.spec.json",
    "vite.config.js", "vite.config.ts",
    "webpack.config.js", "rollup.config.js", "esbuild.config.js",
    "babel.config.js", "postcss.config.js", "tailwind.config.js",
    "jest.config.js", "karma.conf.js",
    "eslint.config.js", ".eslintrc.js", ".eslintrc.json",
    "prettier.config.js", ".prettierrc", ".prettierrc.json",
    "next.config.js", "next.config.mjs", "nuxt.config.js", "nuxt.config.ts",
    "svelte.config.js", "vue.config.js", "docker-compose.yml", "Dockerfile",
})

BUILD_TOOLS_BY_CONFIG = (
    (("vite.config.js", "vite.config.ts"), "Vite"),
    (("webpack.config.js",), "Webpack"),
    (("rollup.config.js",), "Rollup"),
    (("esbuild.config.js",), "esbuild"),
    (("babel.config.js",), "Babel"),
    (("postcss.config.js",), "PostCSS"),
    (("tailwind.config.js",), "Tailwind CSS"),
    (("tsconfig.json", "tsconfig.app.json"), "TypeScript"),
)

FRAMEWORKS_BY_CONFIG = (
    (("angular.json",), "Angular"),
    (("nx.json", "workspace.json"), "Nx"),
    (("next.config.js", "next.config.mjs"), "Next.js"),
    (("nuxt.config.js", "nuxt.config.ts"), "Nuxt"),
    (("vue.config.js",), "Vue"),
    (("svelte.config.js",), "Svelte"),
)

FRAMEWORKS_BY_DEPENDENCY = {
    "react": "React",
    "@angular/core": "Angular",
    "vue": "Vue",
    "svelte": "Svelte",
    "next": "Next.js",
    "nuxt": "Nuxt",
    "express": "Express",
}

LANGUAGES_BY_EXTENSION = {
    ".js": "JavaScript", ".jsx": "JavaScript", ".mjs": "JavaScript", ".cjs": "JavaScript",
    ".ts": "TypeScript", ".tsx": "TypeScript",
    ".css": "CSS", ".scss": "SCSS", ".html": "HTML",
    ".py": "Python", ".ipynb": "Jupyter Notebook",
    ".java": "Java", ".kt": "Kotlin", ".go": "Go",
}

SECURITY_SCAN_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".html")
SENSITIVE_NAME_FRAGMENTS = (".npmrc", ".yarnrc", "credentials", ".env")
LARGE_ASSET_BYTES = 100_000

_EXPRESS = re.compile(r"""require\(\s*['"]express['"]\s*\)|from\s+['"]express['"]""")
_HELMET = re.compile(r"""require\(\s*['"]helmet['"]\s*\)|from\s+['"]helmet['"]""")
_PLAIN_HTTP = re.compile(r"http://(?!localhost|127\.0\.0\.1)", re.IGNORECASE)
_WILDCARD_CORS = re.compile(r"""app\.use\(\s*cors\s*\(\s*\)\s*\)|origin\s*:\s*['"]\*['"]""", re.IGNORECASE)
_HTML_INJECTION = re.compile(r"document\.write\s*\(|dangerouslySetInnerHTML\s*[:=]|innerHTML\s*=")
_DYNAMIC_CODE = re.compile(r"\beval\s*\(|\bnew\s+Function\s*\(")
_BLOCKING_IO = re.compile(r"\bfs\.[a-zA-Z]+Sync\(|\bexecSync\(|\bspawnSync\(")
_PRIVATE_KEY = re.compile(r"AKIA[0-9A-Z]{16}|-----BEGIN\s+(?:RSA\s+)?PRIVATE\s+KEY-----")

BROWSERSLIST_QUERY = re.compile(r"^\s*([a-z_]+)\s", re.IGNORECASE)


def read_package_json(root: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(Path(root) / "package.json", "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _read_browserslist(root: Path, package_json: Optional[Dict[str, Any]]) -> List[str]:
    for name in (".browserslistrc", "browserslist"):
        try:
            with open(Path(root) / name, "r", encoding="utf-8") as fh:
                return [ln.strip() for ln in fh if ln.strip() and not ln.strip().startswith("#")]
        except OSError:
            continue
    raw = (package_json or {}).get("browserslist")
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list):
        return [str(q) for q in raw]
    if isinstance(raw, dict):
        return [str(q) for q in raw.get("production", [])]
    return []


def _browsers_from_queries(queries: Sequence[str]) -> List[str]:
    """Browser names mentioned in browserslist queries ("last 2 chrome versions" -> chrome)."""
    known = {"chrome", "firefox", "safari", "edge", "ios_saf", "samsung", "opera"}
    found: List[str] = []
    for query in queries:
        for token in re.split(r"[\s,]+", query.lower()):
            if token in known and token not in found:
                found.append(token)
    return found


def detect_environment(root: Path, payload: Dict[str, Any]) -> Dict[str, Any]:
    root = Path(root)
    package_json = read_package_json(root)

    if (root / "pnpm-lock.yaml").exists():
        manager = "pnpm"
    elif (root / "yarn.lock").exists():
        manager = "yarn"
    elif (root / "package-lock.json").exists() or package_json is not None:
        manager = "npm"
    else:
        manager = None
    declared = (package_json or {}).get("packageManager")
    if isinstance(declared, str) and declared:
        manager = declared.split("@", 1)[0]

    deps = dict((package_json or {}).get("dependencies") or {})
    dev_deps = dict((package_json or {}).get("devDependencies") or {})
    frameworks = []
    for dep, name in FRAMEWORKS_BY_DEPENDENCY.items():
        if (dep in deps or dep in dev_deps) and name not in frameworks:
            frameworks.append(name)

    browserslist = _read_browserslist(root, package_json)
    targets = [str(b).lower() for b in (payload.get("target_browsers") or [])]

    return {
        "packageManager": manager,
        "engines": dict((package_json or {}).get("engines") or {}),
        "browserslist": browserslist,
        "targetBrowsers": targets or _browsers_from_queries(browserslist),
        "primaryFrameworks": frameworks,
        "dependencies": sorted(set(deps) | set(dev_deps)),
        "dependencyInventory": (
            [{"name": n, "version": str(v), "dev": False} for n, v in deps.items()]
            + [{"name": n, "version": str(v), "dev": True} for n, v in dev_deps.items()]
        ),
    }


def build_file_tree(files: Sequence[str], max_depth: int = 2, max_nodes: int = 300) -> Dict[str, Any]:
    """Compact tree of the first ``max_depth`` directory levels, dirs first."""
    root: Dict[str, Any] = {"name": "/", "type": "dir", "children": []}
    count = 1

    for rel in files:
        if count >= max_nodes:
            break
        parts = [p for p in re.split(r"[\\/]+", rel) if p]
        if not parts:
            continue
        parent = root
        for name in parts[:-1][:max_depth]:
            child = next((c for c in parent["children"] if c["type"] == "dir" and c["name"] == name), None)
            if child is None:
                child = {"name": name, "type": "dir", "children": []}
                parent["children"].append(child)
                count += 1
            parent = child
        parent["children"].append({"name": parts[-1], "type": "file"})
        count += 1

    def _sort(node: Dict[str, Any]) -> None:
        children = node.get("children")
        if not children:
            return
        children.sort(key=lambda c: (c["type"] != "dir", c["name"]))
        for c in children:
            _sort(c)

    _sort(root)
    return root


def detect_architecture(
    root: Path,
    analyzed_files: Sequence[str],
    all_files: Sequence[str],
    environment: Dict[str, Any],
) -> Dict[str, Any]:
    config_files = sorted({os.path.basename(f) for f in all_files} & CONFIG_CANDIDATES)
    cfg = set(config_files)

    frameworks = list(environment.get("primaryFrameworks") or [])
    for names, framework in FRAMEWORKS_BY_CONFIG:
        if cfg.intersection(names) and framework not in frameworks:
            frameworks.append(framework)

    build_tools = [tool for names, tool in BUILD_TOOLS_BY_CONFIG if cfg.intersection(names)]

    languages: Dict[str, int] = {}
    for rel in analyzed_files:
        lang = LANGUAGES_BY_EXTENSION.get(os.path.splitext(rel)[1].lower())
        if lang:
            languages[lang] = languages.get(lang, 0) + 1

    return {
        "configFiles": config_files,
        "frameworks": frameworks,
        "buildTools": build_tools,
        "languages": languages,
        "fileTree": build_file_tree(all_files),
    }


def _finding(title: str, description: str, severity: str) -> Dict[str, str]:
    return {"title": title, "description": description, "severity": severity}


def detect_security_and_performance(root: Path, all_files: Sequence[str]) -> Dict[str, Any]:
    root = Path(root)
    snapshot: Dict[str, List[Any]] = {
        "insecureApiCalls": [],
        "missingPolicies": [],
        "inefficientCode": [],
        "sensitiveFiles": [],
        "largeAssets": [],
    }
    uses_express = False
    uses_helmet = False

    for rel in all_files:
        name = os.path.basename(rel)
        path = root / rel

        if any(frag in name for frag in SENSITIVE_NAME_FRAGMENTS) and name not in snapshot["sensitiveFiles"]:
            snapshot["sensitiveFiles"].append(name)
        try:
            size = path.stat().st_size
        except OSError:
            continue
        if size > LARGE_ASSET_BYTES:
            snapshot["largeAssets"].append(_finding("Large asset", f"{name} ({round(size / 1024)} KB)", "Low"))

        if os.path.splitext(name)[1].lower() not in SECURITY_SCAN_EXTENSIONS:
            continue
        try:
            content = path.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue

        uses_express = uses_express or bool(_EXPRESS.search(content))
        uses_helmet = uses_helmet or bool(_HELMET.search(content))
        if _PLAIN_HTTP.search(content):
            snapshot["insecureApiCalls"].append(
                _finding("Insecure HTTP usage", f"Found http:// reference in {name}", "High"))
        if _HTML_INJECTION.search(content):
            snapshot["insecureApiCalls"].append(
                _finding("Potential XSS risk", f"Direct HTML injection pattern in {name}", "Medium"))
        if _WILDCARD_CORS.search(content):
            snapshot["missingPolicies"].append(
                _finding("Permissive CORS", f"Wildcard CORS policy in {name}", "Medium"))
        if _DYNAMIC_CODE.search(content):
            snapshot["inefficientCode"].append(
                _finding("Dynamic code execution", f"Use of eval/new Function in {name}", "High"))
        if _BLOCKING_IO.search(content):
            snapshot["inefficientCode"].append(
                _finding("Blocking I/O", f"Synchronous operation in {name}", "Medium"))
        if _PRIVATE_KEY.search(content) and name not in snapshot["sensitiveFiles"]:
            snapshot["sensitiveFiles"].append(name)

    if uses_express and not uses_helmet:
        snapshot["missingPolicies"].extend([
            _finding("CSP", "Content Security Policy not configured (helmet)", "High"),
            _finding("HSTS", "Strict-Transport-Security not enforced", "High"),
            _finding("X-Frame-Options", "Frameguard missing (clickjacking protection)", "Medium"),
            _finding("X-Content-Type-Options", "MIME sniffing protection missing (noSniff)", "Medium"),
        ])
    return snapshot


def list_all_files(root: Path, scan_config: ScanConfig, exclude_paths: Sequence[str] = ()) -> List[str]:
    """Every non-ignored file regardless of extension (config discovery, security heuristics)."""
    walker = FileWalker(replace(scan_config, extensions=(), max_file_mb=0))
    return walker.walk(root, exclude_paths)


def summarize(files: Sequence[str], record: FeatureRecord, baseline_by_feature: Dict[str, Dict[str, Any]]) -> Dict[str, int]:
    """
    filesChanged counts files using at least one feature that is not fully
    supported; polyfillsRemoved counts core-js imports that can be dropped.
    """
    weak = {
        key for key, entry in baseline_by_feature.items()
        if entry["status"] in (SupportStatus.PARTIAL.value, SupportStatus.UNSUPPORTED.value)
    }
    files_changed = sum(1 for _, keys in record.items() if weak.intersection(keys))
    polyfills = sum(1 for key in baseline_by_feature if key.startswith("core-js/"))
    scanned = len(files)
    impact = round((files_changed + polyfills) / scanned * 100) if scanned else 0
    return {
        "filesScanned": scanned,
        "filesChanged": files_changed,
        "polyfillsRemoved": polyfills,
        "impactScore": min(100, impact),
    }


def build_scan_result(
    scan_id: str,
    files: Sequence[str],
    record: FeatureRecord,
    resolver: CompatibilityResolver,
    environment: Dict[str, Any],
    architecture: Dict[str, Any],
    security: Dict[str, Any],
    ai_suggestions: Dict[str, Any],
    summary_log: Dict[str, Any],
) -> Dict[str, Any]:
    """Assemble the terminal result document for a successful scan."""
    by_feature = {key: resolver.lookup(key).to_dict() for key in record.unique_features()}
    per_file = {path: [by_feature[k] for k in keys] for path, keys in record.items()}

    files_by_feature: Dict[str, List[str]] = {}
    for path, keys in record.items():
        for key in keys:
            files_by_feature.setdefault(key, []).append(path)

    features = [
        {"name": key, "files": files_by_feature.get(key, []), "baselineStatus": entry["status"]}
        for key, entry in by_feature.items()
    ]

    return {
        "scanId": scan_id,
        "summary": summarize(files, record, by_feature),
        "files": list(files),
        "detectedFeatures": record.to_dict(),
        "projectFeatures": {"detectedFeatures": list(by_feature)},
        "features": features,
        "baseline": per_file,
        "baselineByFeature": by_feature,
        "environment": environment,
        "architecture": architecture,
        "securityAndPerformance": security,
        "aiSuggestions": ai_suggestions,
        "summaryLog": summary_log,
    }


class SummaryLog:
    """Timeline plus per-stage timings for the result's summaryLog."""

    def __init__(self):
        self.started = time.monotonic()
        self.entries: List[Dict[str, Any]] = []
        self.timings: Dict[str, int] = {}
        self._stage_started: Optional[float] = None
        self._stage: Optional[str] = None

    def log(self, msg: str) -> None:
        self.entries.append({"ts": int(time.time() * 1000), "msg": msg})

    def _close_stage(self) -> None:
        if self._stage is not None:
            self.timings[self._stage] = int((time.monotonic() - self._stage_started) * 1000)
            self._stage = None

    def stage(self, name: str) -> None:
        self._close_stage()
        self._stage, self._stage_started = name, time.monotonic()

    def finish(self, files_discovered: int, files_ignored: int, warnings: Sequence[str] = ()) -> Dict[str, Any]:
        self._close_stage()
        total = time.monotonic() - self.started
        return {
            "duration": f"{total:.3f} seconds",
            "filesIgnored": files_ignored,
            "filesDiscovered": files_discovered,
            "agentVersion": f"compatscan v{__version__}",
            "scanDate": datetime.now(timezone.utc).isoformat(),
            "stageTimings": dict(self.timings),
            "warnings": list(warnings),
            "logs": list(self.entries),
        }


def collect_warnings(security: Dict[str, Any]) -> List[str]:
    warnings = []
    if security.get("missingPolicies"):
        warnings.append("Missing security policies")
    if security.get("insecureApiCalls"):
        warnings.append("Insecure API calls detected")
    if security.get("sensitiveFiles"):
        warnings.append("Potentially sensitive files present")
    return warnings
