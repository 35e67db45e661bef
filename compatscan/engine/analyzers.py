"""Per-file feature analyzers and the extension registry that dispatches to them."""
#
# PURPOSE:
# An analyzer is any callable (path) -> list[str] of feature keys, sync or
# async. The registry maps file extensions to analyzers; files with no
# registered analyzer are still walked and counted, they just yield nothing.
#
# The default JavaScript and CSS analyzers are lexical: comments and string
# literals are blanked out first, then a fixed table of patterns is applied.
#

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from compatscan.errors import AnalysisError, ErrorCode

logger = logging.getLogger(__name__)

Analyzer = Callable[[Path], Union[List[str], Awaitable[List[str]]]]

JS_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")
CSS_EXTENSIONS = (".css", ".scss")

# ============================================================================
# Source preprocessing
# ============================================================================

_JS_NOISE = re.compile(
    r"""//[^\n]*|/\*.*?\*/|'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*"|`(?:\\.|[^`\\])*`""",
    re.DOTALL,
)
_CSS_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


def _blank(match: re.Match) -> str:
    return re.sub(r"[^\n]", " ", match.group(0))


def strip_js(source: str) -> str:
    """Blank comments and string literals, preserving offsets and newlines."""
    if source.startswith("#!"):
        end = source.find("\n")
        end = len(source) if end < 0 else end
        source = " " * end + source[end:]
    return _JS_NOISE.sub(_blank, source)


def _read(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise AnalysisError(
            ErrorCode.ANALYSIS_FILE_FAILED,
            f"Cannot read {path}: {e}",
            details={"path": str(path)},
        ) from e


# ============================================================================
# JavaScript / TypeScript
# ============================================================================

_JS_PATTERNS = (
    ("navigator.clipboard", re.compile(r"\bnavigator\s*\.\s*clipboard\b")),
    ("WebShare", re.compile(r"\bnavigator\s*\.\s*share\b")),
    ("CustomElements", re.compile(r"\bwindow\s*\.\s*customElements\b|\bcustomElements\s*\.\s*define\s*\(")),
    ("fetch", re.compile(r"(?<![\w$.])fetch\s*\(")),
    ("promise-allSettled", re.compile(r"\bPromise\s*\.\s*allSettled\b")),
    ("string-replaceAll", re.compile(r"\.\s*replaceAll\s*\(")),
    ("XMLHttpRequest", re.compile(r"\bnew\s+XMLHttpRequest\b")),
    ("Worker", re.compile(r"\bnew\s+Worker\b")),
    ("SharedWorker", re.compile(r"\bnew\s+SharedWorker\b")),
    ("IntersectionObserver", re.compile(r"\bnew\s+IntersectionObserver\b")),
    ("ResizeObserver", re.compile(r"\bnew\s+ResizeObserver\b")),
    ("AbortController", re.compile(r"\bnew\s+AbortController\b")),
    ("dynamic-import", re.compile(r"(?<![\w$.])import\s*\(")),
    ("optional-chaining", re.compile(r"\?\.(?!\d)")),
    ("nullish-coalescing", re.compile(r"\?\?")),
    ("class-fields", re.compile(
        r"\bclass\b[^{;]*\{\s*(?:static\s+)?(?:readonly\s+)?[A-Za-z_$][\w$]*\s*(?:=(?!=)|;)"
    )),
    ("private-class-fields", re.compile(r"(?<![\w$#])#[A-Za-z_$][\w$]*")),
)

_AWAIT = re.compile(r"\bawait\b")
_CORE_JS = re.compile(r"""(?:\bfrom\s*|\bimport\s*|\brequire\s*\(\s*)(['"])(core-js/[^'"\n]+)\1""")


def _brace_depths(code: str) -> List[int]:
    """Brace nesting depth at every offset of ``code``."""
    depths = []
    depth = 0
    for ch in code:
        depths.append(depth)
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth = max(0, depth - 1)
    return depths


def detect_js_features(path: Path) -> List[str]:
    source = _read(path)
    code = strip_js(source)
    features: List[str] = []

    def add(key: str) -> None:
        if key not in features:
            features.append(key)

    for key, pattern in _JS_PATTERNS:
        if pattern.search(code):
            add(key)

    awaits = [m.start() for m in _AWAIT.finditer(code)]
    if awaits:
        add("async-await")
        depths = _brace_depths(code)
        if any(depths[pos] == 0 for pos in awaits):
            add("top-level-await")

    # Specifiers live inside string literals, so match against the raw source.
    for match in _CORE_JS.finditer(source):
        add(match.group(2))

    return features


# ============================================================================
# CSS / SCSS
# ============================================================================

_DECL = re.compile(r"(--[\w-]+|[A-Za-z-]+)\s*:\s*([^;{}]+?)\s*(?=;|\})")
_SELECTOR_OPEN = re.compile(r"([^{};]*)\{")


def detect_css_features(path: Path) -> List[str]:
    css = _CSS_COMMENT.sub(_blank, _read(path))
    features: List[str] = []

    def add(key: str) -> None:
        if key not in features:
            features.append(key)

    depths = _brace_depths(css)
    for match in _SELECTOR_OPEN.finditer(css):
        selector = match.group(1).strip()
        if selector.startswith("@"):
            if selector.startswith("@container"):
                add("css-container-queries")
            continue
        if ":has(" in selector:
            add("css-has-pseudo")
        if "&" in selector and depths[match.start(1)] >= 1:
            add("css-nesting")

    for match in _DECL.finditer(css):
        prop = match.group(1).lower()
        value = match.group(2).lower()
        if prop.startswith("--"):
            add("css-variables")
        if prop == "backdrop-filter":
            add("css-backdrop-filter")
        if "grid" in prop or (prop == "display" and "grid" in value):
            add("css-grid")
        if prop in ("grid-template-columns", "grid-template-rows") and "subgrid" in value:
            add("css-subgrid")
        if "flex" in prop or (prop == "display" and "flex" in value):
            add("css-flexbox")
        if "clamp(" in value:
            add("css-clamp")

    return features


# ============================================================================
# Registry
# ============================================================================

class AnalyzerRegistry:
    """Extension -> analyzer dispatch."""

    def __init__(self, analyzers: Optional[Dict[str, Analyzer]] = None):
        self._by_ext: Dict[str, Analyzer] = {}
        for ext, fn in (analyzers or {}).items():
            self.register(ext, fn)

    @classmethod
    def default(cls) -> "AnalyzerRegistry":
        registry = cls()
        registry.register_many(JS_EXTENSIONS, detect_js_features)
        registry.register_many(CSS_EXTENSIONS, detect_css_features)
        return registry

    def register(self, extension: str, analyzer: Analyzer) -> None:
        ext = extension.lower()
        self._by_ext[ext if ext.startswith(".") else f".{ext}"] = analyzer

    def register_many(self, extensions: Iterable[str], analyzer: Analyzer) -> None:
        for ext in extensions:
            self.register(ext, analyzer)

    def for_path(self, path: Union[str, Path]) -> Optional[Analyzer]:
        return self._by_ext.get(Path(path).suffix.lower())

    @property
    def extensions(self) -> List[str]:
        return sorted(self._by_ext)

    async def analyze(self, root: Path, rel_path: str) -> List[str]:
        """
        Run the analyzer registered for ``rel_path``.

        Sync analyzers run in a worker thread so the loop stays responsive.

        Raises:
            AnalysisError: the analyzer failed for this file
        """
        analyzer = self.for_path(rel_path)
        if analyzer is None:
            return []
        abs_path = Path(root) / rel_path
        try:
            if inspect.iscoroutinefunction(analyzer):
                result = await analyzer(abs_path)
            else:
                result = await asyncio.to_thread(analyzer, abs_path)
                if inspect.isawaitable(result):
                    result = await result
        except AnalysisError:
            raise
        except Exception as e:
            raise AnalysisError(
                ErrorCode.ANALYSIS_FILE_FAILED,
                f"Analyzer failed for {rel_path}: {e}",
                details={"path": rel_path, "error_type": type(e).__name__},
            ) from e
        return [str(k) for k in (result or []) if k]
