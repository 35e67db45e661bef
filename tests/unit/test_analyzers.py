# ============================================================================
# tests/unit/test_analyzers.py
# Lexical JS/CSS feature detection and the extension registry
# ============================================================================

import pytest

from compatscan.engine.analyzers import (
    AnalyzerRegistry,
    detect_css_features,
    detect_js_features,
    strip_js,
)
from compatscan.errors import AnalysisError, ErrorCode

JS_SOURCE = """\
// fetch( in a comment does not count
const label = "navigator.share";
async function load() {
  const res = await fetch('/api');
  return res?.data ?? null;
}
await load();
import "core-js/features/promise";
const el = new IntersectionObserver(() => {});
"""

CSS_SOURCE = """\
/* .a:has(b) in a comment does not count */
:root { --main: red; }
.card { display: grid; padding: clamp(1rem, 2vw, 3rem); }
.card:has(img) { backdrop-filter: blur(2px); }
.parent { & .child { display: flex; } }
@container (min-width: 400px) { .x { color: red; } }
"""


def test_strip_js_preserves_offsets():
    source = 'a = "x"; // c\nb'
    stripped = strip_js(source)
    assert len(stripped) == len(source)
    assert stripped.index("b") == source.index("\nb") + 1
    assert '"' not in stripped


def test_detect_js_features(tmp_path):
    path = tmp_path / "app.js"
    path.write_text(JS_SOURCE)
    features = detect_js_features(path)

    assert "fetch" in features
    assert "async-await" in features
    assert "top-level-await" in features
    assert "optional-chaining" in features
    assert "nullish-coalescing" in features
    assert "IntersectionObserver" in features
    assert "core-js/features/promise" in features
    # Only present inside a string literal
    assert "WebShare" not in features
    assert "dynamic-import" not in features
    assert len(features) == len(set(features))


def test_await_inside_function_is_not_top_level(tmp_path):
    path = tmp_path / "mod.mjs"
    path.write_text("async function f() { await g(); }\n")
    features = detect_js_features(path)
    assert "async-await" in features
    assert "top-level-await" not in features


def test_detect_css_features(tmp_path):
    path = tmp_path / "styles.css"
    path.write_text(CSS_SOURCE)
    features = set(detect_css_features(path))
    assert features == {
        "css-variables",
        "css-grid",
        "css-clamp",
        "css-has-pseudo",
        "css-backdrop-filter",
        "css-nesting",
        "css-flexbox",
        "css-container-queries",
    }


def test_default_registry_covers_js_and_css():
    registry = AnalyzerRegistry.default()
    assert registry.for_path("src/a.TSX") is detect_js_features
    assert registry.for_path("a.scss") is detect_css_features
    assert registry.for_path("main.go") is None
    assert ".mjs" in registry.extensions


@pytest.mark.anyio
async def test_registry_runs_sync_and_async_analyzers(tmp_path):
    (tmp_path / "a.foo").write_text("")
    (tmp_path / "b.bar").write_text("")

    async def async_analyzer(path):
        return ["from-async", ""]

    registry = AnalyzerRegistry({"foo": lambda path: ["from-sync"], ".bar": async_analyzer})
    assert await registry.analyze(tmp_path, "a.foo") == ["from-sync"]
    assert await registry.analyze(tmp_path, "b.bar") == ["from-async"]
    assert await registry.analyze(tmp_path, "c.txt") == []


@pytest.mark.anyio
async def test_registry_wraps_analyzer_failure(tmp_path):
    def broken(path):
        raise UnicodeError("bad bytes")

    registry = AnalyzerRegistry({".js": broken})
    with pytest.raises(AnalysisError) as exc:
        await registry.analyze(tmp_path, "x.js")
    assert exc.value.code == ErrorCode.ANALYSIS_FILE_FAILED
    assert exc.value.details["path"] == "x.js"


@pytest.mark.anyio
async def test_missing_file_is_an_analysis_error(tmp_path):
    registry = AnalyzerRegistry.default()
    with pytest.raises(AnalysisError):
        await registry.analyze(tmp_path, "gone.js")
