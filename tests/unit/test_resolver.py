# ============================================================================
# tests/unit/test_resolver.py
# CompatibilityResolver: layered fallback and worst-case aggregation
# ============================================================================

import json

import pytest

from compatscan.base.config import CompatConfig
from compatscan.compat.resolver import (
    BROWSERS,
    UNKNOWN_NOTE,
    CompatibilityResolver,
    aggregate_status,
    classify_bcd_entry,
    normalize_status,
)


def test_aggregate_takes_most_restrictive_status():
    support = {"chrome": "supported", "firefox": "partial", "safari": "unsupported", "edge": "unknown"}
    assert aggregate_status(support) == "unsupported"


def test_aggregate_partial_beats_supported_and_unknown():
    assert aggregate_status({"chrome": "supported", "firefox": "partial"}) == "partial"
    assert aggregate_status({"chrome": "supported"}) == "supported"
    assert aggregate_status({}) == "unknown"


@pytest.mark.parametrize("raw,expected", [
    ("no", "unsupported"),
    ("n", "unsupported"),
    ("a", "partial"),
    ("yes", "supported"),
    ("Y", "supported"),
    ("whatever", "unknown"),
    (None, "unknown"),
])
def test_normalize_status_synonyms(raw, expected):
    assert normalize_status(raw).value == expected


def test_static_global_status_replicated_to_every_browser():
    resolver = CompatibilityResolver(feature_map={"fetch": "supported"})
    entry = resolver.lookup("fetch")
    assert entry.status == "supported"
    assert entry.support == {b: "supported" for b in BROWSERS}


def test_static_per_browser_map_aggregates():
    resolver = CompatibilityResolver(feature_map={
        "WebShare": {"chrome": "partial", "firefox": "unsupported", "safari": "supported", "edge": "partial"},
    })
    entry = resolver.lookup("WebShare")
    assert entry.status == "unsupported"
    assert entry.support["safari"] == "supported"


def test_unmapped_key_falls_through_to_unknown_with_note():
    resolver = CompatibilityResolver(feature_map={})
    entry = resolver.lookup("totally-made-up-feature")
    assert entry.status == "unknown"
    assert entry.support == {b: "unknown" for b in BROWSERS}
    assert entry.notes == UNKNOWN_NOTE


def test_lookup_is_idempotent_and_returns_independent_copies():
    resolver = CompatibilityResolver(feature_map={"fetch": "supported"})
    first = resolver.lookup("fetch")
    first.support["chrome"] = "unsupported"
    second = resolver.lookup("fetch")
    assert second.support["chrome"] == "supported"
    assert resolver.lookup("fetch") == second


@pytest.mark.parametrize("entry,expected", [
    (None, "unknown"),
    ({"version_added": "42"}, "supported"),
    ({"version_added": None}, "unsupported"),
    ({"version_added": False}, "unsupported"),
    ({"version_added": "10", "version_removed": "20"}, "unsupported"),
    ({"version_added": "10", "partial_implementation": True}, "partial"),
    ({"version_added": "10", "prefix": "-webkit-"}, "partial"),
    ({"version_added": "10", "flags": [{"type": "preference"}]}, "partial"),
    ([{"version_added": "5", "prefix": "-moz-"}, {"version_added": "30"}], "supported"),
])
def test_classify_bcd_entry(entry, expected):
    assert classify_bcd_entry(entry) == expected


def test_bcd_fallback_when_static_map_misses():
    bcd = {
        "api": {
            "ResizeObserver": {
                "__compat": {
                    "support": {
                        "chrome": {"version_added": "64"},
                        "firefox": {"version_added": "69"},
                        "safari": {"version_added": "13.1", "partial_implementation": True},
                    },
                }
            }
        }
    }
    resolver = CompatibilityResolver(feature_map={}, bcd_data=bcd)
    entry = resolver.lookup("ResizeObserver")
    assert entry.support == {"chrome": "supported", "firefox": "supported", "safari": "partial", "edge": "unknown"}
    assert entry.status == "partial"
    assert "api.ResizeObserver" in entry.notes


def test_static_unknown_value_still_consults_bcd():
    bcd = {"api": {"Worker": {"__compat": {"support": {b: {"version_added": "1"} for b in BROWSERS}}}}}
    resolver = CompatibilityResolver(feature_map={"Worker": "unknown"}, bcd_data=bcd)
    assert resolver.lookup("Worker").status == "supported"


def test_web_features_fuzzy_fallback():
    web_features = {
        "features": {
            "container-queries": {
                "name": "Container queries",
                "compat": {"browsers": {"chrome": "supported", "firefox": "supported", "safari": {"status": "no"}}},
            }
        }
    }
    resolver = CompatibilityResolver(feature_map={}, web_features=web_features)
    entry = resolver.lookup("container-queries")
    assert entry.status == "unsupported"
    assert entry.support["safari"] == "unsupported"
    assert entry.notes.startswith("Fallback from web-features")


def test_from_config_merges_override_over_bundled_map(tmp_path):
    override = tmp_path / "override.json"
    override.write_text(json.dumps({"fetch": "partial", "my-feature": "yes"}))
    resolver = CompatibilityResolver.from_config(CompatConfig(feature_map_path=override))
    assert resolver.lookup("fetch").status == "partial"
    assert resolver.lookup("my-feature").status == "supported"
    # Bundled entries not overridden survive
    assert resolver.lookup("navigator.clipboard").status == "partial"


def test_from_config_tolerates_missing_dataset_files(tmp_path):
    resolver = CompatibilityResolver.from_config(CompatConfig(bcd_path=tmp_path / "nope.json"))
    assert resolver.lookup("definitely-unknown").status == "unknown"
