"""Eligible-file discovery for a workspace."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Iterable, List, Optional, Pattern, Sequence

from compatscan.base.config import ScanConfig

logger = logging.getLogger(__name__)

_LFS_ATTR = re.compile(r"^(filter|diff|merge)\s*=\s*lfs$", re.IGNORECASE)


def _read_lines(path: Path) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as fh:
            return [line.strip() for line in fh]
    except OSError:
        return []


def load_gitignore(root: Path) -> List[str]:
    """Non-empty, non-comment patterns from the workspace .gitignore."""
    return [ln for ln in _read_lines(root / ".gitignore") if ln and not ln.startswith("#")]


def _wildmatch_to_regex(pattern: str) -> Pattern:
    norm = pattern.replace("\\", "/")
    out = ""
    i = 0
    while i < len(norm):
        ch = norm[i]
        if norm.startswith("**", i):
            out += ".*"
            i += 2
            continue
        if ch == "*":
            out += "[^/]*"
        elif ch == "?":
            out += "[^/]"
        else:
            out += re.escape(ch)
        i += 1
    return re.compile(f"^{out}$")


def load_lfs_patterns(root: Path) -> List[Pattern]:
    """Patterns that .gitattributes routes through Git LFS."""
    patterns = []
    for line in _read_lines(root / ".gitattributes"):
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if any(_LFS_ATTR.match(attr) for attr in parts[1:]):
            patterns.append(_wildmatch_to_regex(parts[0]))
    return patterns


class GitignoreMatcher:
    """
    Small .gitignore evaluator on top of fnmatch.

    Supports comments, negation (!), directory-only patterns (trailing /),
    anchored patterns (leading / or an inner /) and basename patterns.
    The last matching pattern wins.
    """

    def __init__(self, patterns: Iterable[str]):
        self._rules = []
        for raw in patterns:
            negate = raw.startswith("!")
            pat = raw[1:] if negate else raw
            dir_only = pat.endswith("/")
            pat = pat.rstrip("/")
            anchored = pat.startswith("/") or "/" in pat
            pat = pat.lstrip("/")
            if pat:
                self._rules.append((pat, negate, dir_only, anchored))

    def __bool__(self) -> bool:
        return bool(self._rules)

    def _match_one(self, rel: str, pat: str, anchored: bool) -> bool:
        if anchored:
            return fnmatch.fnmatch(rel, pat) or fnmatch.fnmatch(rel, pat + "/*")
        parts = rel.split("/")
        return any(fnmatch.fnmatch(part, pat) for part in parts)

    def ignores(self, rel: str, is_dir: bool = False) -> bool:
        rel = rel.replace("\\", "/")
        ignored = False
        for pat, negate, dir_only, anchored in self._rules:
            # Directories are pruned during the walk, so a directory-only rule never needs to see files.
            if dir_only and not is_dir:
                continue
            if not self._match_one(rel, pat, anchored):
                continue
            ignored = not negate
        return ignored


class FileWalker:
    """
    Lists analyzable files under a root, as root-relative POSIX paths.

    Filters, in order: .gitignore, exclusion substrings, default ignored
    directories, extension allow-list, LFS-managed paths, size cap.
    """

    def __init__(self, config: Optional[ScanConfig] = None):
        self.config = config or ScanConfig()

    def walk(self, root: Path, exclude_paths: Sequence[str] = ()) -> List[str]:
        root = Path(root)
        excludes = list(dict.fromkeys([*exclude_paths, *self.config.user_exclude_paths]))
        ignore_dirs = set(self.config.ignore_dirs)
        extensions = {e.lower() for e in self.config.extensions}
        max_bytes = self.config.max_file_bytes
        gitignore = GitignoreMatcher(load_gitignore(root))
        lfs = load_lfs_patterns(root) if self.config.skip_lfs else []

        def excluded(rel: str) -> bool:
            return any(p and p in rel for p in excludes)

        files: List[str] = []
        for dirpath, dirnames, filenames in os.walk(root, onerror=self._on_error):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            kept = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if name in ignore_dirs or gitignore.ignores(rel, is_dir=True) or excluded(rel):
                    continue
                kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if extensions and os.path.splitext(name)[1].lower() not in extensions:
                    continue
                if gitignore.ignores(rel) or excluded(rel):
                    continue
                if lfs and any(p.match(rel) for p in lfs):
                    continue
                if max_bytes:
                    try:
                        if os.path.getsize(os.path.join(dirpath, name)) > max_bytes:
                            continue
                    except OSError:
                        continue
                files.append(rel)
        return files

    @staticmethod
    def _on_error(err: OSError) -> None:
        logger.warning(f"[Walker] Cannot read {err.filename}: {err.strerror}")
