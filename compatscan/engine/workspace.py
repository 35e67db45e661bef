"""Workspace acquisition: turn a scan payload into a directory on disk."""
#
# PURPOSE:
# Resolves exactly one of {remote clone, archive unpack, local path} into a
# filesystem root the analyzers can walk.
#
# CONTRACT:
# acquire() returns a Workspace or raises AcquisitionError. Acquisition
# failures are fatal for the job and never retried.
# Temp workspaces ("repo-*" under the system temp dir) are removed by
# release(); a caller's local directory is never touched.
#

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from compatscan.base.cancellation import CancellationToken
from compatscan.base.config import ScanConfig
from compatscan.engine.models import STAGE_CLONE, STAGE_LOCAL, STAGE_UNPACK, Stage
from compatscan.errors import AcquisitionError, ErrorCode

logger = logging.getLogger(__name__)

METHOD_CLONE = "clone"
METHOD_ARCHIVE = "archive"
METHOD_LOCAL = "local"

TEMP_PREFIX = "repo-"


@dataclass(frozen=True)
class Workspace:
    root: Path
    method: str
    ephemeral: bool


def acquisition_method(payload: Dict[str, Any]) -> str:
    """Local path wins over an archive, which wins over a remote URL."""
    if payload.get("local_path") is not None:
        return METHOD_LOCAL
    if payload.get("zip_buffer"):
        return METHOD_ARCHIVE
    return METHOD_CLONE


def acquisition_stage(payload: Dict[str, Any]) -> Stage:
    return {
        METHOD_LOCAL: STAGE_LOCAL,
        METHOD_ARCHIVE: STAGE_UNPACK,
        METHOD_CLONE: STAGE_CLONE,
    }[acquisition_method(payload)]


def resolve_local_path(raw: Any) -> Path:
    """
    Validate a caller-supplied directory.

    Raises:
        AcquisitionError: empty, missing, not a directory, or unreadable
    """
    provided = str(raw or "").strip()
    if not provided:
        raise AcquisitionError(
            ErrorCode.ACQ_EMPTY_PATH,
            "Local path is empty. Provide a valid directory path.",
        )
    root = Path(provided).expanduser().resolve()
    try:
        is_dir = root.is_dir()
        exists = is_dir or root.exists()
    except OSError:
        exists = False
    if not exists:
        raise AcquisitionError(
            ErrorCode.ACQ_PATH_NOT_FOUND,
            f"Local path not found or inaccessible: {root}",
            details={"path": str(root)},
        )
    if not is_dir:
        raise AcquisitionError(
            ErrorCode.ACQ_NOT_A_DIRECTORY,
            f"Local path is not a directory: {root}",
            details={"path": str(root)},
        )
    if not os.access(root, os.R_OK | os.X_OK):
        raise AcquisitionError(
            ErrorCode.ACQ_ACCESS_DENIED,
            f"Read access denied for path: {root}",
            details={"path": str(root)},
        )
    return root


def _extract_zip(data: bytes) -> Path:
    target = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            base = target.resolve()
            for member in archive.infolist():
                dest = (target / member.filename).resolve()
                if dest != base and base not in dest.parents:
                    raise AcquisitionError(
                        ErrorCode.ACQ_ARCHIVE_INVALID,
                        f"Archive entry escapes workspace: {member.filename}",
                        details={"entry": member.filename},
                    )
            archive.extractall(target)
    except zipfile.BadZipFile as e:
        shutil.rmtree(target, ignore_errors=True)
        raise AcquisitionError(ErrorCode.ACQ_ARCHIVE_INVALID, f"Invalid zip archive: {e}") from e
    except Exception:
        shutil.rmtree(target, ignore_errors=True)
        raise
    return target


def is_temp_workspace(root: Path) -> bool:
    tmp_base = Path(tempfile.gettempdir()).resolve()
    resolved = Path(root).resolve()
    return tmp_base in resolved.parents and resolved.name.startswith(TEMP_PREFIX)


class WorkspaceAcquirer:
    """Default acquisition collaborator: git, zipfile and the local filesystem."""

    def __init__(self, config: Optional[ScanConfig] = None, git_binary: str = "git"):
        self.config = config or ScanConfig()
        self.git_binary = git_binary

    async def acquire(self, payload: Dict[str, Any], token: Optional[CancellationToken] = None) -> Workspace:
        method = acquisition_method(payload)
        if method == METHOD_LOCAL:
            root = resolve_local_path(payload.get("local_path"))
            logger.info(f"[Workspace] Using local path {root}")
            return Workspace(root=root, method=method, ephemeral=False)

        if method == METHOD_ARCHIVE:
            try:
                data = base64.b64decode(payload["zip_buffer"], validate=False)
            except (binascii.Error, ValueError, TypeError) as e:
                raise AcquisitionError(ErrorCode.ACQ_ARCHIVE_INVALID, f"Archive is not valid base64: {e}") from e
            root = await asyncio.to_thread(_extract_zip, data)
            logger.info(f"[Workspace] Unpacked archive to {root}")
            return Workspace(root=root, method=method, ephemeral=True)

        repo_url = str(payload.get("repo_url") or "").strip()
        if not repo_url:
            raise AcquisitionError(
                ErrorCode.ACQ_NO_SOURCE,
                "No repository source provided. Supply repoUrl, zipBuffer or localPath.",
            )
        root = await self._clone(repo_url, payload.get("branch"), payload.get("ref"))
        if token is not None and token.requested:
            await self.release(Workspace(root=root, method=method, ephemeral=True))
            token.raise_if_requested()
        return Workspace(root=root, method=method, ephemeral=True)

    async def _run_git(self, args: List[str], cwd: Optional[Path] = None) -> None:
        proc = await asyncio.create_subprocess_exec(
            self.git_binary, *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.config.clone_timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise AcquisitionError(
                ErrorCode.ACQ_CLONE_FAILED,
                f"git {args[0]} timed out after {self.config.clone_timeout_seconds:.0f}s",
            )
        if proc.returncode != 0:
            output = out.decode(errors="ignore").strip() if out else ""
            raise AcquisitionError(
                ErrorCode.ACQ_CLONE_FAILED,
                f"git {args[0]} failed (exit {proc.returncode}): {output[-500:]}",
                details={"returncode": proc.returncode},
            )

    async def _clone(self, repo_url: str, branch: Optional[str], ref: Optional[str]) -> Path:
        target = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
        args = ["clone", "--depth", str(max(1, self.config.clone_depth))]
        if branch:
            args += ["--branch", str(branch)]
        args += [repo_url, str(target)]

        logger.info(f"[Workspace] Cloning {repo_url} into {target}")
        try:
            await self._run_git(args)
            if ref:
                await self._run_git(["fetch", "--depth", "1", "origin", str(ref)], cwd=target)
                await self._run_git(["checkout", "--quiet", "FETCH_HEAD"], cwd=target)
        except OSError as e:
            await asyncio.to_thread(shutil.rmtree, target, True)
            raise AcquisitionError(ErrorCode.ACQ_CLONE_FAILED, f"Cannot run git: {e}") from e
        except (AcquisitionError, asyncio.CancelledError):
            await asyncio.to_thread(shutil.rmtree, target, True)
            raise
        return target

    async def release(self, workspace: Optional[Workspace]) -> None:
        """Remove an ephemeral workspace. Local paths are left alone."""
        if workspace is None or not workspace.ephemeral:
            return
        if not is_temp_workspace(workspace.root):
            logger.warning(f"[Workspace] Refusing to delete non-temp path {workspace.root}")
            return
        await asyncio.to_thread(shutil.rmtree, workspace.root, True)
        logger.debug(f"[Workspace] Removed {workspace.root}")
