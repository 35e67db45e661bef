import base64
import io
import os
import shutil
import subprocess
import tempfile
import zipfile

import pytest

from compatscan.base.config import ScanConfig
from compatscan.engine.workspace import (
    METHOD_ARCHIVE,
    METHOD_CLONE,
    METHOD_LOCAL,
    Workspace,
    WorkspaceAcquirer,
    acquisition_method,
    acquisition_stage,
    resolve_local_path,
)
from compatscan.errors import AcquisitionError, ErrorCode

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def temp_root(tmp_path, monkeypatch):
    """Point the system temp dir at tmp_path so ephemeral workspaces are observable."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


def _zip(entries):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return base64.b64encode(buf.getvalue()).decode()


def test_acquisition_precedence():
    assert acquisition_method({"local_path": "/x", "zip_buffer": "abc", "repo_url": "u"}) == METHOD_LOCAL
    assert acquisition_method({"zip_buffer": "abc", "repo_url": "u"}) == METHOD_ARCHIVE
    assert acquisition_method({"repo_url": "u"}) == METHOD_CLONE
    assert acquisition_stage({"repo_url": "u"}).name == "Cloning repository"
    assert acquisition_stage({"zip_buffer": "abc"}).progress == 20


def test_resolve_local_path_errors(tmp_path):
    with pytest.raises(AcquisitionError) as exc:
        resolve_local_path("")
    assert exc.value.code == ErrorCode.ACQ_EMPTY_PATH

    with pytest.raises(AcquisitionError) as exc:
        resolve_local_path(tmp_path / "nope")
    assert exc.value.code == ErrorCode.ACQ_PATH_NOT_FOUND
    assert exc.value.http_status == 404

    target = tmp_path / "f.txt"
    target.write_text("x")
    with pytest.raises(AcquisitionError) as exc:
        resolve_local_path(target)
    assert exc.value.code == ErrorCode.ACQ_NOT_A_DIRECTORY

    assert resolve_local_path(f"  {tmp_path}  ") == tmp_path.resolve()


@pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="root bypasses permission bits")
def test_resolve_local_path_unreadable(tmp_path):
    locked = tmp_path / "locked"
    locked.mkdir()
    locked.chmod(0)
    try:
        with pytest.raises(AcquisitionError) as exc:
            resolve_local_path(locked)
        assert exc.value.code == ErrorCode.ACQ_ACCESS_DENIED
    finally:
        locked.chmod(0o755)


@pytest.mark.anyio
async def test_archive_is_unpacked_into_temp_and_released(temp_root):
    acquirer = WorkspaceAcquirer(ScanConfig())
    workspace = await acquirer.acquire({"zip_buffer": _zip({"src/a.js": "fetch('/')"})})

    assert workspace.ephemeral
    assert workspace.method == METHOD_ARCHIVE
    assert workspace.root.parent == temp_root
    assert (workspace.root / "src" / "a.js").read_text() == "fetch('/')"

    await acquirer.release(workspace)
    assert not workspace.root.exists()


@pytest.mark.anyio
async def test_archive_path_traversal_is_rejected(temp_root):
    acquirer = WorkspaceAcquirer(ScanConfig())
    with pytest.raises(AcquisitionError) as exc:
        await acquirer.acquire({"zip_buffer": _zip({"../evil.js": "x"})})
    assert exc.value.code == ErrorCode.ACQ_ARCHIVE_INVALID
    assert list(temp_root.iterdir()) == []


@pytest.mark.anyio
async def test_corrupt_archive_is_rejected(temp_root):
    acquirer = WorkspaceAcquirer(ScanConfig())
    with pytest.raises(AcquisitionError) as exc:
        await acquirer.acquire({"zip_buffer": base64.b64encode(b"not a zip").decode()})
    assert exc.value.code == ErrorCode.ACQ_ARCHIVE_INVALID
    assert list(temp_root.iterdir()) == []


@pytest.mark.anyio
async def test_failed_extraction_removes_the_temp_dir(temp_root, monkeypatch):
    def disk_full(self, path=None, members=None, pwd=None):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(zipfile.ZipFile, "extractall", disk_full)
    acquirer = WorkspaceAcquirer(ScanConfig())
    with pytest.raises(OSError):
        await acquirer.acquire({"zip_buffer": _zip({"a.js": "x"})})
    assert list(temp_root.iterdir()) == []


@pytest.mark.anyio
async def test_release_never_deletes_local_or_foreign_paths(tmp_path, temp_root):
    acquirer = WorkspaceAcquirer(ScanConfig())
    local = tmp_path / "mine"
    local.mkdir()

    await acquirer.release(Workspace(root=local, method=METHOD_LOCAL, ephemeral=False))
    # Ephemeral flag alone is not enough outside the temp area
    await acquirer.release(Workspace(root=local, method=METHOD_ARCHIVE, ephemeral=True))
    await acquirer.release(None)
    assert local.exists()


@pytest.mark.anyio
async def test_missing_source_is_an_error():
    with pytest.raises(AcquisitionError) as exc:
        await WorkspaceAcquirer().acquire({"repo_url": "  "})
    assert exc.value.code == ErrorCode.ACQ_NO_SOURCE


@pytest.mark.anyio
async def test_clone_without_git_binary_fails_cleanly(temp_root):
    acquirer = WorkspaceAcquirer(ScanConfig(), git_binary=str(temp_root / "no-such-git"))
    with pytest.raises(AcquisitionError) as exc:
        await acquirer.acquire({"repo_url": "https://example.com/repo.git"})
    assert exc.value.code == ErrorCode.ACQ_CLONE_FAILED
    assert list(temp_root.iterdir()) == []


def _git(*args, cwd):
    subprocess.run(
        ["git", "-c", "user.email=ci@example.com", "-c", "user.name=ci", *args],
        cwd=cwd, check=True, capture_output=True,
    )


@requires_git
@pytest.mark.anyio
async def test_clone_from_local_repository(tmp_path, temp_root):
    origin = tmp_path / "origin"
    origin.mkdir()
    (origin / "index.js").write_text("navigator.share({})\n")
    _git("init", "-q", cwd=origin)
    _git("add", ".", cwd=origin)
    _git("commit", "-q", "-m", "init", cwd=origin)

    acquirer = WorkspaceAcquirer(ScanConfig())
    workspace = await acquirer.acquire({"repo_url": origin.as_uri()})
    assert workspace.method == METHOD_CLONE
    assert (workspace.root / "index.js").exists()

    await acquirer.release(workspace)
    assert not workspace.root.exists()


@requires_git
@pytest.mark.anyio
async def test_clone_of_missing_repository_fails(tmp_path, temp_root):
    acquirer = WorkspaceAcquirer(ScanConfig())
    with pytest.raises(AcquisitionError) as exc:
        await acquirer.acquire({"repo_url": (tmp_path / "missing").as_uri()})
    assert exc.value.code == ErrorCode.ACQ_CLONE_FAILED
    assert "git clone failed" in exc.value.message
    assert list(temp_root.iterdir()) == []
