import io
import os
import tarfile
from pathlib import Path

import pytest
from dulwich.objects import Blob, Commit, Tree
from dulwich.repo import Repo

from ledgerpin.services.tree import (
    ArchiveTreeSource,
    DirectoryTreeSource,
    GitTreeSource,
    TreeEntry,
    TreeSourceError,
    canonical_archive,
    normalize_path,
    open_tree_source,
    resolve_repository,
)

README = b"# project\n"
SCRIPT = b"#!/bin/sh\necho hi\n"


def _members(archive: bytes) -> list[tarfile.TarInfo]:
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        return tar.getmembers()


def _write_worktree(root: Path) -> None:
    (root / "bin").mkdir(parents=True)
    (root / "README.md").write_bytes(README)
    script = root / "bin" / "run.sh"
    script.write_bytes(SCRIPT)
    os.chmod(script, 0o755)


def _commit_tree(repo: Repo, message: bytes = b"init") -> bytes:
    readme = Blob.from_string(README)
    script = Blob.from_string(SCRIPT)
    bin_tree = Tree()
    bin_tree.add(b"run.sh", 0o100755, script.id)
    root_tree = Tree()
    root_tree.add(b"README.md", 0o100644, readme.id)
    root_tree.add(b"bin", 0o040000, bin_tree.id)
    for obj in (readme, script, bin_tree, root_tree):
        repo.object_store.add_object(obj)

    commit = Commit()
    commit.tree = root_tree.id
    commit.author = commit.committer = b"Test <test@example.com>"
    commit.author_time = commit.commit_time = 0
    commit.author_timezone = commit.commit_timezone = 0
    commit.encoding = b"UTF-8"
    commit.message = message
    repo.object_store.add_object(commit)
    repo.refs[b"HEAD"] = commit.id
    return commit.id


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    path = tmp_path / "owner" / "project"
    path.mkdir(parents=True)
    repo = Repo.init(str(path))
    try:
        _commit_tree(repo)
    finally:
        repo.close()
    _write_worktree(path)
    return path


def test_canonical_archive_is_deterministic_and_sorted() -> None:
    entries = [
        TreeEntry(path="b.txt", data=b"b"),
        TreeEntry(path="a/z.txt", data=b"z", executable=True),
        TreeEntry(path="a/link", link_target="z.txt"),
    ]
    first = canonical_archive(entries)
    second = canonical_archive(reversed(entries))
    assert first == second

    members = _members(first)
    assert [m.name for m in members] == ["a/link", "a/z.txt", "b.txt"]
    assert all(m.mtime == 0 and m.uid == 0 and m.gid == 0 for m in members)
    assert not any(m.isdir() for m in members)
    by_name = {m.name: m for m in members}
    assert by_name["a/link"].issym() and by_name["a/link"].linkname == "z.txt"
    assert by_name["a/z.txt"].mode == 0o755
    assert by_name["b.txt"].mode == 0o644


def test_canonical_archive_rejects_duplicates() -> None:
    with pytest.raises(TreeSourceError):
        canonical_archive([TreeEntry(path="a", data=b"1"), TreeEntry(path="./a", data=b"2")])


@pytest.mark.parametrize("raw", ["/etc/passwd", "../up", "a/../../b", "", "."])
def test_normalize_path_rejects_unsafe_paths(raw: str) -> None:
    with pytest.raises(TreeSourceError):
        normalize_path(raw)


def test_normalize_path_cleans_separators() -> None:
    assert normalize_path("./a//b\\c") == "a/b/c"


def test_directory_source_matches_git_source(git_repo: Path) -> None:
    (git_repo / "untracked.txt").write_bytes(b"not committed")
    git_archive = GitTreeSource(git_repo).read_archive()

    os.remove(git_repo / "untracked.txt")
    dir_archive = DirectoryTreeSource(git_repo).read_archive()

    assert git_archive == dir_archive
    assert [m.name for m in _members(git_archive)] == ["README.md", "bin/run.sh"]


def test_directory_source_keeps_symlinks(tmp_path: Path) -> None:
    (tmp_path / "target.txt").write_bytes(b"data")
    os.symlink("target.txt", tmp_path / "alias")

    members = {m.name: m for m in _members(DirectoryTreeSource(tmp_path).read_archive())}
    assert members["alias"].issym()
    assert members["alias"].linkname == "target.txt"


def test_git_source_reads_named_revision(git_repo: Path) -> None:
    repo = Repo(str(git_repo))
    try:
        head = repo.head()
    finally:
        repo.close()
    by_sha = GitTreeSource(git_repo, head.decode("ascii")).read_archive()
    assert by_sha == GitTreeSource(git_repo, "HEAD").read_archive()


def test_git_source_unknown_revision(git_repo: Path) -> None:
    with pytest.raises(TreeSourceError):
        GitTreeSource(git_repo, "does-not-exist").read_archive()


def test_git_source_not_a_repository(tmp_path: Path) -> None:
    with pytest.raises(TreeSourceError):
        GitTreeSource(tmp_path).read_archive()


def test_archive_source_recanonicalizes_upload(git_repo: Path) -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data, mode in (("bin/run.sh", SCRIPT, 0o775), ("README.md", README, 0o600)):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            info.mtime = 1_700_000_000
            info.uid = 1000
            tar.addfile(info, io.BytesIO(data))
        directory = tarfile.TarInfo("bin")
        directory.type = tarfile.DIRTYPE
        tar.addfile(directory)

    uploaded = ArchiveTreeSource(buffer.getvalue()).read_archive()
    assert uploaded == GitTreeSource(git_repo).read_archive()


def test_archive_source_rejects_hardlinks() -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo("hard")
        info.type = tarfile.LNKTYPE
        info.linkname = "other"
        tar.addfile(info)
    with pytest.raises(TreeSourceError):
        ArchiveTreeSource(buffer.getvalue()).read_archive()


def test_archive_source_rejects_garbage() -> None:
    with pytest.raises(TreeSourceError):
        ArchiveTreeSource(b"definitely not a tarball").read_archive()


def test_resolve_repository_refuses_escape(tmp_path: Path) -> None:
    (tmp_path / "repos").mkdir()
    with pytest.raises(TreeSourceError):
        resolve_repository(tmp_path / "repos", "../outside")
    with pytest.raises(TreeSourceError):
        resolve_repository(tmp_path / "repos", "missing/repo")


def test_open_tree_source_picks_git_or_directory(git_repo: Path, tmp_path: Path) -> None:
    plain = tmp_path / "owner" / "plain"
    plain.mkdir(parents=True)
    (plain / "file.txt").write_bytes(b"x")

    assert isinstance(open_tree_source(tmp_path, "owner/project"), GitTreeSource)
    assert isinstance(open_tree_source(tmp_path, "owner/plain"), DirectoryTreeSource)
