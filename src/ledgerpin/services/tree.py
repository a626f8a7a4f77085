"""Tree sources producing canonical, deterministic archives.

Every source reduces its input to a list of ``TreeEntry`` values and hands them
to ``canonical_archive``, so identical logical content always yields identical
archive bytes (and therefore an identical content address) regardless of where
it came from:

- paths are POSIX, relative, sorted bytewise and unique
- no directory entries; directories are implied by file paths
- modes are normalized to 0644 / 0755, symlinks keep only their target
- mtime, uid and gid are zero and owner names are empty
"""

from __future__ import annotations

import io
import os
import stat
import tarfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Protocol

from dulwich.errors import NotGitRepository
from dulwich.object_store import iter_tree_contents
from dulwich.objects import Blob, Commit
from dulwich.objectspec import parse_commit
from dulwich.repo import Repo

MODE_FILE = 0o644
MODE_EXECUTABLE = 0o755
MODE_SYMLINK = 0o777

_GIT_SYMLINK = 0o120000
_GIT_SUBMODULE = 0o160000


class TreeSourceError(ValueError):
    """Raised when a tree source cannot be read or contains unsafe paths."""


@dataclass(frozen=True)
class TreeEntry:
    """A single file in a content tree."""

    path: str
    data: bytes = b""
    executable: bool = False
    link_target: str | None = None

    @property
    def is_symlink(self) -> bool:
        return self.link_target is not None


class TreeSource(Protocol):
    """Anything that can describe itself and produce canonical archive bytes."""

    def describe(self) -> str: ...

    def read_archive(self) -> bytes: ...


def normalize_path(raw: str) -> str:
    """Return a safe relative POSIX path or raise TreeSourceError."""
    path = PurePosixPath(raw.replace("\\", "/"))
    if path.is_absolute():
        raise TreeSourceError(f"Absolute path not allowed in tree: {raw!r}")
    parts = [part for part in path.parts if part not in ("", ".")]
    if not parts or any(part == ".." for part in parts):
        raise TreeSourceError(f"Unsafe path in tree: {raw!r}")
    return "/".join(parts)


def canonical_archive(entries: Iterable[TreeEntry]) -> bytes:
    """Serialize `entries` into a deterministic tar archive."""
    by_path: dict[str, TreeEntry] = {}
    for entry in entries:
        path = normalize_path(entry.path)
        if path in by_path:
            raise TreeSourceError(f"Duplicate path in tree: {path}")
        by_path[path] = entry

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
        for path in sorted(by_path, key=lambda p: p.encode("utf-8")):
            entry = by_path[path]
            info = tarfile.TarInfo(name=path)
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            if entry.is_symlink:
                info.type = tarfile.SYMTYPE
                info.linkname = entry.link_target or ""
                info.mode = MODE_SYMLINK
                archive.addfile(info)
                continue
            info.type = tarfile.REGTYPE
            info.mode = MODE_EXECUTABLE if entry.executable else MODE_FILE
            info.size = len(entry.data)
            archive.addfile(info, io.BytesIO(entry.data))
    return buffer.getvalue()


class DirectoryTreeSource:
    """Snapshot of a directory on disk, skipping VCS metadata."""

    skip_names = frozenset({".git", ".hg", ".svn"})

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)

    def describe(self) -> str:
        return f"dir:{self.root}"

    def _walk(self) -> Iterator[TreeEntry]:
        if not self.root.is_dir():
            raise TreeSourceError(f"Not a directory: {self.root}")
        for current, dirnames, filenames in os.walk(self.root, followlinks=False):
            dirnames[:] = [name for name in dirnames if name not in self.skip_names]
            base = Path(current)
            for name in filenames:
                full = base / name
                rel = full.relative_to(self.root).as_posix()
                st = full.lstat()
                if stat.S_ISLNK(st.st_mode):
                    yield TreeEntry(path=rel, link_target=os.readlink(full))
                elif stat.S_ISREG(st.st_mode):
                    yield TreeEntry(
                        path=rel,
                        data=full.read_bytes(),
                        executable=bool(st.st_mode & 0o111),
                    )
            # Symlinked directories are listed in dirnames but never followed.
            for name in list(dirnames):
                full = base / name
                if full.is_symlink():
                    dirnames.remove(name)
                    rel = full.relative_to(self.root).as_posix()
                    yield TreeEntry(path=rel, link_target=os.readlink(full))

    def read_archive(self) -> bytes:
        try:
            return canonical_archive(self._walk())
        except OSError as exc:
            raise TreeSourceError(f"Failed to read {self.root}: {exc}") from exc


class GitTreeSource:
    """Tracked files of a git repository as of a named revision.

    Untracked and ignored files never appear because only the committed tree
    is read. Submodules are skipped.
    """

    def __init__(self, repo_path: str | os.PathLike[str], revision: str = "HEAD") -> None:
        self.repo_path = Path(repo_path)
        self.revision = revision

    def describe(self) -> str:
        return f"git:{self.repo_path}@{self.revision}"

    def _entries(self, repo: Repo) -> Iterator[TreeEntry]:
        try:
            commit = parse_commit(repo, self.revision.encode("utf-8"))
        except (KeyError, ValueError) as exc:
            raise TreeSourceError(f"Unknown revision {self.revision!r}") from exc
        if not isinstance(commit, Commit):
            raise TreeSourceError(f"Revision {self.revision!r} is not a commit")

        for item in iter_tree_contents(repo.object_store, commit.tree):
            mode = item.mode
            if mode == _GIT_SUBMODULE:
                continue
            blob = repo.object_store[item.sha]
            if not isinstance(blob, Blob):
                continue
            path = item.path.decode("utf-8", errors="surrogateescape")
            if mode == _GIT_SYMLINK:
                yield TreeEntry(path=path, link_target=blob.data.decode("utf-8", "surrogateescape"))
            else:
                yield TreeEntry(path=path, data=blob.data, executable=bool(mode & 0o111))

    def read_archive(self) -> bytes:
        try:
            repo = Repo(str(self.repo_path))
        except NotGitRepository as exc:
            raise TreeSourceError(f"Not a git repository: {self.repo_path}") from exc
        try:
            return canonical_archive(self._entries(repo))
        finally:
            repo.close()


class ArchiveTreeSource:
    """Uploaded tar stream, re-serialized canonically.

    Only regular files and symlinks are kept; hard links, devices and FIFOs
    are rejected.
    """

    def __init__(self, stream: BinaryIO | bytes, *, label: str = "upload") -> None:
        self._stream = stream
        self.label = label

    def describe(self) -> str:
        return f"archive:{self.label}"

    def _open(self) -> tarfile.TarFile:
        fileobj = io.BytesIO(self._stream) if isinstance(self._stream, bytes) else self._stream
        try:
            return tarfile.open(fileobj=fileobj, mode="r:*")
        except tarfile.TarError as exc:
            raise TreeSourceError(f"Unreadable archive: {exc}") from exc

    def _entries(self, archive: tarfile.TarFile) -> Iterator[TreeEntry]:
        for member in archive.getmembers():
            if member.isdir():
                continue
            if member.issym():
                yield TreeEntry(path=member.name, link_target=member.linkname)
                continue
            if not member.isreg():
                raise TreeSourceError(f"Unsupported archive member type: {member.name}")
            extracted = archive.extractfile(member)
            data = extracted.read() if extracted is not None else b""
            yield TreeEntry(path=member.name, data=data, executable=bool(member.mode & 0o111))

    def read_archive(self) -> bytes:
        with self._open() as archive:
            try:
                return canonical_archive(self._entries(archive))
            except tarfile.TarError as exc:
                raise TreeSourceError(f"Corrupt archive: {exc}") from exc


def resolve_repository(root: str | os.PathLike[str], repository: str) -> Path:
    """Map a repository name like ``owner/name`` under `root`, refusing escapes."""
    relative = normalize_path(repository)
    base = Path(root).resolve()
    candidate = (base / relative).resolve()
    if candidate != base and base not in candidate.parents:
        raise TreeSourceError(f"Repository outside of root: {repository!r}")
    if candidate.is_dir():
        return candidate
    bare = candidate.with_name(candidate.name + ".git")
    if bare.is_dir():
        return bare
    raise TreeSourceError(f"Repository not found: {repository!r}")


def open_tree_source(
    root: str | os.PathLike[str], repository: str, revision: str = "HEAD"
) -> TreeSource:
    """Return a git source for repositories and a directory source otherwise."""
    path = resolve_repository(root, repository)
    is_bare = (path / "HEAD").is_file() and (path / "objects").is_dir()
    if (path / ".git").exists() or is_bare:
        return GitTreeSource(path, revision)
    return DirectoryTreeSource(path)
