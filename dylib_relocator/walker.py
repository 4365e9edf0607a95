"""Dependency closure walking.

Starting from one binary, the walker follows every dependency reference that
points into the library source prefix, copies each referenced library into the
Embedding Directory (once per basename), rewrites the reference to its
relocatable form and then visits the copy.

The traversal is a depth-first walk driven by an explicit stack of frames, so
deep dependency chains do not grow the interpreter stack. A library is copied
only when no file with its basename exists in the Embedding Directory yet, and
only a fresh copy is ever pushed, so cycles in the dependency graph terminate.
"""

from collections import deque
from dataclasses import dataclass, field
import logging
import os
import pathlib
import shutil

from dylib_relocator.descriptor import DependencyReference, DescriptorReader
from dylib_relocator.errors import PreconditionError
from dylib_relocator.rewriter import LinkRewriter

EXECUTABLE_PATH_TOKEN: str = "@executable_path"


def relocation_base(*, executable: pathlib.Path, embedding_dir: pathlib.Path) -> str:
    """Build the fixed prefix of every relocatable reference in a bundle.

    :param executable: Main executable of the bundle.
    :param embedding_dir: Embedding Directory.
    :returns: e.g. ``@executable_path/lib-arm64-14_2``.
    """

    rel: str = os.path.relpath(embedding_dir.absolute(), executable.absolute().parent)
    if rel == ".":
        return EXECUTABLE_PATH_TOKEN
    return f"{EXECUTABLE_PATH_TOKEN}/{pathlib.PurePath(rel).as_posix()}"


def relocatable_path(base: str, basename: str) -> str:
    """Build the relocatable reference to an embedded library.

    :param base: Result of :func:`relocation_base`.
    :param basename: Library file name.
    :returns: e.g. ``@executable_path/lib-arm64-14_2/libz.1.dylib``.
    """

    return f"{base}/{basename}"


def is_occupied(target: pathlib.Path) -> bool:
    """Return ``True`` if an Embedding Directory entry name is taken.

    A dangling symlink counts as taken; copying onto it would write through
    the link to wherever it points.

    :param target: Candidate path inside the Embedding Directory.
    :returns: Whether a copy must be skipped.
    """

    return target.is_symlink() is True or target.exists() is True


def is_under_prefix(path: str, prefix: str) -> bool:
    """Return ``True`` if ``path`` lies inside the directory ``prefix``.

    :param path: Absolute referenced path.
    :param prefix: Library source prefix.
    :returns: Whether the path is drawn from the source tree.
    """

    stripped: str = prefix.rstrip("/")
    if stripped == "":
        return path.startswith("/")
    return path == stripped or path.startswith(stripped + "/")


@dataclass(slots=True)
class WalkResult:
    """Outcome of one closure walk.

    :ivar copied: Basenames copied into the Embedding Directory, in copy order.
    :ivar rewrites: Number of link metadata edits applied.
    :ivar skipped_duplicates: Source paths skipped because their basename was taken.
    """

    copied: list[str] = field(default_factory=list)
    rewrites: int = 0
    skipped_duplicates: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Frame:
    binary: pathlib.Path
    pending: deque[DependencyReference]


class ClosureWalker:
    """Copies and relocates the source-tree dependency closure of a binary."""

    def __init__(
        self,
        *,
        reader: DescriptorReader,
        rewriter: LinkRewriter,
        base: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self._reader: DescriptorReader = reader
        self._rewriter: LinkRewriter = rewriter
        self._base: str = base
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("dylib_relocator")
        # basename -> source path, for every library copied by this walker
        self._origins: dict[str, str] = {}

    def record_origin(self, basename: str, source: str) -> None:
        """Remember which source file an embedded basename was copied from.

        :param basename: Library file name in the Embedding Directory.
        :param source: Path the file was copied from.
        """

        self._origins[basename] = source

    def origin(self, basename: str) -> str | None:
        """Return the source path an embedded basename was copied from, if known.

        :param basename: Library file name in the Embedding Directory.
        :returns: Source path, or ``None`` if it was not copied by this walker.
        """

        return self._origins.get(basename)

    def walk(
        self,
        root_binary: pathlib.Path,
        library_source_prefix: str,
        embedding_dir: pathlib.Path,
    ) -> WalkResult:
        """Walk the dependency closure of ``root_binary``.

        :param root_binary: Executable or already-embedded library to start from.
        :param library_source_prefix: Only references under this prefix are followed.
        :param embedding_dir: Directory receiving the copied libraries.
        :returns: What was copied and rewritten.
        :raises PreconditionError: If a referenced source-tree library is missing.
        :raises DescriptorReadError: If a binary cannot be inspected.
        :raises RewriteError: If a metadata edit fails.
        """

        result: WalkResult = WalkResult()
        stack: list[_Frame] = [self._frame(root_binary)]

        while len(stack) > 0:
            frame: _Frame = stack[-1]
            if len(frame.pending) == 0:
                stack.pop()
                continue

            ref: DependencyReference = frame.pending.popleft()
            if is_under_prefix(ref.path, library_source_prefix) is False:
                continue

            new_path: str = relocatable_path(self._base, ref.basename)
            if ref.basename == frame.binary.name:
                if self._rewriter.rewrite_self_identity(frame.binary, new_path) is True:
                    result.rewrites += 1
                continue

            if self._rewriter.rewrite_dependency(frame.binary, ref.path, new_path) is True:
                result.rewrites += 1

            target: pathlib.Path = embedding_dir / ref.basename
            if is_occupied(target) is True:
                origin: str | None = self._origins.get(ref.basename)
                if origin is not None and origin != ref.path and ref.path not in result.skipped_duplicates:
                    self._logger.warning(
                        f"dylib-relocator: {ref.path} skipped; {ref.basename} already embedded from {origin}"
                    )
                    result.skipped_duplicates.append(ref.path)
                continue

            self._copy(ref, target)
            result.copied.append(ref.basename)
            if self._rewriter.rewrite_self_identity(target, new_path) is True:
                result.rewrites += 1
            stack.append(self._frame(target))

        return result

    def _frame(self, binary: pathlib.Path) -> _Frame:
        """Read a binary and wrap its references in a new stack frame.

        :param binary: Binary about to be visited.
        :returns: Frame holding the binary's pending references.
        """

        return _Frame(binary=binary, pending=deque(self._reader.read(binary)))

    def _copy(self, ref: DependencyReference, target: pathlib.Path) -> None:
        """Copy a referenced source-tree library into the Embedding Directory.

        :param ref: Reference naming the library.
        :param target: Destination inside the Embedding Directory.
        :raises PreconditionError: If the library is missing on disk.
        """

        source: pathlib.Path = pathlib.Path(ref.path)
        if source.is_file() is False:
            raise PreconditionError(
                f"Library {ref.path} referenced by {ref.source} does not exist"
            )
        shutil.copy2(source, target)
        self._origins[ref.basename] = ref.path
        self._logger.info(f"dylib-relocator: embedded {ref.basename} (from {ref.path})")
