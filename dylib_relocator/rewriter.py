"""Link metadata rewriting.

Every in-place edit of a binary runs inside :func:`writable`, which widens the
file's permission bits for the duration of the edit and always puts the
original bits back.

Note: an abrupt process termination between widening and restoring leaves the
widened bits in place. Re-running the relocation is the recovery path.
"""

from collections.abc import Callable, Iterator
import contextlib
import logging
import os
import pathlib
import stat
import subprocess
from typing import Protocol, TypeVar

from dylib_relocator.descriptor import DescriptorReader, OtoolDescriptorReader
from dylib_relocator.errors import RewriteError

WRITABLE_MODE: int = 0o775

T = TypeVar("T")


@contextlib.contextmanager
def writable(path: pathlib.Path) -> Iterator[None]:
    """Temporarily make a file owner/group writable.

    :param path: File about to be mutated.
    :raises RewriteError: If the permissions cannot be widened; the body is not run.
    """

    try:
        orig_mode: int = stat.S_IMODE(os.stat(path).st_mode)
        os.chmod(path, WRITABLE_MODE)
    except OSError as e:
        raise RewriteError(f"Cannot make {path} writable: {e}") from e

    try:
        yield
    finally:
        os.chmod(path, orig_mode)


def with_writable(path: pathlib.Path, mutation: Callable[[], T]) -> T:
    """Run ``mutation`` while ``path`` is writable.

    :param path: File about to be mutated.
    :param mutation: Zero-argument callable performing the edit.
    :returns: Whatever ``mutation`` returns.
    """

    with writable(path):
        return mutation()


class LinkRewriter(Protocol):
    """Capability for editing a binary's link metadata in place."""

    def rewrite_self_identity(self, binary: pathlib.Path, new_path: str) -> bool: ...

    def rewrite_dependency(self, binary: pathlib.Path, old_path: str, new_path: str) -> bool: ...


class InstallNameToolRewriter:
    """Link rewriter backed by ``install_name_tool``.

    Edits are skipped (and ``False`` returned) when the binary carries no
    self-identity or does not reference ``old_path``, so re-running against a
    partially rewritten bundle is safe.
    """

    def __init__(
        self,
        *,
        reader: DescriptorReader | None = None,
        install_name_tool: str = "install_name_tool",
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("dylib_relocator")
        self._reader: DescriptorReader = reader if reader is not None else OtoolDescriptorReader(logger=self._logger)
        self._tool: str = install_name_tool

    def rewrite_self_identity(self, binary: pathlib.Path, new_path: str) -> bool:
        """Change the ``LC_ID_DYLIB`` of a shared library.

        :param binary: Library to edit.
        :param new_path: New self-identity.
        :returns: ``True`` if the binary was edited.
        :raises RewriteError: If ``install_name_tool`` rejects the edit.
        """

        current: str | None = self._reader.self_identity(binary)
        if current is None or current == new_path:
            self._logger.debug(f"dylib-relocator: id unchanged for {binary.name}")
            return False

        with writable(binary):
            self._run([self._tool, "-id", new_path, str(binary)])
        self._logger.debug(f"dylib-relocator: id {binary.name}: {current} -> {new_path}")
        return True

    def rewrite_dependency(self, binary: pathlib.Path, old_path: str, new_path: str) -> bool:
        """Change one dependency reference of a binary.

        :param binary: Binary to edit.
        :param old_path: Reference to replace.
        :param new_path: Replacement reference.
        :returns: ``True`` if the binary was edited.
        :raises RewriteError: If ``install_name_tool`` rejects the edit.
        """

        if old_path == new_path:
            return False
        refs = self._reader.read(binary, include_relocatable=True)
        if all(ref.path != old_path for ref in refs):
            self._logger.debug(f"dylib-relocator: {binary.name} does not reference {old_path}; skipped")
            return False

        with writable(binary):
            self._run([self._tool, "-change", old_path, new_path, str(binary)])
        self._logger.debug(f"dylib-relocator: change {binary.name}: {old_path} -> {new_path}")
        return True

    def _run(self, cmd: list[str]) -> None:
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"dylib-relocator: run: {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            raise RewriteError(f"Could not run {cmd[0]}: {e}") from e
        if proc.returncode != 0:
            raise RewriteError(
                f"install_name_tool failed (exit={proc.returncode}): {' '.join(cmd)}: {proc.stderr.strip()}"
            )
