"""Self-reference resolution.

The closure walk rewrites a reference only while visiting the binary that
declares it. A library copied into the Embedding Directory before some other
library became "internal" can therefore still name that library by its
absolute build-machine path. The resolver runs once the Embedding Directory's
membership is final and rewrites every such leftover reference.
"""

import logging
import pathlib

from dylib_relocator.descriptor import DescriptorReader
from dylib_relocator.rewriter import LinkRewriter
from dylib_relocator.walker import relocatable_path


def embedded_libraries(embedding_dir: pathlib.Path) -> list[pathlib.Path]:
    """List the libraries present in an Embedding Directory.

    :param embedding_dir: Embedding Directory.
    :returns: Regular files, sorted by name. Symlinks are ignored.
    """

    if embedding_dir.is_dir() is False:
        return []
    return sorted(
        (p for p in embedding_dir.iterdir() if p.is_symlink() is False and p.is_file() is True),
        key=lambda p: p.name,
    )


class SelfReferenceResolver:
    """Rewrites leftover absolute references to embedded libraries."""

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

    def resolve(self, root_binary: pathlib.Path, embedding_dir: pathlib.Path) -> int:
        """Relocate references to embedded libraries across the bundle.

        :param root_binary: Main executable.
        :param embedding_dir: Embedding Directory, with its final membership.
        :returns: Number of link metadata edits applied.
        :raises DescriptorReadError: If a binary cannot be inspected.
        :raises RewriteError: If a metadata edit fails.
        """

        libraries: list[pathlib.Path] = embedded_libraries(embedding_dir)
        members: set[str] = {p.name for p in libraries}
        rewrites: int = 0

        for binary in [root_binary, *libraries]:
            for ref in self._reader.read(binary):
                if ref.relocatable is True or ref.basename not in members:
                    continue
                new_path: str = relocatable_path(self._base, ref.basename)
                if ref.basename == binary.name and binary != root_binary:
                    edited: bool = self._rewriter.rewrite_self_identity(binary, new_path)
                else:
                    edited = self._rewriter.rewrite_dependency(binary, ref.path, new_path)
                if edited is True:
                    rewrites += 1
                    self._logger.debug(f"dylib-relocator: resolved {binary.name}: {ref.path} -> {new_path}")

        return rewrites
