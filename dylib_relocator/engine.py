"""Relocation engine facade.

``embed`` makes an app bundle's executable self-contained:

1. walk the executable's source-tree dependency closure into the Embedding
   Directory,
2. copy, self-identify and walk every extra library, in caller order,
3. resolve leftover absolute references among the embedded libraries.

Any error aborts the run. Every step is a no-op when already applied, so the
recovery path for an aborted run is to run ``embed`` again.
"""

from collections.abc import Iterator, Sequence
import contextlib
from dataclasses import dataclass, field
import fcntl
import logging
import pathlib
import shutil
import time

from dylib_relocator.descriptor import DependencyReference, DescriptorReader
from dylib_relocator.errors import PreconditionError
from dylib_relocator.resolver import SelfReferenceResolver, embedded_libraries
from dylib_relocator.rewriter import LinkRewriter
from dylib_relocator.target import EmbedTarget, embedding_dir_name, resolve_embed_target
from dylib_relocator.walker import (
    ClosureWalker,
    WalkResult,
    is_occupied,
    is_under_prefix,
    relocatable_path,
    relocation_base,
)


@dataclass(slots=True)
class EmbedReport:
    """Summary of one ``embed`` run.

    :ivar executable: Relocated executable.
    :ivar embedding_dir: Embedding Directory that was populated.
    :ivar copied: Basenames copied during this run, in copy order.
    :ivar rewrites: Link metadata edits applied by the closure walks.
    :ivar resolved: Link metadata edits applied by the self-reference pass.
    :ivar skipped_duplicates: Source paths skipped because their basename was taken.
    """

    executable: pathlib.Path
    embedding_dir: pathlib.Path
    copied: list[str] = field(default_factory=list)
    rewrites: int = 0
    resolved: int = 0
    skipped_duplicates: list[str] = field(default_factory=list)

    def add(self, result: WalkResult) -> None:
        """Fold one walk's outcome into the report."""

        self.copied.extend(result.copied)
        self.rewrites += result.rewrites
        self.skipped_duplicates.extend(result.skipped_duplicates)


@contextlib.contextmanager
def bundle_lock(executable: pathlib.Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on the executable for one run.

    :param executable: Main executable of the bundle.
    :raises PreconditionError: If another process holds the lock.
    """

    with open(executable, "rb") as fh:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise PreconditionError(f"Bundle is being relocated by another process: {executable}") from e
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


class RelocationEngine:
    """Embeds an executable's external libraries into its bundle."""

    def __init__(
        self,
        reader: DescriptorReader,
        rewriter: LinkRewriter,
        logger: logging.Logger | None = None,
    ) -> None:
        self._reader: DescriptorReader = reader
        self._rewriter: LinkRewriter = rewriter
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("dylib_relocator")

    def default_embedding_dir(self, executable: pathlib.Path, target: EmbedTarget | None = None) -> pathlib.Path:
        """Return the Embedding Directory that sits next to ``executable``.

        :param executable: Main executable of the bundle.
        :param target: Embedding target; resolved from the host when ``None``.
        :returns: e.g. ``Foo.app/Contents/MacOS/lib-arm64-14_2``.
        """

        resolved: EmbedTarget = target if target is not None else resolve_embed_target()
        return executable.parent / embedding_dir_name(resolved)

    def embed(
        self,
        executable: pathlib.Path,
        library_source_prefix: str,
        embedding_dir: pathlib.Path | None = None,
        extra_libraries: Sequence[pathlib.Path] = (),
        *,
        target: EmbedTarget | None = None,
    ) -> EmbedReport:
        """Relocate ``executable`` and its source-tree libraries into the bundle.

        :param executable: Main executable inside the app bundle.
        :param library_source_prefix: Directory prefix of source-built libraries.
        :param embedding_dir: Embedding Directory; defaults to one named after ``target``.
        :param extra_libraries: Libraries to embed even though nothing links them.
        :param target: Embedding target used to name the default Embedding Directory.
        :returns: What was copied and rewritten.
        :raises PreconditionError: If the executable, an extra library, or a
            referenced source-tree library is missing.
        :raises DescriptorReadError: If a binary cannot be inspected.
        :raises RewriteError: If a metadata edit fails.
        """

        if executable.is_file() is False:
            raise PreconditionError(f"Executable does not exist: {executable}")
        extras: list[pathlib.Path] = [pathlib.Path(p) for p in extra_libraries]
        for extra in extras:
            if extra.is_file() is False:
                raise PreconditionError(f"Extra library does not exist: {extra}")

        if embedding_dir is None:
            embedding_dir = self.default_embedding_dir(executable, target)
        embedding_dir.mkdir(parents=True, exist_ok=True)

        base: str = relocation_base(executable=executable, embedding_dir=embedding_dir)
        self._logger.info(f"dylib-relocator: executable={executable}")
        self._logger.info(f"dylib-relocator: prefix={library_source_prefix}")
        self._logger.info(f"dylib-relocator: embedding_dir={embedding_dir} ({base})")

        report: EmbedReport = EmbedReport(executable=executable, embedding_dir=embedding_dir)
        walker: ClosureWalker = ClosureWalker(
            reader=self._reader,
            rewriter=self._rewriter,
            base=base,
            logger=self._logger,
        )

        t0: float = time.perf_counter()
        with bundle_lock(executable):
            report.add(walker.walk(executable, library_source_prefix, embedding_dir))
            t1: float = time.perf_counter()
            self._logger.info(
                f"dylib-relocator: closure walk copied {len(report.copied)} libraries in {t1 - t0:.2f}s"
            )

            for extra in extras:
                report.add(self._embed_extra(walker, extra, library_source_prefix, embedding_dir, base))

            resolver: SelfReferenceResolver = SelfReferenceResolver(
                reader=self._reader,
                rewriter=self._rewriter,
                base=base,
                logger=self._logger,
            )
            report.resolved = resolver.resolve(executable, embedding_dir)

        t2: float = time.perf_counter()
        self._logger.info(
            f"dylib-relocator: done in {t2 - t0:.2f}s "
            f"(copied={len(report.copied)}, rewrites={report.rewrites}, resolved={report.resolved})"
        )
        return report

    def _embed_extra(
        self,
        walker: ClosureWalker,
        extra: pathlib.Path,
        library_source_prefix: str,
        embedding_dir: pathlib.Path,
        base: str,
    ) -> WalkResult:
        """Copy, self-identify and walk one extra library.

        :param walker: Walker shared by the whole run.
        :param extra: Extra library to embed.
        :param library_source_prefix: Directory prefix of source-built libraries.
        :param embedding_dir: Embedding Directory.
        :param base: Result of :func:`relocation_base`.
        :returns: What was copied and rewritten.
        """

        copy: pathlib.Path = embedding_dir / extra.name
        new_path: str = relocatable_path(base, extra.name)
        copied: bool = False
        if copy.is_symlink() is True:
            self._logger.warning(f"dylib-relocator: extra {extra} skipped; {copy} is a symlink")
            return WalkResult(skipped_duplicates=[str(extra)])
        if is_occupied(copy) is False:
            shutil.copy2(extra, copy)
            walker.record_origin(extra.name, str(extra))
            copied = True
            self._logger.info(f"dylib-relocator: embedded extra {extra.name} (from {extra})")
        else:
            origin: str | None = walker.origin(extra.name)
            if origin is not None and origin != str(extra):
                self._logger.warning(
                    f"dylib-relocator: extra {extra} skipped; {extra.name} already embedded from {origin}"
                )
                return WalkResult(skipped_duplicates=[str(extra)])
            self._logger.debug(f"dylib-relocator: extra {extra.name} already embedded")

        edited: bool = self._rewriter.rewrite_self_identity(copy, new_path)
        result: WalkResult = walker.walk(copy, library_source_prefix, embedding_dir)
        if copied is True:
            result.copied.insert(0, extra.name)
        if edited is True:
            result.rewrites += 1
        return result

    def verify(
        self,
        executable: pathlib.Path,
        library_source_prefix: str,
        embedding_dir: pathlib.Path,
    ) -> list[DependencyReference]:
        """Find references that still point at build-machine paths.

        :param executable: Main executable inside the app bundle.
        :param library_source_prefix: Directory prefix of source-built libraries.
        :param embedding_dir: Embedding Directory.
        :returns: Absolute references under the prefix or naming an embedded library.
        :raises PreconditionError: If the executable is missing.
        :raises DescriptorReadError: If a binary cannot be inspected.
        """

        if executable.is_file() is False:
            raise PreconditionError(f"Executable does not exist: {executable}")

        libraries: list[pathlib.Path] = embedded_libraries(embedding_dir)
        members: set[str] = {p.name for p in libraries}
        bad: list[DependencyReference] = []
        for binary in [executable, *libraries]:
            for ref in self._reader.read(binary):
                if is_under_prefix(ref.path, library_source_prefix) is True or ref.basename in members:
                    bad.append(ref)

        for ref in bad:
            self._logger.warning(f"dylib-relocator: {ref.source.name} still references {ref.path}")
        return bad
