"""LIEF implementation of the descriptor reader and link rewriter.

Unlike the ``otool``/``install_name_tool`` backend this one does not need the
Xcode command line tools, so it also runs on non-macOS build hosts. Universal
binaries are handled slice by slice: every slice is read and edited.

Requires: LIEF (Library to Instrument Executable Formats) - pip install lief
"""

import logging
import pathlib

import lief

from dylib_relocator.descriptor import DependencyReference, LoadCommands, references_from_load_commands
from dylib_relocator.errors import DescriptorReadError, RewriteError
from dylib_relocator.rewriter import writable

_TYPE = lief.MachO.LoadCommand.TYPE

_ID_TYPES = (_TYPE.ID_DYLIB,)
_DEPENDENCY_TYPES = (
    _TYPE.LOAD_DYLIB,
    _TYPE.LOAD_WEAK_DYLIB,
    _TYPE.REEXPORT_DYLIB,
    _TYPE.LAZY_LOAD_DYLIB,
    _TYPE.LOAD_UPWARD_DYLIB,
)


def _parse(binary: pathlib.Path) -> lief.MachO.FatBinary:
    """Parse a (possibly universal) Mach-O file.

    :param binary: File to parse.
    :returns: The parsed ``lief.MachO.FatBinary``.
    :raises DescriptorReadError: If the file is missing or not Mach-O.
    """

    if binary.is_file() is False:
        raise DescriptorReadError(f"Binary does not exist: {binary}")
    try:
        fat = lief.MachO.parse(str(binary))
    except Exception as e:  # LIEF raises its own hierarchy depending on the build
        raise DescriptorReadError(f"LIEF could not parse {binary}: {e}") from e
    if fat is None or len(list(fat)) == 0:
        raise DescriptorReadError(f"Not a Mach-O object file: {binary}")
    return fat


def _dylib_commands(
    fat: lief.MachO.FatBinary,
    types: tuple[lief.MachO.LoadCommand.TYPE, ...],
) -> list[lief.MachO.DylibCommand]:
    """Collect the dylib load commands of the given types from every slice.

    :param fat: Parsed (possibly universal) binary.
    :param types: Load command types to keep.
    :returns: Matching commands, slice by slice in table order.
    """

    cmds: list[lief.MachO.DylibCommand] = []
    for slice_ in fat:
        for cmd in slice_.commands:
            if cmd.command in types:
                cmds.append(cmd)
    return cmds


def _write(fat: lief.MachO.FatBinary, binary: pathlib.Path) -> None:
    """Serialize an edited binary back over its file.

    :param fat: Edited binary.
    :param binary: File to overwrite.
    :raises RewriteError: If LIEF cannot write the file.
    """

    try:
        fat.write(str(binary))
    except Exception as e:
        raise RewriteError(f"LIEF could not write {binary}: {e}") from e


class LiefDescriptorReader:
    """Descriptor reader backed by LIEF."""

    def load_commands(self, binary: pathlib.Path) -> LoadCommands:
        """Parse a binary's dylib load commands with LIEF.

        :param binary: Binary to inspect.
        :returns: Parsed load commands; the first slice's identity wins.
        :raises DescriptorReadError: If the binary cannot be inspected.
        """

        fat = _parse(binary)
        ids: list[lief.MachO.DylibCommand] = _dylib_commands(fat, _ID_TYPES)
        deps: list[lief.MachO.DylibCommand] = _dylib_commands(fat, _DEPENDENCY_TYPES)
        return LoadCommands(
            identity=ids[0].name if len(ids) > 0 else None,
            dependencies=tuple(cmd.name for cmd in deps),
        )

    def read(
        self,
        binary: pathlib.Path,
        *,
        include_relocatable: bool = False,
    ) -> list[DependencyReference]:
        """List the dependency references a binary declares.

        :param binary: Binary to inspect.
        :param include_relocatable: Keep references that already use a relocation token.
        :returns: Ordered references, without the binary's self-identity.
        :raises DescriptorReadError: If the binary cannot be inspected.
        """

        return references_from_load_commands(
            binary=binary,
            commands=self.load_commands(binary),
            include_relocatable=include_relocatable,
        )

    def self_identity(self, binary: pathlib.Path) -> str | None:
        """Return a library's ``LC_ID_DYLIB`` name, ``None`` for executables."""

        return self.load_commands(binary).identity


class LiefLinkRewriter:
    """Link rewriter backed by LIEF.

    The file is re-serialized by LIEF, so a rewrite that does not fit the
    existing load command padding surfaces as a :class:`RewriteError`.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("dylib_relocator")

    def rewrite_self_identity(self, binary: pathlib.Path, new_path: str) -> bool:
        fat = _parse(binary)
        cmds: list[lief.MachO.DylibCommand] = [cmd for cmd in _dylib_commands(fat, _ID_TYPES) if cmd.name != new_path]
        if len(cmds) == 0:
            self._logger.debug(f"dylib-relocator: id unchanged for {binary.name}")
            return False
        for cmd in cmds:
            cmd.name = new_path
        with writable(binary):
            _write(fat, binary)
        self._logger.debug(f"dylib-relocator: id {binary.name} -> {new_path}")
        return True

    def rewrite_dependency(self, binary: pathlib.Path, old_path: str, new_path: str) -> bool:
        if old_path == new_path:
            return False
        fat = _parse(binary)
        cmds: list[lief.MachO.DylibCommand] = [cmd for cmd in _dylib_commands(fat, _DEPENDENCY_TYPES) if cmd.name == old_path]
        if len(cmds) == 0:
            self._logger.debug(f"dylib-relocator: {binary.name} does not reference {old_path}; skipped")
            return False
        for cmd in cmds:
            cmd.name = new_path
        with writable(binary):
            _write(fat, binary)
        self._logger.debug(f"dylib-relocator: change {binary.name}: {old_path} -> {new_path}")
        return True
