"""Binary descriptor reading.

A descriptor reader lists the dynamic-library references a Mach-O binary
declares in its load command table. The default implementation shells out to
``otool -l`` and parses its output.
"""

from dataclasses import dataclass
import logging
import pathlib
import re
import subprocess
from typing import Protocol

from dylib_relocator.errors import DescriptorReadError

RELOCATION_TOKEN_PREFIX: str = "@"

LC_ID_DYLIB: str = "LC_ID_DYLIB"
DEPENDENCY_COMMANDS: tuple[str, ...] = (
    "LC_LOAD_DYLIB",
    "LC_LOAD_WEAK_DYLIB",
    "LC_REEXPORT_DYLIB",
    "LC_LAZY_LOAD_DYLIB",
    "LC_LOAD_UPWARD_DYLIB",
)

_NAME_RE: re.Pattern[str] = re.compile(r"^name (?P<name>.+?) \(offset \d+\)$")


@dataclass(frozen=True, slots=True)
class DependencyReference:
    """A dynamic-library reference declared by a binary.

    :ivar source: Binary that declares the reference.
    :ivar path: Referenced path, absolute or symbolic.
    :ivar relocatable: Whether ``path`` already uses a relocation token.
    """

    source: pathlib.Path
    path: str
    relocatable: bool

    @property
    def basename(self) -> str:
        """Last path component of the reference (``libz.1.dylib``)."""

        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class LoadCommands:
    """Dylib-related load commands of one binary.

    :ivar identity: ``LC_ID_DYLIB`` name, ``None`` for executables.
    :ivar dependencies: Names of dependency load commands, in table order.
    """

    identity: str | None
    dependencies: tuple[str, ...]


class DescriptorReader(Protocol):
    """Capability for inspecting a binary's link metadata."""

    def read(
        self,
        binary: pathlib.Path,
        *,
        include_relocatable: bool = False,
    ) -> list[DependencyReference]: ...

    def self_identity(self, binary: pathlib.Path) -> str | None: ...


def is_relocatable(path: str) -> bool:
    """Return ``True`` if a reference is expressed through a relocation token.

    :param path: Referenced path.
    :returns: ``True`` for ``@executable_path/``, ``@loader_path/``, ``@rpath/`` references.
    """

    return path.startswith(RELOCATION_TOKEN_PREFIX)


def references_from_load_commands(
    *,
    binary: pathlib.Path,
    commands: LoadCommands,
    include_relocatable: bool,
) -> list[DependencyReference]:
    """Turn parsed load commands into dependency references.

    Duplicates (e.g. one entry per slice of a universal binary) are dropped,
    keeping first-seen order.

    :param binary: Binary the commands were read from.
    :param commands: Parsed load commands.
    :param include_relocatable: Keep references that already use a relocation token.
    :returns: Ordered references.
    """

    refs: list[DependencyReference] = []
    seen: set[str] = set()
    for name in commands.dependencies:
        if name in seen:
            continue
        seen.add(name)
        relocatable: bool = is_relocatable(name)
        if relocatable is True and include_relocatable is False:
            continue
        refs.append(DependencyReference(source=binary, path=name, relocatable=relocatable))
    return refs


def parse_otool_l(stdout: str) -> LoadCommands:
    """Parse the output of ``otool -l <path>``.

    :param stdout: Captured ``otool -l`` output.
    :returns: The dylib load commands found.
    """

    identity: str | None = None
    dependencies: list[str] = []
    cmd: str | None = None
    for raw in stdout.splitlines():
        line: str = raw.strip()
        if line.startswith("Load command ") is True:
            cmd = None
            continue
        if line.startswith("cmd ") is True:
            cmd = line.split()[-1]
            continue
        if cmd is None:
            continue
        m = _NAME_RE.match(line)
        if m is None:
            continue
        if cmd == LC_ID_DYLIB:
            if identity is None:
                identity = m.group("name")
        elif cmd in DEPENDENCY_COMMANDS:
            dependencies.append(m.group("name"))
        cmd = None

    return LoadCommands(identity=identity, dependencies=tuple(dependencies))


class OtoolDescriptorReader:
    """Descriptor reader backed by ``otool -l``."""

    def __init__(self, *, otool: str = "otool", logger: logging.Logger | None = None) -> None:
        self._otool: str = otool
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("dylib_relocator")

    def load_commands(self, binary: pathlib.Path) -> LoadCommands:
        """Run ``otool -l`` on a binary and parse its dylib load commands.

        :param binary: Binary to inspect.
        :returns: Parsed load commands.
        :raises DescriptorReadError: If the binary cannot be inspected.
        """

        if binary.is_file() is False:
            raise DescriptorReadError(f"Binary does not exist: {binary}")

        cmd: list[str] = [self._otool, "-l", str(binary)]
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"dylib-relocator: run: {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            raise DescriptorReadError(f"Could not run {self._otool}: {e}") from e

        if proc.returncode != 0:
            raise DescriptorReadError(
                f"otool failed on {binary} (exit={proc.returncode}): {proc.stderr.strip()}"
            )
        if "is not an object file" in proc.stdout or "is not an object file" in proc.stderr:
            raise DescriptorReadError(f"Not a Mach-O object file: {binary}")

        return parse_otool_l(proc.stdout)

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
        """Return a library's ``LC_ID_DYLIB`` name.

        :param binary: Binary to inspect.
        :returns: The self-identity, ``None`` for executables.
        :raises DescriptorReadError: If the binary cannot be inspected.
        """

        return self.load_commands(binary).identity
