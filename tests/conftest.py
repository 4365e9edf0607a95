"""Shared fixtures.

Binaries are modelled as JSON files holding their load commands, so a copy of
a "library" carries its metadata exactly like a copied Mach-O file does.
"""

import json
import logging
import pathlib

import pytest

from dylib_relocator.descriptor import DependencyReference, LoadCommands, references_from_load_commands
from dylib_relocator.engine import RelocationEngine
from dylib_relocator.errors import DescriptorReadError
from dylib_relocator.rewriter import writable

BASE: str = "@executable_path/lib-arm64-14_2"


def write_binary(
    path: pathlib.Path,
    *,
    identity: str | None = None,
    deps: tuple[str, ...] | list[str] = (),
) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"id": identity, "deps": list(deps)}))
    return path


def write_library(path: pathlib.Path, *deps: str) -> pathlib.Path:
    return write_binary(path, identity=str(path), deps=deps)


def load_binary(path: pathlib.Path) -> dict:
    return json.loads(path.read_text())


class FakeReader:
    def __init__(self) -> None:
        self.reads: list[str] = []

    def load_commands(self, binary: pathlib.Path) -> LoadCommands:
        if binary.is_file() is False:
            raise DescriptorReadError(f"Binary does not exist: {binary}")
        try:
            data: dict = json.loads(binary.read_text())
        except ValueError as e:
            raise DescriptorReadError(f"Not a binary: {binary}") from e
        self.reads.append(binary.name)
        return LoadCommands(identity=data["id"], dependencies=tuple(data["deps"]))

    def read(
        self,
        binary: pathlib.Path,
        *,
        include_relocatable: bool = False,
    ) -> list[DependencyReference]:
        return references_from_load_commands(
            binary=binary,
            commands=self.load_commands(binary),
            include_relocatable=include_relocatable,
        )

    def self_identity(self, binary: pathlib.Path) -> str | None:
        return self.load_commands(binary).identity


class FakeRewriter:
    def __init__(self) -> None:
        self.edits: list[tuple[str, ...]] = []

    def rewrite_self_identity(self, binary: pathlib.Path, new_path: str) -> bool:
        data: dict = load_binary(binary)
        if data["id"] is None or data["id"] == new_path:
            return False
        data["id"] = new_path
        with writable(binary):
            binary.write_text(json.dumps(data))
        self.edits.append(("id", binary.name, new_path))
        return True

    def rewrite_dependency(self, binary: pathlib.Path, old_path: str, new_path: str) -> bool:
        data: dict = load_binary(binary)
        if old_path == new_path or old_path not in data["deps"]:
            return False
        data["deps"] = [new_path if d == old_path else d for d in data["deps"]]
        with writable(binary):
            binary.write_text(json.dumps(data))
        self.edits.append(("change", binary.name, old_path, new_path))
        return True


@pytest.fixture()
def reader() -> FakeReader:
    return FakeReader()


@pytest.fixture()
def rewriter() -> FakeRewriter:
    return FakeRewriter()


@pytest.fixture()
def engine(reader: FakeReader, rewriter: FakeRewriter) -> RelocationEngine:
    return RelocationEngine(reader, rewriter, logger=logging.getLogger("dylib_relocator.tests"))


@pytest.fixture()
def src(tmp_path: pathlib.Path) -> pathlib.Path:
    root: pathlib.Path = tmp_path / "src"
    root.mkdir()
    return root


@pytest.fixture()
def bundle(tmp_path: pathlib.Path) -> pathlib.Path:
    """``Contents/MacOS`` directory of an app bundle."""

    macos: pathlib.Path = tmp_path / "Foo.app" / "Contents" / "MacOS"
    macos.mkdir(parents=True)
    return macos
