import os
import pathlib
import stat
import types

import pytest

from dylib_relocator import lief_backend
from dylib_relocator.errors import DescriptorReadError
from dylib_relocator.lief_backend import LiefDescriptorReader, LiefLinkRewriter

_TYPE = lief_backend._TYPE


class _Cmd:
    def __init__(self, command, name: str) -> None:
        self.command = command
        self.name = name


class _Slice:
    def __init__(self, *commands: _Cmd) -> None:
        self.commands = list(commands)


class _Fat(list):
    def __init__(self, *slices: _Slice) -> None:
        super().__init__(slices)
        self.written: list[str] = []

    def write(self, path: str) -> None:
        self.written.append(path)


@pytest.fixture()
def fat(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> tuple[_Fat, pathlib.Path]:
    binary = tmp_path / "libA.dylib"
    binary.write_bytes(b"\xca\xfe\xba\xbe")
    os.chmod(binary, 0o444)
    parsed = _Fat(
        _Slice(
            _Cmd(_TYPE.ID_DYLIB, "/src/libA.dylib"),
            _Cmd(_TYPE.LOAD_DYLIB, "/src/libB.dylib"),
            _Cmd(_TYPE.LOAD_WEAK_DYLIB, "@rpath/libC.dylib"),
        ),
        _Slice(
            _Cmd(_TYPE.ID_DYLIB, "/src/libA.dylib"),
            _Cmd(_TYPE.LOAD_DYLIB, "/src/libB.dylib"),
        ),
    )
    fake_lief = types.SimpleNamespace(MachO=types.SimpleNamespace(parse=lambda path: parsed))
    monkeypatch.setattr(lief_backend, "lief", fake_lief)
    return parsed, binary


def test_read_all_slices(fat) -> None:
    _, binary = fat
    reader = LiefDescriptorReader()

    assert [r.path for r in reader.read(binary)] == ["/src/libB.dylib"]
    assert [r.path for r in reader.read(binary, include_relocatable=True)] == [
        "/src/libB.dylib",
        "@rpath/libC.dylib",
    ]
    assert reader.self_identity(binary) == "/src/libA.dylib"


def test_rewrite_every_slice(fat) -> None:
    parsed, binary = fat
    rewriter = LiefLinkRewriter()

    assert rewriter.rewrite_dependency(binary, "/src/libB.dylib", "@executable_path/lib/libB.dylib") is True
    assert rewriter.rewrite_self_identity(binary, "@executable_path/lib/libA.dylib") is True

    names = [cmd.name for slice_ in parsed for cmd in slice_.commands]
    assert names.count("@executable_path/lib/libB.dylib") == 2
    assert names.count("@executable_path/lib/libA.dylib") == 2
    assert parsed.written == [str(binary), str(binary)]
    assert stat.S_IMODE(os.stat(binary).st_mode) == 0o444


def test_rewrite_noop(fat) -> None:
    parsed, binary = fat
    rewriter = LiefLinkRewriter()

    assert rewriter.rewrite_dependency(binary, "/src/libZ.dylib", "@executable_path/lib/libZ.dylib") is False
    assert rewriter.rewrite_self_identity(binary, "/src/libA.dylib") is False
    assert parsed.written == []


def test_unparseable(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    path = tmp_path / "README"
    path.write_text("hello")
    monkeypatch.setattr(
        lief_backend, "lief", types.SimpleNamespace(MachO=types.SimpleNamespace(parse=lambda path: None))
    )

    with pytest.raises(DescriptorReadError, match="Not a Mach-O"):
        LiefDescriptorReader().read(path)
    with pytest.raises(DescriptorReadError, match="does not exist"):
        LiefDescriptorReader().read(tmp_path / "missing")
