import os
import pathlib
import stat

import pytest

from conftest import write_binary
from dylib_relocator import rewriter as rewriter_mod
from dylib_relocator.errors import RewriteError
from dylib_relocator.rewriter import InstallNameToolRewriter, with_writable, writable


def _mode(path: pathlib.Path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def test_with_writable_restores_mode_on_success(tmp_path: pathlib.Path) -> None:
    path = tmp_path / "libA.dylib"
    path.write_bytes(b"x")
    os.chmod(path, 0o444)
    seen: list[int] = []

    assert with_writable(path, lambda: seen.append(_mode(path)) or "ok") == "ok"

    assert seen == [0o775]
    assert _mode(path) == 0o444


def test_with_writable_restores_mode_on_failure(tmp_path: pathlib.Path) -> None:
    path = tmp_path / "libA.dylib"
    path.write_bytes(b"x")
    os.chmod(path, 0o555)

    def boom() -> None:
        raise RewriteError("rejected")

    with pytest.raises(RewriteError):
        with_writable(path, boom)
    assert _mode(path) == 0o555


def test_writable_widen_failure_skips_mutation(tmp_path: pathlib.Path) -> None:
    called: list[bool] = []
    with pytest.raises(RewriteError, match="Cannot make"):
        with writable(tmp_path / "missing.dylib"):
            called.append(True)
    assert called == []


class _Proc:
    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = ""
        self.stderr = stderr


@pytest.fixture()
def runs(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return _Proc()

    monkeypatch.setattr(rewriter_mod.subprocess, "run", fake_run)
    return calls


def test_install_name_tool_change(reader, runs: list[list[str]], tmp_path: pathlib.Path) -> None:
    exe = write_binary(tmp_path / "foo", deps=["/src/libA.dylib", "@rpath/libB.dylib"])
    tool = InstallNameToolRewriter(reader=reader)

    assert tool.rewrite_dependency(exe, "/src/libA.dylib", "@executable_path/lib/libA.dylib") is True
    assert tool.rewrite_dependency(exe, "@rpath/libB.dylib", "@executable_path/lib/libB.dylib") is True

    assert runs == [
        ["install_name_tool", "-change", "/src/libA.dylib", "@executable_path/lib/libA.dylib", str(exe)],
        ["install_name_tool", "-change", "@rpath/libB.dylib", "@executable_path/lib/libB.dylib", str(exe)],
    ]


def test_install_name_tool_id(reader, runs: list[list[str]], tmp_path: pathlib.Path) -> None:
    lib = write_binary(tmp_path / "libA.dylib", identity="/src/libA.dylib")
    tool = InstallNameToolRewriter(reader=reader, install_name_tool="/usr/bin/install_name_tool")

    assert tool.rewrite_self_identity(lib, "@executable_path/lib/libA.dylib") is True

    assert runs == [["/usr/bin/install_name_tool", "-id", "@executable_path/lib/libA.dylib", str(lib)]]


def test_install_name_tool_noops(reader, runs: list[list[str]], tmp_path: pathlib.Path) -> None:
    exe = write_binary(tmp_path / "foo", deps=["@executable_path/lib/libA.dylib"])
    lib = write_binary(tmp_path / "libA.dylib", identity="@executable_path/lib/libA.dylib")
    tool = InstallNameToolRewriter(reader=reader)

    assert tool.rewrite_dependency(exe, "/src/libA.dylib", "@executable_path/lib/libA.dylib") is False
    assert tool.rewrite_dependency(exe, "/x", "/x") is False
    assert tool.rewrite_self_identity(exe, "@executable_path/lib/foo") is False
    assert tool.rewrite_self_identity(lib, "@executable_path/lib/libA.dylib") is False
    assert runs == []


def test_install_name_tool_failure_restores_mode(
    reader, monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path
) -> None:
    exe = write_binary(tmp_path / "foo", deps=["/src/libA.dylib"])
    os.chmod(exe, 0o555)

    def fake_run(cmd, **kwargs):
        assert _mode(exe) == 0o775
        return _Proc(returncode=1, stderr="larger updated load commands do not fit")

    monkeypatch.setattr(rewriter_mod.subprocess, "run", fake_run)

    with pytest.raises(RewriteError, match="do not fit"):
        InstallNameToolRewriter(reader=reader).rewrite_dependency(exe, "/src/libA.dylib", "@executable_path/x")
    assert _mode(exe) == 0o555


def test_install_name_tool_not_installed(reader, monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    exe = write_binary(tmp_path / "foo", deps=["/src/libA.dylib"])

    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(rewriter_mod.subprocess, "run", fake_run)

    with pytest.raises(RewriteError, match="Could not run"):
        InstallNameToolRewriter(reader=reader).rewrite_dependency(exe, "/src/libA.dylib", "@executable_path/x")

