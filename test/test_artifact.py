import os
from pathlib import Path

import pytest

from bootchain.artifact import artifact_store, symlink_entry


@pytest.fixture
def store(tmp_path: Path) -> artifact_store:
    return artifact_store(tmp_path / "store")


def test_checkin_dedup(store: artifact_store, tmp_path: Path) -> None:
    """内容相同的路径得到同一个制品"""

    first = tmp_path / "first"
    second = tmp_path / "second"
    for dir in (first, second):
        (dir / "sub").mkdir(parents=True)
        (dir / "sub" / "file.txt").write_text("content")
    a = store.checkin(first)
    b = store.checkin(second, move=True)
    assert a == b
    assert a.path.is_dir()
    assert not second.exists()
    assert first.exists()
    assert store.lookup(a.id) == a
    assert store.lookup("0" * 64) is None


def test_checkin_distinguish_mode(store: artifact_store, tmp_path: Path) -> None:
    """可执行位不同的文件是不同的制品"""

    file = tmp_path / "tool"
    file.write_text("#!/bin/sh\n")
    plain = store.checkin(file)
    file.chmod(0o755)
    executable = store.checkin(file)
    assert plain != executable


def test_get(store: artifact_store) -> None:
    """测试获取制品内部的路径"""

    result = store.directory({"bin/tool": "echo", "lib": {"libc.a": b"\0"}})
    assert store.text(result, "bin/tool") == "echo"
    assert store.bytes(result, "lib/libc.a") == b"\0"
    assert result / "bin" == result.path / "bin"
    for subpath in ("../x", "/etc/passwd", "bin/../../x"):
        with pytest.raises(RuntimeError):
            store.get(result, subpath)
    with pytest.raises(RuntimeError):
        store.get(result, "missing")


def test_directory(store: artifact_store, tmp_path: Path) -> None:
    """测试由各类条目构造目录"""

    source = tmp_path / "source"
    source.mkdir()
    (source / "a.txt").write_text("a")
    inner = store.directory({"inner.txt": "inner"})
    result = store.directory(
        {
            "copied": source,
            "nested": inner,
            "deep/dir/file": "text",
            "link": symlink_entry("deep/dir/file"),
        }
    )
    assert (result.path / "copied" / "a.txt").read_text() == "a"
    assert (result.path / "nested" / "inner.txt").read_text() == "inner"
    assert (result.path / "deep" / "dir" / "file").read_text() == "text"
    assert os.readlink(result.path / "link") == "deep/dir/file"
    # 相同条目得到同一个制品
    assert store.directory({"inner.txt": "inner"}) == inner


def test_merge(store: artifact_store) -> None:
    """合并时同名文件以靠后的制品为准"""

    first = store.directory({"a": "1", "b": "1", "dir/x": "1"})
    second = store.directory({"b": "2", "dir/y": "2"})
    result = store.merge(first, second)
    assert store.text(result, "a") == "1"
    assert store.text(result, "b") == "2"
    assert store.text(result, "dir/x") == "1"
    assert store.text(result, "dir/y") == "2"
    assert store.text(first, "b") == "1"


def test_merge_reject_file(store: artifact_store, tmp_path: Path) -> None:
    """只能合并目录制品"""

    file = tmp_path / "file"
    file.write_text("x")
    with pytest.raises(AssertionError):
        store.merge(store.checkin(file))
