from pathlib import Path

import pytest

from bootchain import cc_proxy
from bootchain.cc_proxy import compile_command

# -E时输出源文件内容，否则在$COUNTER中记录一次编译并写出目标文件
compiler_script = """#!/bin/sh
out=""
prev=""
last=""
for arg; do
    if [ "$prev" = "-o" ]; then out="$arg"; fi
    if [ "$arg" = "-E" ]; then preprocess=1; fi
    prev="$arg"
    last="$arg"
done
if [ -n "$preprocess" ]; then
    cat "$last"
    exit 0
fi
echo compiled >> "$COUNTER"
echo object > "$out"
"""


@pytest.mark.parametrize(
    "argv, expected",
    [
        (["-O2", "-c", "foo.c", "-o", "foo.o"], compile_command("foo.c", "foo.o", ["-O2"])),
        (["-c", "src/foo.cpp"], compile_command("src/foo.cpp", "foo.o", [])),
        (["-I", "include", "-c", "foo.c", "-DNAME=1"], compile_command("foo.c", "foo.o", ["-I", "include", "-DNAME=1"])),
        (["foo.c", "-o", "foo"], None),
        (["-c", "foo.c", "bar.c"], None),
        (["-E", "-c", "foo.c"], None),
        (["-MD", "-c", "foo.c"], None),
        (["-c", "-"], None),
        (["@args", "-c", "foo.c"], None),
    ],
)
def test_parse_args(argv: list[str], expected: compile_command | None) -> None:
    """只缓存以-c编译单个源文件且不生成额外输出的命令"""

    assert cc_proxy.parse_args(argv) == expected


def test_cache_key() -> None:
    """预处理结果或编译选项不同时缓存键不同"""

    command = compile_command("foo.c", "foo.o", ["-O2"])
    key = cc_proxy.cache_key("/bin/sh", command, b"int x;")
    assert key == cc_proxy.cache_key("/bin/sh", command, b"int x;")
    assert key != cc_proxy.cache_key("/bin/sh", command, b"int y;")
    assert key != cc_proxy.cache_key("/bin/sh", command._replace(flags=["-O0"]), b"int x;")


@pytest.fixture
def compiler(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "cc"
    path.write_text(compiler_script)
    path.chmod(0o755)
    monkeypatch.setenv("COUNTER", str(tmp_path / "counter"))
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return path


def test_run_cached(tmp_path: Path, compiler: Path) -> None:
    """第二次编译相同的源文件时复用缓存的目标文件"""

    env = {cc_proxy.store_env: str(tmp_path / "store")}
    Path("foo.c").write_text("int x;\n")
    assert cc_proxy.run([str(compiler), "-c", "foo.c", "-o", "foo.o"], env) == 0
    assert Path("foo.o").read_text() == "object\n"
    Path("foo.o").unlink()
    assert cc_proxy.run([str(compiler), "-c", "foo.c", "-o", "foo.o"], env) == 0
    assert Path("foo.o").read_text() == "object\n"
    assert (tmp_path / "counter").read_text().splitlines() == ["compiled"]

    # 源文件改变后重新编译
    Path("foo.c").write_text("int y;\n")
    assert cc_proxy.run([str(compiler), "-c", "foo.c", "-o", "foo.o"], env) == 0
    assert (tmp_path / "counter").read_text().splitlines() == ["compiled", "compiled"]


def test_run_without_store(tmp_path: Path, compiler: Path) -> None:
    """没有仓库时每次都运行编译器"""

    Path("foo.c").write_text("int x;\n")
    for _ in range(2):
        assert cc_proxy.run([str(compiler), "-c", "foo.c", "-o", "foo.o"], {}) == 0
    assert (tmp_path / "counter").read_text().splitlines() == ["compiled", "compiled"]
