from pathlib import Path

import pytest

from bootchain import ld_proxy
from bootchain.artifact import artifact_store
from bootchain.ld_proxy import library_path_opt_level, linker_options


def test_parse_args() -> None:
    """解析输出、搜索目录、库和rpath，代理自身的选项被去除"""

    argv = [
        "-pie",
        "-dynamic-linker",
        "/lib/ld-linux-x86-64.so.2",
        "-o",
        "hello",
        "-L/opt/lib",
        "--library-path=/usr/lib",
        "-rpath",
        "/opt/rpath",
        "-rpath=/opt/rpath2",
        "--bootchain-library-path-opt-level",
        "filter",
        "--bootchain-max-depth=4",
        "crt1.o",
        "hello.o",
        "/opt/lib/libfoo.so.1",
        "-lbar",
        "-l",
        "c",
    ]
    options = ld_proxy.parse_args(argv)
    assert options.output == "hello"
    assert options.library_paths == ["/opt/lib", "/usr/lib"]
    assert options.rpaths == ["/opt/rpath", "/opt/rpath2"]
    assert options.libraries == ["bar", "c"]
    assert options.shared_inputs == ["/opt/lib/libfoo.so.1"]
    assert options.opt_level == library_path_opt_level.filter
    assert options.max_depth == 4
    assert not options.shared
    assert "--bootchain-library-path-opt-level" not in options.linker_args
    assert "filter" not in options.linker_args
    assert options.linker_args[:3] == ["-pie", "-dynamic-linker", "/lib/ld-linux-x86-64.so.2"]
    assert options.linker_args[-3:] == ["-lbar", "-l", "c"]


def test_parse_args_default_opt_level() -> None:
    """命令行中的优化等级优先于默认等级"""

    assert ld_proxy.parse_args([]).opt_level == library_path_opt_level.combine
    assert ld_proxy.parse_args([], "resolve").opt_level == library_path_opt_level.resolve
    assert ld_proxy.parse_args(["--bootchain-library-path-opt-level=none"], "resolve").opt_level == library_path_opt_level.none


@pytest.mark.parametrize(
    "argv, shared, relocatable",
    [(["-shared"], True, False), (["-Bshareable"], True, False), (["-r"], False, True), (["--relocatable"], False, True)],
)
def test_parse_args_link_kind(argv: list[str], shared: bool, relocatable: bool) -> None:
    options = ld_proxy.parse_args(argv)
    assert options.shared == shared
    assert options.relocatable == relocatable


def test_analyze_non_elf(tmp_path: Path) -> None:
    path = tmp_path / "libfoo.so"
    path.write_text("INPUT ( libfoo.so.1 )\n")
    assert ld_proxy.analyze(path) is None
    assert ld_proxy.analyze(tmp_path / "missing") is None


def test_resolve_libraries(tmp_path: Path) -> None:
    """靠前的目录优先，找不到的库被忽略"""

    first = tmp_path / "first"
    second = tmp_path / "second"
    for dir in (first, second):
        dir.mkdir()
    (first / "libc.so.6").write_text("")
    (second / "libc.so.6").write_text("")
    (second / "libm.so.6").write_text("")
    result = ld_proxy.resolve_libraries(["libc.so.6", "libm.so.6", "libmissing.so"], [first, second])
    assert result == {"libc.so.6": first / "libc.so.6", "libm.so.6": second / "libm.so.6"}


@pytest.fixture
def library_layout(tmp_path: Path) -> tuple[linker_options, artifact_store]:
    """三个搜索目录，其中只有两个提供了依赖"""

    for name in ("libfoo", "libbar", "empty"):
        (tmp_path / name).mkdir()
    (tmp_path / "libfoo" / "libfoo.so.1").write_text("foo")
    (tmp_path / "libbar" / "libbar.so.1").write_text("bar")
    options = linker_options(library_paths=[str(tmp_path / "libfoo"), str(tmp_path / "empty")], rpaths=[str(tmp_path / "libbar")])
    return options, artifact_store(tmp_path / "store")


@pytest.mark.parametrize(
    "opt_level, count",
    [
        (library_path_opt_level.none, 3),
        (library_path_opt_level.filter, 2),
        (library_path_opt_level.resolve, 2),
        (library_path_opt_level.combine, 1),
    ],
)
def test_library_dirs(library_layout: tuple[linker_options, artifact_store], opt_level: library_path_opt_level, count: int) -> None:
    """优化等级越高，运行时的搜索目录越少，目录都位于仓库中"""

    options, store = library_layout
    options.opt_level = opt_level
    result = ld_proxy.library_dirs(options, ["libfoo.so.1", "libbar.so.1"], store)
    assert len(result) == count
    assert all(Path(dir).is_relative_to(store.artifacts_dir) for dir in result)
    # 搜索目录本身保持不变
    assert all(Path(dir).is_dir() for dir in options.library_paths)
    if opt_level == library_path_opt_level.combine:
        assert sorted(path.name for path in Path(result[0]).iterdir()) == ["libbar.so.1", "libfoo.so.1"]


def test_library_dirs_nothing_found(library_layout: tuple[linker_options, artifact_store]) -> None:
    options, store = library_layout
    assert ld_proxy.library_dirs(options, ["libmissing.so"], store) == []


def test_interpreter_for() -> None:
    assert ld_proxy.interpreter_for("/lib/ld-musl-x86_64.so.1") == ld_proxy.interpreter_kind.ld_musl
    assert ld_proxy.interpreter_for("/lib64/ld-linux-x86-64.so.2") == ld_proxy.interpreter_kind.ld_linux


def test_run_requires_linker() -> None:
    with pytest.raises(RuntimeError):
        ld_proxy.run(["-o", "hello"], {})


def test_run(tmp_path: Path) -> None:
    """返回链接器的退出码，没有生成可执行文件时不进行包装"""

    assert ld_proxy.run(["-o", str(tmp_path / "hello")], {ld_proxy.linker_command_env: "false"}) == 1
    assert ld_proxy.run(["-o", str(tmp_path / "hello")], {ld_proxy.linker_command_env: "true"}) == 0
    assert not (tmp_path / "hello").exists()


def test_run_relocatable(tmp_path: Path) -> None:
    """部分链接的输出不被包装"""

    linker = tmp_path / "ld"
    linker.write_text('#!/bin/sh\nwhile [ "$1" != "-o" ]; do shift; done\necho object > "$2"\n')
    linker.chmod(0o755)
    output = tmp_path / "out.o"
    assert ld_proxy.run(["-r", "-o", str(output), "a.o"], {ld_proxy.linker_command_env: str(linker)}) == 0
    assert output.read_text() == "object\n"


@pytest.mark.parametrize("argv", [["hello.o", "-rpath"], ["hello.o", "-o"], ["hello.o", "-L"], ["hello.o", "--bootchain-max-depth"]])
def test_parse_args_missing_value(argv: list[str]) -> None:
    """末尾缺少值的选项原样交给真正的链接器"""

    options = ld_proxy.parse_args(argv)
    assert options.linker_args == argv
    assert options.rpaths == []
    assert options.output == "a.out"
