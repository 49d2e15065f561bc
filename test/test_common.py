import argparse
from pathlib import Path

import pytest

from bootchain.common import (
    basic_configure,
    bootchain_error,
    bootchain_exception,
    bootchain_quiet,
    build_step_failure,
    chdir_guard,
    command_dry_run,
    command_quiet,
    copy,
    need_dry_run,
    remove_if_exists,
    resolve_path,
    run_command,
    status_counter,
    symlink,
)


def test_need_dry_run() -> None:
    """测试need_dry_run是否能正确判断"""

    # 全局不进行的dry run
    command_dry_run.set(False)
    assert need_dry_run(None) == False
    assert need_dry_run(False) == False
    assert need_dry_run(True) == True

    # 全局进行dry run
    command_dry_run.set(True)
    assert need_dry_run(None) == True
    assert need_dry_run(False) == False
    assert need_dry_run(True) == True


def test_need_quiet() -> None:
    """测试安静选项是否正确判断"""

    parser = argparse.ArgumentParser()
    basic_configure.add_argument(parser)

    args = parser.parse_args([])
    basic_configure.parse_args(args)
    assert not command_quiet.get() and not bootchain_quiet.get() and not status_counter.get_quiet()
    assert command_quiet.get_option() == ""

    args = parser.parse_args(["-q"])
    basic_configure.parse_args(args)
    assert command_quiet.get() and not bootchain_quiet.get() and not status_counter.get_quiet()
    assert command_quiet.get_option() == "--quiet"

    args = parser.parse_args(["-qq"])
    basic_configure.parse_args(args)
    assert command_quiet.get() and bootchain_quiet.get() and not status_counter.get_quiet()

    args = parser.parse_args(["-qqq"])
    basic_configure.parse_args(args)
    assert command_quiet.get() and bootchain_quiet.get() and status_counter.get_quiet()


def test_status_counter() -> None:
    """测试状态计数器"""

    status_counter.clear()
    for name in ("error", "warning", "note", "info", "success"):
        status_counter.add(name)
        assert status_counter.get_counter(name) == 1
    bootchain_error("test")
    assert status_counter.get_counter("error") == 2


def test_build_step_failure() -> None:
    """构建失败的信息包含步骤名、上下文和错误输出"""

    status_counter.clear()
    error = build_step_failure("gcc stage1", {"triple": "aarch64-linux-gnu"}, "configure: error")
    assert isinstance(error, bootchain_exception)
    assert error.step == "gcc stage1"
    assert "aarch64-linux-gnu" in error.message
    assert "configure: error" in error.message
    assert status_counter.get_counter("error") == 1


def test_chdir_guard(tmp_path: Path) -> None:
    """测试chdir_guard"""

    cwd = Path.cwd()
    path = tmp_path.resolve()
    with chdir_guard(path):
        assert Path.cwd() == path
    assert Path.cwd() == cwd
    with chdir_guard(path, True):
        assert Path.cwd() == cwd
    assert Path.cwd() == cwd


def test_copy_merge(tmp_path: Path) -> None:
    """复制目录时与已存在的目录合并，同名文件以源为准，软链接保持不变"""

    src = tmp_path / "src"
    dst = tmp_path / "dst"
    (src / "lib").mkdir(parents=True)
    (dst / "lib").mkdir(parents=True)
    (src / "lib" / "libfoo.so.1").write_text("new")
    (src / "lib" / "libfoo.so").symlink_to("libfoo.so.1")
    (dst / "lib" / "libfoo.so.1").write_text("old")
    (dst / "lib" / "libbar.so").write_text("bar")
    copy(src, dst)
    assert (dst / "lib" / "libfoo.so.1").read_text() == "new"
    assert (dst / "lib" / "libbar.so").read_text() == "bar"
    assert (dst / "lib" / "libfoo.so").is_symlink()


def test_copy_dry_run(tmp_path: Path) -> None:
    """dry run时不复制"""

    (tmp_path / "src").write_text("")
    copy(tmp_path / "src", tmp_path / "dst", dry_run=True)
    assert not (tmp_path / "dst").exists()


def test_symlink_and_remove(tmp_path: Path) -> None:
    """覆盖已存在的软链接，删除后不再存在"""

    (tmp_path / "a").write_text("a")
    (tmp_path / "b").write_text("b")
    link = tmp_path / "link"
    symlink(Path("a"), link)
    symlink(Path("b"), link)
    assert link.read_text() == "b"
    symlink(Path("a"), link, overwrite=False)
    assert link.read_text() == "b"
    assert remove_if_exists(link)
    assert not remove_if_exists(link)
    assert (tmp_path / "b").exists()


def test_run_command() -> None:
    """捕获输出，失败时抛出RuntimeError，忽略错误时返回None"""

    result = run_command(["echo", "hello"], capture=True, echo=False)
    assert result is not None and result.stdout == "hello\n"
    with pytest.raises(RuntimeError):
        run_command("exit 3", echo=False)
    assert run_command("exit 3", ignore_error=True, echo=False) is None
    assert run_command(["echo", "hello"], dry_run=True) is None


def test_run_command_env(tmp_path: Path) -> None:
    result = run_command("echo $GREETING; pwd", capture=True, echo=False, env={"GREETING": "hi"}, cwd=tmp_path)
    assert result is not None
    assert result.stdout.splitlines() == ["hi", str(tmp_path.resolve())]


def test_resolve_path(tmp_path: Path) -> None:
    assert resolve_path("store", tmp_path) == (tmp_path / "store").resolve()
    assert resolve_path(tmp_path / "store", Path("/unused")) == (tmp_path / "store").resolve()
    assert resolve_path("~", tmp_path) == Path.home().resolve()
