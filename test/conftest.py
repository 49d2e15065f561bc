import typing
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import pytest

from bootchain.common import bootchain_quiet, command_dry_run, command_quiet, status_counter

# 模拟工具：遇到查询选项时回显平台、版本或资源目录，其他情况什么都不做
# 被包装后查询选项前会有额外参数，因此检查全部参数
tool_script = """#!/bin/sh
for arg; do
    case "$arg" in
    -dumpmachine) echo {machine}; exit 0 ;;
    -dumpfullversion) echo {version}; exit 0 ;;
    -print-resource-dir) echo {root}/lib/clang/18; exit 0 ;;
    esac
done
"""

gcc_tool_list = ("gcc", "g++", "cc", "c++", "ld", "ar", "as", "nm", "objdump", "ranlib", "strip")


@pytest.fixture(autouse=True)
def reset_global_settings() -> Generator[None, None, None]:
    """每个测试结束后恢复全局设置"""

    yield
    command_dry_run.set(False)
    command_quiet.set(False)
    bootchain_quiet.set(False)
    status_counter.set_quiet(False)


@pytest.fixture
def fake_toolchain() -> Callable[..., Path]:
    """在指定目录下生成由sh脚本模拟的工具链，返回其bin目录"""

    def create(
        root: Path,
        machine: str = "x86_64-linux-gnu",
        prefix: str = "",
        tools: Sequence[str] = gcc_tool_list,
        version: str = "14.2.0",
    ) -> Path:
        bin_dir = root / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        for tool in tools:
            path = bin_dir / f"{prefix}{tool}"
            path.write_text(tool_script.format(machine=machine, version=version, root=root))
            path.chmod(0o755)
        return bin_dir

    return typing.cast(Callable[..., Path], create)
