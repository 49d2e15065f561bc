import argparse
import json
import sys
import typing
from pathlib import Path

import pytest

from bootchain import build_toolchain
from bootchain import environment as env_mod
from bootchain.build_toolchain import common_triple_list, configure, triple_completer
from bootchain.common import command_dry_run
from bootchain.orchestrator import proxied_toolchain
from bootchain.triple import triple


def test_default_construct() -> None:
    """测试configure是否可以正常默认构造"""

    config = configure()
    assert config.store == (Path.home() / ".bootchain").resolve()
    assert config.bootstrap == []
    assert config.compress_level == 17
    assert config.linker_opt_level == "combine"


def test_triple_completer() -> None:
    """没有输入"-"时补全架构，否则补全完整的平台名称"""

    completer = triple_completer(common_triple_list)
    assert completer("aa") == ["aarch64-"]
    assert completer("x") == ["x86_64-"]
    assert "s390x-" in completer("")
    assert completer("aarch64-linux") == ["aarch64-linux-gnu", "aarch64-linux-musl"]
    assert completer("sparc-") == []


class test_configure:
    parser: argparse.ArgumentParser
    default_config: configure

    @classmethod
    def setup_class(cls) -> None:
        cls.default_config = configure()
        cls.parser = argparse.ArgumentParser()
        subparsers = cls.parser.add_subparsers(dest="command")
        for command in ("build", "sysroot"):
            configure.add_argument(subparsers.add_parser(command))

    def test_common_args(self) -> None:
        """测试公共选项是否添加到每个子命令中"""

        subparsers = self.parser._subparsers
        assert subparsers
        subparser_actions = subparsers._group_actions[0].choices
        assert subparser_actions
        for _, subparser in subparser_actions.items():  # type: ignore
            subparser = typing.cast(argparse.ArgumentParser, subparser)
            arg_list = {action.dest for action in subparser._actions}
            assert {"home", "import_file", "export_file", "dry_run", "build", "jobs", "prefix_dir"} < arg_list
            assert {"store", "bootstrap", "linker_opt_level", "compress_level"} < arg_list

    @pytest.mark.parametrize("command", ["build", "sysroot"])
    def test_default_config(self, command: str) -> None:
        """不传递参数时解析得到的配置与默认配置一致"""

        current_config = configure.parse_args(self.parser.parse_args([command]))
        assert current_config.store == self.default_config.store
        assert current_config.bootstrap == self.default_config.bootstrap
        assert current_config.compress_level == self.default_config.compress_level
        assert current_config.linker_opt_level == self.default_config.linker_opt_level
        assert current_config.home == self.default_config.home

    def test_relative_store(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """相对路径基于当前工作目录，编码时保留原始输入"""

        monkeypatch.chdir(tmp_path)
        args = self.parser.parse_args(["build", "--store", "cache", "--bootstrap", "gcc", "/opt/llvm", "--linker-opt-level", "filter"])
        # 默认参数在导入时已经确定，这里显式传入新的工作目录
        current_config = configure.decode({**vars(args), "base_path": Path.cwd()})
        assert current_config.store == (tmp_path / "cache").resolve()
        assert current_config.bootstrap == [(tmp_path / "gcc").resolve(), Path("/opt/llvm").resolve()]
        assert current_config.linker_opt_level == "filter"
        encoded = current_config.encode()
        assert encoded["store"] == "cache"
        assert encoded["bootstrap"] == ["gcc", "/opt/llvm"]

    def test_import(self, tmp_path: Path) -> None:
        """配置文件中的相对路径基于配置文件所在目录，命令行选项优先"""

        tmpfile = tmp_path / "bootchain.json"
        tmpfile.write_text(json.dumps({"store": "store", "bootstrap": ["boot"], "compress_level": 5}))
        args = self.parser.parse_args(["build", "--import", str(tmpfile), "--compress-level", "9"])
        current_config = configure.parse_args(args)
        assert current_config.store == (tmp_path / "store").resolve()
        assert current_config.bootstrap == [(tmp_path / "boot").resolve()]
        assert current_config.compress_level == 9

        args = self.parser.parse_args(["sysroot", "--import", str(tmpfile)])
        assert configure.parse_args(args).compress_level == 5

    def test_export(self, tmp_path: Path) -> None:
        """导出配置时保存原始的相对路径"""

        tmpfile = tmp_path / "bootchain.json"
        args = self.parser.parse_args(
            ["build", "--store", "cache", "--home", ".", "--compress-level", "3", "--export", str(tmpfile)]
        )
        current_config = configure.parse_args(args)
        current_config.save_config()
        export_config = json.loads(tmpfile.read_text())
        assert export_config["store"] == "cache"
        assert export_config["home"] == "."
        assert export_config["compress_level"] == 3
        assert export_config["bootstrap"] == []
        assert export_config["linker_opt_level"] == "combine"
        assert "base_path" not in export_config

    def test_dry_run(self) -> None:
        """测试全局的dry_run状态是否正常设置"""

        configure.parse_args(self.parser.parse_args(["build", "--dry-run"]))
        assert command_dry_run.get() == True
        configure.parse_args(self.parser.parse_args(["build", "--no-dry-run"]))
        assert command_dry_run.get() == False

    def test_import_noexist_file(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            configure.parse_args(self.parser.parse_args(["build", "--import", str(tmp_path / "bootchain.json")]))

    def test_export_unwritable_file(self) -> None:
        with pytest.raises(RuntimeError):
            configure.parse_args(self.parser.parse_args(["build", "--export", "/dev/full"])).save_config()


def test_check(tmp_path: Path) -> None:
    """压缩等级超出范围或自举工具链目录不存在时检查失败"""

    config = configure(bootstrap=[str(tmp_path)])
    config.build = "x86_64-linux-gnu"
    config.check()
    config.compress_level = 0
    with pytest.raises(AssertionError):
        config.check()
    config = configure(bootstrap=[str(tmp_path / "missing")])
    config.build = "x86_64-linux-gnu"
    with pytest.raises(AssertionError):
        config.check()


def test_create_context(tmp_path: Path) -> None:
    """自举工具链目录转换为环境层"""

    (tmp_path / "boot" / "bin").mkdir(parents=True)
    config = configure(store=str(tmp_path / "store"), bootstrap=[str(tmp_path / "boot")])
    config.build = "x86_64-linux-gnu"
    config.jobs = 3
    ctx = config.create_context()
    assert ctx.build == triple.parse("x86_64-linux-gnu")
    assert ctx.jobs == 3
    assert ctx.store.root == (tmp_path / "store").resolve()
    assert ctx.bootstrap == [{"PATH": env_mod.prefix((tmp_path / "boot").resolve() / "bin")}]


def run_main(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, *argv: str) -> int:
    common_args = ["--build", "x86_64-linux-gnu", "--store", str(tmp_path / "store"), "--home", str(tmp_path)]
    monkeypatch.setattr(sys, "argv", ["bootchain", *argv, *common_args])
    return build_toolchain.main()


def test_main_malformed_host(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """无法解析的平台名称使命令失败"""

    assert run_main(monkeypatch, tmp_path, "build", "--host", "sparc-linux-gnu", "--target", "x86_64-linux-gnu") == 1


def test_main_dry_run_sysroot(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """dry run只打印计划"""

    assert run_main(monkeypatch, tmp_path, "sysroot", "--target", "aarch64-linux-gnu", "--dry-run") == 0
    assert not any((tmp_path / "store" / "artifacts").iterdir())


def test_bundle_toolchain(tmp_path: Path) -> None:
    """导出目录同时包含工具链和代理，没有代理时只导出工具链"""

    config = configure(store=str(tmp_path / "store"))
    config.build = "x86_64-linux-gnu"
    ctx = config.create_context()
    toolchain = ctx.store.directory({"bin/gcc": ""})
    proxy_dir = ctx.store.directory({"bin/gcc": "wrapper", "ld-proxy/ld": "wrapper"})
    bundle = build_toolchain.bundle_toolchain(ctx, proxied_toolchain(toolchain, proxy_dir))
    assert (bundle.path / "toolchain" / "bin" / "gcc").read_text() == ""
    assert (bundle.path / "proxy" / "bin" / "gcc").read_text() == "wrapper"
    assert (bundle.path / "proxy" / "ld-proxy" / "ld").exists()
    assert build_toolchain.bundle_toolchain(ctx, proxied_toolchain(toolchain, None)) == toolchain
