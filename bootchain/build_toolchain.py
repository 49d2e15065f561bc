#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# PYTHON_ARGCOMPLETE_OK

import argparse
import sys
import typing
from pathlib import Path

import argcomplete

from . import common
from . import environment as env_mod
from .artifact import artifact, artifact_store
from .context import build_context
from .executor import local_executor
from .introspect import supported_targets, toolchain_components, toolchain_descriptor
from .ld_proxy import library_path_opt_level
from .orchestrator import build_sysroot, describe_toolchain, orchestrator, proxied_toolchain
from .triple import coerce, toolchain_type, triple

# 补全时提示的常用平台
common_triple_list = [
    "x86_64-linux-gnu",
    "x86_64-linux-musl",
    "i686-linux-gnu",
    "aarch64-linux-gnu",
    "aarch64-linux-musl",
    "arm-linux-gnueabi",
    "arm-linux-gnueabihf",
    "loongarch64-linux-gnu",
    "riscv64-linux-gnu",
    "mips64el-linux-gnuabi64",
    "powerpc64le-linux-gnu",
    "s390x-linux-gnu",
    "x86_64-apple-darwin",
    "aarch64-apple-darwin",
]


class triple_completer:
    """平台名称补全，输入中没有"-"时先补全架构"""

    triple_list: list[str]

    def __init__(self, triple_list: list[str]) -> None:
        self.triple_list = triple_list

    def __call__(self, prefix: str, **_: typing.Any) -> list[str]:
        if "-" not in prefix:
            return sorted({f"{item.split('-', 1)[0]}-" for item in self.triple_list if item.startswith(prefix)})
        return [item for item in self.triple_list if item.startswith(prefix)]


class configure(common.basic_build_configure):
    """工具链构建配置

    Attributes:
        store           : 制品仓库的根目录
        bootstrap       : 自举工具链的根目录列表，为空时使用当前PATH中的工具链
        linker_opt_level: 链接器代理的库搜索路径优化等级
        compress_level  : 导出时的zstd压缩等级
    """

    _origin_store: str
    store: Path
    _origin_bootstrap: list[str]
    bootstrap: list[Path]
    linker_opt_level: str
    compress_level: int

    def __init__(
        self,
        store: str = str(Path.home() / ".bootchain"),
        bootstrap: list[str] = [],
        linker_opt_level: str = library_path_opt_level.combine.value,
        compress_level: int = 17,
        base_path: Path = Path.cwd(),
    ) -> None:
        """设置工具链构建配置

        Args:
            store (str, optional): 制品仓库的根目录. 默认为~/.bootchain.
            bootstrap (list[str], optional): 自举工具链的根目录列表. 默认为空，即使用当前PATH中的工具链.
            linker_opt_level (str, optional): 链接器代理的库搜索路径优化等级. 默认为combine.
            compress_level (int, optional): 导出时的zstd压缩等级. 默认为17.
            base_path (Path, optional): 将相对路径转化为绝对路径时使用的基路径. 默认为当前工作目录.
        """

        super().__init__()
        self._origin_store = store
        self.register_encode_name_map("store", "_origin_store")
        self.store = common.resolve_path(store, base_path)
        self._origin_bootstrap = list(bootstrap)
        self.register_encode_name_map("bootstrap", "_origin_bootstrap")
        self.bootstrap = [common.resolve_path(item, base_path) for item in bootstrap]
        self.linker_opt_level = linker_opt_level
        self.compress_level = compress_level

    @classmethod
    def add_argument(cls, parser: argparse.ArgumentParser) -> None:
        """为argparse添加--store、--bootstrap、--linker-opt-level和--compress-level选项

        Args:
            parser (argparse.ArgumentParser): 命令行解析器
        """

        super().add_argument(parser)
        default_config = configure()
        action = parser.add_argument(
            "--store",
            type=str,
            help="The root dir of the artifact store. A relative path is resolved against the cwd.",
            default=str(default_config.store),
        )
        setattr(action, "completer", common.dir_completer)
        action = parser.add_argument(
            "--bootstrap",
            type=str,
            nargs="*",
            help="Root dirs of the bootstrap toolchain. The toolchain in PATH is used when omitted.",
            default=default_config.bootstrap,
        )
        setattr(action, "completer", common.dir_completer)
        parser.add_argument(
            "--linker-opt-level",
            dest="linker_opt_level",
            type=str,
            choices=[level.value for level in library_path_opt_level],
            help="How the linker proxy optimizes the library search path of wrapped executables.",
            default=default_config.linker_opt_level,
        )
        parser.add_argument(
            "--compress-level",
            dest="compress_level",
            type=int,
            help="The zstd compress level of the exported toolchain.",
            default=default_config.compress_level,
        )

    def check(self) -> None:
        """检查工具链构建配置是否合法"""

        super().check()
        assert 1 <= self.compress_level <= 22, common.bootchain_error(f"Invalid compress level: {self.compress_level}.")
        for item in self.bootstrap:
            assert item.is_dir(), common.bootchain_error(f'The bootstrap dir "{item}" does not exist.')

    def create_context(self) -> build_context:
        """根据配置创建构建环境"""

        assert self.build, common.bootchain_error("The build platform is unknown.")
        store = artifact_store(self.store)
        executor = local_executor(store, self.jobs)
        return build_context(
            triple.parse(self.build),
            store,
            executor,
            [env_mod.directory_layer(item) for item in self.bootstrap],
            self.prefix_dir,
        )


def dump_descriptor(descriptor: toolchain_descriptor) -> None:
    """打印工具链的组成"""

    print(common.color.note.wrapper(f"Toolchain {descriptor.host} -> {descriptor.target} ({descriptor.flavor}):"))
    for name in ("root_dir", "cc_path", "cxx_path", "ld_path", "fortran_path", "ldso_path"):
        print(f"\t{name}: {getattr(descriptor, name)}")


def bundle_toolchain(ctx: build_context, result: proxied_toolchain) -> artifact:
    """导出的目录：toolchain中为工具链，proxy中为代理目录，使用时将proxy/bin放在PATH的最前面"""

    if result.proxy is None:
        return result.toolchain
    return ctx.store.directory({"toolchain": result.toolchain, "proxy": result.proxy})


def build_specific_toolchain(config: configure, host: str, target: str) -> None:
    """构建并导出工具链

    Args:
        config (configure): 构建配置
        host (str): 宿主平台
        target (str): 目标平台
    """

    ctx = config.create_context()
    host_triple, target_triple = coerce(host), coerce(target)
    kind = toolchain_type.classify_toolchain(ctx.build, host_triple, target_triple)
    common.bootchain_print(common.bootchain_info(f"Build {kind} {host_triple} -> {target_triple}."))
    current = orchestrator(ctx, config.linker_opt_level)
    result = current.evaluate(current.toolchain(host_triple, target_triple))
    if result is None:
        return
    path = ctx.export(bundle_toolchain(ctx, result), f"{host_triple}-{target_triple}", config.compress_level)
    descriptor, _ = describe_toolchain(ctx, host_triple, target_triple, result)
    if descriptor is not None:
        dump_descriptor(descriptor)
    else:
        common.bootchain_print(common.bootchain_warning(f"The toolchain cannot run on {ctx.build}, exported without proxies."))
    common.bootchain_print(common.bootchain_success(f"Build toolchain successfully, exported to {path}."))


def build_specific_sysroot(config: configure, target: str) -> None:
    """构建并导出sysroot"""

    ctx = config.create_context()
    result = build_sysroot(ctx, coerce(target))
    if result is None:
        return
    path = ctx.export(result, f"sysroot-{target}", config.compress_level)
    common.bootchain_print(common.bootchain_success(f"Build sysroot successfully, exported to {path}."))


def introspect_toolchain(config: configure, target: str | None) -> None:
    """分析当前PATH中的工具链"""

    ctx = config.create_context()
    # 没有指定自举工具链时基础环境中的PATH即为当前PATH
    env = ctx.executor.resolve_env(ctx.bootstrap)
    descriptor = toolchain_components(ctx.executor, env, target=coerce(target) if target else None)
    dump_descriptor(descriptor)
    print(common.color.note.wrapper("Supported targets:"))
    for item in supported_targets(ctx.executor, env):
        print(f"\t{item}")
    # 没有执行任何构建，无需打印状态计数
    common.status_counter.set_quiet(True)


__all__ = [
    "common_triple_list",
    "triple_completer",
    "configure",
    "dump_descriptor",
    "bundle_toolchain",
    "build_specific_toolchain",
    "build_specific_sysroot",
    "introspect_toolchain",
    "main",
]


def main() -> int:
    default_config = configure()

    parser = argparse.ArgumentParser(
        description="Bootstrap GCC toolchains and wrap them with build proxies.", formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands.")
    build_parse = subparsers.add_parser("build", help="Build a toolchain running on host and targeting target.")
    sysroot_parse = subparsers.add_parser("sysroot", help="Build the sysroot of target.")
    introspect_parse = subparsers.add_parser("introspect", help="Describe the toolchain found in the bootstrap dirs or PATH.")

    for current_parse in (build_parse, sysroot_parse, introspect_parse):
        configure.add_argument(current_parse)
    action = build_parse.add_argument("--host", type=str, help="The host platform of the toolchain.", default=default_config.build)
    setattr(action, "completer", triple_completer(common_triple_list))
    for current_parse in (build_parse, sysroot_parse):
        action = current_parse.add_argument(
            "--target", type=str, help="The target platform of the toolchain.", default=default_config.build
        )
        setattr(action, "completer", triple_completer(common_triple_list))
    action = introspect_parse.add_argument("--target", type=str, help="The target platform to look for. Defaults to the host.")
    setattr(action, "completer", triple_completer(common_triple_list))

    argcomplete.autocomplete(parser)
    errno = 0
    try:
        args = parser.parse_args()
        current_config = configure.parse_args(args)

        # 检查合并配置后环境是否正确
        current_config.check()
        current_config.save_config()

        match (args.command):
            case "build":
                build_specific_toolchain(current_config, args.host, args.target)
            case "sysroot":
                build_specific_sysroot(current_config, args.target)
            case "introspect":
                introspect_toolchain(current_config, args.target)
            case _:
                pass
    except Exception as e:
        common.bootchain_print(e)
        errno = 1
    finally:
        common.status_counter.show_status()
    return errno


if __name__ == "__main__":
    sys.exit(main())
