from pathlib import Path

from . import common
from . import environment as env_mod
from .artifact import artifact
from .context import build_context, sdk_env
from .executor import step
from .triple import triple

# 所有binutils构建共用的配置选项
common_option = (
    "--disable-dependency-tracking",
    "--disable-nls",
    "--disable-werror",
    "--enable-deterministic-archives",
    "--enable-gprofng=no",
)
# 构建完成后必须存在的工具
tool_list = ("ar", "as", "ld", "nm", "objcopy", "objdump", "ranlib", "strip")
# 静态构建时附加到编译和链接选项上的参数
static_flag_list = ("CFLAGS", "CXXFLAGS", "LDFLAGS")


def tool_prefix(host: triple, target: triple) -> str:
    """host与target不同时工具带有target前缀"""

    return "" if host.equals(target) else f"{target}-"


def configure_options(build: triple, host: triple, target: triple, static: bool = False) -> list[str]:
    """binutils的configure选项

    Args:
        build (triple): build平台
        host (triple): binutils运行的平台
        target (triple): binutils处理的目标平台
        static (bool, optional): 是否静态链接. 默认为否.

    Returns:
        list[str]: configure选项
    """

    options = ['--prefix="$OUTPUT"', *common_option, '--with-sysroot="$OUTPUT"']
    options += [f"--build={build}", f"--host={host}", f"--target={target}"]
    if static:
        options.append("--disable-shared")
    return options


def expected_tools(host: triple, target: triple) -> list[str]:
    prefix = tool_prefix(host, target)
    return [f"{prefix}{tool}" for tool in tool_list]


def check_tools(root: Path, host: triple, target: triple) -> None:
    """检查安装后的bin目录中是否有全部工具

    Raises:
        incomplete_toolchain_error: 缺少工具
    """

    missing = [tool for tool in expected_tools(host, target) if not (root / "bin" / tool).exists()]
    if missing:
        raise common.incomplete_toolchain_error(f"Binutils for {host} -> {target} is missing: {', '.join(missing)}.")


def build(ctx: build_context, host: triple, target: triple, sdk: step, static: bool = False) -> step:
    """构建binutils

    Args:
        ctx (build_context): 构建环境
        host (triple): binutils运行的平台
        target (triple): binutils处理的目标平台
        sdk (step): 能为host编译代码的工具链
        static (bool, optional): 是否静态链接. 默认为否.

    Returns:
        step: 构建binutils的步骤，输出为安装目录
    """

    name = f"binutils {host} -> {target}" + (" static" if static else "")
    options = " ".join(configure_options(ctx.build, host, target, static))
    script = "\n".join(
        (
            f'"$SOURCE/configure" {options}',
            'make MAKEINFO=true -j"$JOBS"',
            "make MAKEINFO=true install",
        )
    )
    context = {"triple": target, "host": host, "stage": "binutils"}

    def action(sdk_layers: sdk_env, source: artifact) -> artifact:
        env = list(sdk_layers)
        if static:
            env.append({flag: env_mod.append("-static") for flag in static_flag_list})
        env.append({"MAKEINFO": "true"})
        result = ctx.executor.run(name, script, env, {"SOURCE": source}, context)
        if not common.need_dry_run(None):
            check_tools(result.path, host, target)
        return result

    return step(name, action, sdk, ctx.source("binutils"), context=context)


__all__ = ["common_option", "tool_list", "tool_prefix", "configure_options", "expected_tools", "check_tools", "build"]

assert __name__ != "__main__", "Import this file instead of running it directly."
