import re
from pathlib import Path

import packaging.version as version

from . import common
from . import environment as env_mod
from .artifact import artifact
from .context import build_context, sdk_env
from .executor import step
from .fetch import source_version
from .triple import libc_type, triple

elf_magic = b"\x7fELF"

# 可能是链接脚本的C库文件
linker_script_list = ("libc.so", "libm.so")

_group_path = re.compile(r"(?<![^\s(])(/[^\s()]+)")


def kernel_headers(ctx: build_context, target: triple, sdk: step) -> step:
    """构建linux内核头文件，只保留usr/include中的.h文件

    Args:
        ctx (build_context): 构建环境
        target (triple): 目标平台
        sdk (step): 运行make所需的工具链

    Raises:
        stage_contract_violation_error: build平台不是linux

    Returns:
        step: 输出include/和config/kernel.release的步骤
    """

    if not ctx.build.is_linux:
        raise common.stage_contract_violation_error(f"Kernel headers for {target} must be built on a Linux build machine, got {ctx.build}.")
    release = f"{source_version.linux}-default"
    script = "\n".join(
        (
            f'make -C "$SOURCE" O="$PWD" ARCH={target.kernel_arch} -j"$JOBS" headers',
            "find usr/include -type f ! -name '*.h' -delete",
            'mkdir -p "$OUTPUT/include" "$OUTPUT/config"',
            'cp -R usr/include/. "$OUTPUT/include/"',
            f'echo {release} > "$OUTPUT/config/kernel.release"',
        )
    )

    def action(env: sdk_env, source: artifact) -> artifact:
        return ctx.executor.run(
            f"linux headers {target}",
            script,
            env,
            {"SOURCE": source},
            {"triple": target, "stage": "kernel_headers"},
        )

    return step(f"linux headers {target}", action, sdk, ctx.source("linux"), context={"triple": target})


def glibc_options(build: triple, host: triple, headers: Path, glibc_version: str) -> list[str]:
    """glibc的configure选项

    Args:
        build (triple): build平台
        host (triple): glibc运行的平台
        headers (Path): 内核头文件目录
        glibc_version (str): glibc版本

    Returns:
        list[str]: configure选项
    """

    options = [
        "--prefix=",
        "--disable-nls",
        "--disable-werror",
        "--enable-kernel=4.14",
        f"--with-headers={headers / 'include'}",
        f"--build={build}",
        f"--host={host}",
        "libc_cv_slibdir=/lib",
        "libc_cv_forced_unwind=yes",
    ]
    current = version.Version(glibc_version)
    if current == version.Version("2.38"):
        options.append("--enable-crypt")
    if current >= version.Version("2.38"):
        options.append("--enable-fortify-source")
    return options


def musl_options(build: triple, host: triple) -> list[str]:
    """musl的configure选项，交叉编译时指定交叉编译器"""

    options = ["--prefix=", "--enable-debug", "--enable-optimize=*", f"--build={build}", f"--host={host}"]
    if not build.equals(host):
        options += [f"CROSS_COMPILE={host}-", f"CC={host}-gcc", "--disable-gcc-wrapper"]
    return options


def _compiler_prefix(build: triple, host: triple) -> str:
    return "" if build.equals(host) else f"{host}-"


def build_libc(ctx: build_context, host: triple, sdk: step, headers: step) -> step:
    """根据平台的libc家族构建glibc或musl，安装到以平台命名的子目录中

    Args:
        ctx (build_context): 构建环境
        host (triple): C库运行的平台
        sdk (step): 能为host编译代码的工具链
        headers (step): 内核头文件

    Raises:
        unsupported_environment_error: libc家族既不是glibc也不是musl

    Returns:
        step: 构建C库的步骤
    """

    family = host.libc_family
    build = ctx.build
    prefix = _compiler_prefix(build, host)
    context = {"triple": host, "stage": family}
    match (family):
        case libc_type.glibc:
            glibc_version = host.libc_version
            source = ctx.source("glibc", glibc_version)
            env: env_mod.layer = {
                "CC": f"{prefix}cc",
                "CXX": f"{prefix}c++",
                "CPATH": None,
                "LIBRARY_PATH": None,
                "BOOTCHAIN_LINKER_PASSTHROUGH": True,
            }

            def glibc_action(sdk_layers: sdk_env, header_dir: artifact, source_dir: artifact) -> artifact:
                options = " ".join(glibc_options(build, host, header_dir.path, glibc_version))
                script = "\n".join(
                    (
                        f'"$SOURCE/configure" {options}',
                        'make -j"$JOBS"',
                        f'make DESTDIR="$OUTPUT/{host}" install',
                    )
                )
                return ctx.executor.run(f"glibc-{glibc_version} {host}", script, [*sdk_layers, env], {"SOURCE": source_dir}, context)

            return step(f"glibc {host}", glibc_action, sdk, headers, source, context=context)
        case libc_type.musl:
            source = ctx.source("musl")
            ldso = host.interpreter_name

            def musl_action(sdk_layers: sdk_env, source_dir: artifact) -> artifact:
                options = " ".join(musl_options(build, host))
                script = "\n".join(
                    (
                        f'"$SOURCE/configure" {options}',
                        'make -j"$JOBS"',
                        f'make DESTDIR="$OUTPUT/{host}" install',
                        f'ln -sf libc.so "$OUTPUT/{host}/lib/{ldso}"',
                    )
                )
                return ctx.executor.run(
                    f"musl-{source_version.musl} {host}",
                    script,
                    [*sdk_layers, {"CPATH": None, "LIBRARY_PATH": None}],
                    {"SOURCE": source_dir},
                    context,
                )

            return step(f"musl {host}", musl_action, sdk, source, context=context)


def is_elf(path: Path) -> bool:
    """根据魔数判断文件是否为ELF文件"""

    with path.open("rb") as file:
        return file.read(len(elf_magic)) == elf_magic


def fix_linker_script(path: Path) -> bool:
    """为链接脚本GROUP中的绝对路径添加=前缀，使ld --sysroot能够替换这些路径

    ELF文件保持不变；没有GROUP行时不做修改；已有=前缀的路径不会重复添加。

    Args:
        path (Path): libc.so或libm.so

    Returns:
        bool: 文件是否被修改
    """

    if path.is_symlink() or not path.is_file() or is_elf(path):
        return False
    text = path.read_text()
    lines = text.splitlines(keepends=True)
    fixed = [_group_path.sub(r"=\1", line) if line.lstrip().startswith("GROUP") else line for line in lines]
    result = "".join(fixed)
    if result == text:
        return False
    path.write_text(result)
    return True


def fix_linker_scripts(root: Path, host: triple) -> list[Path]:
    """修复sysroot中host子目录下的所有链接脚本

    Returns:
        list[Path]: 被修改的文件
    """

    result: list[Path] = []
    for lib_dir in ("lib", "lib64", "usr/lib"):
        for name in linker_script_list:
            path = root / str(host) / lib_dir / name
            if path.exists() and fix_linker_script(path):
                common.bootchain_print(common.bootchain_info(f"Fix linker script {path}."))
                result.append(path)
    return result


def construct_sysroot(ctx: build_context, host: triple, libc: step, headers: step) -> step:
    """将C库与内核头文件合并为sysroot，并在新制品上应用链接脚本修复

    Returns:
        step: 输出sysroot的步骤，sysroot中只有一个以平台命名的子目录
    """

    def fix(root: Path) -> None:
        fix_linker_scripts(root, host)

    def action(libc_dir: artifact, header_dir: artifact) -> artifact:
        headers_only = ctx.store.directory({str(host): {"include": header_dir / "include"}})
        merged = ctx.store.merge(libc_dir, headers_only)
        return ctx.executor.transform(f"sysroot fix {host}", merged, fix, context={"triple": host})

    return step(f"sysroot {host}", action, libc, headers, context={"triple": host})


def headers_sysroot(ctx: build_context, target: triple, headers: step) -> step:
    """只含内核头文件的sysroot，供stage1_bootstrap编译器使用"""

    def action(header_dir: artifact) -> artifact:
        return ctx.store.directory({str(target): {"include": header_dir / "include"}})

    return step(f"headers sysroot {target}", action, headers, context={"triple": target})


def build_sysroot(ctx: build_context, target: triple, sdk: step, headers: step | None = None) -> step:
    """构建target平台的sysroot：内核头文件 -> C库 -> 合并并修复链接脚本

    Args:
        ctx (build_context): 构建环境
        target (triple): 目标平台
        sdk (step): 能为target编译C代码的工具链，通常是stage1_bootstrap编译器
        headers (step | None, optional): 预先构建的内核头文件. 默认重新构建.

    Returns:
        step: 输出sysroot的步骤
    """

    headers = headers or kernel_headers(ctx, target, sdk)
    libc = build_libc(ctx, target, sdk, headers)
    return construct_sysroot(ctx, target, libc, headers)


__all__ = [
    "elf_magic",
    "linker_script_list",
    "kernel_headers",
    "glibc_options",
    "musl_options",
    "build_libc",
    "is_elf",
    "fix_linker_script",
    "fix_linker_scripts",
    "construct_sysroot",
    "headers_sysroot",
    "build_sysroot",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
