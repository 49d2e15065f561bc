import enum
from pathlib import Path

from . import common
from .artifact import artifact
from .context import build_context, sdk_env
from .executor import step
from .fetch import source_version
from .triple import default_glibc_version, libc_type, triple


class build_variant(enum.StrEnum):
    """gcc的构建阶段

    Attributes:
        stage1_bootstrap: 只有C和C++编译器，不构建任何运行时库，用于构建C库
        stage1_limited  : 构建交叉编译器，只启用C和C++，禁用大部分运行时库
        stage2_full     : 启用全部特性
    """

    stage1_bootstrap = "stage1_bootstrap"
    stage1_limited = "stage1_limited"
    stage2_full = "stage2_full"


# 所有gcc构建共用的配置选项
common_option = (
    "--disable-bootstrap",
    "--disable-dependency-tracking",
    "--disable-nls",
    "--disable-multilib",
    "--enable-host-bind-now",
    "--enable-host-pie",
    "--with-native-system-header-dir=/include",
)
# 自举编译器需禁用的特性列表
stage1_bootstrap_option = (
    "--disable-libatomic",
    "--disable-libgomp",
    "--disable-libquadmath",
    "--disable-libsanitizer",
    "--disable-libssp",
    "--disable-libstdcxx",
    "--disable-libvtv",
    "--disable-shared",
    "--disable-threads",
    "--disable-werror",
    "--enable-languages=c,c++",
    "--with-newlib",
    "--without-headers",
)
stage1_limited_option = (
    "--disable-libatomic",
    "--disable-libgomp",
    "--disable-libssp",
    "--disable-libvtv",
    "--enable-default-pie",
    "--enable-default-ssp",
    "--enable-initfini-array",
)
stage2_full_option = (
    "--enable-default-ssp",
    "--enable-default-pie",
    "--enable-initfini-array",
)
# 需要捆绑到gcc源码中一起构建的依赖
bundled_lib_list = ("gmp", "mpfr", "mpc", "isl")


def is_cross(host: triple, target: triple) -> bool:
    return not host.equals(target)


def target_prefix(host: triple, target: triple) -> str:
    """交叉编译器的工具带有target前缀"""

    return f"{target}-" if is_cross(host, target) else ""


def sysroot_dir(host: triple, target: triple) -> str:
    """sysroot在安装目录中的位置，该位置是指向所在目录的软链接"""

    return f"/{target}/sysroot" if is_cross(host, target) else "/sysroot"


def check_contract(variant: build_variant, host: triple, target: triple, has_sysroot: bool, cross_native: bool = False) -> None:
    """检查构建阶段与平台配置是否匹配

    Raises:
        stage_contract_violation_error: 配置不匹配
    """

    if variant == build_variant.stage1_limited and not is_cross(host, target):
        raise common.stage_contract_violation_error(f"{variant} is only used to build cross compilers, but host {host} equals target.")
    if variant != build_variant.stage1_bootstrap and not has_sysroot:
        raise common.stage_contract_violation_error(f"{variant} requires a sysroot for {target}.")
    if cross_native and is_cross(host, target):
        raise common.stage_contract_violation_error(f"cross_native requires host {host} to equal target {target}.")


def configure_options(variant: build_variant, build: triple, host: triple, target: triple, cross_native: bool = False) -> list[str]:
    """gcc的configure选项

    选项中的$OUTPUT和$PWD在构建脚本中展开

    Args:
        variant (build_variant): 构建阶段
        build (triple): build平台
        host (triple): 编译器运行的平台
        target (triple): 编译器的目标平台
        cross_native (bool, optional): 是否需要在代理链接器之前让刚构建的编译器完成目标库的构建. 默认为否.

    Returns:
        list[str]: configure选项
    """

    prefix_sysroot = f"$OUTPUT{sysroot_dir(host, target)}"
    options = [
        '--prefix="$OUTPUT"',
        *common_option,
        f"--build={build}",
        f"--host={host}",
        f"--target={target}",
        f'--with-sysroot="{prefix_sysroot}"',
    ]
    match (variant):
        case build_variant.stage1_bootstrap:
            options += stage1_bootstrap_option
            if host.is_linux and host.libc_family == libc_type.glibc:
                options.append(f"--with-glibc-version={default_glibc_version}")
        case build_variant.stage1_limited:
            options += stage1_limited_option
            options += [
                f'"LDFLAGS_FOR_TARGET=-L$PWD/{target}/libgcc"',
                f'--with-gxx-include-dir="$OUTPUT/{target}/include/c++/{source_version.gcc}"',
            ]
        case build_variant.stage2_full:
            options += stage2_full_option

    # musl不支持libsanitizer，自举编译器已经禁用了该库
    if target.is_linux and target.libc_family == libc_type.musl and variant != build_variant.stage1_bootstrap:
        options.append("--disable-libsanitizer")
    if host.is_linux and host.libc_family == libc_type.glibc:
        options.append("--enable-__cxa_atexit")
    if cross_native:
        options.append(f'"LDFLAGS_FOR_TARGET=-Wl,-dynamic-linker,{prefix_sysroot}/lib/{target.interpreter_name}"')
    return options


def build_script(variant: build_variant, build: triple, host: triple, target: triple, has_sysroot: bool, cross_native: bool = False) -> str:
    """生成构建gcc的脚本

    配置前将sysroot(交叉编译时为整个目录，否则为target子目录)和binutils复制到安装目录，
    并在安装目录中创建指向自身的sysroot软链接，使工具链可以整体移动。
    """

    lines = ['mkdir -p "$OUTPUT"']
    if has_sysroot:
        sysroot_source = '"$SYSROOT"/.' if is_cross(host, target) else f'"$SYSROOT/{target}"/.'
        lines.append(f'cp -R {sysroot_source} "$OUTPUT/"')
    lines += [
        'cp -R "$BINUTILS"/. "$OUTPUT/"',
        'chmod -R u+w "$OUTPUT"',
    ]
    if is_cross(host, target):
        lines.append(f'mkdir -p "$OUTPUT/{target}"')
    lines.append(f'ln -s . "$OUTPUT{sysroot_dir(host, target)}"')
    if cross_native:
        lines.append(f'export LD_LIBRARY_PATH="$OUTPUT{sysroot_dir(host, target)}/lib"')
    options = " ".join(configure_options(variant, build, host, target, cross_native))
    lines += [
        f'"$SOURCE/configure" {options}',
        'make -j"$JOBS"',
        "make install",
    ]
    return "\n".join(lines)


def merge_lib_dirs(root: Path) -> None:
    """递归地将lib64合并到相邻的lib中，并将lib64替换为指向lib的软链接

    没有相邻的lib时保持lib64不变
    """

    for child in sorted(root.iterdir()):
        if child.is_symlink() or not child.is_dir():
            continue
        if child.name != "lib64":
            merge_lib_dirs(child)
            continue
        lib_dir = root / "lib"
        if lib_dir.is_symlink() or not lib_dir.is_dir():
            continue
        common.copy(child, lib_dir, dry_run=False)
        common.remove(child, dry_run=False)
        common.symlink(Path("lib"), child, dry_run=False)
        merge_lib_dirs(lib_dir)


def add_cc_symlinks(root: Path, host: triple, target: triple) -> None:
    """添加cc到gcc的软链接，本地编译器额外添加带host前缀的链接"""

    prefix = target_prefix(host, target)
    common.symlink(Path(f"{prefix}gcc"), root / "bin" / f"{prefix}cc", dry_run=False)
    if not is_cross(host, target):
        common.symlink(Path(f"{host}-gcc"), root / "bin" / f"{host}-cc", dry_run=False)


def post_install(root: Path, host: triple, target: triple) -> None:
    merge_lib_dirs(root)
    add_cc_symlinks(root, host, target)


def bundled_source(ctx: build_context) -> step:
    """将gmp、mpfr、mpc和isl的源码放入gcc源码目录，与gcc一起构建"""

    def action(gcc: artifact, *libs: artifact) -> artifact:
        return ctx.store.merge(gcc, ctx.store.directory(dict(zip(bundled_lib_list, libs))))

    return step(
        f"gcc-{source_version.gcc} bundled source",
        action,
        ctx.source("gcc"),
        *(ctx.source(lib) for lib in bundled_lib_list),
    )


def build(
    ctx: build_context,
    variant: build_variant,
    host: triple,
    target: triple,
    sdk: step,
    binutils: step,
    sysroot: step | None = None,
    cross_native: bool = False,
    source: step | None = None,
) -> step:
    """构建gcc

    Args:
        ctx (build_context): 构建环境
        variant (build_variant): 构建阶段
        host (triple): 编译器运行的平台
        target (triple): 编译器的目标平台
        sdk (step): 能为host编译代码的工具链
        binutils (step): target平台的binutils，会被复制到安装目录中
        sysroot (step | None, optional): 只含一个以target命名的子目录的sysroot. stage1_bootstrap以外必须提供.
        cross_native (bool, optional): 见configure_options. 只能用于本地编译器.
        source (step | None, optional): gcc源码. 默认为捆绑了依赖库的源码.

    Raises:
        stage_contract_violation_error: 构建阶段与平台配置不匹配

    Returns:
        step: 构建gcc的步骤，输出为合并lib64并添加cc软链接后的安装目录
    """

    check_contract(variant, host, target, sysroot is not None, cross_native)
    build_triple = ctx.build
    name = f"gcc {variant} {host} -> {target}"
    context = {"triple": target, "host": host, "variant": variant}
    script = build_script(variant, build_triple, host, target, sysroot is not None, cross_native)

    def post(root: Path) -> None:
        post_install(root, host, target)

    def action(sdk_layers: sdk_env, source_dir: artifact, binutils_dir: artifact, *sysroot_dir: artifact) -> artifact:
        inputs = {"SOURCE": source_dir, "BINUTILS": binutils_dir}
        if sysroot_dir:
            inputs["SYSROOT"] = sysroot_dir[0]
        env = [*sdk_layers, *ctx.toolchain_env(binutils_dir), {"CPATH": None, "LIBRARY_PATH": None}]
        installed = ctx.executor.run(name, script, env, inputs, context)
        return ctx.executor.transform(f"{name} post install", installed, post, context=context)

    dependencies = [sdk, source or bundled_source(ctx), binutils]
    if sysroot is not None:
        dependencies.append(sysroot)
    return step(name, action, *dependencies, context=context)


__all__ = [
    "build_variant",
    "common_option",
    "stage1_bootstrap_option",
    "stage1_limited_option",
    "stage2_full_option",
    "bundled_lib_list",
    "is_cross",
    "target_prefix",
    "sysroot_dir",
    "check_contract",
    "configure_options",
    "build_script",
    "merge_lib_dirs",
    "add_cc_symlinks",
    "post_install",
    "bundled_source",
    "build",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
