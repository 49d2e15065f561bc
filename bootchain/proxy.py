import sys
from pathlib import Path

from . import common, ld_proxy, strip_proxy
from . import environment as env_mod
from .artifact import artifact
from .context import build_context, sdk_env
from .introspect import gcc_version, toolchain_descriptor, toolchain_flavor
from .wrap import wrapping_service

# bootchain包所在目录，代理通过python -m运行时需要加入PYTHONPATH
package_root = Path(__file__).resolve().parent.parent


class gcc_flavor:
    """gcc工具链的代理参数

    Attributes:
        descriptor: 工具链
        version   : gcc版本，用于定位内部目录和C++头文件
    """

    linker_name = "ld"
    cc_name = "gcc"
    cxx_name = "g++"
    fortran_name = "gfortran"
    descriptor: toolchain_descriptor
    version: str

    def __init__(self, descriptor: toolchain_descriptor, version: str) -> None:
        self.descriptor = descriptor
        self.version = version

    @property
    def sysroot(self) -> Path:
        root = self.descriptor.root_dir
        return root / str(self.descriptor.target) if self.descriptor.is_cross else root

    def cc_args(self) -> list[str]:
        root = self.descriptor.root_dir
        target = self.descriptor.target
        return [
            f"--sysroot={self.sysroot}",
            f"-B{root / str(target) / 'bin'}",
            f"-B{root / 'lib' / 'gcc' / str(target) / self.version}",
            f"-B{root / 'libexec' / 'gcc' / str(target) / self.version}",
        ]

    def cxx_args(self) -> list[str]:
        include_dir = self.sysroot / "include" / "c++" / self.version
        return [*self.cc_args(), f"-isystem{include_dir}", f"-isystem{include_dir / str(self.descriptor.target)}"]

    def fortran_args(self) -> list[str]:
        return self.cc_args()


class llvm_flavor:
    """llvm工具链的代理参数，使用lld链接

    Attributes:
        descriptor  : 工具链
        resource_dir: clang的资源目录
    """

    cc_name = "clang"
    cxx_name = "clang++"
    fortran_name = None
    descriptor: toolchain_descriptor
    resource_dir: str

    def __init__(self, descriptor: toolchain_descriptor, resource_dir: str) -> None:
        self.descriptor = descriptor
        self.resource_dir = resource_dir

    @property
    def linker_name(self) -> str:
        return "ld64.lld" if self.descriptor.target.is_darwin else "ld.lld"

    def cc_args(self) -> list[str]:
        return [f"-resource-dir={self.resource_dir}", "-fuse-ld=lld", f"--target={self.descriptor.target}"]

    def cxx_args(self) -> list[str]:
        return self.cc_args()

    def fortran_args(self) -> list[str]:
        return []


def get_flavor(ctx: build_context, descriptor: toolchain_descriptor) -> gcc_flavor | llvm_flavor:
    """根据工具链类型查询版本或资源目录，生成对应的代理参数"""

    match (descriptor.flavor):
        case toolchain_flavor.gcc:
            return gcc_flavor(descriptor, gcc_version(ctx.executor, descriptor.cc_path))
        case toolchain_flavor.llvm:
            return llvm_flavor(descriptor, ctx.executor.query([str(descriptor.cc_path), "-print-resource-dir"]))


def python_module_args(module: str) -> list[str]:
    return ["-m", f"bootchain.{module}"]


def python_env(store_root: Path) -> env_mod.layer:
    return {"PYTHONPATH": env_mod.prefix(package_root), ld_proxy.store_env: env_mod.set_if_unset(store_root)}


def write_ld_proxy(ctx: build_context, descriptor: toolchain_descriptor, linker_name: str, output: Path, opt_level: str) -> None:
    """生成链接器代理ld-proxy/<linker_name>"""

    proxy_dir = output / "ld-proxy"
    proxy_dir.mkdir(parents=True, exist_ok=True)
    env: dict[str, env_mod.layer_value] = {
        **python_env(ctx.store.root),
        ld_proxy.linker_command_env: env_mod.set_if_unset(descriptor.ld_path),
        ld_proxy.linker_opt_level_env: env_mod.set_if_unset(opt_level),
    }
    if descriptor.ldso_path is not None:
        env[ld_proxy.linker_interpreter_env] = env_mod.set_if_unset(descriptor.ldso_path)
    ctx.wrapper.wrap(Path(sys.executable), proxy_dir / linker_name, env=env, args=python_module_args("ld_proxy"), checkin=False)


def tool_names(descriptor: toolchain_descriptor, name: str, force_prefix: bool) -> list[str]:
    """工具在bin中的名称，交叉工具链或force_prefix时额外添加带target前缀的名称"""

    result = [name]
    if descriptor.is_cross or force_prefix:
        result.append(f"{descriptor.target}-{name}")
    return result


def write_compiler_proxy(
    wrapper: wrapping_service,
    compiler: Path,
    args: list[str],
    output: Path,
    cache: bool,
) -> None:
    if cache:
        wrapper.wrap(Path(sys.executable), output, args=[*python_module_args("cc_proxy"), str(compiler), *args], checkin=False)
    else:
        wrapper.wrap(compiler, output, args=args, checkin=False)


def proxy(
    ctx: build_context,
    descriptor: toolchain_descriptor,
    compiler: bool = False,
    linker: bool = True,
    strip: bool = True,
    force_prefix: bool = False,
    opt_level: str = ld_proxy.library_path_opt_level.combine,
) -> artifact:
    """生成代理工具链目录

    目录中的ld-proxy包含链接器代理，bin包含添加了sysroot等参数的编译器包装，编译器通过-B使用ld-proxy中的链接器。

    Args:
        ctx (build_context): 构建环境
        descriptor (toolchain_descriptor): 被代理的工具链
        compiler (bool, optional): 是否缓存编译结果. 默认为否.
        linker (bool, optional): 是否代理链接器. 默认为是.
        strip (bool, optional): 是否代理strip. 默认为是.
        force_prefix (bool, optional): 本地工具链是否也添加带target前缀的名称. 默认为否.
        opt_level (str, optional): 链接器代理的库搜索路径优化等级. 默认为combine.

    Returns:
        artifact: 代理目录
    """

    flavor = get_flavor(ctx, descriptor)
    key_parts = (str(descriptor), compiler, linker, strip, force_prefix, opt_level, str(package_root), sys.executable)
    ld_dir: artifact | None = None
    if linker:
        ld_dir = ctx.executor.build(
            f"ld proxy {descriptor.target}",
            lambda output: write_ld_proxy(ctx, descriptor, flavor.linker_name, output, opt_level),
            key_parts,
            {"triple": descriptor.target},
        )

    def build_bin(output: Path) -> None:
        bin_dir = output / "bin"
        bin_dir.mkdir(parents=True)
        if ld_dir is not None:
            common.copy(ld_dir.path, output, dry_run=False)
        extra = [f"-B{ld_dir.path / 'ld-proxy'}"] if ld_dir is not None else []
        compilers = [
            (descriptor.cc_path, flavor.cc_name, flavor.cc_args(), "cc"),
            (descriptor.cxx_path, flavor.cxx_name, flavor.cxx_args(), "c++"),
        ]
        if descriptor.fortran_path is not None and flavor.fortran_name is not None:
            compilers.append((descriptor.fortran_path, flavor.fortran_name, flavor.fortran_args(), None))
        for path, name, args, alias in compilers:
            for tool in tool_names(descriptor, name, force_prefix):
                write_compiler_proxy(ctx.wrapper, path, [*extra, *args], bin_dir / tool, compiler)
            if alias is not None:
                for tool, target in zip(tool_names(descriptor, alias, force_prefix), tool_names(descriptor, name, force_prefix)):
                    (bin_dir / tool).symlink_to(target)
        if strip:
            prefix = f"{descriptor.target}-" if descriptor.is_cross else ""
            strip_name = "llvm-strip" if descriptor.flavor == toolchain_flavor.llvm else f"{prefix}strip"
            env = {
                **python_env(ctx.store.root),
                strip_proxy.strip_command_env: env_mod.set_if_unset(descriptor.root_dir / "bin" / strip_name),
            }
            for tool in tool_names(descriptor, "strip", force_prefix):
                ctx.wrapper.wrap(Path(sys.executable), bin_dir / tool, env=env, args=python_module_args("strip_proxy"), checkin=False)

    return ctx.executor.build(f"proxy {descriptor.host} -> {descriptor.target}", build_bin, key_parts, {"triple": descriptor.target})


def proxy_env(proxy_dir: artifact) -> sdk_env:
    """代理目录对环境的贡献"""

    return [env_mod.directory_layer(proxy_dir.path)]


__all__ = [
    "package_root",
    "gcc_flavor",
    "llvm_flavor",
    "get_flavor",
    "tool_names",
    "proxy",
    "proxy_env",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
