import dataclasses
import enum
import os
import re
import shutil
import struct
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from . import common
from . import environment as env_mod
from .executor import local_executor
from .triple import triple
from .wrap import read_manifest


class toolchain_flavor(enum.StrEnum):
    gcc = "gcc"
    llvm = "llvm"


@dataclasses.dataclass(frozen=True)
class toolchain_descriptor:
    """工具链的组成

    Attributes:
        cc_path     : C编译器
        cxx_path    : C++编译器
        ld_path     : 链接器
        root_dir    : 工具链根目录
        flavor      : 工具链类型
        host        : 工具链运行的平台
        target      : 工具链的目标平台
        fortran_path: Fortran编译器，可能不存在
        ldso_path   : 目标平台的动态链接器，可能不存在
    """

    cc_path: Path
    cxx_path: Path
    ld_path: Path
    root_dir: Path
    flavor: toolchain_flavor
    host: triple
    target: triple
    fortran_path: Path | None = None
    ldso_path: Path | None = None

    @property
    def is_cross(self) -> bool:
        return not self.host.equals(self.target)


# gcc工具链必须提供的工具
required_utility_list = ("ar", "as", "nm", "objdump", "ranlib", "strip")
# llvm工具链必须提供的工具
llvm_utility_list = ("llvm-ar", "llvm-nm", "llvm-objdump", "llvm-ranlib", "llvm-strip")

# ELF e_machine到架构名的映射
elf_machine_map = {
    "EM_X86_64": "x86_64",
    "EM_386": "i686",
    "EM_AARCH64": "aarch64",
    "EM_ARM": "arm",
    "EM_RISCV": "riscv64",
    "EM_PPC64": "powerpc64",
    "EM_PPC": "powerpc",
    "EM_S390": "s390x",
    "EM_LOONGARCH": "loongarch64",
    "EM_MIPS": "mips64",
}
# Mach-O cputype到架构名的映射
macho_cpu_map = {0x01000007: "x86_64", 0x0100000C: "aarch64"}
macho_magic_list = (b"\xcf\xfa\xed\xfe", b"\xce\xfa\xed\xfe")
macho_fat_magic = b"\xca\xfe\xba\xbe"

_triple_tool = re.compile(r"(?P<triple>.+)-(gcc|cc)")


def default_flavor(host: triple) -> toolchain_flavor:
    """linux上默认为gcc，darwin上默认为llvm"""

    return toolchain_flavor.llvm if host.is_darwin else toolchain_flavor.gcc


def which(name: str, env: Mapping[str, str]) -> Path | None:
    """在env的PATH中查找可执行文件"""

    result = shutil.which(name, path=env.get("PATH", ""))
    return Path(result) if result else None


def resolve_executable(path: Path) -> Path:
    """解析软链接和包装文件，得到真正的可执行文件"""

    path = path.resolve()
    while content := read_manifest(path):
        path = Path(content.executable).resolve()
    return path


def detect_binary_platform(path: Path) -> triple | None:
    """根据可执行文件的ELF或Mach-O头判断其运行的平台

    Args:
        path (Path): 可执行文件

    Returns:
        triple | None: 无法识别时返回None
    """

    with path.open("rb") as file:
        magic = file.read(8)
        file.seek(0)
        if magic[:4] == b"\x7fELF":
            try:
                elf = ELFFile(file)
            except ELFError:
                return None
            arch = elf_machine_map.get(elf.header["e_machine"])
            if arch is None:
                return None
            if arch == "riscv64" and elf.elfclass == 32:
                arch = "riscv32"
            # 根据PT_INTERP中的动态链接器区分musl，静态链接的文件按glibc处理
            environment = "gnu"
            for segment in elf.iter_segments():
                if segment["p_type"] == "PT_INTERP" and Path(segment.get_interp_name()).name.startswith("ld-musl"):
                    environment = "musl"
            return triple(arch, "linux", "unknown", environment=environment)
        if magic[:4] in macho_magic_list:
            (cpu_type,) = struct.unpack("<i", magic[4:8])
        elif magic[:4] == macho_fat_magic:
            # 通用二进制文件以第一个架构为准
            file.seek(8)
            (cpu_type,) = struct.unpack(">i", file.read(4))
        else:
            return None
    arch = macho_cpu_map.get(cpu_type & 0xFFFFFFFF)
    return triple(arch, "darwin", "apple") if arch else None


def _resolve_env(executor: local_executor, env: Sequence[env_mod.layer] | Mapping[str, str]) -> dict[str, str]:
    if isinstance(env, Mapping):
        return dict(env)
    return executor.resolve_env(env)


def _compiler_command(env: Mapping[str, str], target: triple | None) -> list[str]:
    """CC_<target>或CC指定的编译器，都不存在时依次尝试PATH中的cc、gcc和clang"""

    if target is not None:
        if value := env.get(f"CC_{str(target).replace('-', '_')}"):
            return value.split()
    if value := env.get("CC"):
        return value.split()
    return [next((name for name in ("cc", "gcc", "clang") if which(name, env)), "cc")]


def get_host(executor: local_executor, env: Sequence[env_mod.layer] | Mapping[str, str], target: triple | None = None) -> triple:
    """获取环境中C编译器运行的平台

    使用CC_<target>或CC，都不存在时使用PATH中的cc、gcc或clang。优先使用-dumpmachine，失败时读取编译器的ELF或Mach-O头。

    Raises:
        no_toolchain_error: 找不到C编译器或无法判断平台
    """

    resolved = _resolve_env(executor, env)
    command = _compiler_command(resolved, target)
    cc_path = which(command[0], resolved)
    if cc_path is None:
        raise common.no_toolchain_error(f"Cannot find C compiler {command[0]} in PATH.")
    try:
        if result := triple.try_parse(executor.query([*command, "-dumpmachine"], resolved)):
            return result
    except common.build_step_failure:
        pass
    common.bootchain_print(common.bootchain_warning(f"{cc_path} -dumpmachine failed, fall back to reading the binary header."))
    result = detect_binary_platform(resolve_executable(cc_path))
    if result is None:
        raise common.no_toolchain_error(f"Cannot determine the platform of {cc_path}.")
    return result


def get_target_triple(executor: local_executor, env: Sequence[env_mod.layer] | Mapping[str, str], host: triple | None = None) -> triple:
    """获取环境中C编译器的目标平台，-dumpmachine的输出无法解析时返回host"""

    resolved = _resolve_env(executor, env)
    command = _compiler_command(resolved, None)
    output = executor.query([*command, "-dumpmachine"], resolved)
    result = triple.try_parse(output)
    if result is None:
        if host is None:
            raise common.no_toolchain_error(f'Cannot parse target triple "{output}" of {command[0]}.')
        return host
    return result


def supported_targets(executor: local_executor, env: Sequence[env_mod.layer] | Mapping[str, str]) -> list[triple]:
    """列出环境中所有带平台前缀的gcc/cc能编译的目标平台，以及本地编译器的目标平台"""

    resolved = _resolve_env(executor, env)
    result: dict[str, triple] = {}
    for dir in filter(None, resolved.get("PATH", "").split(os.pathsep)):
        path = Path(dir)
        if not path.is_dir():
            continue
        for child in sorted(path.iterdir()):
            if (match := _triple_tool.fullmatch(child.name)) and os.access(child, os.X_OK):
                if current := triple.try_parse(match["triple"]):
                    result.setdefault(str(current.canonicalize()), current)
    try:
        native = get_target_triple(executor, resolved)
        result.setdefault(str(native.canonicalize()), native)
    except common.bootchain_exception:
        pass
    return list(result.values())


def gcc_version(executor: local_executor, cc: Path, env: Mapping[str, str] | None = None) -> str:
    """gcc -dumpfullversion的输出，如14.2.0"""

    return executor.query([str(cc), "-dumpfullversion", "-dumpversion"], env)


def check_utilities(env: Mapping[str, str], names: Iterable[str]) -> None:
    """检查工具是否都在PATH中

    Raises:
        incomplete_toolchain_error: 缺少工具
    """

    missing = [name for name in names if which(name, env) is None]
    if missing:
        raise common.incomplete_toolchain_error(f"The toolchain is missing: {', '.join(missing)}.")


def find_ldso(name: str, dirs: Iterable[Path]) -> Path | None:
    """在库目录中按名称查找动态链接器"""

    for dir in dirs:
        if (dir / name).exists():
            return dir / name
    return None


def _first(names: Iterable[str], env: Mapping[str, str]) -> Path | None:
    for name in names:
        if path := which(name, env):
            return path
    return None


def _find_compilers(flavor: toolchain_flavor, prefix: str, env: Mapping[str, str]) -> tuple[Path, Path, Path | None] | None:
    """查找C、C++和Fortran编译器，找不到C编译器时返回None

    Raises:
        incomplete_toolchain_error: 找到了C编译器但没有配套的C++编译器
    """

    match (flavor):
        case toolchain_flavor.gcc:
            cc_path = _first((f"{prefix}gcc", f"{prefix}cc"), env)
            if cc_path is None:
                return None
            cxx_path = _first((f"{prefix}g++", f"{prefix}c++"), env)
            if cxx_path is None:
                raise common.incomplete_toolchain_error(f"Found {cc_path} but no matching {prefix}g++ or {prefix}c++.")
            return cc_path, cxx_path, which(f"{prefix}gfortran", env)
        case toolchain_flavor.llvm:
            # clang不需要target前缀
            cc_path = which("clang", env)
            if cc_path is None:
                return None
            cxx_path = which("clang++", env)
            if cxx_path is None:
                raise common.incomplete_toolchain_error(f"Found {cc_path} but no matching clang++.")
            return cc_path, cxx_path, None


def find_linker(cc_path: Path, names: Sequence[str], env: Mapping[str, str]) -> Path | None:
    """优先在编译器所在目录查找链接器，找不到时再查找PATH

    Args:
        cc_path (Path): C编译器
        names (Sequence[str]): 链接器名称，靠前的优先
        env (Mapping[str, str]): 环境

    Returns:
        Path | None: 链接器
    """

    dirs = [cc_path.parent, resolve_executable(cc_path).parent]
    for name in names:
        for dir in dirs:
            path = dir / name
            if path.is_file() and os.access(path, os.X_OK):
                return path
    return _first(names, env)


def _same_target(found: triple, expected: triple) -> bool:
    """比较编译器报告的目标平台，忽略vendor和版本后缀"""

    def normalize(value: triple) -> triple:
        return value.strip_versions().with_override(vendor=None)

    return normalize(found).equals(normalize(expected))


def toolchain_components(
    executor: local_executor,
    env: Sequence[env_mod.layer] | Mapping[str, str],
    host: triple | None = None,
    target: triple | None = None,
    flavor: toolchain_flavor | None = None,
) -> toolchain_descriptor:
    """分析环境中的工具链

    Args:
        executor (local_executor): 执行器
        env (Sequence[env_mod.layer] | Mapping[str, str]): 环境层或已经合成的环境
        host (triple | None, optional): 工具链运行的平台. 默认自动检测.
        target (triple | None, optional): 工具链的目标平台. 默认与host相同.
        flavor (toolchain_flavor | None, optional): 工具链类型. 默认linux上优先gcc，darwin上优先llvm，找不到时尝试另一种.

    Raises:
        no_toolchain_error: 找不到C编译器，或gcc的目标平台与target不同
        incomplete_toolchain_error: 找不到配套的C++编译器、链接器或必需的工具

    Returns:
        toolchain_descriptor: 工具链的组成
    """

    resolved = _resolve_env(executor, env)
    host = host or get_host(executor, resolved, target)
    target = target or host
    prefix = "" if host.equals(target) else f"{target}-"
    if flavor is None:
        preferred = default_flavor(host)
        flavor_list = [preferred, *(item for item in toolchain_flavor if item != preferred)]
    else:
        flavor_list = [flavor]
    for current in flavor_list:
        if compilers := _find_compilers(current, prefix, resolved):
            flavor = current
            break
    else:
        names = " or ".join(f"{prefix}gcc" if item == toolchain_flavor.gcc else "clang" for item in flavor_list)
        raise common.no_toolchain_error(f"Cannot find {names} in PATH.")
    cc_path, cxx_path, fortran_path = compilers

    match (flavor):
        case toolchain_flavor.gcc:
            # gcc的-dumpmachine就是它的目标平台，clang的则是默认目标平台
            found = get_target_triple(executor, {**resolved, "CC": str(cc_path)}, target)
            if not _same_target(found, target):
                raise common.no_toolchain_error(f"{cc_path} targets {found} instead of {target}.")
            ld_path = find_linker(cc_path, (f"{prefix}ld",), resolved)
            utilities = [f"{prefix}{name}" for name in required_utility_list]
        case toolchain_flavor.llvm:
            ld_path = find_linker(cc_path, ("ld64.lld", "ld.lld") if target.is_darwin else ("ld.lld", "ld"), resolved)
            utilities = list(llvm_utility_list)
    if ld_path is None:
        raise common.incomplete_toolchain_error(f"Cannot find the linker for {target}.")
    check_utilities(resolved, utilities)

    root_dir = resolve_executable(cc_path).parent.parent
    ldso_path: Path | None = None
    if target.is_linux:
        library_dirs = [
            root_dir / str(target) / "lib",
            root_dir / str(target) / "sysroot" / "lib",
            root_dir / "lib",
            root_dir / "sysroot" / "lib",
            *(Path(dir) for dir in resolved.get("LIBRARY_PATH", "").split(":") if dir),
        ]
        ldso_path = find_ldso(target.interpreter_name, library_dirs)
    return toolchain_descriptor(cc_path, cxx_path, ld_path, root_dir, flavor, host, target, fortran_path, ldso_path)


__all__ = [
    "toolchain_flavor",
    "toolchain_descriptor",
    "required_utility_list",
    "llvm_utility_list",
    "default_flavor",
    "which",
    "resolve_executable",
    "detect_binary_platform",
    "get_host",
    "get_target_triple",
    "supported_targets",
    "gcc_version",
    "check_utilities",
    "find_ldso",
    "find_linker",
    "toolchain_components",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
