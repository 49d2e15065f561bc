import dataclasses
import enum
import os
import subprocess
import sys
import typing
from collections.abc import Mapping, Sequence
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile

from . import common
from .artifact import artifact_store
from .wrap import interpreter_config, interpreter_kind, wrapping_service

# 代理从环境变量读取的配置
linker_command_env = "BOOTCHAIN_LINKER_COMMAND_PATH"
linker_interpreter_env = "BOOTCHAIN_LINKER_INTERPRETER_PATH"
linker_opt_level_env = "BOOTCHAIN_LINKER_LIBRARY_PATH_OPT_LEVEL"
linker_passthrough_env = "BOOTCHAIN_LINKER_PASSTHROUGH"
store_env = "BOOTCHAIN_STORE"
verbose_env = "BOOTCHAIN_PROXY_VERBOSE"

opt_level_option = "--bootchain-library-path-opt-level"
max_depth_option = "--bootchain-max-depth"
default_max_depth = 16
# 值作为下一个参数给出且与包装无关的链接器选项
separate_value_option_list = (
    "-rpath-link",
    "--rpath-link",
    "-dynamic-linker",
    "--dynamic-linker",
    "-soname",
    "-h",
    "-z",
    "-m",
    "-T",
    "--version-script",
    "-plugin",
)


class library_path_opt_level(enum.StrEnum):
    """包装可执行文件时对库搜索路径的优化等级

    Attributes:
        none   : 使用链接时的全部-L和-rpath目录
        filter : 只保留含有可执行文件直接依赖的目录
        resolve: 递归解析全部依赖，只保留实际提供了依赖的目录
        combine: 递归解析全部依赖，并将它们合并到同一个目录中
    """

    none = "none"
    filter = "filter"
    resolve = "resolve"
    combine = "combine"


@dataclasses.dataclass
class linker_options:
    """从链接命令行中解析出的信息

    Attributes:
        output       : 输出文件
        library_paths: -L指定的目录
        rpaths       : -rpath指定的目录
        libraries    : -l指定的库
        shared_inputs: 直接作为输入的动态库
        linker_args  : 去除代理选项后传递给真正链接器的参数
        opt_level    : 库搜索路径优化等级
        max_depth    : 递归解析依赖的最大深度
        shared       : 是否在链接动态库
        relocatable  : 是否在进行部分链接
    """

    output: str = "a.out"
    library_paths: list[str] = dataclasses.field(default_factory=list)
    rpaths: list[str] = dataclasses.field(default_factory=list)
    libraries: list[str] = dataclasses.field(default_factory=list)
    shared_inputs: list[str] = dataclasses.field(default_factory=list)
    linker_args: list[str] = dataclasses.field(default_factory=list)
    opt_level: library_path_opt_level = library_path_opt_level.combine
    max_depth: int = default_max_depth
    shared: bool = False
    relocatable: bool = False


def _is_shared_library(arg: str) -> bool:
    name = Path(arg).name
    return not arg.startswith("-") and (name.endswith(".so") or ".so." in name)


def _take_value(argv: Sequence[str], index: int, arg: str, names: Sequence[str]) -> tuple[str, int] | None:
    """解析-o X、-oX、--output=X形式的选项

    Returns:
        tuple[str, int] | None: 选项的值和下一个参数的下标，不是该选项时返回None
    """

    for name in names:
        if arg == name:
            # 缺少值时原样交给真正的链接器报错
            if index + 1 >= len(argv):
                return None
            return argv[index + 1], index + 2
        if name.startswith("--") and arg.startswith(f"{name}="):
            return arg[len(name) + 1 :], index + 1
        if len(name) == 2 and arg.startswith(name) and len(arg) > 2:
            return arg[2:], index + 1
    return None


def parse_args(argv: Sequence[str], default_opt_level: str | None = None) -> linker_options:
    """解析链接命令行

    Args:
        argv (Sequence[str]): 不含程序名的参数
        default_opt_level (str | None, optional): 命令行中没有指定优化等级时使用的等级. 默认为combine.

    Returns:
        linker_options: 解析结果
    """

    options = linker_options()
    if default_opt_level:
        options.opt_level = library_path_opt_level(default_opt_level)
    index = 0
    while index < len(argv):
        arg = argv[index]
        # 代理自身的选项不传递给链接器
        if result := _take_value(argv, index, arg, (opt_level_option,)):
            options.opt_level = library_path_opt_level(result[0])
            index = result[1]
            continue
        if result := _take_value(argv, index, arg, (max_depth_option,)):
            options.max_depth = int(result[0])
            index = result[1]
            continue

        next_index = index + 1
        if arg in ("-rpath", "--rpath", "-R"):
            if index + 1 < len(argv):
                options.rpaths.append(argv[index + 1])
            next_index = index + 2
        elif arg.startswith(("-rpath=", "--rpath=")):
            options.rpaths.append(arg.split("=", 1)[1])
        elif arg in separate_value_option_list:
            next_index = index + 2
        elif arg in ("-shared", "--shared", "-Bshareable"):
            options.shared = True
        elif arg in ("-r", "--relocatable", "-i"):
            options.relocatable = True
        elif result := _take_value(argv, index, arg, ("-o", "--output")):
            options.output, next_index = result
        elif result := _take_value(argv, index, arg, ("-L", "--library-path")):
            options.library_paths.append(result[0])
            next_index = result[1]
        elif result := _take_value(argv, index, arg, ("-l", "--library")):
            options.libraries.append(result[0])
            next_index = result[1]
        elif _is_shared_library(arg):
            options.shared_inputs.append(arg)
        options.linker_args += argv[index:next_index]
        index = next_index
    return options


class elf_info(typing.NamedTuple):
    """ELF文件中与动态链接有关的信息

    Attributes:
        interpreter  : PT_INTERP中的动态链接器路径
        needed       : DT_NEEDED中的依赖库
        is_executable: 是否为可执行文件，包括PIE
    """

    interpreter: str | None
    needed: list[str]
    is_executable: bool


def analyze(path: Path) -> elf_info | None:
    """读取ELF文件的动态链接信息，不是ELF文件时返回None"""

    try:
        with path.open("rb") as file:
            elf = ELFFile(file)
            interpreter: str | None = None
            for segment in elf.iter_segments():
                if segment["p_type"] == "PT_INTERP":
                    interpreter = segment.get_interp_name()
            needed: list[str] = []
            for section in elf.iter_sections():
                if isinstance(section, DynamicSection):
                    needed += [tag.needed for tag in section.iter_tags() if tag.entry.d_tag == "DT_NEEDED"]
            e_type = elf.header["e_type"]
            return elf_info(interpreter, needed, e_type == "ET_EXEC" or (e_type == "ET_DYN" and interpreter is not None))
    except (ELFError, OSError):
        return None


def find_library(name: str, dirs: Sequence[Path]) -> Path | None:
    for dir in dirs:
        if (dir / name).exists():
            return dir / name
    return None


def resolve_libraries(needed: Sequence[str], dirs: Sequence[Path], max_depth: int = default_max_depth) -> dict[str, Path]:
    """在目录中递归查找依赖库

    Args:
        needed (Sequence[str]): 直接依赖
        dirs (Sequence[Path]): 搜索目录，靠前的优先
        max_depth (int, optional): 最大递归深度

    Returns:
        dict[str, Path]: 找到的库，找不到的库被忽略
    """

    result: dict[str, Path] = {}
    queue = [(name, 0) for name in needed]
    while queue:
        name, depth = queue.pop(0)
        if name in result or depth > max_depth:
            continue
        path = find_library(name, dirs)
        if path is None:
            continue
        result[name] = path
        if info := analyze(path.resolve()):
            queue += [(child, depth + 1) for child in info.needed]
    return result


def library_dirs(options: linker_options, needed: Sequence[str], store: artifact_store) -> list[str]:
    """根据优化等级计算运行时的库搜索目录，目录会被加入仓库

    Returns:
        list[str]: 仓库中的目录
    """

    candidates: list[Path] = []
    for dir in (*options.rpaths, *options.library_paths, *(str(Path(lib).parent) for lib in options.shared_inputs)):
        path = Path(dir).absolute()
        if path.is_dir() and path not in candidates:
            candidates.append(path)

    match (options.opt_level):
        case library_path_opt_level.none:
            dirs = candidates
        case library_path_opt_level.filter:
            dirs = [dir for dir in candidates if any((dir / name).exists() for name in needed)]
        case library_path_opt_level.resolve:
            found = resolve_libraries(needed, candidates, options.max_depth)
            dirs = [dir for dir in candidates if any(path.parent == dir for path in found.values())]
        case library_path_opt_level.combine:
            found = resolve_libraries(needed, candidates, options.max_depth)
            if not found:
                return []
            return [str(store.directory({name: path.resolve() for name, path in found.items()}).path)]
    return [str(store.checkin(dir).path) for dir in dirs]


def interpreter_for(path: str) -> interpreter_kind:
    return interpreter_kind.ld_musl if "ld-musl" in Path(path).name else interpreter_kind.ld_linux


def _log(message: str) -> None:
    common.bootchain_print(message, file=sys.stderr)


def run(argv: Sequence[str], env: Mapping[str, str]) -> int:
    """运行真正的链接器，链接可执行文件时将结果包装起来

    Returns:
        int: 退出码，链接器失败时为链接器的退出码
    """

    linker = env.get(linker_command_env)
    if not linker:
        raise RuntimeError(common.bootchain_error(f"{linker_command_env} is not set."))
    options = parse_args(argv, env.get(linker_opt_level_env))
    returncode = subprocess.run([linker, *options.linker_args]).returncode
    if returncode != 0:
        return returncode
    if env.get(linker_passthrough_env) or options.shared or options.relocatable:
        return 0

    output = Path(options.output)
    info = analyze(output) if output.is_file() else None
    # 静态链接的可执行文件不需要包装
    if info is None or not info.is_executable or info.interpreter is None:
        return 0
    interpreter_path = env.get(linker_interpreter_env) or info.interpreter
    if not Path(interpreter_path).exists():
        _log(common.bootchain_warning(f"Interpreter {interpreter_path} does not exist, {output} is left unwrapped."))
        return 0
    store_root = env.get(store_env)
    if not store_root:
        raise RuntimeError(common.bootchain_error(f"{store_env} is not set."))

    store = artifact_store(Path(store_root))
    interpreter = store.checkin(Path(interpreter_path).resolve())
    dirs = library_dirs(options, info.needed, store)
    config = interpreter_config(interpreter_for(interpreter_path), str(interpreter.path), tuple(dirs))
    wrapping_service(store).wrap(output, output, config)
    _log(common.bootchain_note(f"Wrap {output} with {len(dirs)} library dirs."))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    common.bootchain_quiet.set(not os.environ.get(verbose_env))
    return run(sys.argv[1:] if argv is None else argv, os.environ)


__all__ = [
    "linker_command_env",
    "linker_interpreter_env",
    "linker_opt_level_env",
    "linker_passthrough_env",
    "store_env",
    "verbose_env",
    "library_path_opt_level",
    "linker_options",
    "parse_args",
    "elf_info",
    "analyze",
    "find_library",
    "resolve_libraries",
    "library_dirs",
    "interpreter_for",
    "run",
    "main",
]

if __name__ == "__main__":
    sys.exit(main())
