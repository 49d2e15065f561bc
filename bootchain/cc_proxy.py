import hashlib
import os
import shutil
import subprocess
import sys
import typing
from collections.abc import Mapping, Sequence
from pathlib import Path

from . import common
from .artifact import artifact_store
from .executor import local_executor

store_env = "BOOTCHAIN_STORE"
verbose_env = "BOOTCHAIN_PROXY_VERBOSE"

source_suffix_list = (".c", ".cc", ".cpp", ".cxx", ".c++", ".C", ".m", ".mm")
# 值作为下一个参数给出的编译选项
separate_value_option_list = (
    "-o",
    "-I",
    "-D",
    "-U",
    "-include",
    "-imacros",
    "-isystem",
    "-iquote",
    "-idirafter",
    "-isysroot",
    "-x",
    "-B",
    "-Xassembler",
    "-Xpreprocessor",
    "-Xlinker",
    "--param",
)
# 出现这些选项时编译结果不只取决于预处理结果
uncacheable_prefix_list = ("-M", "-E", "-S", "@", "-save-temps", "-fprofile", "-ftest-coverage", "-fdebug-prefix-map")


class compile_command(typing.NamedTuple):
    """可以缓存的单文件编译命令

    Attributes:
        source: 源文件
        output: 输出的目标文件
        flags : 去除-c、-o和源文件后的其他参数
    """

    source: str
    output: str
    flags: list[str]


def parse_args(argv: Sequence[str]) -> compile_command | None:
    """判断编译命令是否可以缓存，只缓存以-c编译单个源文件的命令

    Returns:
        compile_command | None: 不可缓存时返回None
    """

    if "-c" not in argv:
        return None
    sources: list[str] = []
    output: str | None = None
    flags: list[str] = []
    index = 0
    while index < len(argv):
        arg = argv[index]
        if arg == "-" or arg.startswith(uncacheable_prefix_list):
            return None
        if arg == "-o":
            output = argv[index + 1]
            index += 2
            continue
        if arg in separate_value_option_list:
            flags += argv[index : index + 2]
            index += 2
            continue
        if not arg.startswith("-") and Path(arg).suffix in source_suffix_list:
            sources.append(arg)
        elif arg != "-c":
            flags.append(arg)
        index += 1
    if len(sources) != 1:
        return None
    return compile_command(sources[0], output or Path(sources[0]).with_suffix(".o").name, flags)


def cache_key(compiler: str, command: compile_command, preprocessed: bytes) -> str:
    """由编译器、编译选项和预处理结果计算缓存键"""

    return local_executor.key("cc", str(Path(compiler).resolve()), command.flags, hashlib.sha256(preprocessed).hexdigest())


def run(argv: Sequence[str], env: Mapping[str, str]) -> int:
    """运行编译器，可缓存的编译命令先查找缓存

    Args:
        argv (Sequence[str]): 真正的编译器和它的参数

    Returns:
        int: 退出码
    """

    assert argv, common.bootchain_error("The compiler to run is required.")
    compiler, *args = argv
    command = parse_args(args)
    store_root = env.get(store_env)
    if command is None or not store_root:
        return subprocess.run([compiler, *args]).returncode

    preprocess = subprocess.run([compiler, *command.flags, "-E", command.source], capture_output=True)
    if preprocess.returncode != 0:
        # 由真正的编译命令报告错误
        return subprocess.run([compiler, *args]).returncode
    executor = local_executor(artifact_store(Path(store_root)))
    key = cache_key(compiler, command, preprocess.stdout)
    if cached := executor.lookup_cache(key):
        common.remove_if_exists(Path(command.output), dry_run=False)
        shutil.copy2(cached.path, command.output)
        os.chmod(command.output, 0o644)
        common.bootchain_print(common.bootchain_note(f"Reuse cached object for {command.source}."), file=sys.stderr)
        return 0

    returncode = subprocess.run([compiler, *args]).returncode
    if returncode == 0 and Path(command.output).is_file():
        executor.record_cache(key, executor.store.checkin(Path(command.output)))
    return returncode


def main(argv: Sequence[str] | None = None) -> int:
    common.bootchain_quiet.set(not os.environ.get(verbose_env))
    return run(sys.argv[1:] if argv is None else argv, os.environ)


__all__ = ["source_suffix_list", "compile_command", "parse_args", "cache_key", "run", "main"]

if __name__ == "__main__":
    sys.exit(main())
