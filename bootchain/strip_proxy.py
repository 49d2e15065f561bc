import dataclasses
import os
import shutil
import subprocess
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

from . import common
from .artifact import artifact_store
from .wrap import is_wrapper, read_manifest, wrapping_service

strip_command_env = "BOOTCHAIN_STRIP_COMMAND_PATH"
store_env = "BOOTCHAIN_STORE"
verbose_env = "BOOTCHAIN_PROXY_VERBOSE"

# 值作为下一个参数给出的strip选项
separate_value_option_list = (
    "-F",
    "--target",
    "-I",
    "--input-target",
    "-O",
    "--output-target",
    "-R",
    "--remove-section",
    "-K",
    "--keep-symbol",
    "-N",
    "--strip-symbol",
)


def parse_args(argv: Sequence[str]) -> tuple[list[str], list[str], str | None]:
    """将strip命令行拆分为选项、输入文件和-o指定的输出文件

    Returns:
        tuple[list[str], list[str], str | None]: 选项、输入文件和输出文件
    """

    options: list[str] = []
    files: list[str] = []
    output: str | None = None
    index = 0
    while index < len(argv):
        arg = argv[index]
        if arg == "-o" and index + 1 < len(argv):
            output = argv[index + 1]
            index += 2
        elif arg.startswith("-o") and len(arg) > 2:
            output = arg[2:]
            index += 1
        elif arg in separate_value_option_list:
            options += argv[index : index + 2]
            index += 2
        elif arg.startswith("-"):
            options.append(arg)
            index += 1
        else:
            files.append(arg)
            index += 1
    return options, files, output


def _run_strip(strip: str, options: Sequence[str], files: Sequence[str], output: str | None = None) -> int:
    command = [strip, *options, *(["-o", output] if output else []), *files]
    return subprocess.run(command).returncode


def strip_wrapped(strip: str, options: Sequence[str], path: Path, output: Path, store: artifact_store) -> int:
    """剥离包装文件中的可执行文件并重新包装，清单的其他部分保持不变

    仓库中的可执行文件不可修改，因此先复制一份再剥离

    Returns:
        int: strip的退出码
    """

    content = read_manifest(path)
    assert content is not None, common.bootchain_error(f"{path} is not a wrapped executable.")
    work_dir = store.scratch_dir("strip-")
    try:
        copy = work_dir / Path(content.executable).name
        shutil.copy2(content.executable, copy)
        os.chmod(copy, 0o755)
        returncode = _run_strip(strip, options, [str(copy)])
        if returncode != 0:
            return returncode
        stripped = store.checkin(copy)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)
    wrapping_service.write(output, dataclasses.replace(content, executable=str(stripped.path)))
    return 0


def run(argv: Sequence[str], env: Mapping[str, str]) -> int:
    """没有被包装的文件直接交给真正的strip，被包装的文件剥离其内部的可执行文件

    Returns:
        int: 退出码
    """

    strip = env.get(strip_command_env)
    if not strip:
        raise RuntimeError(common.bootchain_error(f"{strip_command_env} is not set."))
    options, files, output = parse_args(argv)
    wrapped = [file for file in files if is_wrapper(Path(file))]
    plain = [file for file in files if file not in wrapped]
    if not wrapped:
        return _run_strip(strip, options, files, output)

    store_root = env.get(store_env)
    if not store_root:
        raise RuntimeError(common.bootchain_error(f"{store_env} is not set."))
    store = artifact_store(Path(store_root))
    if plain and (returncode := _run_strip(strip, options, plain, output)) != 0:
        return returncode
    for file in wrapped:
        target = Path(output) if output else Path(file)
        if (returncode := strip_wrapped(strip, options, Path(file), target, store)) != 0:
            return returncode
        common.bootchain_print(common.bootchain_note(f"Strip wrapped executable {file}."), file=sys.stderr)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    common.bootchain_quiet.set(not os.environ.get(verbose_env))
    return run(sys.argv[1:] if argv is None else argv, os.environ)


__all__ = ["strip_command_env", "store_env", "parse_args", "strip_wrapped", "run", "main"]

if __name__ == "__main__":
    sys.exit(main())
