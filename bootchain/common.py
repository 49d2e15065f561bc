# PYTHON_ARGCOMPLETE_OK

import argparse
import enum
import functools
import inspect
import itertools
import json
import os
import shutil
import subprocess
import typing
from collections.abc import Callable, Generator, Mapping
from contextlib import contextmanager
from enum import IntEnum, auto
from pathlib import Path
from typing import Self

import colorama


class message_type(IntEnum):
    """bootchain显示消息的前缀

    Attributes:
        bootchain         : 添加[bootchain]前缀
        bootchain_internal: 添加[bootchain internal]前缀
        none              : 不添加前缀
    """

    bootchain = auto()
    bootchain_internal = auto()
    none = auto()


class color(enum.StrEnum):
    """cli使用的颜色

    Attributes:
        warning           : 警告用色
        error             : 错误用色
        success           : 成功用色
        note              : 提示用色
        reset             : 恢复默认配色
        bootchain         : 输出bootchain标志
        bootchain_internal: 输出bootchain internal标志
    """

    warning = colorama.Fore.MAGENTA
    error = colorama.Fore.RED
    success = colorama.Fore.GREEN
    note = colorama.Fore.LIGHTBLUE_EX
    reset = colorama.Fore.RESET
    bootchain = f"{colorama.Fore.CYAN}[bootchain]{reset}"
    bootchain_internal = f"{colorama.Fore.CYAN}[bootchain internal]{reset}"

    def wrapper(self, string: str) -> str:
        """以指定颜色输出string，然后恢复默认配色

        Args:
            string (str): 要输出的字符串

        Returns:
            str: 输出字符串
        """

        return f"{self}{string}{color.reset}"

    @staticmethod
    def get_prefix(message_prefix: message_type) -> str:
        """获取bootchain前缀

        Args:
            message_prefix (message_type): 前缀类型

        Returns:
            str: 前缀字符串
        """

        match (message_prefix):
            case message_type.bootchain:
                return color.bootchain + " "
            case message_type.bootchain_internal:
                return color.bootchain_internal + " "
            case message_type.none:
                return ""


class status_counter:
    """当前程序状态的计数"""

    class __counter:
        error: int = 0
        warning: int = 0
        note: int = 0
        info: int = 0
        success: int = 0

    __quiet: bool = False

    @classmethod
    def clear(cls) -> None:
        """清空计数"""

        for key in filter(lambda key: not key.startswith("_"), [*vars(cls.__counter)]):
            setattr(cls.__counter, key, 0)

    @classmethod
    def add(cls, name: str) -> None:
        """增加指定类型的计数

        Args:
            name (str): 计数类型，为error、warning、note、info或success
        """

        setattr(cls.__counter, name, cls.get_counter(name) + 1)

    @classmethod
    def get_counter(cls, name: str) -> int:
        assert name in ("error", "warning", "note", "info", "success")
        return typing.cast(int, getattr(cls.__counter, name))

    @classmethod
    def get_quiet(cls) -> bool:
        return cls.__quiet

    @classmethod
    def set_quiet(cls, quiet: bool) -> None:
        cls.__quiet = quiet

    @classmethod
    def show_status(cls) -> None:
        """根据全局状态显示当前状态计数"""

        if not cls.__quiet:
            print(
                color.bootchain,
                color.error.wrapper(f"error: {cls.__counter.error}"),
                color.warning.wrapper(f"warning: {cls.__counter.warning}"),
                color.note.wrapper(f"note: {cls.__counter.note}"),
                f"info: {cls.__counter.info}",
                color.success.wrapper(f"success: {cls.__counter.success}"),
            )


def _message(name: str, string: str, message_prefix: message_type, tint: color | None) -> str:
    status_counter.add(name)
    return f"{color.get_prefix(message_prefix)}{tint.wrapper(string) if tint else string}"


def bootchain_warning(string: str, message_prefix: message_type = message_type.bootchain) -> str:
    """返回bootchain的警告信息

    Args:
        string (str): 警告字符串
        message_prefix (message_type, optional): 前缀类型

    Returns:
        str: [bootchain] warning
    """

    return _message("warning", string, message_prefix, color.warning)


def bootchain_error(string: str, message_prefix: message_type = message_type.bootchain) -> str:
    """返回bootchain的错误信息

    Args:
        string (str): 错误字符串
        message_prefix (message_type, optional): 前缀类型

    Returns:
        str: [bootchain] error
    """

    return _message("error", string, message_prefix, color.error)


def bootchain_success(string: str, message_prefix: message_type = message_type.bootchain) -> str:
    """返回bootchain的成功信息"""

    return _message("success", string, message_prefix, color.success)


def bootchain_note(string: str, message_prefix: message_type = message_type.bootchain) -> str:
    """返回bootchain的提示信息"""

    return _message("note", string, message_prefix, color.note)


def bootchain_info(string: str, message_prefix: message_type = message_type.bootchain) -> str:
    """返回bootchain的普通信息"""

    return _message("info", string, message_prefix, None)


class bootchain_exception(RuntimeError):
    """bootchain中所有可预期错误的基类，构造时即按错误信息格式着色并计数"""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(bootchain_error(message))


class malformed_triple_error(bootchain_exception):
    """平台名称无法解析"""

    token: str

    def __init__(self, triple: str, token: str) -> None:
        self.token = token
        super().__init__(f'Malformed triple "{triple}": unrecognized token "{token}".')


class unsupported_environment_error(bootchain_exception):
    """libc家族既不是glibc也不是musl"""

    def __init__(self, triple: str, environment: str | None) -> None:
        super().__init__(f'Unsupported environment "{environment}" of triple "{triple}", expected a glibc or musl environment.')


class incomplete_toolchain_error(bootchain_exception):
    """工具链缺少必需的组件"""


class no_toolchain_error(bootchain_exception):
    """环境中找不到任何可识别的编译器"""


class checksum_mismatch_error(bootchain_exception):
    """下载内容的校验和与预期不符"""

    def __init__(self, url: str, expected: str, actual: str) -> None:
        super().__init__(f'Checksum mismatch for "{url}": expected {expected}, got {actual}.')


class stage_contract_violation_error(bootchain_exception):
    """构建变体与平台组合不合法，属于调用者的编程错误"""


class build_step_failure(bootchain_exception):
    """构建步骤执行失败

    Attributes:
        step   : 失败的步骤名
        context: 复现该步骤所需的上下文，如triple、variant、stage
        stderr : 步骤输出的末尾部分
    """

    step: str
    context: dict[str, str]
    stderr: str

    def __init__(self, step: str, context: Mapping[str, object], stderr: str) -> None:
        self.step = step
        self.context = {key: str(value) for key, value in context.items()}
        self.stderr = stderr
        detail = ", ".join(f"{key}={value}" for key, value in self.context.items())
        super().__init__(f'Build step "{step}" failed ({detail or "no context"}).\n{stderr}')


class command_dry_run:
    """是否只显示命令而不实际执行"""

    __dry_run: bool = False

    @classmethod
    def get(cls) -> bool:
        return cls.__dry_run

    @classmethod
    def set(cls, dry_run: bool) -> None:
        cls.__dry_run = dry_run


class command_quiet:
    """运行命令时是否添加--quiet --silent等参数"""

    __quiet: bool = False

    @classmethod
    def get(cls) -> bool:
        return cls.__quiet

    @classmethod
    def get_option(cls) -> str:
        return "--quiet" if cls.__quiet else ""

    @classmethod
    def set(cls, quiet: bool) -> None:
        cls.__quiet = quiet


class bootchain_quiet:
    """是否显示bootchain的提示信息"""

    __quiet: bool = False

    @classmethod
    def get(cls) -> bool:
        return cls.__quiet

    @classmethod
    def set(cls, quiet: bool) -> None:
        cls.__quiet = quiet


def bootchain_print(
    *values: object,
    sep: str | None = " ",
    end: str | None = "\n",
    file: typing.TextIO | None = None,
) -> None:
    """根据全局设置决定是否需要打印信息

    Args:
        sep (str | None, optional): 分隔符. 默认为空格.
        end (str | None, optional): 行尾序列. 默认为换行.
        file (typing.TextIO | None, optional): 输出文件. 默认为标准输出.
    """

    if not bootchain_quiet.get():
        print(*values, sep=sep, end=end, file=file)


def need_dry_run(dry_run: bool | None) -> bool:
    """根据输入和全局状态共同判断是否只回显而不运行命令

    Args:
        dry_run (bool | None): 当前是否只回显而不运行命令

    Returns:
        bool: 是否只回显而不运行命令
    """

    return bool(dry_run is None and command_dry_run.get() or dry_run)


_P = typing.ParamSpec("_P")
_R = typing.TypeVar("_R")


def support_dry_run(echo_fn: Callable[..., str | None] | None = None, end: str | None = None) -> Callable[[Callable[_P, _R]], Callable[_P, _R | None]]:
    """根据dry_run参数和command_dry_run中的全局状态确定是否只回显命令而不执行，若fn没有dry_run参数则只会使用全局状态

    Args:
        echo_fn (Callable[..., str | None] | None, optional): 回调函数，返回要显示的命令字符串或None，无回调或返回None时不显示命令
            所有参数需要能在主函数的参数列表中找到，默认为无回调.
        end (str | None, optional): 在输出回显内容后使用的换行符，默认为换行.
    """

    def decorator(fn: Callable[_P, _R]) -> Callable[_P, _R | None]:
        signature = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _R | None:
            bound_args = signature.bind(*args, **kwargs)
            bound_args.apply_defaults()
            if echo_fn:
                param_list: list[typing.Any] = []
                for key in inspect.signature(echo_fn).parameters.keys():
                    assert key in bound_args.arguments, bootchain_error(
                        f"The param {key} of echo_fn is not in the param list of fn.", message_type.bootchain_internal
                    )
                    param_list.append(bound_args.arguments[key])
                echo = echo_fn(*param_list)
                if echo is not None:
                    bootchain_print(echo, end=end)
            dry_run: bool | None = bound_args.arguments.get("dry_run")
            assert isinstance(dry_run, bool | None), bootchain_error(
                "The param dry_run must be a bool or None.", message_type.bootchain_internal
            )
            if need_dry_run(dry_run):
                return None
            return fn(*bound_args.args, **bound_args.kwargs)

        return wrapper

    return decorator


def _run_command_echo(command: str | list[str], echo: bool) -> str | None:
    """运行命令时回显信息"""

    if isinstance(command, list):
        command = " ".join(command)
    return bootchain_info(f"Run command: {command}") if echo else None


_FILE: typing.TypeAlias = typing.IO[typing.Any] | None


@support_dry_run(_run_command_echo)
def run_command(
    command: str | list[str],
    ignore_error: bool = False,
    capture: bool | tuple[_FILE, _FILE] = False,
    echo: bool = True,
    dry_run: bool | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str] | None:
    """运行指定命令, 若不忽略错误, 则在命令执行出错时抛出RuntimeError, 反之打印错误码

    Args:
        command (str | list[str]): 要运行的命令，使用str则在shell内运行，使用list[str]则直接运行
        ignore_error (bool, optional): 是否忽略错误. 默认不忽略错误.
        capture (bool | tuple[_FILE, _FILE], optional): 是否捕获命令输出，默认为不捕获. 若为tuple则capture[0]和capture[1]分别为stdout和stderr.
        echo (bool, optional): 是否回显信息，设置为False将不回显任何信息，包括错误提示，默认为回显.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
        env (Mapping[str, str] | None, optional): 命令的完整环境变量，为None时继承当前进程环境.
        cwd (Path | None, optional): 命令的工作目录，为None时使用当前工作目录.

    Raises:
        RuntimeError: 命令执行失败且ignore_error为False时抛出异常

    Returns:
        None | subprocess.CompletedProcess[str]: 在命令正常执行结束后返回执行结果，否则返回None
    """

    stdout: int | _FILE
    stderr: int | _FILE
    if capture:
        if isinstance(capture, bool):
            stdout = stderr = subprocess.PIPE
        else:
            stdout, stderr = capture
    elif echo:
        stdout = stderr = None
    else:
        stdout = stderr = subprocess.DEVNULL
    try:
        result = subprocess.run(
            command,
            stdout=stdout,
            stderr=stderr,
            shell=isinstance(command, str),
            check=True,
            text=True,
            env=dict(env) if env is not None else None,
            cwd=cwd,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        if not ignore_error:
            raise RuntimeError(bootchain_error(f'Command "{command}" failed.')) from e
        elif echo:
            errno = e.returncode if isinstance(e, subprocess.CalledProcessError) else e.errno
            bootchain_print(bootchain_warning(f'Command "{command}" failed with errno={errno}, but it is ignored.'))
        return None
    return result


def _mkdir_echo(path: Path) -> str:
    return bootchain_info(f"Create directory {path}.")


@support_dry_run(_mkdir_echo)
def mkdir(path: Path, remove_if_exist: bool = True, dry_run: bool | None = None) -> None:
    """创建目录

    Args:
        path (Path): 要创建的目录
        remove_if_exist (bool, optional): 是否先删除已存在的同名目录. 默认先删除已存在的同名目录.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """

    if remove_if_exist and path.exists():
        shutil.rmtree(path)
    os.makedirs(path, exist_ok=True)


def _copy_echo(src: Path, dst: Path) -> str:
    return bootchain_info(f"Copy {src} -> {dst}.")


@support_dry_run(_copy_echo)
def copy(src: Path, dst: Path, overwrite: bool = True, follow_symlinks: bool = False, dry_run: bool | None = None) -> None:
    """复制文件或目录，目录会与已存在的目标目录合并

    Args:
        src (Path): 源路径
        dst (Path): 目标路径
        overwrite (bool, optional): 是否覆盖已存在项. 默认为覆盖.
        follow_symlinks (bool, optional): 是否复制软链接指向的目标，而不是软链接本身. 默认为保留软链接.
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """

    mkdir(dst.parent, False, dry_run=False)
    if not overwrite and (dst.exists() or dst.is_symlink()):
        return
    if src.is_dir() and not (src.is_symlink() and not follow_symlinks):
        if dst.is_symlink() or dst.is_file():
            os.remove(dst)
        shutil.copytree(src, dst, symlinks=not follow_symlinks, dirs_exist_ok=True, copy_function=_replace_copy)
    else:
        if dst.is_symlink() or dst.is_file():
            os.remove(dst)
        elif dst.is_dir():
            shutil.rmtree(dst)
        shutil.copy2(src, dst, follow_symlinks=follow_symlinks)


def _replace_copy(src: str, dst: str) -> None:
    # 合并目录时，同名项以src为准
    if os.path.lexists(dst):
        if os.path.isdir(dst) and not os.path.islink(dst):
            shutil.rmtree(dst)
        else:
            os.remove(dst)
    shutil.copy2(src, dst, follow_symlinks=False)


def _remove_echo(path: Path) -> str:
    return bootchain_info(f"Remove {path}.")


@support_dry_run(_remove_echo)
def remove(path: Path, dry_run: bool | None = None) -> None:
    """删除指定路径

    Args:
        path (Path): 要删除的路径
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """

    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        os.remove(path)


@support_dry_run()
def remove_if_exists(path: Path, dry_run: bool | None = None) -> bool:
    """如果指定路径存在则删除指定路径

    Returns:
        bool: 是否发生了删除
    """

    if path.exists() or path.is_symlink():
        remove(path)
        return True
    else:
        return False


def _chdir_echo(path: Path) -> str:
    return bootchain_info(f"Enter directory {path}.")


@support_dry_run(_chdir_echo)
def chdir(path: Path, dry_run: bool | None = None) -> Path:
    """将工作目录设置为指定路径

    Returns:
        Path: 之前的工作目录
    """

    cwd = Path.cwd()
    os.chdir(path)
    return cwd


@contextmanager
def chdir_guard(path: Path, dry_run: bool | None = None) -> Generator[None, None, None]:
    """临时进入指定的工作目录

    Args:
        path (Path): 要进入的工作目录
        dry_run (bool | None, optional): 是否只回显而不运行命令. 默认为None.
    """

    cwd = chdir(path, dry_run) or Path()
    try:
        yield
    finally:
        chdir(cwd, dry_run)


def _rename_echo(src: Path, dst: Path) -> str:
    return bootchain_info(f"Rename {src} -> {dst}.")


@support_dry_run(_rename_echo)
def rename(src: Path, dst: Path, dry_run: bool | None = None) -> None:
    """重命名指定路径，dst已存在时会被原子地替换"""

    os.replace(src, dst)


def _symlink_echo(target: Path, symlink_path: Path) -> str:
    return bootchain_info(f"Symlink {symlink_path} -> {target}.")


@support_dry_run(_symlink_echo)
def symlink(target: Path, symlink_path: Path, overwrite: bool = True, dry_run: bool | None = None) -> None:
    """创建软链接

    Args:
        target (Path): 软链接的目标路径，可以是相对于软链接所在目录的路径
        symlink_path (Path): 软链接所在路径
        overwrite (bool, optional): 是否覆盖现有文件
        dry_run (bool | None, optional): 是否只回显命令而不执行，默认为None.
    """

    if not overwrite and (symlink_path.exists() or symlink_path.is_symlink()):
        return
    remove_if_exists(symlink_path)
    symlink_path.symlink_to(target, (symlink_path.parent / target).is_dir())


def resolve_path(path: str | Path, base_path: Path) -> Path:
    """将相对路径转化为基于base_path的绝对路径，已经是绝对路径则不变

    Args:
        path (str | Path): 输入路径
        base_path (Path): 基路径

    Returns:
        Path: 转化后的绝对路径
    """

    path = Path(path).expanduser()
    if not path.is_absolute():
        return (base_path / path).resolve()
    else:
        return path.resolve()


def _path_complete(prefix: str, need_file: bool, allowed_suffix: list[str]) -> list[str]:
    """生成路径补全信息

    Args:
        prefix (str): 已输入的部分路径
        need_file (bool): 是否需要列出可选文件
        allowed_suffix (list[str]): 接受的文件后缀列表，为[]表示接受所有后缀，只有当need_file为True时有效

    Returns:
        list[str]: 可选路径列表
    """

    incomplete_path = Path(prefix)
    complete_prefix = incomplete_path if prefix.endswith(("/", "/.")) else incomplete_path.parent
    absolute_path = complete_prefix.expanduser()
    if not absolute_path.is_dir():
        return []

    result: list[str] = []
    for path in absolute_path.iterdir():
        # 在用户没有明确输入.时，不显示隐藏项目
        if not prefix.endswith(".") and path.name.startswith("."):
            continue
        if path.is_file():
            if not need_file or allowed_suffix and path.suffix not in allowed_suffix:
                continue
        path_str = str(complete_prefix / path.name)
        if path.is_dir():
            path_str += "/"
        result.append(path_str)
    return sorted(result)


class files_completer:
    """支持文件补全"""

    def __init__(self, allowed_suffix: str | list[str] = []) -> None:
        if isinstance(allowed_suffix, str):
            allowed_suffix = [allowed_suffix]
        self.allowed_suffix = allowed_suffix

    def __call__(self, prefix: str, **_: typing.Any) -> list[str]:
        return _path_complete(prefix, True, self.allowed_suffix)


def dir_completer(prefix: str, **_: typing.Any) -> list[str]:
    """支持目录补全"""

    return _path_complete(prefix, False, [])


def check_home(home: str | Path) -> None:
    assert Path(home).exists(), bootchain_error(f'The home dir "{home}" does not exist.')


class basic_configure:
    """配置基类

    Attributes:
        encode_name_map: 编码时使用的构造函数参数名->成员名映射表
    """

    home: Path
    _origin_home_path: str
    _args: argparse.Namespace  # 解析后的命令选项

    encode_name_map: dict[str, str] = {}

    def register_encode_name_map(self, param_name: str, attribute_name: str) -> None:
        """将param_name->attribute_name的映射关系记录到类的encode_name_map表
        注意：需要先给属性赋值，保证属性存在后再进行注册

        Args:
            param_name (str): 构造函数参数名
            attribute_name (str): 成员属性名
        """

        cls = type(self)
        param_list = self._get_default_param_list().keys()
        assert param_name in param_list, bootchain_error(
            f"The param {param_name} is not a param of the __init__ function.", message_type.bootchain_internal
        )
        assert hasattr(self, attribute_name), bootchain_error(
            f"The attribute {attribute_name} is not an attribute of self.", message_type.bootchain_internal
        )
        cls.encode_name_map[param_name] = attribute_name

    def __init__(self, home: str = str(Path.home()), base_path: Path = Path.cwd()) -> None:
        """初始化配置基类

        Args:
            home (str, optional): 源码缓存等工作文件的根目录. 默认为当前用户主目录.
            base_path (Path, optional): 当home为相对路径时，转化home为绝对路径使用的基路径. 默认为当前工作目录.
        """

        self._origin_home_path = home
        self.register_encode_name_map("home", "_origin_home_path")
        self.home = resolve_path(home, base_path)

    @classmethod
    def add_argument(cls, parser: argparse.ArgumentParser) -> None:
        """为argparse添加--home、--export、--import、--dry-run和--quiet选项

        Args:
            parser (argparse.ArgumentParser): 命令行解析器
        """

        action = parser.add_argument(
            "--home",
            type=str,
            help="The home directory of the working files. "
            "A relative path is resolved against the cwd, or against the directory of the configure file when imported.",
            default=str(basic_configure().home),
        )
        setattr(action, "completer", dir_completer)
        action = parser.add_argument(
            "--export",
            dest="export_file",
            type=str,
            help="Export settings to specific file. The origin relative paths are saved to the configure file.",
        )
        setattr(action, "completer", files_completer(".json"))
        action = parser.add_argument(
            "--import",
            dest="import_file",
            type=str,
            help="Import settings from specific file. "
            "Relative paths in the configure file are resolved against the directory of the configure file.",
        )
        setattr(action, "completer", files_completer(".json"))
        parser.add_argument(
            "--dry-run",
            dest="dry_run",
            action=argparse.BooleanOptionalAction,
            help="Preview the commands without actually executing them.",
            default=False,
        )
        parser.add_argument(
            "-q",
            "--quiet",
            action="count",
            help="Increase quiet level (use -q, -qq, etc.). "
            'Level 1 will add options like "--quiet" to commands we run if possible. '
            "Level 2 will disable command echos of this program. "
            "Level 3 and above will disable the echo of status counter in this program.",
            default=0,
        )

    @staticmethod
    def load_config(args: argparse.Namespace) -> dict[str, typing.Any]:
        """从配置文件中加载配置

        Args:
            args (argparse.Namespace): 用户输入参数

        Returns:
            dict[str, typing.Any]: 解码得到的字典

        Raises:
            RuntimeError: 加载失败抛出异常
        """

        if import_file := args.import_file:
            file_path = Path(import_file)
            try:
                with file_path.open() as file:
                    import_config_list = json.load(file)
                assert isinstance(import_config_list, dict), "The configure file must begin with a object."
                import_config_list = typing.cast(dict[str, typing.Any], import_config_list)
            except Exception as e:
                raise RuntimeError(bootchain_error(f'Import file "{file_path}" failed: {e}')) from e
            import_config_list["base_path"] = file_path.parent
            return import_config_list
        else:
            return {}

    @classmethod
    def decode(cls, input_list: dict[str, typing.Any]) -> Self:
        """从字典input_list中解码出对象，供反序列化使用
        从基类到子类依次按照构造函数参数名从input_list中取值，然后调用对应的构造函数

        Args:
            input_list (dict[str, typing.Any]): 输入字典

        Returns:
            Self: 解码得到的对象
        """

        # 先处理子类，因为子类调用了基类的默认构造，会覆盖基类的成员
        result: Self = cls.__new__(cls)
        current_cls: type = cls
        while current_cls != object:
            param_list: dict[str, typing.Any] = {}
            for key in itertools.islice(inspect.signature(current_cls.__init__).parameters.keys(), 1, None):
                if key in input_list:
                    param_list[key] = input_list[key]
            current_cls.__init__(result, **param_list)
            current_cls = current_cls.__bases__[0]
        return result

    @classmethod
    def _get_default_param_list(cls) -> dict[str, typing.Any]:
        """获取类型构造函数的默认参数

        Returns:
            dict[str, typing.Any]: 默认参数列表
        """

        result: dict[str, typing.Any] = {}
        current_cls: type = cls
        while current_cls != object:
            current_result: dict[str, typing.Any] = {
                param.name: param.default
                for param in itertools.islice(inspect.signature(current_cls.__init__).parameters.values(), 1, None)
            }
            result.update(current_result)
            current_cls = current_cls.__bases__[0]

        return result

    @classmethod
    def parse_args(cls, args: argparse.Namespace) -> Self:
        """解析命令选项并根据选项构造对象，会自动解析配置文件

        Args:
            args (argparse.Namespace): 命令选项

        Returns:
            Self: 构造的对象，如果命令选项中没有对应参数则使用默认值
        """

        default_list: dict[str, typing.Any] = cls._get_default_param_list()

        def set_default(**param_list: typing.Any) -> None:
            for param, value in param_list.items():
                setattr(args, param, getattr(args, param, value))

        # 针对未添加通用选项的情况
        set_default(home=default_list["home"], dry_run=False, quiet=0, import_file=None, export_file=None)
        command_dry_run.set(args.dry_run)
        command_quiet.set(args.quiet >= 1)
        bootchain_quiet.set(args.quiet >= 2)
        status_counter.set_quiet(args.quiet >= 3)
        args_list = vars(args)
        input_list: dict[str, typing.Any] = {}
        current_cls: type = cls
        while current_cls != basic_configure:
            for param in itertools.islice(inspect.signature(current_cls.__init__).parameters.keys(), 1, None):
                if param in args_list:
                    input_list[param] = args_list[param]
            current_cls = current_cls.__bases__[0]
        input_list["home"] = args.home
        input_list["base_path"] = Path.cwd()

        import_list: dict[str, typing.Any] = cls.load_config(args)
        result_list: dict[str, typing.Any] = import_list
        for key, value in input_list.items():
            if value != default_list[key]:
                result_list[key] = value
        result = cls.decode(result_list)
        result._args = args
        return result

    def encode(self) -> dict[str, typing.Any]:
        """编码self到字典，可供序列化使用
        根据构造函数参数名key，经encode_name_map映射为属性名后取值，无法取值的中间参数会被跳过

        Returns:
            dict[str, typing.Any]: 编码后的字典
        """

        output_list: dict[str, typing.Any] = {}
        current_cls: type = type(self)
        while current_cls != object:
            for key in itertools.islice(inspect.signature(current_cls.__init__).parameters.keys(), 1, None):
                mapped_key = self.encode_name_map.get(key, key)
                value = getattr(self, mapped_key, None)
                match (value):
                    case None:
                        assert mapped_key == key, bootchain_error(
                            f"The encode_name_map maps the param {key} to a noexist attribute.", message_type.bootchain_internal
                        )
                    case set():
                        output_list[key] = sorted(typing.cast(set[str], value))
                    case Path():
                        output_list[key] = str(value)
                    case enum.Enum():
                        output_list[key] = value.value
                    case _:
                        output_list[key] = value
            current_cls = current_cls.__bases__[0]
        return output_list

    def _save_config_echo(self) -> str | None:
        return bootchain_info(f"Save settings -> {file}.") if (file := self._args.export_file) else None

    @support_dry_run(_save_config_echo)
    def save_config(self) -> None:
        """将配置保存到文件，使用json格式

        Raises:
            RuntimeError: 保存失败抛出异常
        """

        if export_file := self._args.export_file:
            file_path = Path(export_file)
            try:
                file_path.write_text(json.dumps(self.encode(), indent=4))
            except Exception as e:
                raise RuntimeError(bootchain_error(f'Export settings to file "{file_path}" failed: {e}')) from e


def get_default_build_platform() -> str | None:
    """获取默认的build平台，即当前平台

    Returns:
        str | None: 默认build平台. 获取失败返回None
    """

    result: subprocess.CompletedProcess[str] | None = run_command("gcc -dumpmachine", True, True, False, False)
    return result.stdout.strip() if result else None


class basic_build_configure(basic_configure):
    """工具链构建配置"""

    build: str | None
    jobs: int
    _origin_prefix_dir: str
    prefix_dir: Path

    def __init__(
        self,
        build: str | None = None,
        jobs: int | None = None,
        prefix_dir: str = str(Path.home()),
        base_path: Path = Path.cwd(),
    ) -> None:
        """初始化工具链构建配置

        Args:
            build (str | None, optional): 构建平台. 默认为gcc -dumpmachine输出的结果，即当前平台.
            jobs (int | None, optional): 构建时的并发数. 默认为当前平台cpu核心数+2.
            prefix_dir (str, optional): 构建结果的导出目录. 默认为用户主目录.
            base_path (Path, optional): 将prefix转化为绝对路径时使用的基路径
        """

        super().__init__()
        self.build = build or get_default_build_platform()
        self.jobs = jobs or (os.cpu_count() or 1) + 2
        self._origin_prefix_dir = prefix_dir
        self.register_encode_name_map("prefix_dir", "_origin_prefix_dir")
        self.prefix_dir = resolve_path(prefix_dir, base_path)

    @classmethod
    def add_argument(cls, parser: argparse.ArgumentParser) -> None:
        """为argparse添加--build、--jobs和--prefix选项

        Args:
            parser (argparse.ArgumentParser): 命令行解析器
        """

        super().add_argument(parser)
        default_config = basic_build_configure()
        parser.add_argument("--build", type=str, help="The build platform, which runs the bootstrap toolchain.", default=default_config.build)
        parser.add_argument(
            "-j",
            "--jobs",
            type=int,
            help="Number of concurrent jobs at build time.",
            default=default_config.jobs,
        )
        action = parser.add_argument(
            "--prefix",
            dest="prefix_dir",
            type=str,
            help="The dir to export the built toolchain to. "
            "A relative path is resolved against the cwd, or against the directory of the configure file when imported.",
            default=default_config.prefix_dir,
        )
        setattr(action, "completer", dir_completer)

    def check(self) -> None:
        """检查工具链构建配置是否合法"""

        check_home(self.home)
        assert self.build, bootchain_error("Cannot detect the build platform, please specify it with --build.")
        assert self.jobs > 0, bootchain_error(f"Invalid jobs: {self.jobs}.")


assert __name__ != "__main__", "Import this file instead of running it directly."
