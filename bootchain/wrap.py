import dataclasses
import enum
import json
import os
import re
import shlex
import struct
import typing
from collections.abc import Mapping, Sequence
from pathlib import Path

from . import common
from . import environment as env_mod
from .artifact import artifact_store

# 包装文件末尾的格式：manifest json | u64 json长度 | u64 格式版本 | 8字节魔数
magic_number = b"bootchn\0"
format_version = 0
_trailer = struct.Struct("<QQ")
trailer_size = _trailer.size + len(magic_number)

_variable_name = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class interpreter_kind(enum.StrEnum):
    """包装文件启动可执行文件时使用的解释器

    Attributes:
        normal  : 直接执行
        ld_linux: 通过glibc的动态链接器执行
        ld_musl : 通过musl的动态链接器执行
        dyld    : 通过DYLD_*环境变量配置macos的动态链接器
    """

    normal = "normal"
    ld_linux = "ld-linux"
    ld_musl = "ld-musl"
    dyld = "dyld"


@dataclasses.dataclass(frozen=True)
class interpreter_config:
    kind: interpreter_kind
    path: str | None = None
    library_paths: tuple[str, ...] = ()
    preloads: tuple[str, ...] = ()
    args: tuple[str, ...] = ()

    def encode(self) -> dict[str, typing.Any]:
        return {
            "kind": str(self.kind),
            "path": self.path,
            "library_paths": list(self.library_paths),
            "preloads": list(self.preloads),
            "args": list(self.args),
        }

    @staticmethod
    def decode(data: Mapping[str, typing.Any]) -> "interpreter_config":
        return interpreter_config(
            interpreter_kind(data["kind"]),
            data.get("path"),
            tuple(data.get("library_paths", ())),
            tuple(data.get("preloads", ())),
            tuple(data.get("args", ())),
        )


@dataclasses.dataclass(frozen=True)
class manifest:
    """包装文件的清单，记录执行前需要应用的全部信息

    Attributes:
        executable : 被包装的可执行文件的绝对路径
        interpreter: 解释器，为None时直接执行
        env        : 执行前对环境变量的修改
        args       : 放在用户参数之前的额外参数
    """

    executable: str
    interpreter: interpreter_config | None = None
    env: Mapping[str, Sequence[env_mod.mutation]] = dataclasses.field(default_factory=dict)
    args: tuple[str, ...] = ()

    def encode(self) -> dict[str, typing.Any]:
        return {
            "executable": self.executable,
            "interpreter": self.interpreter.encode() if self.interpreter else None,
            "env": env_mod.encode_layer(self.env),
            "args": list(self.args),
        }

    @staticmethod
    def decode(data: Mapping[str, typing.Any]) -> "manifest":
        return manifest(
            data["executable"],
            interpreter_config.decode(data["interpreter"]) if data.get("interpreter") else None,
            env_mod.decode_layer(data.get("env", {})),
            tuple(data.get("args", ())),
        )

    @property
    def library_paths(self) -> tuple[str, ...]:
        return self.interpreter.library_paths if self.interpreter else ()


def _render_mutation(key: str, item: env_mod.mutation) -> str:
    """将一次环境变量修改渲染为sh语句"""

    value = shlex.quote(item.value or "")
    separator = shlex.quote(item.separator or "")
    match (item.kind):
        case env_mod.mutation_kind.set:
            return f"{key}={value}; export {key}"
        case env_mod.mutation_kind.unset:
            return f"unset {key}"
        case env_mod.mutation_kind.set_if_unset:
            return f'if [ -z "${{{key}+x}}" ]; then {key}={value}; export {key}; fi'
        case env_mod.mutation_kind.prefix:
            return f'if [ -n "${{{key}:-}}" ]; then {key}={value}{separator}"${key}"; else {key}={value}; fi; export {key}'
        case env_mod.mutation_kind.suffix | env_mod.mutation_kind.append:
            return f'if [ -n "${{{key}:-}}" ]; then {key}="${key}"{separator}{value}; else {key}={value}; fi; export {key}'


def render_launcher(content: manifest) -> str:
    """生成应用清单后执行目标程序的sh启动脚本

    脚本以exec结束，其后附加的清单数据永远不会被sh读取。

    Args:
        content (manifest): 清单

    Returns:
        str: 启动脚本
    """

    lines = ["#!/bin/sh", "# bootchain wrapper"]
    for key, mutation_list in content.env.items():
        assert _variable_name.fullmatch(key), common.bootchain_error(f"Invalid environment variable name {key!r}.")
        lines.extend(_render_mutation(key, item) for item in mutation_list)

    command: list[str] = []
    current = content.interpreter
    if current is None or current.kind == interpreter_kind.normal:
        command = [shlex.quote(content.executable)]
    elif current.kind == interpreter_kind.dyld:
        if current.library_paths:
            lines.append(_render_mutation("DYLD_LIBRARY_PATH", env_mod.prefix(":".join(current.library_paths))))
        if current.preloads:
            lines.append(_render_mutation("DYLD_INSERT_LIBRARIES", env_mod.prefix(":".join(current.preloads))))
        command = [shlex.quote(content.executable)]
    else:
        assert current.path, common.bootchain_error(f"The {current.kind} interpreter requires a path.")
        command = [shlex.quote(current.path)]
        if current.library_paths:
            command += ["--library-path", shlex.quote(":".join(current.library_paths))]
        if current.preloads:
            command += ["--preload", shlex.quote(":".join(current.preloads))]
        command += ["--argv0", '"$0"', *map(shlex.quote, current.args), shlex.quote(content.executable)]
    command += [*map(shlex.quote, content.args), '"$@"']
    lines.append("exec " + " ".join(command))
    lines.append("exit 127")
    return "\n".join(lines) + "\n"


def encode_wrapper(content: manifest) -> bytes:
    """生成包装文件的完整内容"""

    data = json.dumps(content.encode(), sort_keys=True).encode()
    return render_launcher(content).encode() + data + _trailer.pack(len(data), format_version) + magic_number


def read_manifest(path: Path) -> manifest | None:
    """读取包装文件的清单

    Args:
        path (Path): 文件路径

    Returns:
        manifest | None: 文件不是包装文件时返回None
    """

    try:
        with path.open("rb") as file:
            file.seek(0, os.SEEK_END)
            size = file.tell()
            if size < trailer_size:
                return None
            file.seek(size - trailer_size)
            trailer = file.read(trailer_size)
            if trailer[_trailer.size :] != magic_number:
                return None
            length, current_version = _trailer.unpack(trailer[: _trailer.size])
            if current_version != format_version or length > size - trailer_size:
                return None
            file.seek(size - trailer_size - length)
            return manifest.decode(json.loads(file.read(length)))
    except (OSError, ValueError):
        return None


def is_wrapper(path: Path) -> bool:
    return path.is_file() and read_manifest(path) is not None


class wrapping_service:
    """生成和读取包装文件

    Attributes:
        store: 被包装的可执行文件会被加入该仓库，保证包装文件移动到任何位置后仍能找到它
    """

    store: artifact_store

    def __init__(self, store: artifact_store) -> None:
        self.store = store

    def wrap(
        self,
        executable: Path,
        output: Path,
        interpreter: interpreter_config | None = None,
        env: env_mod.layer = {},
        args: Sequence[str] = (),
        checkin: bool = True,
    ) -> manifest:
        """包装可执行文件

        Args:
            executable (Path): 被包装的可执行文件，可以已经是包装文件
            output (Path): 包装文件的输出路径，可以与executable相同
            interpreter (interpreter | None, optional): 解释器. 默认直接执行.
            env (env_mod.layer, optional): 执行前对环境变量的修改.
            args (Sequence[str], optional): 额外参数.
            checkin (bool, optional): 是否将可执行文件加入仓库. 不加入时直接引用其绝对路径，只适用于构建环境内部.

        Returns:
            manifest: 写入的清单
        """

        executable_path = self.store.checkin(executable).path if checkin else executable.absolute()
        content = manifest(str(executable_path), interpreter, env_mod.merge(env), tuple(args))
        self.write(output, content)
        return content

    @staticmethod
    def write(output: Path, content: manifest) -> None:
        """将清单写为包装文件，先写入临时文件再原子替换"""

        temp = output.with_name(f".{output.name}.wrap-tmp")
        temp.write_bytes(encode_wrapper(content))
        os.chmod(temp, 0o755)
        os.replace(temp, output)

    @staticmethod
    def unwrap(path: Path) -> Path:
        """获取包装文件包装的原始可执行文件

        Raises:
            RuntimeError: path不是包装文件
        """

        content = read_manifest(path)
        if content is None:
            raise RuntimeError(common.bootchain_error(f"{path} is not a wrapped executable."))
        return Path(content.executable)


__all__ = [
    "magic_number",
    "format_version",
    "trailer_size",
    "interpreter_kind",
    "interpreter_config",
    "manifest",
    "render_launcher",
    "encode_wrapper",
    "read_manifest",
    "is_wrapper",
    "wrapping_service",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
