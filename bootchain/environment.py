import dataclasses
import enum
import typing
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from . import common


class mutation_kind(enum.StrEnum):
    """环境变量的修改方式

    Attributes:
        set         : 设置为指定值，覆盖之前的值
        unset       : 删除变量
        set_if_unset: 变量不存在时设置为指定值
        prefix      : 以分隔符将值添加到现有值之前
        suffix      : 以分隔符将值添加到现有值之后
        append      : 以空格将若干值追加到现有值之后，用于CFLAGS等参数列表
    """

    set = "set"
    unset = "unset"
    set_if_unset = "set_if_unset"
    prefix = "prefix"
    suffix = "suffix"
    append = "append"


@dataclasses.dataclass(frozen=True)
class mutation:
    """对单个环境变量的一次修改"""

    kind: mutation_kind
    value: str | None = None
    separator: str | None = None

    def apply(self, current: str | None) -> str | None:
        """将修改作用在当前值上

        Args:
            current (str | None): 当前值，None表示变量不存在

        Returns:
            str | None: 修改后的值
        """

        match (self.kind):
            case mutation_kind.set:
                return self.value
            case mutation_kind.unset:
                return None
            case mutation_kind.set_if_unset:
                return self.value if current is None else current
            case mutation_kind.prefix:
                assert self.value is not None
                return self.value if not current else f"{self.value}{self.separator}{current}"
            case mutation_kind.suffix | mutation_kind.append:
                assert self.value is not None
                return self.value if not current else f"{current}{self.separator}{self.value}"

    def encode(self) -> dict[str, str]:
        result = {"kind": str(self.kind)}
        if self.value is not None:
            result["value"] = self.value
        if self.separator is not None:
            result["separator"] = self.separator
        return result

    @staticmethod
    def decode(data: Mapping[str, str]) -> "mutation":
        return mutation(mutation_kind(data["kind"]), data.get("value"), data.get("separator"))


def set_value(value: str | Path) -> mutation:
    return mutation(mutation_kind.set, str(value))


def unset() -> mutation:
    return mutation(mutation_kind.unset)


def set_if_unset(value: str | Path) -> mutation:
    return mutation(mutation_kind.set_if_unset, str(value))


def prefix(value: str | Path, separator: str = ":") -> mutation:
    return mutation(mutation_kind.prefix, str(value), separator)


def suffix(value: str | Path, separator: str = ":") -> mutation:
    return mutation(mutation_kind.suffix, str(value), separator)


def append(*values: str | Path) -> mutation:
    return mutation(mutation_kind.append, " ".join(map(str, values)), " ")


# 单个环境层中每个变量允许的取值
layer_value: typing.TypeAlias = str | Path | bool | None | mutation | Sequence[mutation]
layer: typing.TypeAlias = Mapping[str, layer_value]


def to_mutations(value: layer_value) -> list[mutation]:
    """将环境层中的取值统一转换为修改列表

    Args:
        value (layer_value): str和Path为设置，None为删除，bool映射为"1"或""

    Returns:
        list[mutation]: 修改列表
    """

    match (value):
        case None:
            return [unset()]
        case bool():
            return [set_value("1" if value else "")]
        case str() | Path():
            return [set_value(value)]
        case mutation():
            return [value]
        case _:
            result = list(value)
            for item in result:
                assert isinstance(item, mutation), common.bootchain_error(
                    f"Invalid environment value: {item!r}.", common.message_type.bootchain_internal
                )
            return result


def combine(first: mutation, second: mutation) -> list[mutation]:
    """化简同一变量上连续的两次修改

    Args:
        first (mutation): 先发生的修改
        second (mutation): 后发生的修改

    Returns:
        list[mutation]: 等价的修改列表，无法化简时原样保留两次修改
    """

    match (first.kind, second.kind):
        # 设置和删除总是覆盖之前的所有修改
        case (_, mutation_kind.set | mutation_kind.unset):
            return [second]
        case (mutation_kind.unset, mutation_kind.set_if_unset):
            return [set_value(typing.cast(str, second.value))]
        case (mutation_kind.set, mutation_kind.set_if_unset):
            return [first]
        case (mutation_kind.set_if_unset, mutation_kind.set_if_unset):
            return [first]
        case (mutation_kind.set | mutation_kind.unset, mutation_kind.prefix | mutation_kind.suffix | mutation_kind.append):
            return [set_value(typing.cast(str, second.apply(first.value)))]
        case _:
            return [first, second]


def merge(*layers: layer) -> dict[str, list[mutation]]:
    """将若干环境层按顺序合并为单个环境层，同一变量的修改会尽量化简

    Returns:
        dict[str, list[mutation]]: 合并后的环境层
    """

    result: dict[str, list[mutation]] = {}
    for current_layer in layers:
        for key, value in current_layer.items():
            mutation_list = result.setdefault(key, [])
            for item in to_mutations(value):
                if mutation_list:
                    mutation_list[-1:] = combine(mutation_list[-1], item)
                else:
                    mutation_list.append(item)
    return result


def compose(layers: Iterable[layer], base: Mapping[str, str] | None = None) -> dict[str, str]:
    """按顺序将环境层作用于基础环境，得到最终环境

    对每个变量依层的顺序依次应用修改：set和unset覆盖当前值，set_if_unset只在变量不存在时生效，
    prefix、suffix和append在当前值上拼接。set_if_unset的值会立即成为当前值，之后的拼接作用于该值。

    Args:
        layers (Iterable[layer]): 环境层列表，越靠后优先级越高
        base (Mapping[str, str] | None, optional): 基础环境. 默认为空环境.

    Returns:
        dict[str, str]: 按变量名排序的最终环境
    """

    values: dict[str, str | None] = dict(base or {})
    for current_layer in layers:
        for key, value in current_layer.items():
            for item in to_mutations(value):
                values[key] = item.apply(values.get(key))
    return {key: value for key, value in sorted(values.items()) if value is not None}


def directory_layer(path: Path) -> dict[str, layer_value]:
    """目录对环境的贡献：bin加入PATH，include加入CPATH，lib加入LIBRARY_PATH

    include中含有stdio.h时说明这是一个C库的头文件目录，不能加入CPATH，否则会打乱编译器的头文件搜索顺序

    Args:
        path (Path): 工具或库的安装目录

    Returns:
        dict[str, layer_value]: 环境层
    """

    result: dict[str, layer_value] = {}
    if (path / "bin").is_dir():
        result["PATH"] = prefix(path / "bin")
    include_dir = path / "include"
    if include_dir.is_dir() and not (include_dir / "stdio.h").exists():
        result["CPATH"] = prefix(include_dir)
    if (path / "lib").is_dir():
        result["LIBRARY_PATH"] = prefix(path / "lib")
    return result


def encode_layer(value: layer) -> dict[str, list[dict[str, str]]]:
    """将环境层编码为可json序列化的字典"""

    return {key: [item.encode() for item in mutation_list] for key, mutation_list in merge(value).items()}


def decode_layer(data: Mapping[str, Sequence[Mapping[str, str]]]) -> dict[str, list[mutation]]:
    """从json字典中解码环境层"""

    return {key: [mutation.decode(item) for item in items] for key, items in data.items()}


__all__ = [
    "mutation_kind",
    "mutation",
    "set_value",
    "unset",
    "set_if_unset",
    "prefix",
    "suffix",
    "append",
    "layer",
    "layer_value",
    "to_mutations",
    "combine",
    "merge",
    "compose",
    "directory_layer",
    "encode_layer",
    "decode_layer",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
