import dataclasses
import enum
import re
import typing
from enum import IntFlag, auto
from typing import Self

from . import common

# 受支持的架构列表
support_arch_list = (
    "aarch64",
    "arm64",
    "arm",
    "armv5te",
    "armv6",
    "armv7",
    "armv7a",
    "armv7l",
    "i386",
    "i486",
    "i586",
    "i686",
    "loongarch64",
    "mips",
    "mipsel",
    "mips64",
    "mips64el",
    "powerpc",
    "powerpc64",
    "powerpc64le",
    "riscv32",
    "riscv64",
    "s390x",
    "x86_64",
)

# 受支持的os列表
support_os_list = ("linux", "darwin")

# 受支持的环境列表，按长度降序排列以便最长匹配
support_environment_list = tuple(
    sorted(
        (
            "gnu",
            "gnuabi64",
            "gnuabin32",
            "gnueabi",
            "gnueabihf",
            "gnux32",
            "musl",
            "muslabi64",
            "musleabi",
            "musleabihf",
            "muslx32",
        ),
        key=len,
        reverse=True,
    )
)

default_glibc_version = "2.39"

_version_pattern = re.compile(r"\d+(\.\d+)*")


class libc_type(enum.StrEnum):
    """目标平台使用的C库家族"""

    glibc = "glibc"
    musl = "musl"


def _split_version(token: str, candidates: typing.Iterable[str]) -> tuple[str, str | None] | None:
    """将token拆分为名称和版本号后缀，如darwin23.4.0 -> (darwin, 23.4.0)

    Args:
        token (str): 要拆分的字段
        candidates (typing.Iterable[str]): 可接受的名称列表

    Returns:
        tuple[str, str | None] | None: 拆分结果，名称无法识别则返回None
    """

    for name in candidates:
        if token.startswith(name):
            suffix = token[len(name) :]
            if not suffix:
                return name, None
            if _version_pattern.fullmatch(suffix):
                return name, suffix
    return None


@dataclasses.dataclass(frozen=True)
class triple:
    """平台名称，不可变值类型

    Attributes:
        arch               : 架构
        os                 : 操作系统
        vendor             : 制造商，未指定时为None
        os_version         : 操作系统版本后缀，如darwin23.4.0中的23.4.0
        environment        : 环境/libc，未指定时为None
        environment_version: 环境版本后缀，如gnu2.37中的2.37
    """

    arch: str
    os: str
    vendor: str | None = None
    os_version: str | None = None
    environment: str | None = None
    environment_version: str | None = None

    def __post_init__(self) -> None:
        text = self._render()
        if self.arch not in support_arch_list:
            raise common.malformed_triple_error(text, self.arch)
        if self.os not in support_os_list:
            raise common.malformed_triple_error(text, self.os)
        if self.vendor is not None and (not self.vendor or "-" in self.vendor):
            raise common.malformed_triple_error(text, self.vendor)
        if self.environment is not None and self.environment not in support_environment_list:
            raise common.malformed_triple_error(text, self.environment)
        if self.environment_version is not None and self.environment is None:
            raise common.malformed_triple_error(text, self.environment_version)
        for version in (self.os_version, self.environment_version):
            if version is not None and not _version_pattern.fullmatch(version):
                raise common.malformed_triple_error(text, version)

    def _render(self) -> str:
        fields = [self.arch]
        if self.vendor is not None:
            fields.append(self.vendor)
        fields.append(f"{self.os}{self.os_version or ''}")
        if self.environment is not None:
            fields.append(f"{self.environment}{self.environment_version or ''}")
        return "-".join(fields)

    def __str__(self) -> str:
        return self._render()

    @classmethod
    def parse(cls, text: str) -> Self:
        """解析平台名称

        支持以下形式：
            arch-os
            arch-os-env / arch-vendor-os
            arch-vendor-os-env

        Args:
            text (str): 输入平台名称

        Raises:
            malformed_triple_error: 字段数错误或存在无法识别的字段

        Returns:
            Self: 解析得到的平台
        """

        fields = text.split("-")
        if len(fields) < 2 or len(fields) > 4:
            raise common.malformed_triple_error(text, text)
        for field in fields:
            if not field:
                raise common.malformed_triple_error(text, field)

        def parse_os(token: str) -> tuple[str, str | None]:
            result = _split_version(token, support_os_list)
            if result is None:
                raise common.malformed_triple_error(text, token)
            return result

        def parse_environment(token: str) -> tuple[str, str | None]:
            result = _split_version(token, support_environment_list)
            if result is None:
                raise common.malformed_triple_error(text, token)
            return result

        arch = fields[0]
        if arch not in support_arch_list:
            raise common.malformed_triple_error(text, arch)
        vendor: str | None = None
        environment: tuple[str | None, str | None] = (None, None)
        match (len(fields)):
            case 2:
                os = parse_os(fields[1])
            case 3:
                # 第2个字段为os时第3个字段只能是环境，否则第2个字段为vendor
                if _split_version(fields[1], support_os_list):
                    os = parse_os(fields[1])
                    environment = parse_environment(fields[2])
                else:
                    vendor = fields[1]
                    os = parse_os(fields[2])
            case _:
                vendor = fields[1]
                os = parse_os(fields[2])
                environment = parse_environment(fields[3])
        return cls(arch, os[0], vendor, os[1], environment[0], environment[1])

    @classmethod
    def try_parse(cls, text: str) -> Self | None:
        """尝试解析平台名称，失败返回None而不是抛出异常"""

        try:
            return cls.parse(text)
        except common.malformed_triple_error:
            return None

    @staticmethod
    def check(text: str) -> bool:
        """检查平台名称是否合法"""

        return triple.try_parse(text) is not None

    def canonicalize(self) -> "triple":
        """填充os对应的默认vendor和environment

        Returns:
            triple: 正则化后的平台
        """

        vendor = self.vendor or ("apple" if self.os == "darwin" else "unknown")
        environment = self.environment
        if environment is None and self.os == "linux":
            environment = "gnu"
        return dataclasses.replace(self, vendor=vendor, environment=environment)

    def equals(self, other: "triple | str") -> bool:
        """比较正则化后的平台是否相同

        Args:
            other (triple | str): 待比较对象

        Returns:
            bool: 是否相同
        """

        if isinstance(other, str):
            other = triple.parse(other)
        return self.canonicalize() == other.canonicalize()

    def with_override(self, **partial: str | None) -> "triple":
        """以partial中的字段覆盖当前平台的对应字段，生成新平台

        Raises:
            malformed_triple_error: 覆盖后的平台不合法

        Returns:
            triple: 新平台
        """

        for key in partial:
            assert key in self.__dataclass_fields__, common.bootchain_error(
                f"Unknown triple field {key}.", common.message_type.bootchain_internal
            )
        return dataclasses.replace(self, **partial)  # type: ignore[arg-type]

    def arch_and_os(self) -> "triple":
        """只保留arch和os字段"""

        return triple(self.arch, self.os)

    def strip_versions(self) -> "triple":
        """去除os和environment的版本后缀"""

        return dataclasses.replace(self, os_version=None, environment_version=None)

    @property
    def is_linux(self) -> bool:
        return self.os == "linux"

    @property
    def is_darwin(self) -> bool:
        return self.os == "darwin"

    @property
    def libc_family(self) -> libc_type:
        """根据environment判断C库家族，未指定environment的linux平台为glibc

        Raises:
            unsupported_environment_error: 不是linux平台，或environment既不是gnu也不是musl
        """

        if not self.is_linux:
            raise common.unsupported_environment_error(str(self), self.environment)
        if self.environment is None or "gnu" in self.environment:
            return libc_type.glibc
        elif "musl" in self.environment:
            return libc_type.musl
        raise common.unsupported_environment_error(str(self), self.environment)

    @property
    def libc_version(self) -> str:
        """glibc目标使用environment中的版本后缀，否则使用默认版本"""

        return self.environment_version or default_glibc_version

    @property
    def kernel_arch(self) -> str:
        """linux内核使用的ARCH名称"""

        if self.arch in ("aarch64", "arm64"):
            return "arm64"
        elif self.arch.startswith("arm"):
            return "arm"
        elif self.arch in ("i386", "i486", "i586", "i686"):
            return "x86"
        elif self.arch.startswith("riscv"):
            return "riscv"
        elif self.arch.startswith("mips"):
            return "mips"
        elif self.arch.startswith("powerpc"):
            return "powerpc"
        elif self.arch == "loongarch64":
            return "loongarch"
        elif self.arch == "s390x":
            return "s390"
        return self.arch

    @property
    def interpreter_name(self) -> str:
        """动态链接器的文件名，只由arch和libc家族决定"""

        match (self.libc_family):
            case libc_type.glibc:
                if self.arch == "x86_64":
                    return "ld-linux-x86-64.so.2"
                return f"ld-linux-{self.arch}.so.1"
            case libc_type.musl:
                return f"ld-musl-{self.arch}.so.1"


class toolchain_type(IntFlag):
    """工具链类型枚举

    Attributes:
        native        : 本地工具链，build == host == target
        cross         : 交叉工具链，build == host != target
        canadian      : 加拿大工具链，build != host == target
        canadian_cross: 加拿大交叉工具链，build != host != target
    """

    native = auto()
    cross = auto()
    canadian = auto()
    canadian_cross = auto()

    def __str__(self) -> str:
        return f"{(self.name or 'unknown').replace('_', ' ')} toolchain"

    @staticmethod
    def classify_toolchain(build: triple, host: triple, target: triple) -> "toolchain_type":
        """鉴别工具链种类，比较时忽略vendor等可省略字段的差异

        Args:
            build (triple): build平台
            host (triple): host平台
            target (triple): target平台

        Returns:
            toolchain_type: 工具链类型
        """

        build_is_host = build.equals(host)
        host_is_target = host.equals(target)
        if build_is_host and host_is_target:
            return toolchain_type.native
        elif build_is_host:
            return toolchain_type.cross
        elif host_is_target:
            return toolchain_type.canadian
        return toolchain_type.canadian_cross


def coerce(value: "triple | str") -> triple:
    """接受平台对象或平台名称，统一返回平台对象"""

    return value if isinstance(value, triple) else triple.parse(value)


__all__ = [
    "support_arch_list",
    "support_os_list",
    "support_environment_list",
    "default_glibc_version",
    "libc_type",
    "triple",
    "toolchain_type",
    "coerce",
]

assert __name__ != "__main__", "Import this file instead of running it directly."
