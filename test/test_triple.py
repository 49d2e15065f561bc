import pytest

from bootchain.common import malformed_triple_error, unsupported_environment_error
from bootchain.triple import libc_type, toolchain_type, triple


@pytest.mark.parametrize(
    "text",
    [
        "x86_64-linux",
        "x86_64-linux-gnu",
        "x86_64-unknown-linux-gnu",
        "aarch64-linux-musl",
        "aarch64-apple-darwin",
        "aarch64-apple-darwin23.4.0",
        "x86_64-linux-gnu2.37",
        "riscv64-unknown-linux-gnu",
        "arm-linux-gnueabihf",
    ],
)
def test_round_trip(text: str) -> None:
    """测试合法的平台名称能够无损地解析和输出"""

    assert str(triple.parse(text)) == text


def test_parse_fields() -> None:
    """测试各字段的解析结果"""

    result = triple.parse("aarch64-apple-darwin23.4.0")
    assert result.arch == "aarch64"
    assert result.vendor == "apple"
    assert result.os == "darwin"
    assert result.os_version == "23.4.0"
    assert result.environment is None

    result = triple.parse("x86_64-linux-gnu2.37")
    assert result.vendor is None
    assert result.environment == "gnu"
    assert result.environment_version == "2.37"


@pytest.mark.parametrize(
    "text, token",
    [
        ("x86_64", "x86_64"),
        ("x86_64-a-b-c-d", "x86_64-a-b-c-d"),
        ("sparc-linux-gnu", "sparc"),
        ("x86_64-windows", "windows"),
        ("x86_64-linux-msvc", "msvc"),
        ("x86_64-unknown-linux-uclibc", "uclibc"),
    ],
)
def test_malformed(text: str, token: str) -> None:
    """测试非法的平台名称抛出异常并指明出错的字段"""

    with pytest.raises(malformed_triple_error) as info:
        triple.parse(text)
    assert info.value.token == token
    assert triple.try_parse(text) is None
    assert not triple.check(text)


def test_environment_version_requires_environment() -> None:
    """environment_version不能脱离environment单独存在"""

    with pytest.raises(malformed_triple_error):
        triple("x86_64", "linux", environment_version="2.37")


def test_canonicalize() -> None:
    """测试正则化时填充默认vendor和environment"""

    assert str(triple.parse("x86_64-linux").canonicalize()) == "x86_64-unknown-linux-gnu"
    assert str(triple.parse("aarch64-darwin").canonicalize()) == "aarch64-apple-darwin"
    assert str(triple.parse("aarch64-linux-musl").canonicalize()) == "aarch64-unknown-linux-musl"


def test_equals() -> None:
    """比较时忽略可省略字段的差异"""

    assert triple.parse("x86_64-linux-gnu").equals("x86_64-unknown-linux-gnu")
    assert triple.parse("x86_64-linux").equals(triple.parse("x86_64-linux-gnu"))
    assert not triple.parse("x86_64-linux-gnu").equals("x86_64-linux-musl")
    assert not triple.parse("x86_64-linux-gnu").equals("aarch64-linux-gnu")


def test_with_override() -> None:
    """测试字段覆盖生成新平台，原平台不变"""

    origin = triple.parse("x86_64-linux-gnu")
    result = origin.with_override(arch="aarch64", vendor="pc")
    assert str(result) == "aarch64-pc-linux-gnu"
    assert str(origin) == "x86_64-linux-gnu"
    with pytest.raises(malformed_triple_error):
        origin.with_override(os="windows")


def test_helpers() -> None:
    """测试arch_and_os和strip_versions"""

    origin = triple.parse("aarch64-apple-darwin23.4.0")
    assert str(origin.arch_and_os()) == "aarch64-darwin"
    assert str(origin.strip_versions()) == "aarch64-apple-darwin"


def test_libc() -> None:
    """测试C库家族和版本"""

    assert triple.parse("x86_64-linux-gnu").libc_family == libc_type.glibc
    assert triple.parse("x86_64-linux").libc_family == libc_type.glibc
    assert triple.parse("aarch64-linux-musl").libc_family == libc_type.musl
    assert triple.parse("x86_64-linux-gnu").libc_version == "2.39"
    assert triple.parse("x86_64-linux-gnu2.37").libc_version == "2.37"


@pytest.mark.parametrize("text", ["aarch64-apple-darwin", "x86_64-apple-darwin23.4.0"])
def test_darwin_has_no_libc_family(text: str) -> None:
    """darwin平台不使用glibc或musl"""

    with pytest.raises(unsupported_environment_error):
        triple.parse(text).libc_family


@pytest.mark.parametrize(
    "text, arch",
    [
        ("aarch64-linux-gnu", "arm64"),
        ("arm-linux-gnueabihf", "arm"),
        ("i686-linux-gnu", "x86"),
        ("x86_64-linux-gnu", "x86_64"),
        ("riscv64-linux-gnu", "riscv"),
        ("loongarch64-linux-gnu", "loongarch"),
    ],
)
def test_kernel_arch(text: str, arch: str) -> None:
    """测试内核使用的ARCH名称"""

    assert triple.parse(text).kernel_arch == arch


def test_interpreter_name() -> None:
    """动态链接器的名称只由arch和libc家族决定"""

    assert triple.parse("x86_64-linux-gnu").interpreter_name == "ld-linux-x86-64.so.2"
    assert triple.parse("x86_64-unknown-linux-gnu2.37").interpreter_name == "ld-linux-x86-64.so.2"
    assert triple.parse("aarch64-linux-gnu").interpreter_name == "ld-linux-aarch64.so.1"
    assert triple.parse("aarch64-linux-musl").interpreter_name == "ld-musl-aarch64.so.1"


def test_classify_toolchain() -> None:
    """测试工具链类型的鉴别"""

    build = triple.parse("x86_64-linux-gnu")
    other = triple.parse("aarch64-linux-gnu")
    assert toolchain_type.classify_toolchain(build, triple.parse("x86_64-unknown-linux-gnu"), build) == toolchain_type.native
    assert toolchain_type.classify_toolchain(build, build, other) == toolchain_type.cross
    assert toolchain_type.classify_toolchain(build, other, other) == toolchain_type.canadian
    assert toolchain_type.classify_toolchain(build, other, triple.parse("riscv64-linux-gnu")) == toolchain_type.canadian_cross
    assert str(toolchain_type.canadian_cross) == "canadian cross toolchain"
