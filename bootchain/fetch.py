import enum
import hashlib
import typing
from pathlib import Path

from . import common
from .artifact import artifact
from .executor import local_executor, step


class source_version(enum.StrEnum):
    """各源码包的默认版本"""

    binutils = "2.43"
    gcc = "14.2.0"
    glibc = "2.39"
    musl = "1.2.5"
    linux = "5.10.222"
    gmp = "6.3.0"
    mpfr = "4.2.1"
    mpc = "1.3.1"
    isl = "0.26"


class source_package(typing.NamedTuple):
    """一个可下载的源码包

    Attributes:
        name    : 包名
        version : 版本号
        url     : 下载地址
        checksum: 形如sha256:<hex>的校验和
    """

    name: str
    version: str
    url: str
    checksum: str


# glibc受支持的版本及其校验和
glibc_checksum_list: dict[str, str] = {
    "2.37": "sha256:2257eff111a1815d74f46856daaf40b019c1e553156c69d48ba0cbfc1bb91a43",
    "2.38": "sha256:fb82998998b2b29965467bc1b69d152e9c307d2cf301c9eafb4555b770ef3fd2",
    "2.39": "sha256:f77bd47cf8170c57365ae7bf86696c118adb3b120d3259c64c502d3dc1e2d926",
}

_gnu_mirror = "https://ftp.gnu.org/gnu"


def get_source(name: str, lib_version: str | None = None) -> source_package:
    """获取源码包的下载信息

    Args:
        name (str): 包名
        lib_version (str | None, optional): 版本号，只有glibc支持多个版本. 默认为source_version中的版本.

    Raises:
        RuntimeError: 未知的包或不受支持的版本

    Returns:
        source_package: 源码包
    """

    if name not in source_version.__members__:
        raise RuntimeError(common.bootchain_error(f"Unknown source package {name}."))
    default_version = source_version[name]
    lib_version = lib_version or default_version
    if name == "glibc":
        if lib_version not in glibc_checksum_list:
            raise RuntimeError(
                common.bootchain_error(f"Unsupported glibc version {lib_version}, supported: {', '.join(glibc_checksum_list)}.")
            )
        return source_package(name, lib_version, f"{_gnu_mirror}/glibc/glibc-{lib_version}.tar.xz", glibc_checksum_list[lib_version])
    if lib_version != default_version:
        raise RuntimeError(common.bootchain_error(f"Unsupported {name} version {lib_version}, only {default_version} is supported."))
    match (name):
        case "binutils":
            url = f"{_gnu_mirror}/binutils/binutils-{lib_version}.tar.zst"
            checksum = "ba5e600af2d0e823312b4e04d265722594be7d94906ebabe6eaf8d0817ef48ed"
        case "gcc":
            url = f"{_gnu_mirror}/gcc/gcc-{lib_version}/gcc-{lib_version}.tar.xz"
            checksum = "a7b39bc69cbf9e25826c5a60ab26477001f7c08d85cec04bc0e29cabed6f3cc9"
        case "musl":
            url = f"https://musl.libc.org/releases/musl-{lib_version}.tar.gz"
            checksum = "a9a118bbe84d8764da0ea0d28b3ab3fae8477fc7e4085d90102b8596fc7c75e4"
        case "linux":
            url = f"https://cdn.kernel.org/pub/linux/kernel/v{lib_version.split('.')[0]}.x/linux-{lib_version}.tar.xz"
            checksum = "7b2d06803b5abb03c85f171100ca9d7acd6ba245036fe9a16eb998f088b150cb"
        case "gmp":
            url = f"{_gnu_mirror}/gmp/gmp-{lib_version}.tar.xz"
            checksum = "a3c2b80201b89e68616f4ad30bc66aee4927c3ce50e33929ca819d5c43538898"
        case "mpfr":
            url = f"{_gnu_mirror}/mpfr/mpfr-{lib_version}.tar.xz"
            checksum = "277807353a6726978996945af13e52829e3abd7a9a5b7fb2793894e18f1fcbb2"
        case "mpc":
            url = f"{_gnu_mirror}/mpc/mpc-{lib_version}.tar.gz"
            checksum = "ab642492f5cf882b74aa0cb730cd410a81edcdbec895183ce930e706c1c759b8"
        case _:
            url = f"https://libisl.sourceforge.io/isl-{lib_version}.tar.xz"
            checksum = "a0b5cb06d24f9fa9e77b55fabbe9a3c94a336190345c2555f9915bb38e976504"
    return source_package(name, lib_version, url, f"sha256:{checksum}")


def file_checksum(path: Path) -> str:
    """计算文件的sha256校验和

    Returns:
        str: 形如sha256:<hex>的校验和
    """

    digest = hashlib.sha256()
    with path.open("rb") as file:
        for block in iter(lambda: file.read(1 << 20), b""):
            digest.update(block)
    return f"sha256:{digest.hexdigest()}"


class fetcher:
    """下载并校验源码包，解压结果作为制品缓存

    Attributes:
        executor         : 执行器，用于缓存和原子提交
        network_try_times: 网络操作的尝试次数
    """

    executor: local_executor
    network_try_times: int

    def __init__(self, executor: local_executor, network_try_times: int = 3) -> None:
        self.executor = executor
        self.network_try_times = network_try_times

    def _download(self, url: str, file: Path) -> None:
        for _ in range(self.network_try_times):
            try:
                common.run_command(
                    ["wget", url, *filter(None, [common.command_quiet.get_option()]), "-c", "-O", str(file)], dry_run=False
                )
                return
            except RuntimeError:
                common.bootchain_print(common.bootchain_warning(f"Download {url} failed, retrying."))
        raise RuntimeError(common.bootchain_error(f"Download {url} failed."))

    def fetch(self, url: str, checksum: str, unpack: bool = True) -> artifact:
        """下载文件，校验通过后解压并去除唯一的顶层目录

        Args:
            url (str): 下载地址
            checksum (str): 形如sha256:<hex>的校验和
            unpack (bool, optional): 是否解压. 默认为解压.

        Raises:
            checksum_mismatch_error: 校验和不符

        Returns:
            artifact: 解压后的目录制品，不解压时为文件制品
        """

        assert checksum.startswith("sha256:"), common.bootchain_error(f"Unsupported checksum {checksum}.")

        def execute(work: Path, output: Path) -> None:
            archive = work / url.rsplit("/", 1)[-1]
            self._download(url, archive)
            actual = file_checksum(archive)
            if actual != checksum:
                raise common.checksum_mismatch_error(url, checksum, actual)
            if not unpack:
                common.rename(archive, output, dry_run=False)
                return
            unpack_dir = work / "unpack"
            common.mkdir(unpack_dir, dry_run=False)
            common.run_command(["tar", "-xf", str(archive), "-C", str(unpack_dir)], dry_run=False)
            children = list(unpack_dir.iterdir())
            top = children[0] if len(children) == 1 and children[0].is_dir() else unpack_dir
            common.rename(top, output, dry_run=False)

        return self.executor.produce(f"fetch {url}", self.executor.key("fetch", url, checksum, unpack), execute, {"url": url})

    def source(self, name: str, lib_version: str | None = None) -> step:
        """获取源码包的下载步骤"""

        package = get_source(name, lib_version)
        return step(
            f"source {package.name}-{package.version}",
            lambda: self.fetch(package.url, package.checksum),
            context={"source": f"{package.name}-{package.version}"},
        )


__all__ = ["source_version", "source_package", "glibc_checksum_list", "get_source", "file_checksum", "fetcher"]

assert __name__ != "__main__", "Import this file instead of running it directly."
