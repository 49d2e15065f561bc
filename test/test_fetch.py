import os
import shutil
import tarfile
from pathlib import Path

import pytest

from bootchain.artifact import artifact_store
from bootchain.common import checksum_mismatch_error
from bootchain.executor import local_executor
from bootchain.fetch import fetcher, file_checksum, get_source, glibc_checksum_list, source_version


def test_get_source() -> None:
    """测试源码包的下载信息"""

    package = get_source("gcc")
    assert package.version == source_version.gcc
    assert package.url == f"https://ftp.gnu.org/gnu/gcc/gcc-{package.version}/gcc-{package.version}.tar.xz"
    assert package.checksum.startswith("sha256:")
    for glibc_version in glibc_checksum_list:
        package = get_source("glibc", glibc_version)
        assert package.url.endswith(f"glibc-{glibc_version}.tar.xz")
        assert package.checksum == glibc_checksum_list[glibc_version]
    assert get_source("linux").url.startswith("https://cdn.kernel.org/pub/linux/kernel/v5.x/")


@pytest.mark.parametrize("name, lib_version", [("glibc", "2.30"), ("gcc", "13.1.0"), ("llvm", None)])
def test_unsupported_source(name: str, lib_version: str | None) -> None:
    """未知的包和不受支持的版本抛出异常"""

    with pytest.raises(RuntimeError):
        get_source(name, lib_version)


@pytest.fixture
def local_fetcher(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> fetcher:
    """将下载替换为从本地mirror目录复制"""

    mirror = tmp_path / "mirror"
    mirror.mkdir()

    def download(self: fetcher, url: str, file: Path) -> None:
        shutil.copy(mirror / url.rsplit("/", 1)[-1], file)

    monkeypatch.setattr(fetcher, "_download", download)
    executor = local_executor(artifact_store(tmp_path / "store"), 1, {"PATH": os.environ["PATH"]})
    return fetcher(executor)


def test_fetch_unpack(local_fetcher: fetcher, tmp_path: Path) -> None:
    """解压后去除唯一的顶层目录"""

    package_dir = tmp_path / "pkg-1.0"
    package_dir.mkdir()
    (package_dir / "README").write_text("readme")
    archive = tmp_path / "mirror" / "pkg-1.0.tar.gz"
    with tarfile.open(archive, "w:gz") as file:
        file.add(package_dir, "pkg-1.0")
    result = local_fetcher.fetch("https://example.org/pkg-1.0.tar.gz", file_checksum(archive))
    assert local_fetcher.executor.store.text(result, "README") == "readme"


def test_fetch_file(local_fetcher: fetcher, tmp_path: Path) -> None:
    """不解压时得到文件制品"""

    file = tmp_path / "mirror" / "patch.diff"
    file.write_text("diff")
    result = local_fetcher.fetch("https://example.org/patch.diff", file_checksum(file), unpack=False)
    assert result.path.read_text() == "diff"


def test_checksum_mismatch(local_fetcher: fetcher, tmp_path: Path) -> None:
    """校验和不符时抛出异常且不留下缓存项"""

    file = tmp_path / "mirror" / "bad.tar.gz"
    file.write_text("not the expected content")
    expected = "sha256:" + "0" * 64
    with pytest.raises(checksum_mismatch_error):
        local_fetcher.fetch("https://example.org/bad.tar.gz", expected)
    assert list(local_fetcher.executor.cache_dir.iterdir()) == []


def test_source_step(local_fetcher: fetcher) -> None:
    current = local_fetcher.source("musl")
    assert current.name == f"source musl-{source_version.musl}"
    assert current.context == {"source": f"musl-{source_version.musl}"}
    assert current.dependencies == ()
