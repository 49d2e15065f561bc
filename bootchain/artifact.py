import hashlib
import os
import shutil
import stat
import tempfile
import typing
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from . import common


class artifact:
    """存储在内容寻址仓库中的不可变文件或目录

    Attributes:
        id   : 内容摘要
        store: 所属仓库
    """

    id: str
    store: "artifact_store"

    def __init__(self, id: str, store: "artifact_store") -> None:
        self.id = id
        self.store = store

    @property
    def path(self) -> Path:
        return self.store.artifacts_dir / self.id

    def __truediv__(self, subpath: str) -> Path:
        return self.store.get(self, subpath)

    def __str__(self) -> str:
        return str(self.path)

    def __repr__(self) -> str:
        return f"artifact({self.id})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, artifact) and self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


# 目录构造时的条目：已有制品、文件系统路径、文本内容或软链接
class symlink_entry(typing.NamedTuple):
    target: str


entry_type: typing.TypeAlias = "artifact | Path | str | bytes | symlink_entry | Mapping[str, entry_type]"


def _digest_tree(path: Path) -> str:
    """计算文件或目录树的内容摘要，包含相对路径、类型、可执行位、文件内容和软链接目标

    Args:
        path (Path): 要计算摘要的路径

    Returns:
        str: sha256摘要
    """

    digest = hashlib.sha256()

    def feed(current: Path, relative: str) -> None:
        mode = current.lstat().st_mode
        if stat.S_ISLNK(mode):
            digest.update(f"l\0{relative}\0{os.readlink(current)}\0".encode())
        elif stat.S_ISDIR(mode):
            digest.update(f"d\0{relative}\0".encode())
            for child in sorted(os.listdir(current)):
                feed(current / child, f"{relative}/{child}" if relative else child)
        else:
            executable = "x" if mode & stat.S_IXUSR else "-"
            digest.update(f"f\0{relative}\0{executable}\0".encode())
            with current.open("rb") as file:
                for block in iter(lambda: file.read(1 << 20), b""):
                    digest.update(block)
            digest.update(b"\0")

    feed(path, "")
    return digest.hexdigest()


class artifact_store:
    """本地内容寻址制品仓库

    制品一经写入就不再修改，所有"修改"都通过生成新制品完成。
    写入时先复制到临时目录，再原子地重命名到最终位置，因此不完整的制品永远不可见。

    Attributes:
        root         : 仓库根目录
        artifacts_dir: 制品所在目录
        temp_dir     : 临时文件所在目录，与制品目录位于同一文件系统
    """

    root: Path
    artifacts_dir: Path
    temp_dir: Path

    def __init__(self, root: Path) -> None:
        self.root = root
        self.artifacts_dir = root / "artifacts"
        self.temp_dir = root / "tmp"
        for dir in (self.artifacts_dir, self.temp_dir):
            dir.mkdir(parents=True, exist_ok=True)

    def scratch_dir(self, prefix: str = "scratch-") -> Path:
        """在仓库所在文件系统上创建临时目录"""

        return Path(tempfile.mkdtemp(prefix=prefix, dir=self.temp_dir))

    def checkin(self, path: Path, move: bool = False) -> artifact:
        """将文件或目录加入仓库

        Args:
            path (Path): 要加入的路径
            move (bool, optional): 是否直接移动path而不是复制. 默认为复制.

        Returns:
            artifact: 对应的制品，内容相同的路径总是得到同一个制品
        """

        assert path.exists() or path.is_symlink(), common.bootchain_error(f"Cannot check in missing path {path}.")
        id = _digest_tree(path)
        result = artifact(id, self)
        if result.path.exists() or result.path.is_symlink():
            if move:
                common.remove(path, dry_run=False)
            return result

        staging = self.scratch_dir("checkin-") / id
        if move:
            os.replace(path, staging)
        elif path.is_dir() and not path.is_symlink():
            shutil.copytree(path, staging, symlinks=True)
        else:
            shutil.copy2(path, staging, follow_symlinks=False)
        try:
            os.replace(staging, result.path)
        except OSError:
            # 其他线程已经写入了相同内容的制品
            if not result.path.exists():
                raise
        finally:
            shutil.rmtree(staging.parent, ignore_errors=True)
        return result

    def lookup(self, id: str) -> artifact | None:
        """根据摘要查找已存在的制品"""

        result = artifact(id, self)
        return result if result.path.exists() or result.path.is_symlink() else None

    def get(self, source: artifact, subpath: str = "") -> Path:
        """获取制品内部的路径，不允许越出制品本身

        Args:
            source (artifact): 制品
            subpath (str, optional): 制品内的相对路径. 默认为制品根.

        Raises:
            RuntimeError: 子路径越出制品或不存在

        Returns:
            Path: 子路径的绝对路径
        """

        relative = PurePosixPath(subpath)
        if relative.is_absolute() or ".." in relative.parts:
            raise RuntimeError(common.bootchain_error(f'Path "{subpath}" escapes artifact {source.id}.'))
        result = source.path / relative
        if not (result.exists() or result.is_symlink()):
            raise RuntimeError(common.bootchain_error(f'Path "{subpath}" does not exist in artifact {source.id}.'))
        return result

    def bytes(self, source: artifact, subpath: str = "") -> bytes:
        return self.get(source, subpath).read_bytes()

    def text(self, source: artifact, subpath: str = "") -> str:
        return self.get(source, subpath).read_text()

    def _materialize(self, entry: entry_type, path: Path) -> None:
        """将目录条目写入path"""

        match (entry):
            case artifact():
                common.copy(entry.path, path, dry_run=False)
            case Path():
                common.copy(entry, path, dry_run=False)
            case symlink_entry():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.symlink_to(entry.target)
            case str():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(entry)
            case bytes():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(entry)
            case _:
                path.mkdir(parents=True, exist_ok=True)
                for name, child in entry.items():
                    self._materialize(child, path / name)

    def directory(self, entries: Mapping[str, entry_type]) -> artifact:
        """根据条目构造目录制品，条目名可以包含/以创建多级目录

        Args:
            entries (Mapping[str, entry_type]): 条目名到内容的映射

        Returns:
            artifact: 目录制品
        """

        work_dir = self.scratch_dir("directory-")
        try:
            output = work_dir / "output"
            output.mkdir()
            self._materialize(entries, output)
            return self.checkin(output, move=True)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def merge(self, *sources: artifact) -> artifact:
        """合并若干目录制品，同名文件以靠后的制品为准

        Returns:
            artifact: 合并后的制品
        """

        work_dir = self.scratch_dir("merge-")
        try:
            output = work_dir / "output"
            output.mkdir()
            for source in sources:
                assert source.path.is_dir(), common.bootchain_error(f"Cannot merge non-directory artifact {source.id}.")
                common.copy(source.path, output, dry_run=False)
            return self.checkin(output, move=True)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)


__all__ = ["artifact", "artifact_store", "symlink_entry", "entry_type"]

assert __name__ != "__main__", "Import this file instead of running it directly."
