import typing
from collections.abc import Sequence
from pathlib import Path

from . import common
from . import environment as env_mod
from .artifact import artifact, artifact_store
from .executor import constant, local_executor, step
from .fetch import fetcher
from .triple import triple
from .wrap import wrapping_service

# 用于构建的工具链以环境层列表表示
sdk_env: typing.TypeAlias = list[env_mod.layer]


class build_context:
    """各构建器共用的构建环境

    Attributes:
        build     : build平台，即运行自举工具链的平台，由顶层调用计算一次后显式传递
        store     : 制品仓库
        executor  : 执行器
        fetcher   : 源码下载器
        wrapper   : 包装服务
        bootstrap : 自举工具链对应的环境层
        prefix_dir: 导出构建结果的目录
    """

    build: triple
    store: artifact_store
    executor: local_executor
    fetcher: fetcher
    wrapper: wrapping_service
    bootstrap: sdk_env
    prefix_dir: Path
    _sources: dict[tuple[str, str | None], step]

    def __init__(
        self,
        build: triple,
        store: artifact_store,
        executor: local_executor | None = None,
        bootstrap: Sequence[env_mod.layer] = (),
        prefix_dir: Path | None = None,
        network_try_times: int = 3,
    ) -> None:
        self.build = build
        self.store = store
        self.executor = executor or local_executor(store)
        self.fetcher = fetcher(self.executor, network_try_times)
        self.wrapper = wrapping_service(store)
        self.bootstrap = list(bootstrap)
        self.prefix_dir = prefix_dir or Path.cwd()
        self._sources = {}

    @property
    def jobs(self) -> int:
        return self.executor.jobs

    def source(self, name: str, version: str | None = None) -> step:
        """获取源码下载步骤，同一源码只对应一个步骤"""

        key = (name, version)
        if key not in self._sources:
            self._sources[key] = self.fetcher.source(name, version)
        return self._sources[key]

    def bootstrap_sdk(self) -> step:
        """自举工具链对应的步骤"""

        return constant("bootstrap sdk", list(self.bootstrap), {"build": self.build})

    @staticmethod
    def toolchain_env(*toolchains: artifact) -> sdk_env:
        """将工具链目录转换为环境层"""

        return [env_mod.directory_layer(toolchain.path) for toolchain in toolchains]

    def export(self, source: artifact, name: str, compress_level: int = 17) -> Path:
        """将制品复制到导出目录并打包为tar.zst

        Args:
            source (artifact): 要导出的制品
            name (str): 导出名称
            compress_level (int, optional): zstd压缩等级(1~22). 默认为17级.

        Returns:
            Path: 导出的目录
        """

        target = self.prefix_dir / name
        common.remove_if_exists(target)
        common.copy(source.path, target)
        with common.chdir_guard(self.prefix_dir):
            common.run_command(f"tar -cf {name}.tar {name}")
            common.run_command(f"zstd --ultra --rm -{compress_level} -T{self.jobs} -f {name}.tar")
        return target


__all__ = ["sdk_env", "build_context"]

assert __name__ != "__main__", "Import this file instead of running it directly."
