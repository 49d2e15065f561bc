import enum
import threading
import typing
from collections.abc import Callable, Hashable

from . import binutils as binutils_mod
from . import common
from . import gcc
from . import proxy as proxy_mod
from . import sysroot as sysroot_mod
from .artifact import artifact
from .context import build_context, sdk_env
from .executor import step
from .introspect import toolchain_components, toolchain_descriptor
from .ld_proxy import library_path_opt_level
from .triple import triple


class orchestrator_state(enum.StrEnum):
    """构建本地工具链过程中的状态

    Attributes:
        bootstrap_available      : 只有自举工具链
        build_to_host_cross_built: build到host的交叉工具链构建完成
        native_binutils_built    : host上的本地binutils构建完成
        native_toolchain_built   : host上的本地工具链构建完成
    """

    bootstrap_available = "bootstrap_available"
    build_to_host_cross_built = "build_to_host_cross_built"
    native_binutils_built = "native_binutils_built"
    native_toolchain_built = "native_toolchain_built"


# 状态只能按此顺序前进
_state_order = list(orchestrator_state)


class proxied_toolchain(typing.NamedTuple):
    """代理后的工具链

    Attributes:
        toolchain: 工具链目录
        proxy    : 代理目录，工具链不能在build上运行时为None
    """

    toolchain: artifact
    proxy: artifact | None

    @property
    def env(self) -> sdk_env:
        """工具链对应的环境层，代理目录在后，其中的编译器包装优先于原始编译器"""

        layers = build_context.toolchain_env(self.toolchain)
        if self.proxy is not None:
            layers += proxy_mod.proxy_env(self.proxy)
        return layers


class orchestrator:
    """以步骤图的形式组织加拿大交叉构建

    build平台的自举工具链 -> build到host的交叉工具链 -> host上的本地binutils -> host上的本地工具链，
    需要其他target时再用代理后的本地工具链构建host到target的交叉工具链。
    同一组参数只生成一个步骤，因此共用的中间结果只会构建一次。

    Attributes:
        ctx             : 构建环境
        state           : 当前状态
        linker_opt_level: 链接器代理的库搜索路径优化等级
    """

    ctx: build_context
    state: orchestrator_state
    linker_opt_level: str
    _steps: dict[Hashable, step]
    _state_lock: threading.Lock

    def __init__(self, ctx: build_context, linker_opt_level: str = library_path_opt_level.combine) -> None:
        self.ctx = ctx
        self.linker_opt_level = linker_opt_level
        self.state = orchestrator_state.bootstrap_available
        self._steps = {}
        self._state_lock = threading.Lock()

    @property
    def build(self) -> triple:
        return self.ctx.build

    def runs_on_build(self, host: triple) -> bool:
        """host上的程序能否在build上运行，只有这样的工具链才能被分析和代理"""

        return host.arch_and_os().equals(self.build.arch_and_os())

    def _memo(self, key: Hashable, factory: Callable[[], step]) -> step:
        if key not in self._steps:
            self._steps[key] = factory()
        return self._steps[key]

    def _advance(self, state: orchestrator_state, inner: step) -> step:
        """inner完成后进入state状态

        步骤在执行器的工作线程中运行，状态的修改需要加锁，且不会回退
        """

        def action(result: typing.Any) -> typing.Any:
            with self._state_lock:
                if _state_order.index(state) > _state_order.index(self.state):
                    self.state = state
            common.bootchain_print(common.bootchain_note(f"Orchestrator state: {state}."))
            return result

        return step(f"{inner.name} [{state}]", action, inner, context=inner.context)

    def bootstrap_sdk(self) -> step:
        return self._memo("bootstrap", self.ctx.bootstrap_sdk)

    def sdk(self, name: str, *parts: step) -> step:
        """将若干环境层步骤、工具链目录步骤和代理后的工具链步骤合并为一个环境层步骤"""

        def action(*results: sdk_env | artifact | proxied_toolchain) -> sdk_env:
            layers: sdk_env = []
            for result in results:
                match (result):
                    case artifact():
                        layers += self.ctx.toolchain_env(result)
                    case proxied_toolchain():
                        layers += result.env
                    case _:
                        layers += result
            return layers

        return self._memo(("sdk", name, *map(id, parts)), lambda: step(f"sdk {name}", action, *parts))

    def binutils(self, host: triple, target: triple, sdk: step | None = None, static: bool = False) -> step:
        sdk = sdk or self.bootstrap_sdk()
        return self._memo(
            ("binutils", str(host), str(target), id(sdk), static),
            lambda: binutils_mod.build(self.ctx, host, target, sdk, static),
        )

    def kernel_headers(self, target: triple) -> step:
        return self._memo(("headers", str(target)), lambda: sysroot_mod.kernel_headers(self.ctx, target, self.bootstrap_sdk()))

    def build_sysroot(self, target: triple) -> step:
        """用自举工具链为target构建sysroot

        先用build上的binutils和只含内核头文件的sysroot构建stage1_bootstrap编译器，再用它构建C库
        """

        def factory() -> step:
            headers = self.kernel_headers(target)
            bootstrap_binutils = self.binutils(self.build, target)
            stage1 = gcc.build(
                self.ctx,
                gcc.build_variant.stage1_bootstrap,
                self.build,
                target,
                self.bootstrap_sdk(),
                bootstrap_binutils,
                sysroot_mod.headers_sysroot(self.ctx, target, headers),
            )
            sdk = self.sdk(f"stage1 {target}", self.bootstrap_sdk(), stage1)
            return sysroot_mod.build_sysroot(self.ctx, target, sdk, headers)

        return self._memo(("sysroot", str(target)), factory)

    def cross_toolchain(
        self,
        host: triple,
        target: triple,
        variant: gcc.build_variant = gcc.build_variant.stage2_full,
        sdk: step | None = None,
        sysroot: step | None = None,
    ) -> step:
        """构建host上运行、目标为target的gcc工具链，输出目录中包含binutils和sysroot

        Args:
            host (triple): 工具链运行的平台
            target (triple): 工具链的目标平台
            variant (gcc.build_variant, optional): gcc构建阶段. 默认为stage2_full.
            sdk (step | None, optional): 能为host编译代码的工具链. 默认为自举工具链.
            sysroot (step | None, optional): target的sysroot. 默认用自举工具链构建.

        Returns:
            step: 输出工具链目录的步骤
        """

        sdk = sdk or self.bootstrap_sdk()

        def factory() -> step:
            target_binutils = self.binutils(host, target, sdk)
            return gcc.build(self.ctx, variant, host, target, sdk, target_binutils, sysroot or self.build_sysroot(target))

        return self._memo(("cross", str(host), str(target), variant, id(sdk), id(sysroot)), factory)

    def canadian_cross(self, host: triple) -> step:
        """构建host上的本地工具链

        build与host相同时跳过交叉阶段，直接使用自举工具链构建的sysroot；
        否则先构建build到host的交叉工具链，代理后用它构建host上的binutils和gcc
        """

        def factory() -> step:
            sysroot = self.build_sysroot(host)
            if self.build.equals(host):
                sdk = self.bootstrap_sdk()
                cross_native = False
            else:
                cross = self._advance(
                    orchestrator_state.build_to_host_cross_built,
                    self.cross_toolchain(self.build, host, gcc.build_variant.stage1_limited, sysroot=sysroot),
                )
                proxied = self.proxied(cross, self.build, host, force_prefix=True)
                sdk = self.sdk(f"cross {self.build} -> {host}", self.bootstrap_sdk(), proxied)
                cross_native = True
            native_binutils = self._advance(orchestrator_state.native_binutils_built, self.binutils(host, host, sdk, static=True))
            native = gcc.build(
                self.ctx,
                gcc.build_variant.stage2_full,
                host,
                host,
                sdk,
                native_binutils,
                sysroot,
                cross_native=cross_native,
            )
            return self._advance(orchestrator_state.native_toolchain_built, native)

        return self._memo(("canadian", str(host)), factory)

    def proxy_step(self, toolchain: step, host: triple, target: triple, force_prefix: bool = False) -> step:
        """分析工具链目录并生成代理目录"""

        def action(toolchain_dir: artifact) -> artifact:
            descriptor = toolchain_components(self.ctx.executor, self.ctx.toolchain_env(toolchain_dir), host, target)
            return proxy_mod.proxy(self.ctx, descriptor, force_prefix=force_prefix, opt_level=self.linker_opt_level)

        return self._memo(
            ("proxy", id(toolchain), force_prefix),
            lambda: step(f"proxy {host} -> {target}", action, toolchain, context={"triple": target}),
        )

    def proxied(self, toolchain: step, host: triple, target: triple, force_prefix: bool = False) -> step:
        """工具链目录和它的代理目录，结果为proxied_toolchain

        host上的程序不能在build上运行时无法分析工具链，只返回工具链目录
        """

        if not self.runs_on_build(host):
            return self._memo(
                ("unproxied", id(toolchain)),
                lambda: step(f"unproxied {host} -> {target}", lambda result: proxied_toolchain(result, None), toolchain),
            )
        proxy = self.proxy_step(toolchain, host, target, force_prefix)
        return self._memo(
            ("proxied", id(toolchain), force_prefix),
            lambda: step(f"proxied {host} -> {target}", proxied_toolchain, toolchain, proxy),
        )

    def toolchain(self, host: triple, target: triple) -> step:
        """构建host上运行、目标为target的代理后的工具链

        target与host相同时返回本地工具链，否则用代理后的本地工具链构建stage2_full交叉工具链
        """

        native = self.proxied(self.canadian_cross(host), host, host)
        if host.equals(target):
            return native
        sdk = self.sdk(f"native {host}", native)
        return self.proxied(self.cross_toolchain(host, target, gcc.build_variant.stage2_full, sdk), host, target)

    def plan(self, root: step) -> list[str]:
        """列出求值root需要执行的全部步骤"""

        return [current.name for current in root.walk()]

    def evaluate(self, root: step) -> typing.Any:
        """求值步骤图，dry run时只打印计划"""

        if common.need_dry_run(None):
            for name in self.plan(root):
                common.bootchain_print(common.bootchain_note(f"Plan step {name}."))
            return None
        return self.ctx.executor.evaluate(root)


def build_sysroot(ctx: build_context, target: triple) -> artifact | None:
    """构建target平台的sysroot

    Returns:
        artifact | None: sysroot目录，dry run时为None
    """

    current = orchestrator(ctx)
    return current.evaluate(current.build_sysroot(target))


def describe_toolchain(ctx: build_context, host: triple, target: triple, result: proxied_toolchain) -> tuple[toolchain_descriptor | None, sdk_env]:
    """分析代理后的工具链

    Returns:
        tuple[toolchain_descriptor | None, sdk_env]: 工具链的组成和代理后的环境层，没有代理时无法分析，组成为None
    """

    env = result.env
    if result.proxy is None:
        return None, env
    return toolchain_components(ctx.executor, env, host, target), env


def build_toolchain(
    ctx: build_context, host: triple, target: triple, linker_opt_level: str = library_path_opt_level.combine
) -> tuple[toolchain_descriptor | None, sdk_env]:
    """构建host上运行、目标为target的工具链

    Args:
        ctx (build_context): 构建环境
        host (triple): 工具链运行的平台
        target (triple): 工具链的目标平台
        linker_opt_level (str, optional): 链接器代理的库搜索路径优化等级. 默认为combine.

    Returns:
        tuple[toolchain_descriptor | None, sdk_env]: 工具链的组成和代理后的环境层，dry run时为(None, [])
    """

    current = orchestrator(ctx, linker_opt_level)
    result = current.evaluate(current.toolchain(host, target))
    if result is None:
        return None, []
    return describe_toolchain(ctx, host, target, result)


__all__ = ["orchestrator_state", "proxied_toolchain", "orchestrator", "build_sysroot", "describe_toolchain", "build_toolchain"]

assert __name__ != "__main__", "Import this file instead of running it directly."
