import hashlib
import json
import os
import shutil
import signal
import subprocess
import threading
import typing
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path

from . import common
from . import environment as env_mod
from .artifact import artifact, artifact_store

# 构建失败时报告的日志行数
failure_log_lines = 50


class step:
    """依赖图中的一个构建步骤

    Attributes:
        name        : 步骤名，用于回显和错误报告
        action      : 步骤的执行函数，参数依次为各依赖步骤的结果
        dependencies: 依赖的步骤
        context     : 复现该步骤所需的上下文，如triple、variant、stage
    """

    name: str
    action: Callable[..., typing.Any]
    dependencies: tuple["step", ...]
    context: dict[str, str]

    def __init__(self, name: str, action: Callable[..., typing.Any], *dependencies: "step", context: Mapping[str, object] = {}) -> None:
        self.name = name
        self.action = action
        self.dependencies = dependencies
        self.context = {key: str(value) for key, value in context.items()}

    def __repr__(self) -> str:
        return f"step({self.name})"

    def walk(self) -> list["step"]:
        """按依赖在前的顺序列出该步骤及其所有间接依赖，每个步骤只出现一次

        Returns:
            list[step]: 拓扑序的步骤列表
        """

        result: list[step] = []
        visited: set[int] = set()

        def visit(current: step) -> None:
            if id(current) in visited:
                return
            visited.add(id(current))
            for dependency in current.dependencies:
                visit(dependency)
            result.append(current)

        visit(self)
        return result


def constant(name: str, value: typing.Any, context: Mapping[str, object] = {}) -> step:
    """不需要执行的步骤，直接给出结果"""

    return step(name, lambda: value, context=context)


class local_executor:
    """在本地子进程中运行构建步骤的执行器

    相同输入的步骤只会执行一次：步骤的缓存键由命令、环境和输入制品计算，
    输出目录只有在步骤成功后才会被加入制品仓库并记录到缓存，因此失败或取消的步骤不会留下缓存项。

    Attributes:
        store   : 制品仓库
        jobs    : 并行执行的步骤数，同时作为步骤内make的并发数
        base_env: 每个步骤的基础环境
    """

    store: artifact_store
    jobs: int
    base_env: dict[str, str]
    cache_dir: Path
    _lock: threading.Lock
    _key_locks: dict[str, threading.Lock]
    _processes: set[subprocess.Popen[bytes]]
    _cancelled: threading.Event

    def __init__(self, store: artifact_store, jobs: int = 1, base_env: Mapping[str, str] | None = None) -> None:
        """创建执行器

        Args:
            store (artifact_store): 制品仓库
            jobs (int, optional): 并发数. 默认为1.
            base_env (Mapping[str, str] | None, optional): 基础环境. 默认只保留当前进程的PATH、HOME和语言设置.
        """

        self.store = store
        self.jobs = jobs
        if base_env is None:
            base_env = {key: value for key, value in os.environ.items() if key in ("PATH", "HOME", "LANG", "LC_ALL", "TERM")}
        self.base_env = dict(base_env)
        self.cache_dir = store.root / "cache"
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._key_locks = {}
        self._processes = set()
        self._cancelled = threading.Event()

    @staticmethod
    def key(*parts: typing.Any) -> str:
        """计算缓存键

        Returns:
            str: sha256摘要
        """

        return hashlib.sha256(json.dumps(parts, sort_keys=True, default=str).encode()).hexdigest()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def lookup_cache(self, key: str) -> artifact | None:
        """查找缓存键对应的制品"""

        record = self.cache_dir / key
        if not record.exists():
            return None
        return self.store.lookup(record.read_text().strip())

    def record_cache(self, key: str, result: artifact) -> None:
        """原子地记录缓存键对应的制品"""

        temp = self.cache_dir / f".{key}.{os.getpid()}.{threading.get_ident()}"
        temp.write_text(result.id)
        os.replace(temp, self.cache_dir / key)

    def produce(
        self, name: str, key: str, fn: Callable[[Path, Path], None], context: Mapping[str, object] = {}
    ) -> artifact:
        """执行步骤并将输出加入仓库，命中缓存时直接返回缓存的制品

        Args:
            name (str): 步骤名
            key (str): 缓存键
            fn (Callable[[Path, Path], None]): 步骤函数，参数为工作目录和输出目录
            context (Mapping[str, object], optional): 错误报告使用的上下文.

        Returns:
            artifact: 输出制品，dry run时为不存在的占位制品
        """

        if common.need_dry_run(None):
            common.bootchain_print(common.bootchain_note(f"Skip step {name} for dry run."))
            return artifact(key, self.store)
        with self._key_lock(key):
            if cached := self.lookup_cache(key):
                common.bootchain_print(common.bootchain_note(f"Step {name} is cached as {cached.id[:12]}."))
                return cached
            if self._cancelled.is_set():
                raise common.build_step_failure(name, context, "cancelled")
            work_dir = self.store.scratch_dir("step-")
            try:
                output = work_dir / "output"
                (work_dir / "work").mkdir()
                fn(work_dir / "work", output)
                if not (output.exists() or output.is_symlink()):
                    output.mkdir()
                result = self.store.checkin(output, move=True)
                self.record_cache(key, result)
            finally:
                shutil.rmtree(work_dir, ignore_errors=True)
        common.bootchain_print(common.bootchain_success(f"Step {name} finished: {result.id[:12]}."))
        return result

    def _spawn(self, name: str, argv: list[str], env: Mapping[str, str], cwd: Path, log: Path, context: Mapping[str, object]) -> None:
        """运行子进程，输出写入日志文件；取消时终止整个进程组

        Raises:
            build_step_failure: 进程返回非0或被取消
        """

        with log.open("wb") as log_file:
            process = subprocess.Popen(argv, env=dict(env), cwd=cwd, stdout=log_file, stderr=subprocess.STDOUT, start_new_session=True)
        with self._lock:
            self._processes.add(process)
        try:
            while True:
                try:
                    returncode = process.wait(timeout=0.2)
                    break
                except subprocess.TimeoutExpired:
                    if self._cancelled.is_set():
                        self._terminate(process)
                        raise common.build_step_failure(name, context, "cancelled")
        finally:
            with self._lock:
                self._processes.discard(process)
        if returncode != 0:
            lines = log.read_text(errors="replace").splitlines()
            raise common.build_step_failure(name, context, "\n".join(lines[-failure_log_lines:]))

    @staticmethod
    def _terminate(process: subprocess.Popen[bytes]) -> None:
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        process.wait()

    def resolve_env(self, env: Sequence[env_mod.layer], extra: Mapping[str, str] = {}) -> dict[str, str]:
        """将环境层作用于基础环境

        Args:
            env (Sequence[env_mod.layer]): 环境层
            extra (Mapping[str, str], optional): 最高优先级的额外变量.

        Returns:
            dict[str, str]: 最终环境
        """

        return env_mod.compose([{"JOBS": str(self.jobs)}, *env, extra], self.base_env)

    def run(
        self,
        name: str,
        command: str,
        env: Sequence[env_mod.layer] = (),
        inputs: Mapping[str, artifact] = {},
        context: Mapping[str, object] = {},
    ) -> artifact:
        """在沙箱工作目录中用sh运行命令，命令应将结果写入$OUTPUT

        Args:
            name (str): 步骤名
            command (str): shell脚本
            env (Sequence[env_mod.layer], optional): 环境层
            inputs (Mapping[str, artifact], optional): 输入制品，以同名环境变量的形式传入命令
            context (Mapping[str, object], optional): 错误报告使用的上下文

        Raises:
            build_step_failure: 命令执行失败

        Returns:
            artifact: 输出制品
        """

        input_env = {key: str(value.path) for key, value in inputs.items()}
        resolved = self.resolve_env(env, input_env)
        key = self.key("run", command, resolved, {key: value.id for key, value in inputs.items()})
        common.bootchain_print(common.bootchain_info(f"Run step {name}: {command}"))

        def execute(work: Path, output: Path) -> None:
            self._spawn(
                name, ["/bin/sh", "-e", "-c", command], {**resolved, "OUTPUT": str(output)}, work, work.parent / "log", context
            )

        return self.produce(name, key, execute, context)

    def build(self, name: str, fn: Callable[[Path], None], key_parts: Sequence[typing.Any], context: Mapping[str, object] = {}) -> artifact:
        """运行python函数生成制品

        Args:
            name (str): 步骤名
            fn (Callable[[Path], None]): 生成函数，参数为输出路径
            key_parts (Sequence[typing.Any]): 决定输出内容的全部输入，用于计算缓存键

        Returns:
            artifact: 输出制品
        """

        return self.produce(name, self.key("build", name, *key_parts), lambda _, output: fn(output), context)

    def transform(
        self, name: str, source: artifact, fn: Callable[[Path], None], version: str = "1", context: Mapping[str, object] = {}
    ) -> artifact:
        """在制品的副本上运行修改函数，生成叠加在原制品之上的新制品

        Args:
            name (str): 步骤名
            source (artifact): 原制品
            fn (Callable[[Path], None]): 修改函数，参数为副本路径
            version (str, optional): 修改函数的版本，修改函数的行为改变时需要更新以使缓存失效

        Returns:
            artifact: 新制品
        """

        def execute(output: Path) -> None:
            shutil.copytree(source.path, output, symlinks=True)
            os.chmod(output, 0o755)
            fn(output)

        return self.build(name, execute, ("transform", source.id, version), context)

    def query(self, command: list[str], env: Mapping[str, str] | None = None, context: Mapping[str, object] = {}) -> str:
        """直接运行命令并返回标准输出，不缓存，用于探测工具链

        Raises:
            build_step_failure: 命令执行失败

        Returns:
            str: 去除首尾空白的标准输出
        """

        try:
            result = common.run_command(command, capture=True, echo=False, dry_run=False, env=env if env is not None else self.base_env)
        except RuntimeError as e:
            raise common.build_step_failure(" ".join(command), context, str(e)) from e
        assert result
        return result.stdout.strip()

    def cancel(self) -> None:
        """取消所有未完成的步骤，终止正在运行的子进程"""

        self._cancelled.set()
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            self._terminate(process)

    def evaluate(self, root: step) -> typing.Any:
        """按依赖关系执行步骤图，没有依赖关系的步骤并行执行

        任意步骤失败会取消其余所有未完成的步骤，然后重新抛出异常，不会重试。

        Args:
            root (step): 要求值的步骤

        Returns:
            typing.Any: root步骤的结果
        """

        order = root.walk()
        results: dict[int, typing.Any] = {}
        submitted: set[int] = set()
        pending: dict[Future[typing.Any], step] = {}
        self._cancelled.clear()
        pool = ThreadPoolExecutor(max_workers=max(self.jobs, 1))

        def submit_ready() -> None:
            for current in order:
                if id(current) in submitted:
                    continue
                if all(id(dependency) in results for dependency in current.dependencies):
                    submitted.add(id(current))
                    arguments = [results[id(dependency)] for dependency in current.dependencies]
                    pending[pool.submit(current.action, *arguments)] = current

        try:
            submit_ready()
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    current = pending.pop(future)
                    try:
                        results[id(current)] = future.result()
                    except common.bootchain_exception:
                        raise
                    except Exception as e:
                        raise common.build_step_failure(current.name, current.context, repr(e)) from e
                submit_ready()
        except BaseException:
            self.cancel()
            for future in pending:
                future.cancel()
            raise
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
            self._cancelled.clear()
        return results[id(root)]


__all__ = ["step", "constant", "local_executor", "failure_log_lines"]

assert __name__ != "__main__", "Import this file instead of running it directly."
