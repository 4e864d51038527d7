"""
外部进程管理

启动、管道连接和终止外部工具（转储/恢复工具、云复制工具、快照加载器）。
每个子进程在独立会话中运行；取消令牌触发时终止整个进程组。
"""

import os
import time
import signal
import logging
import threading
import subprocess
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable, IO

from .exceptions import TransferError, SyncCancelledError
from .utils import check_cancelled

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


@dataclass
class ToolResult:
    """外部工具的执行结果。"""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str


def build_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """在当前环境基础上叠加额外变量。"""
    env = dict(os.environ)
    if extra:
        env.update({k: v for k, v in extra.items() if v})
    return env


def start_process(args: List[str], env: Optional[Dict[str, str]] = None, **kwargs) -> subprocess.Popen:
    """
    在新会话中启动外部进程。

    异常:
        TransferError: 可执行文件不在 PATH 中
    """
    logger.debug(f"启动进程: {args[0]} {' '.join(args[1:])}")
    try:
        return subprocess.Popen(args, env=build_env(env), start_new_session=True, **kwargs)
    except FileNotFoundError as e:
        raise TransferError(f"{args[0]} not found in PATH") from e
    except OSError as e:
        raise TransferError(f"failed to start {args[0]}: {e}") from e


def terminate_process(proc: subprocess.Popen, grace: float = TERMINATE_GRACE_SECONDS):
    """终止进程组：先 SIGTERM，超过宽限期后 SIGKILL。"""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"⚠️  进程 {proc.pid} 未响应 SIGTERM，强制终止")
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()


class CancelWatcher:
    """
    取消令牌触发时终止登记的子进程。

    用作上下文管理器，退出时停止后台线程。
    """

    def __init__(self, cancel_event: Optional[threading.Event], poll_interval: float = 0.2):
        self.cancel_event = cancel_event
        self.poll_interval = poll_interval
        self.processes: List[subprocess.Popen] = []
        self.fired = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add(self, proc: subprocess.Popen) -> subprocess.Popen:
        self.processes.append(proc)
        return proc

    def _watch(self):
        while not self._stop.is_set():
            if self.cancel_event.wait(self.poll_interval):
                self.fired = True
                logger.warning(f"🛑 收到取消信号，终止 {len(self.processes)} 个子进程")
                for proc in self.processes:
                    terminate_process(proc)
                return

    def __enter__(self) -> 'CancelWatcher':
        if self.cancel_event is not None:
            self._thread = threading.Thread(target=self._watch, name="cancel-watcher", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=TERMINATE_GRACE_SECONDS * 2)


def stream_lines(stream: IO[bytes], callback: Optional[Callable[[str], None]] = None,
                 sink: Optional[List[str]] = None):
    """逐行读取流，交给回调处理并可选地保存到 sink。"""
    for raw in iter(stream.readline, b''):
        line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
        if sink is not None:
            sink.append(line)
        if callback is not None:
            try:
                callback(line)
            except Exception as e:
                logger.warning(f"⚠️  处理输出行失败: {e}")
    stream.close()


def _reader(stream: IO[bytes], callback=None, sink=None) -> threading.Thread:
    t = threading.Thread(target=stream_lines, args=(stream, callback, sink), daemon=True)
    t.start()
    return t


def run_tool(args: List[str], env: Optional[Dict[str, str]] = None,
             cancel_event: Optional[threading.Event] = None,
             on_line: Optional[Callable[[str], None]] = None,
             check: bool = True) -> ToolResult:
    """
    运行外部工具并等待其退出。

    参数:
        args: 命令及参数
        env: 额外环境变量
        cancel_event: 取消令牌，触发时终止进程
        on_line: 合并输出的逐行回调（设置后 stderr 合并到 stdout）
        check: 非零退出时是否抛出 TransferError

    返回:
        ToolResult
    """
    check_cancelled(cancel_event)
    stderr_target = subprocess.STDOUT if on_line is not None else subprocess.PIPE
    out_lines: List[str] = []
    err_lines: List[str] = []

    with CancelWatcher(cancel_event) as watcher:
        proc = watcher.add(start_process(args, env, stdin=subprocess.DEVNULL,
                                         stdout=subprocess.PIPE, stderr=stderr_target))
        readers = [_reader(proc.stdout, on_line, out_lines)]
        if on_line is None:
            readers.append(_reader(proc.stderr, None, err_lines))
        returncode = proc.wait()
        for t in readers:
            t.join()

    if watcher.fired:
        raise SyncCancelledError()

    result = ToolResult(args=args, returncode=returncode,
                        stdout="\n".join(out_lines), stderr="\n".join(err_lines))
    if check and returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise TransferError(f"{args[0]} {args[1] if len(args) > 1 else ''} failed "
                            f"(exit {returncode}): {detail}")
    return result


def pipe_processes(dump_args: List[str], restore_args: List[str],
                   dump_env: Optional[Dict[str, str]] = None,
                   restore_env: Optional[Dict[str, str]] = None,
                   cancel_event: Optional[threading.Event] = None,
                   on_dump_stderr: Optional[Callable[[str], None]] = None,
                   on_tick: Optional[Callable[[float], None]] = None,
                   tick_interval: float = 2.0):
    """
    用单个管道把转储进程的标准输出连接到恢复进程的标准输入。

    恢复进程先启动。两个进程都退出后才返回；任意一方非零退出都视为失败，
    转储失败不会被正常消费了截断数据流的恢复进程掩盖，反之亦然。

    参数:
        dump_args: 转储命令
        restore_args: 恢复命令
        dump_env: 转储进程的额外环境变量
        restore_env: 恢复进程的额外环境变量
        cancel_event: 取消令牌
        on_dump_stderr: 转储进程 stderr 的逐行回调
        on_tick: 定时回调，参数为已用秒数
        tick_interval: 定时回调间隔（秒）

    异常:
        TransferError: 任意一方非零退出
        SyncCancelledError: 取消令牌触发
    """
    check_cancelled(cancel_event)
    dump_stderr: List[str] = []
    restore_stderr: List[str] = []

    with CancelWatcher(cancel_event) as watcher:
        read_fd, write_fd = os.pipe()
        try:
            restore = watcher.add(start_process(
                restore_args, restore_env, stdin=read_fd,
                stdout=subprocess.DEVNULL, stderr=subprocess.PIPE))
            try:
                dump = watcher.add(start_process(
                    dump_args, dump_env, stdin=subprocess.DEVNULL,
                    stdout=write_fd, stderr=subprocess.PIPE))
            except TransferError:
                os.close(write_fd)
                write_fd = -1
                terminate_process(restore)
                raise
        finally:
            # 父进程关闭自己持有的管道端，恢复进程才能在转储结束时收到 EOF
            os.close(read_fd)
            if write_fd >= 0:
                os.close(write_fd)

        readers = [
            _reader(dump.stderr, on_dump_stderr, dump_stderr),
            _reader(restore.stderr, None, restore_stderr),
        ]

        start = time.time()
        while True:
            try:
                dump.wait(timeout=tick_interval)
                break
            except subprocess.TimeoutExpired:
                if on_tick is not None:
                    on_tick(time.time() - start)

        restore.wait()
        for t in readers:
            t.join()

    if watcher.fired:
        raise SyncCancelledError()

    errors = []
    if dump.returncode != 0:
        errors.append(f"{dump_args[0]} failed (exit {dump.returncode}): "
                      f"{_tail(dump_stderr)}")
    if restore.returncode != 0:
        errors.append(f"{restore_args[0]} failed (exit {restore.returncode}): "
                      f"{_tail(restore_stderr)}")
    if errors:
        for err in errors:
            logger.error(f"❌ {err}")
        raise TransferError("; ".join(errors))


def _tail(lines: List[str], count: int = 20) -> str:
    return "\n".join(lines[-count:]).strip()
