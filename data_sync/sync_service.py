"""
同步执行引擎

按顺序执行计划中的任务，把策略的进度转换为 SyncEvent 事件流，
并提供计划级的暂停、恢复和取消。

每个计划在独立线程中运行；每个任务的 sync 调用再在一个线程中运行，
计划线程同时负责转发该任务的进度。暂停是任务之间的阻塞检查点：
正在执行的任务会运行到结束，下一个任务在恢复之前不会开始。
"""

import time
import queue
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable

from .config import EngineSettings, SyncOptions
from .exceptions import ConfigurationError, SyncCancelledError
from .plan import SyncPlan, SyncTask
from .progress import Progress
from .registry import create_default_registry
from .strategy import SyncStatus, StrategyRegistry, StrategyCapabilities, SyncStrategy

logger = logging.getLogger(__name__)

TASK_START = "task_start"
TASK_PROGRESS = "task_progress"
TASK_COMPLETE = "task_complete"
TASK_ERROR = "task_error"
PLAN_COMPLETE = "plan_complete"


@dataclass
class SyncEvent:
    """执行引擎发给调用方的事件。"""
    type: str
    plan_id: str
    task_id: str = ""
    task_name: str = ""
    task_type: str = ""
    status: str = ""
    progress: float = 0.0
    bytes_total: int = 0
    bytes_done: int = 0
    items_total: int = 0
    items_done: int = 0
    error: str = ""
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典，省略空字段。"""
        data = {}
        for key, value in self.__dict__.items():
            if value in ("", 0, 0.0, None) and key not in ("type", "plan_id"):
                continue
            data[key] = value
        return data


EventCallback = Callable[[SyncEvent], None]


@dataclass
class SyncExecution:
    """计划的运行时状态，只在引擎锁内修改。"""
    plan: SyncPlan
    status: SyncStatus = SyncStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    callback: Optional[EventCallback] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    current_task: Optional[str] = None


class SyncService:
    """同步计划的执行引擎。"""

    def __init__(self, registry: Optional[StrategyRegistry] = None,
                 settings: Optional[EngineSettings] = None,
                 options: Optional[SyncOptions] = None):
        """
        参数:
            registry: 策略注册表，默认使用 create_default_registry(options)
            settings: 引擎设置
            options: 构造默认注册表时使用的同步选项
        """
        self.registry = registry if registry is not None else create_default_registry(options)
        self.settings = settings or EngineSettings()
        self._lock = threading.Lock()
        self._state_changed = threading.Condition(self._lock)
        self._executions: Dict[str, SyncExecution] = {}

    # ---- 计划管理 ----

    def create_plan(self, tasks: List[SyncTask]) -> SyncPlan:
        """用给定的任务创建计划，任务顺序即执行顺序。"""
        plan = SyncPlan()
        for task in tasks:
            plan.add_task(task)
        with self._lock:
            self._executions[plan.id] = SyncExecution(plan=plan)
        logger.info(f"📝 创建同步计划 {plan.id}，共 {len(plan.tasks)} 个任务")
        return plan

    def get_plan(self, plan_id: str) -> Optional[SyncExecution]:
        with self._lock:
            return self._executions.get(plan_id)

    def list_plans(self) -> List[SyncExecution]:
        with self._lock:
            return list(self._executions.values())

    def get_strategies(self) -> List[StrategyCapabilities]:
        return [self.registry.get_capabilities(name) for name in self.registry.list()]

    def _require(self, plan_id: str) -> SyncExecution:
        execution = self._executions.get(plan_id)
        if execution is None:
            raise ConfigurationError(f"plan not found: {plan_id}")
        return execution

    # ---- 生命周期 ----

    def start(self, plan_id: str, callback: Optional[EventCallback] = None):
        """
        异步启动计划，立即返回。

        异常:
            ConfigurationError: 计划不存在或已在运行
        """
        with self._lock:
            execution = self._require(plan_id)
            if execution.status.is_active():
                raise ConfigurationError(f"plan already running: {plan_id}")
            if execution.thread is not None and execution.thread.is_alive():
                # 取消后旧线程可能还在等待当前任务退出
                raise ConfigurationError(f"plan is still stopping: {plan_id}")
            execution.status = SyncStatus.RUNNING
            execution.started_at = time.time()
            execution.completed_at = None
            execution.callback = callback
            cancel_event = threading.Event()
            execution.cancel_event = cancel_event
            execution.thread = threading.Thread(target=self._run_plan, args=(execution, cancel_event),
                                                name=f"sync-plan-{plan_id}", daemon=True)
            execution.thread.start()
        logger.info(f"🚀 启动同步计划 {plan_id}")

    def pause(self, plan_id: str):
        """暂停计划：当前任务继续运行到结束，下一个任务在恢复前不会开始。"""
        with self._lock:
            execution = self._require(plan_id)
            if execution.status != SyncStatus.RUNNING:
                raise ConfigurationError(f"plan is not running: {plan_id}")
            execution.status = SyncStatus.PAUSED
        logger.info(f"⏸️  暂停同步计划 {plan_id}")

    def resume(self, plan_id: str, callback: Optional[EventCallback] = None):
        """恢复已暂停的计划；给出 callback 时替换原回调。"""
        with self._lock:
            execution = self._require(plan_id)
            if execution.status != SyncStatus.PAUSED:
                raise ConfigurationError(f"plan is not paused: {plan_id}")
            execution.status = SyncStatus.RUNNING
            if callback is not None:
                execution.callback = callback
            self._state_changed.notify_all()
        logger.info(f"▶️  恢复同步计划 {plan_id}")

    def cancel(self, plan_id: str):
        """
        取消计划。

        正在运行的外部进程会被终止，当前任务以 cancelled 失败，后续任务不再开始。
        """
        with self._lock:
            execution = self._require(plan_id)
            if execution.status.is_terminal():
                raise ConfigurationError(f"plan already finished: {plan_id}")
            execution.cancel_event.set()
            execution.status = SyncStatus.CANCELLED
            if execution.thread is None:
                execution.completed_at = time.time()
            self._state_changed.notify_all()
        logger.info(f"🛑 取消同步计划 {plan_id}")

    def wait(self, plan_id: str, timeout: Optional[float] = None) -> bool:
        """
        等待计划线程结束。

        返回:
            计划是否已结束
        """
        with self._lock:
            execution = self._require(plan_id)
            thread = execution.thread
        if thread is None:
            return execution.status.is_terminal()
        thread.join(timeout)
        return not thread.is_alive()

    # ---- 执行 ----

    def _emit(self, execution: SyncExecution, event: SyncEvent):
        with self._lock:
            callback = execution.callback
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"⚠️  事件回调失败 ({event.type}): {e}")

    def _task_event(self, event_type: str, execution: SyncExecution, task: SyncTask,
                    **kwargs) -> SyncEvent:
        return SyncEvent(type=event_type, plan_id=execution.plan.id, task_id=task.id,
                         task_name=task.name, task_type=task.type.value,
                         status=task.status.value, **kwargs)

    def _checkpoint(self, execution: SyncExecution, cancel_event: threading.Event) -> bool:
        """任务之间的检查点：暂停时阻塞直到恢复或取消，返回是否继续执行。"""
        with self._state_changed:
            while execution.status == SyncStatus.PAUSED and not cancel_event.is_set():
                self._state_changed.wait()
            return not cancel_event.is_set()

    def _resolve(self, task: SyncTask) -> Optional[SyncStrategy]:
        strategy = None
        if task.strategy:
            strategy = self.registry.get(task.strategy)
        if strategy is None:
            strategy = self.registry.get_for_endpoint(task.source.type)
        return strategy

    def _run_plan(self, execution: SyncExecution, cancel_event: threading.Event):
        plan = execution.plan
        for task in plan.tasks:
            if not self._checkpoint(execution, cancel_event):
                logger.info(f"🛑 计划 {plan.id} 已取消，跳过剩余任务")
                break
            with self._lock:
                execution.current_task = task.id
            try:
                self._run_task(execution, task, cancel_event)
            except Exception as e:
                # 回调以外的意外错误，记录在任务上后继续
                logger.error(f"❌ 任务 {task.name} 执行异常: {e}")
                task.fail(e)

        with self._lock:
            execution.current_task = None
            execution.completed_at = time.time()
            if cancel_event.is_set():
                execution.status = SyncStatus.CANCELLED
            elif plan.has_failed():
                execution.status = SyncStatus.FAILED
            else:
                execution.status = SyncStatus.COMPLETED
            status = execution.status

        completed = len(plan.get_tasks_by_status(SyncStatus.COMPLETED))
        message = f"{completed}/{len(plan.tasks)} tasks completed"
        if status == SyncStatus.COMPLETED:
            logger.info(f"✅ 同步计划 {plan.id} 完成: {message}")
        else:
            logger.warning(f"⚠️  同步计划 {plan.id} 结束 ({status.value}): {message}")
        self._emit(execution, SyncEvent(type=PLAN_COMPLETE, plan_id=plan.id,
                                        status=status.value, message=message))

    def _run_task(self, execution: SyncExecution, task: SyncTask, cancel_event: threading.Event):
        strategy = self._resolve(task)
        if strategy is None:
            error = ConfigurationError(
                f"no sync strategy found for {task.strategy or task.source.type}")
            task.fail(error)
            logger.error(f"❌ 任务 {task.name}: {error}")
            self._emit(execution, self._task_event(TASK_ERROR, execution, task,
                                                   error=str(error)))
            return

        task.start()
        if not task.strategy:
            task.strategy = strategy.name
        if self.settings.estimate_sizes:
            try:
                task.estimated_size = strategy.estimate_size(task.source)
            except Exception as e:
                logger.warning(f"⚠️  无法估算 {task.name} 的大小: {e}")
        logger.info(f"🔄 开始任务 {task.name} (策略: {strategy.name})")
        self._emit(execution, self._task_event(TASK_START, execution, task,
                                               bytes_total=task.estimated_size,
                                               message=f"starting {strategy.name} sync"))

        progress_queue: "queue.Queue[Progress]" = queue.Queue(maxsize=self.settings.progress_buffer)
        outcome: Dict[str, BaseException] = {}
        finished = threading.Event()

        def run_sync():
            try:
                strategy.sync(task.source, task.target, progress_queue, cancel_event)
            except Exception as e:
                outcome["error"] = e
            finally:
                finished.set()

        worker = threading.Thread(target=run_sync, name=f"sync-task-{task.id}", daemon=True)
        worker.start()

        while not finished.is_set():
            try:
                snapshot = progress_queue.get(timeout=self.settings.forward_poll_interval)
            except queue.Empty:
                continue
            snapshot.task_id = task.id
            task.progress = snapshot
            self._emit(execution, self._task_event(
                TASK_PROGRESS, execution, task,
                progress=snapshot.percentage(),
                bytes_total=snapshot.bytes_total, bytes_done=snapshot.bytes_done,
                items_total=snapshot.items_total, items_done=snapshot.items_done,
                message=snapshot.message))

        worker.join()
        # sync 返回后残留的进度不再转发，只保留最后一份快照
        while True:
            try:
                snapshot = progress_queue.get_nowait()
            except queue.Empty:
                break
            snapshot.task_id = task.id
            task.progress = snapshot

        error = outcome.get("error")
        if error is not None:
            if cancel_event.is_set() and not isinstance(error, SyncCancelledError):
                error = SyncCancelledError(f"cancelled: {error}")
            task.fail(error)
            logger.error(f"❌ 任务 {task.name} 失败: {error}")
            self._emit(execution, self._task_event(TASK_ERROR, execution, task, error=str(error)))
            return

        task.complete()
        progress = task.progress
        logger.info(f"✅ 任务 {task.name} 完成 ({task.duration():.1f}s)")
        self._emit(execution, self._task_event(
            TASK_COMPLETE, execution, task, progress=100.0,
            bytes_total=progress.bytes_total if progress else 0,
            bytes_done=progress.bytes_done if progress else 0,
            items_total=progress.items_total if progress else 0,
            items_done=progress.items_done if progress else 0,
            message="sync completed"))

    def close(self):
        """取消所有活动计划并等待其线程结束（每个最多 join_timeout 秒）。"""
        with self._lock:
            active = [e for e in self._executions.values() if e.status.is_active()]
            for execution in active:
                execution.cancel_event.set()
                execution.status = SyncStatus.CANCELLED
            self._state_changed.notify_all()
        for execution in active:
            if execution.thread is not None:
                execution.thread.join(self.settings.join_timeout)
                if execution.thread.is_alive():
                    logger.warning(f"⚠️  计划 {execution.plan.id} 未在 {self.settings.join_timeout}s 内结束")
