"""Tests for the plan execution engine."""

import threading
import time
from typing import List

import pytest
from conftest import FakeStrategy

from data_sync.config import EngineSettings
from data_sync.endpoint import Endpoint
from data_sync.exceptions import ConfigurationError
from data_sync.plan import SyncTask
from data_sync.strategy import StrategyRegistry, SyncStatus, SyncType
from data_sync.sync_service import SyncEvent, SyncService


def make_task(host: str, strategy: str = "fake", source_type: str = "s3") -> SyncTask:
    return SyncTask(name=host, type=SyncType.STORAGE, strategy=strategy,
                    source=Endpoint(type=source_type, host=host, bucket="b"),
                    target=Endpoint(type="minio", host="target", bucket="b"))


class EventLog:
    """Thread-safe collector of engine events."""

    def __init__(self) -> None:
        self.events: List[SyncEvent] = []
        self.lock = threading.Lock()

    def __call__(self, event: SyncEvent) -> None:
        with self.lock:
            self.events.append(event)

    def types(self, *kinds: str) -> List[tuple]:
        with self.lock:
            return [(e.type, e.task_name) for e in self.events if not kinds or e.type in kinds]

    def of(self, kind: str) -> List[SyncEvent]:
        with self.lock:
            return [e for e in self.events if e.type == kind]


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def service(fake_registry: StrategyRegistry) -> SyncService:
    svc = SyncService(fake_registry, EngineSettings(forward_poll_interval=0.01))
    yield svc
    svc.close()


class TestSyncEvent:
    """Tests for SyncEvent."""

    def test_to_dict_omits_empty_fields(self) -> None:
        """Should drop empty values but keep type and plan id."""
        event = SyncEvent(type="plan_complete", plan_id="p1", status="completed")
        data = event.to_dict()
        assert data["type"] == "plan_complete"
        assert data["status"] == "completed"
        assert "task_id" not in data
        assert "bytes_done" not in data


class TestPlanExecution:
    """Tests for running plans end to end."""

    def test_events_in_task_order(self, service: SyncService) -> None:
        """Should emit one start/finish pair per task in list order and one plan_complete."""
        log = EventLog()
        plan = service.create_plan([make_task("one"), make_task("two"), make_task("three")])
        service.start(plan.id, log)
        assert service.wait(plan.id, 5.0)

        assert log.types("task_start", "task_complete", "task_error", "plan_complete") == [
            ("task_start", "one"), ("task_complete", "one"),
            ("task_start", "two"), ("task_complete", "two"),
            ("task_start", "three"), ("task_complete", "three"),
            ("plan_complete", ""),
        ]
        assert service.get_plan(plan.id).status == SyncStatus.COMPLETED
        assert all(t.status == SyncStatus.COMPLETED for t in plan.tasks)

    def test_task_complete_reports_full_progress(self, service: SyncService) -> None:
        """Should report 100% on task completion."""
        log = EventLog()
        plan = service.create_plan([make_task("one")])
        service.start(plan.id, log)
        service.wait(plan.id, 5.0)
        complete = log.of("task_complete")[0]
        assert complete.progress == 100.0
        assert complete.status == "completed"
        for event in log.of("task_progress"):
            assert 0.0 <= event.progress <= 100.0

    def test_start_returns_immediately(self, service: SyncService,
                                       fake_strategy: FakeStrategy) -> None:
        """Should run the plan asynchronously."""
        started, release = fake_strategy.block("slow")
        plan = service.create_plan([make_task("slow")])
        service.start(plan.id)
        assert started.wait(5.0)
        assert service.get_plan(plan.id).status == SyncStatus.RUNNING
        with pytest.raises(ConfigurationError):
            service.start(plan.id)
        release.set()
        assert service.wait(plan.id, 5.0)

    def test_failed_task_does_not_abort_plan(self, fake_registry: StrategyRegistry) -> None:
        """Should continue after a failing task and mark the plan failed."""
        fake_registry.register(FakeStrategy("flaky", fail_on=("two",)))
        service = SyncService(fake_registry, EngineSettings(forward_poll_interval=0.01))
        log = EventLog()
        plan = service.create_plan([make_task("one", "flaky"), make_task("two", "flaky"),
                                    make_task("three", "flaky")])
        service.start(plan.id, log)
        assert service.wait(plan.id, 5.0)

        assert ("task_error", "two") in log.types()
        assert ("task_complete", "three") in log.types()
        assert plan.tasks[1].error_message == "sync of two failed"
        assert service.get_plan(plan.id).status == SyncStatus.FAILED
        assert log.of("plan_complete")[0].status == "failed"

    def test_missing_strategy(self, service: SyncService) -> None:
        """Should fail an unresolvable task without starting it."""
        log = EventLog()
        plan = service.create_plan([make_task("lost", strategy="nope", source_type="cassandra"),
                                    make_task("ok")])
        service.start(plan.id, log)
        assert service.wait(plan.id, 5.0)

        errors = log.of("task_error")
        assert len(errors) == 1
        assert errors[0].error == "no sync strategy found for nope"
        assert ("task_start", "lost") not in log.types()
        assert ("task_complete", "ok") in log.types()
        assert service.get_plan(plan.id).status == SyncStatus.FAILED

    def test_strategy_inferred_from_endpoint_type(self) -> None:
        """Should fall back to the endpoint type when no strategy name is set."""
        registry = StrategyRegistry()
        registry.register(FakeStrategy("minio"))
        service = SyncService(registry, EngineSettings(forward_poll_interval=0.01))
        plan = service.create_plan([make_task("gcs-bucket", strategy="", source_type="gcs")])
        service.start(plan.id)
        assert service.wait(plan.id, 5.0)
        assert plan.tasks[0].status == SyncStatus.COMPLETED
        assert plan.tasks[0].strategy == "minio"

    def test_estimate_sizes(self, fake_registry: StrategyRegistry) -> None:
        """Should record estimated size before task_start when enabled."""
        service = SyncService(fake_registry, EngineSettings(forward_poll_interval=0.01,
                                                            estimate_sizes=True))
        log = EventLog()
        plan = service.create_plan([make_task("one")])
        service.start(plan.id, log)
        service.wait(plan.id, 5.0)
        assert plan.tasks[0].estimated_size == 100
        assert log.of("task_start")[0].bytes_total == 100

    def test_unknown_plan(self, service: SyncService) -> None:
        """Should reject operations on unknown plans."""
        assert service.get_plan("missing") is None
        with pytest.raises(ConfigurationError):
            service.start("missing")
        with pytest.raises(ConfigurationError):
            service.pause("missing")

    def test_list_plans_and_strategies(self, service: SyncService) -> None:
        """Should list plans and registered strategy capabilities."""
        plan = service.create_plan([make_task("one")])
        assert [e.plan.id for e in service.list_plans()] == [plan.id]
        assert [c.name for c in service.get_strategies()] == ["fake"]


class TestPauseResume:
    """Tests for the pause checkpoint."""

    def test_pause_blocks_next_task_until_resume(self, service: SyncService,
                                                 fake_strategy: FakeStrategy) -> None:
        """Should let task 2 finish but hold task 3 until resumed."""
        log = EventLog()
        started, release = fake_strategy.block("two")
        plan = service.create_plan([make_task("one"), make_task("two"), make_task("three")])
        service.start(plan.id, log)

        assert started.wait(5.0)
        service.pause(plan.id)
        assert service.get_plan(plan.id).status == SyncStatus.PAUSED
        release.set()

        assert wait_until(lambda: ("task_complete", "two") in log.types())
        time.sleep(0.2)
        assert ("task_start", "three") not in log.types()
        assert plan.tasks[2].status == SyncStatus.PENDING

        with pytest.raises(ConfigurationError):
            service.pause(plan.id)

        resumed = EventLog()
        service.resume(plan.id, resumed)
        assert service.wait(plan.id, 5.0)
        assert ("task_start", "three") in resumed.types()
        assert resumed.of("plan_complete")[0].status == "completed"
        assert fake_strategy.calls == ["one", "two", "three"]

    def test_resume_requires_paused(self, service: SyncService) -> None:
        """Should reject resume when the plan is not paused."""
        plan = service.create_plan([make_task("one")])
        with pytest.raises(ConfigurationError):
            service.resume(plan.id)


class TestCancel:
    """Tests for plan cancellation."""

    def test_cancel_prevents_next_task(self, service: SyncService,
                                       fake_strategy: FakeStrategy) -> None:
        """Should never start the next task once cancelled between tasks."""
        log = EventLog()
        started, release = fake_strategy.block("two")
        plan = service.create_plan([make_task("one"), make_task("two"), make_task("three")])
        service.start(plan.id, log)
        assert started.wait(5.0)

        service.pause(plan.id)
        release.set()
        assert wait_until(lambda: ("task_complete", "two") in log.types())
        service.cancel(plan.id)
        assert service.wait(plan.id, 5.0)

        assert ("task_start", "three") not in log.types()
        assert service.get_plan(plan.id).status == SyncStatus.CANCELLED
        assert log.of("plan_complete")[0].status == "cancelled"

    def test_cancel_in_flight_task(self, service: SyncService,
                                   fake_strategy: FakeStrategy) -> None:
        """Should fail the running task with a cancellation reason."""
        log = EventLog()
        started, _ = fake_strategy.block("one")
        plan = service.create_plan([make_task("one"), make_task("two")])
        service.start(plan.id, log)
        assert started.wait(5.0)

        service.cancel(plan.id)
        assert service.wait(plan.id, 5.0)

        assert plan.tasks[0].status == SyncStatus.FAILED
        assert plan.tasks[0].error_message.startswith("cancelled")
        assert plan.tasks[1].status == SyncStatus.PENDING
        assert service.get_plan(plan.id).status == SyncStatus.CANCELLED

    def test_cancel_finished_plan(self, service: SyncService) -> None:
        """Should reject cancelling a finished plan."""
        plan = service.create_plan([make_task("one")])
        service.start(plan.id)
        service.wait(plan.id, 5.0)
        with pytest.raises(ConfigurationError):
            service.cancel(plan.id)

    def test_close_cancels_active_plans(self, fake_registry: StrategyRegistry,
                                        fake_strategy: FakeStrategy) -> None:
        """Should cancel and join running plans on close."""
        service = SyncService(fake_registry, EngineSettings(forward_poll_interval=0.01))
        started, _ = fake_strategy.block("one")
        plan = service.create_plan([make_task("one")])
        service.start(plan.id)
        assert started.wait(5.0)
        service.close()
        assert service.get_plan(plan.id).status == SyncStatus.CANCELLED
        assert service.wait(plan.id, 1.0)

    def test_restart_rejected_while_cancelled_task_unwinds(self, service: SyncService,
                                                            fake_strategy: FakeStrategy) -> None:
        """Should not run two tasks of one plan at once after a cancel."""
        log = EventLog()
        fake_strategy.unwind_delay = 0.4
        started, release = fake_strategy.block("one")
        plan = service.create_plan([make_task("one"), make_task("two"), make_task("three")])
        service.start(plan.id, log)
        assert started.wait(5.0)

        service.cancel(plan.id)
        with pytest.raises(ConfigurationError, match="still stopping"):
            service.start(plan.id, log)
        assert service.wait(plan.id, 5.0)

        assert fake_strategy.calls == ["one"]
        assert fake_strategy.max_active == 1
        assert len(log.of("plan_complete")) == 1
        assert service.get_plan(plan.id).status == SyncStatus.CANCELLED

        release.set()
        service.start(plan.id, log)
        assert service.wait(plan.id, 5.0)
        assert fake_strategy.calls == ["one", "one", "two", "three"]
        assert fake_strategy.max_active == 1
        assert service.get_plan(plan.id).status == SyncStatus.COMPLETED
