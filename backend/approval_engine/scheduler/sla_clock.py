"""SLA Clock - Periodic sweep driving SLA status, escalation and auto-termination

Handles, for every non-terminal instance:
- Auto-termination once the template's time limit is exceeded
- SLA status updates (DeadlineApproaching on upward moves)
- Escalation, once per deadline crossing

Resolver failures are logged and retried on the next sweep; a failure
that persists for escalation_failure_alert_threshold sweeps raises one
EscalationFailed operational alert.
"""
import threading
from datetime import datetime
from typing import Callable, Dict, Iterator, Optional, Set, Tuple
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from ..config.settings import settings
from ..domain.models import WorkflowInstance
from ..domain.enums import EventType
from ..domain.errors import DomainError, StaleInstanceStateError
from ..engine.workflow_engine import WorkflowEngine
from ..repositories.base import ActiveCursor
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, correlation_scope, instance_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

FailureKey = Tuple[str, int, int]


class SweepResult(BaseModel):
    """Counters of one sweep"""
    scanned: int = 0
    terminated: int = 0
    sla_updated: int = 0
    escalated: int = 0
    stale: int = 0
    failed: int = 0
    alerts: int = 0


class SlaClock:
    """
    SLA/escalation sweep with an APScheduler background job

    Each sweep pages through every non-terminal instance, batch_size at a
    time, ordered by (initiated_at, instance_id).

    Safe alongside user actions: every write is a compare-and-set, and an
    instance that moved on since it was read is skipped.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: Optional[int] = None,
        failure_alert_threshold: Optional[int] = None
    ):
        self.engine = engine
        self.clock = clock or engine.clock or utc_now
        self.batch_size = batch_size or settings.sla_sweep_batch_size
        self.failure_alert_threshold = failure_alert_threshold or settings.escalation_failure_alert_threshold
        self.scheduler: Optional[BackgroundScheduler] = None
        self._is_running = False
        self._failures: Dict[FailureKey, int] = {}
        self._sweep_lock = threading.Lock()

    def start(self, interval_seconds: Optional[int] = None) -> None:
        """Start the background sweep"""
        if self._is_running:
            logger.warning("SLA clock already running")
            return

        interval = interval_seconds or settings.sla_sweep_interval_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=interval),
            id="sla_sweep",
            name="SLA and escalation sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"SLA clock started (every {interval}s)")

    def stop(self) -> None:
        """Stop the background sweep"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self._is_running = False
        logger.info("SLA clock stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    def sweep(self) -> SweepResult:
        """Run one pass over all non-terminal instances"""
        with self._sweep_lock, correlation_scope(generate_correlation_id()):
            result = SweepResult()
            now = self.clock()
            seen: Set[str] = set()

            for instance in self._active_instances():
                result.scanned += 1
                seen.add(instance.instance_id)
                self._sweep_instance(instance, now, result)

            # Instances that finished or vanished keep no failure history
            for key in [k for k in self._failures if k[0] not in seen]:
                del self._failures[key]

            if result.escalated or result.terminated or result.failed:
                logger.info(
                    f"SLA sweep: {result.scanned} scanned, {result.escalated} escalated, "
                    f"{result.terminated} terminated, {result.failed} failed"
                )
            return result

    def _active_instances(self) -> Iterator[WorkflowInstance]:
        """Every non-terminal instance, fetched batch_size at a time"""
        after: Optional[ActiveCursor] = None
        while True:
            page = self.engine.instance_repo.list_active(limit=self.batch_size, after=after)
            yield from page
            if len(page) < self.batch_size:
                return
            after = (page[-1].initiated_at, page[-1].instance_id)

    def _sweep_instance(self, instance: WorkflowInstance, now: datetime, result: SweepResult) -> None:
        key: FailureKey = (instance.instance_id, instance.current_step_order, instance.escalation_level)
        try:
            if self.engine.enforce_auto_terminate(instance, now) is not None:
                result.terminated += 1
                self._clear_failures(instance.instance_id)
                return

            updated = self.engine.update_sla_status(instance, now)
            if updated.version != instance.version:
                result.sla_updated += 1

            if self.engine.escalate_if_due(updated, now):
                result.escalated += 1
            self._clear_failures(instance.instance_id)

        except StaleInstanceStateError:
            # Someone acted on the instance since it was read; next sweep sees fresh state
            result.stale += 1
            logger.debug(
                f"Instance {instance.instance_id} changed during sweep; skipped",
                extra={"instance_id": instance.instance_id}
            )

        except DomainError as e:
            result.failed += 1
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            instance_logger(logger, instance).error(
                f"SLA sweep failed for instance {instance.instance_id} ({failures} consecutive): {e.message}"
            )
            if failures == self.failure_alert_threshold:
                result.alerts += 1
                self.engine.publisher.publish(
                    EventType.ESCALATION_FAILED,
                    instance,
                    {
                        "error_code": e.error_code,
                        "message": e.message,
                        "consecutive_failures": failures,
                        "escalation_level": instance.escalation_level,
                    }
                )

    def _clear_failures(self, instance_id: str) -> None:
        for key in [k for k in self._failures if k[0] == instance_id]:
            del self._failures[key]
