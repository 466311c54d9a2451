import json
import logging
import queue as queue_mod
import threading
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from rentbook.core.config import WorkerConfig
from rentbook.models.sync_task import (
    SyncTask,
    TASK_DELETE,
    TASK_SYNC_SCHEDULE,
    TASK_UPDATE_STATUS,
    TASK_UPSERT,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_RETRY,
)
from rentbook.services.sync_queue import SyncQueue
from rentbook.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PayloadError(Exception):
    """The task can never succeed as written; it goes straight to dead letter."""


class SheetsSink(Protocol):
    def upsert_booking(self, kind: str, booking: dict) -> None: ...

    def delete_booking(self, kind: str, booking_id: int) -> None: ...

    def update_status(self, kind: str, booking_id: int, status: str, updated_at=None) -> bool: ...

    def render_schedule(self, start: date, end: date, items: Iterable, bookings: Iterable) -> None: ...


# ---------------------------------------------------------------------------
# Dead letter
# ---------------------------------------------------------------------------


class LoggingDeadLetter:
    def push(self, task: SyncTask, error: str) -> None:
        logger.error(
            "Sync task %d (%s, booking %d) dead-lettered after %d attempt(s): %s",
            task.id, task.task_type, task.booking_id, task.retry_count, error,
        )


class RedisDeadLetter:
    def __init__(self, redis, key: str = "sheets:deadletter"):
        self.redis = redis
        self.key = key
        self._fallback = LoggingDeadLetter()

    def push(self, task: SyncTask, error: str) -> None:
        record = json.dumps(
            {
                "task_id": task.id,
                "task_type": task.task_type,
                "booking_id": task.booking_id,
                "payload": task.payload,
                "retry_count": task.retry_count,
                "error": error,
                "failed_at": datetime.now().isoformat(),
            },
            ensure_ascii=False,
        )
        try:
            self.redis.lpush(self.key, record)
        except Exception as e:
            logger.warning("Dead-letter push to redis failed: %s", e)
            self._fallback.push(task, error)


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class SheetsWorker:
    """
    Drains ``sync_queue`` into the spreadsheet.

    Sources, in order: ids notified by this process, ids popped from the
    shared redis list, then a poll of due rows. Every task is re-read before
    it runs so completed rows are skipped.
    """

    def __init__(
        self,
        sync_queue: SyncQueue,
        sheets: SheetsSink,
        config: WorkerConfig,
        policy: Optional[RetryPolicy] = None,
        redis=None,
        dead_letter=None,
        list_items: Optional[Callable[[], List]] = None,
        list_bookings: Optional[Callable[[date, date], List]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.sync_queue = sync_queue
        self.sheets = sheets
        self.config = config
        self.policy = policy or RetryPolicy.from_config(config)
        self.redis = redis
        self.dead_letter = dead_letter or (
            RedisDeadLetter(redis, config.dead_letter_key) if redis is not None else LoggingDeadLetter()
        )
        self.list_items = list_items or (lambda: [])
        self.list_bookings = list_bookings or (lambda start, end: [])
        self.clock = clock
        self._local = queue_mod.Queue(maxsize=config.queue_size)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._handlers = {
            TASK_UPSERT: self._handle_upsert,
            TASK_DELETE: self._handle_delete,
            TASK_UPDATE_STATUS: self._handle_update_status,
            TASK_SYNC_SCHEDULE: self._handle_sync_schedule,
        }

    # -----------------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------------

    def notify(self, task_id: int) -> None:
        try:
            self._local.put_nowait(task_id)
        except queue_mod.Full:
            if self.redis is not None:
                self.push_remote(task_id)
            else:
                logger.debug("Local sync queue full, task %d left to the poller.", task_id)

    def push_remote(self, task_id: int) -> None:
        self.redis.lpush(self.config.redis_queue_key, str(task_id))

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="sheets-worker", daemon=True)
        self._thread.start()
        logger.info("Sheets worker started.")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sheets worker stopped.")

    def join(self) -> None:
        if self._thread is not None:
            self._thread.join()

    def warm_up(self) -> None:
        warm = getattr(self.sheets, "warm_up", None)
        if warm is not None:
            try:
                warm()
            except Exception:
                logger.exception("Sheets row cache warm-up failed.")
        logger.info("Sheets worker starting with %d queued task(s).", self.sync_queue.pending_count())

    def run(self) -> None:
        self.warm_up()
        while not self._stop.is_set():
            try:
                processed = self.run_once()
            except Exception:
                logger.exception("Sheets worker iteration failed.")
                processed = 0
            if not processed:
                self._stop.wait(self.config.poll_interval)

    def run_once(self) -> int:
        """One pass over the three sources; returns the number of tasks looked at."""
        ids = []
        while len(ids) < self.config.batch_size:
            try:
                ids.append(self._local.get_nowait())
            except queue_mod.Empty:
                break
        if ids:
            for task_id in ids:
                if self._stop.is_set():
                    break
                self.process_id(task_id)
            return len(ids)

        if self.redis is not None:
            try:
                popped = self.redis.brpop(self.config.redis_queue_key, timeout=1)
            except Exception as e:
                logger.warning("Redis queue pop failed: %s", e)
                popped = None
            if popped:
                _, raw = popped
                try:
                    self.process_id(int(raw))
                except ValueError:
                    logger.warning("Ignoring malformed task id %r from redis queue.", raw)
                return 1

        tasks = self.sync_queue.fetch_due(self.config.batch_size)
        for task in tasks:
            if self._stop.is_set():
                break
            self.process(task)
        return len(tasks)

    # -----------------------------------------------------------------------
    # Processing
    # -----------------------------------------------------------------------

    def process_id(self, task_id: int) -> None:
        task = self.sync_queue.get(task_id)
        if task is None:
            logger.debug("Sync task %d vanished.", task_id)
            return
        if task.status == SYNC_RETRY and task.next_retry_at and task.next_retry_at > self.clock():
            return
        self.process(task)

    def process(self, task: SyncTask) -> None:
        current = self.sync_queue.get(task.id)
        if current is None or current.status in (SYNC_COMPLETED, SYNC_FAILED):
            return
        task = current

        try:
            payload = json.loads(task.payload or "")
            if not isinstance(payload, dict):
                raise ValueError("payload is not an object")
        except ValueError as e:
            self._fail(task, task.retry_count, f"invalid payload: {e}")
            return

        handler = self._handlers.get(task.task_type)
        if handler is None:
            self._fail(task, task.retry_count, f"unknown task type {task.task_type!r}")
            return

        try:
            handler(task, payload)
        except PayloadError as e:
            self._fail(task, task.retry_count, str(e))
            return
        except Exception as e:
            self._retry_or_fail(task, str(e) or type(e).__name__)
            return

        self.sync_queue.mark_completed(task.id)
        logger.debug("Sync task %d (%s) completed.", task.id, task.task_type)

    def _retry_or_fail(self, task: SyncTask, error: str) -> None:
        attempt = task.retry_count + 1
        if self.policy.exhausted(attempt):
            self._fail(task, attempt, error)
            return
        delay = self.policy.next_delay(attempt)
        next_at = self.clock() + timedelta(seconds=delay)
        self.sync_queue.mark_retry(task.id, attempt, error, next_at)
        logger.warning(
            "Sync task %d (%s) failed, attempt %d/%d, retry in %.1fs: %s",
            task.id, task.task_type, attempt, self.policy.max_retries, delay, error,
        )

    def _fail(self, task: SyncTask, retry_count: int, error: str) -> None:
        if not self.sync_queue.mark_failed(task.id, retry_count, error):
            return
        task.retry_count = retry_count
        task.status = SYNC_FAILED
        task.last_error = error
        self.dead_letter.push(task, error)

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    @staticmethod
    def _kind(payload: dict) -> str:
        return payload.get("kind") or "day"

    @staticmethod
    def _booking_id(task: SyncTask, payload: dict) -> int:
        booking_id = payload.get("booking_id") or task.booking_id
        if not booking_id:
            raise PayloadError("booking_id is required")
        return int(booking_id)

    def _handle_upsert(self, task: SyncTask, payload: dict) -> None:
        booking = payload.get("booking")
        if not isinstance(booking, dict) or "id" not in booking:
            raise PayloadError("booking snapshot is required for upsert")
        self.sheets.upsert_booking(self._kind(payload), booking)

    def _handle_delete(self, task: SyncTask, payload: dict) -> None:
        self.sheets.delete_booking(self._kind(payload), self._booking_id(task, payload))

    def _handle_update_status(self, task: SyncTask, payload: dict) -> None:
        booking_id = self._booking_id(task, payload)
        status = payload.get("status")
        if not status:
            raise PayloadError("status is required for update_status")
        booking = payload.get("booking") if isinstance(payload.get("booking"), dict) else None
        updated_at = booking.get("updated_at") if booking else None
        if self.sheets.update_status(self._kind(payload), booking_id, status, updated_at):
            return
        # row not mirrored yet
        if booking is None:
            raise PayloadError(f"row for booking {booking_id} not found and no snapshot to write")
        self.sheets.upsert_booking(self._kind(payload), booking)

    def _handle_sync_schedule(self, task: SyncTask, payload: dict) -> None:
        today = self.clock().date()
        try:
            start = date.fromisoformat(payload["start"]) if payload.get("start") else today - timedelta(days=30)
            end = date.fromisoformat(payload["end"]) if payload.get("end") else today + timedelta(days=60)
        except ValueError as e:
            raise PayloadError(f"invalid schedule range: {e}") from e
        self.sheets.render_schedule(start, end, self.list_items(), self.list_bookings(start, end))
