"""
Offline transaction handler for branches with limited connectivity.

Deposits, withdrawals and loan payments captured while offline are staged in
the local store and replayed in batches against the Supabase batch RPCs once
connectivity is restored. Items leave the queue only after the server has
confirmed them; everything else is retried on the next flush.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

OFFLINE_QUEUE_KEY = "ncu_offline_transactions"
OFFLINE_MODE_KEY = "ncu_offline_mode"
TRANSACTION_HISTORY_KEY = "ncu_transaction_history"
MAX_BATCH_SIZE = 100

# Flush order across types; no ordering is promised between them.
TRANSACTION_TYPES = ("deposit", "withdrawal", "loan_payment")
_TYPE_LABELS = {
    "deposit": "deposit",
    "withdrawal": "withdrawal",
    "loan_payment": "loan payment",
}


def _utcnow():
    return datetime.now(timezone.utc)


def _to_decimal(value):
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


@dataclass(frozen=True)
class QueuedTransaction:
    id: str
    user_id: str
    type: str
    amount: Decimal
    created_at: str
    description: Optional[str] = None
    loan_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.type not in TRANSACTION_TYPES:
            raise ValueError(f"Invalid transaction type: {self.type!r}")
        object.__setattr__(self, "amount", _to_decimal(self.amount))

    def to_dict(self):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "amount": str(self.amount),
            "created_at": self.created_at,
        }
        if self.description is not None:
            data["description"] = self.description
        if self.loan_id is not None:
            data["loan_id"] = self.loan_id
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            type=data["type"],
            amount=data["amount"],
            created_at=data["created_at"],
            description=data.get("description"),
            loan_id=data.get("loan_id"),
            metadata=data.get("metadata"),
        )


@dataclass
class FlushResult:
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    reason: Optional[str] = None

    def to_dict(self):
        return {
            "processed": self.processed,
            "failed": self.failed,
            "errors": list(self.errors),
            "skipped": self.skipped,
            "reason": self.reason,
        }


def chunked(items, size):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _entry_id(entry):
    if isinstance(entry, dict):
        return entry.get("id")
    return entry


class OfflineQueue:
    def __init__(self, store, gateway, batch_size=MAX_BATCH_SIZE,
                 is_online: Callable[[], bool] = lambda: True,
                 clock: Callable[[], datetime] = _utcnow,
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.gateway = gateway
        self.batch_size = batch_size
        self.is_online = is_online
        self._clock = clock
        self._id_factory = id_factory
        # _queue_lock covers read-modify-write of the stored queue,
        # _flush_lock keeps at most one flush in flight.
        self._queue_lock = threading.RLock()
        self._flush_lock = threading.Lock()
        # Ids the server confirmed whose removal has not reached the store yet.
        self._unsaved_removals = set()

    def load(self):
        queue = self.get_queue()
        if queue:
            logger.info("Loaded %d offline transaction(s) awaiting sync", len(queue))
        return queue

    # --- offline mode -------------------------------------------------

    def is_offline_mode(self):
        return bool(self.store.get(OFFLINE_MODE_KEY, False))

    def set_offline_mode(self, status):
        self.store.set(OFFLINE_MODE_KEY, bool(status))
        logger.info("Offline mode %s", "enabled" if status else "disabled")

    # --- queue contents -----------------------------------------------

    def get_queue(self) -> List[QueuedTransaction]:
        raw = self.store.get(OFFLINE_QUEUE_KEY, [])
        queue = []
        for item in raw or []:
            try:
                queue.append(QueuedTransaction.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Dropping unreadable offline transaction %r: %s", item, e)
        if self._unsaved_removals:
            queue = [tx for tx in queue if tx.id not in self._unsaved_removals]
        return queue

    def _save_queue(self, queue):
        saved = self.store.set(OFFLINE_QUEUE_KEY, [tx.to_dict() for tx in queue])
        if saved:
            self._unsaved_removals.clear()
        return saved

    def enqueue(self, user_id, type, amount, description=None, loan_id=None, metadata=None):
        tx = QueuedTransaction(
            id=self._id_factory(),
            user_id=user_id,
            type=type,
            amount=amount,
            created_at=self._clock().isoformat(),
            description=description,
            loan_id=loan_id,
            metadata=metadata,
        )
        with self._queue_lock:
            queue = self.get_queue()
            queue.append(tx)
            self._save_queue(queue)
        logger.debug("Queued offline %s %s for user %s", tx.type, tx.amount, tx.user_id)
        return tx

    def clear(self):
        with self._queue_lock:
            return self._save_queue([])

    def stats(self):
        queue = self.get_queue()
        by_type = {}
        total = Decimal("0")
        for tx in queue:
            total += tx.amount
            by_type[tx.type] = by_type.get(tx.type, 0) + 1
        return {"count": len(queue), "total_amount": total, "by_type": by_type}

    # --- sync ---------------------------------------------------------

    def can_sync(self):
        return self.is_online() and not self.is_offline_mode()

    def flush(self) -> FlushResult:
        if not self.can_sync():
            return FlushResult(skipped=True, reason="offline")
        if not self._flush_lock.acquire(blocking=False):
            logger.info("Offline sync already in progress, skipping")
            return FlushResult(skipped=True, reason="in_progress")
        try:
            return self._flush()
        finally:
            self._flush_lock.release()

    def _flush(self):
        result = FlushResult()
        with self._queue_lock:
            queue = self.get_queue()
            if self._unsaved_removals:
                # Retry persisting removals left over from an earlier flush.
                self._save_queue(queue)
        if not queue:
            return result

        by_type = {kind: [] for kind in TRANSACTION_TYPES}
        for tx in queue:
            by_type[tx.type].append(tx)

        processed_ids = set()
        for kind in TRANSACTION_TYPES:
            for batch in chunked(by_type[kind], self.batch_size):
                processed_ids |= self._submit_batch(kind, batch, result)

        synced = [tx for tx in queue if tx.id in processed_ids]
        with self._queue_lock:
            # Re-read so transactions queued during the flush are kept.
            remaining = [tx for tx in self.get_queue() if tx.id not in processed_ids]
            if not self._save_queue(remaining):
                self._unsaved_removals |= processed_ids
                logger.error(
                    "Could not rewrite offline queue; %d confirmed transaction(s) held back in memory",
                    len(processed_ids),
                )
        if synced:
            self._record_history(synced)

        logger.info(
            "Offline sync finished: %d processed, %d failed, %d still queued",
            result.processed, result.failed, len(remaining),
        )
        return result

    def _submit_batch(self, kind, batch, result):
        label = _TYPE_LABELS[kind]
        batch_ids = [tx.id for tx in batch]
        try:
            data = self.gateway.batch_process(kind, [tx.to_dict() for tx in batch])
        except Exception as e:
            logger.warning("Batch %s of %d transaction(s) failed: %s", label, len(batch), e)
            result.failed += len(batch)
            result.errors.append(f"Batch {label} error: {e}")
            return set()

        confirmed = {_entry_id(entry) for entry in data.get("processed") or []}
        confirmed &= set(batch_ids)
        rejected = set()
        for fail in data.get("failed") or []:
            fail_id = _entry_id(fail)
            error = fail.get("error") if isinstance(fail, dict) else None
            rejected.add(fail_id)
            result.errors.append(f"Transaction {fail_id}: {error or 'Unknown error'}")
            logger.warning("Server rejected offline %s %s: %s", label, fail_id, error)

        unanswered = [tx_id for tx_id in batch_ids if tx_id not in confirmed and tx_id not in rejected]
        for tx_id in unanswered:
            result.errors.append(f"Transaction {tx_id}: no confirmation from server")

        result.processed += len(confirmed)
        result.failed += len(rejected) + len(unanswered)
        return confirmed

    # --- local history ------------------------------------------------

    def _record_history(self, synced):
        history = self.store.get(TRANSACTION_HISTORY_KEY, []) or []
        history.extend(tx.to_dict() for tx in synced)
        self.store.set(TRANSACTION_HISTORY_KEY, history)

    def get_history(self):
        return self.store.get(TRANSACTION_HISTORY_KEY, []) or []

    def archive_local_data(self, older_than_days=30):
        """Drop cached history entries created before the cutoff. Returns the count removed."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        history = self.get_history()
        kept = []
        for entry in history:
            try:
                created = datetime.fromisoformat(entry["created_at"])
            except (KeyError, TypeError, ValueError):
                continue
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            if created >= cutoff:
                kept.append(entry)
        self.store.set(TRANSACTION_HISTORY_KEY, kept)
        return len(history) - len(kept)


class PeriodicSync:
    """Background timer that flushes the queue while online.

    Connectivity is whatever the client last reported; coming back online
    triggers an immediate flush in addition to the regular interval.
    """

    def __init__(self, queue, interval_minutes=15, online=True):
        self.queue = queue
        self.interval_seconds = interval_minutes * 60
        self._online = online
        self._stop = threading.Event()
        self._thread = None
        self.last_result = None

    def is_online(self):
        return self._online

    def report_connectivity(self, online):
        """Record the connectivity signal; returns the flush result on an offline->online transition."""
        was_online = self._online
        self._online = bool(online)
        if self._online and not was_online:
            logger.info("Connectivity restored, syncing offline transactions")
            return self.sync_if_online()
        return None

    def sync_if_online(self):
        if not self.queue.can_sync():
            return None
        try:
            self.last_result = self.queue.flush()
        except Exception:
            logger.exception("Periodic offline sync failed")
            return None
        return self.last_result

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            self.sync_if_online()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="offline-sync", daemon=True)
        self._thread.start()
        logger.info("Periodic offline sync every %.0f seconds", self.interval_seconds)

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
