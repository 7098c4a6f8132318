"""
Offline Mode & Sync Service.
Lets field reps log interactions with no signal (basements, rural accounts)
and replays them against the record store once connectivity returns.
"""
import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .local_storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    LAST_SYNC_KEY,
    OFFLINE_INTERACTIONS_KEY,
    PENDING_ACTIONS_KEY,
    load_json,
    remove_key,
    save_json,
)
from .record_store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_RESOURCE = "interactions"
MIRROR_MARKERS = ("_pending_sync", "_queued_at")


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class PendingAction:
    """A locally-stored mutation waiting to be replayed against the record store."""
    id: str
    kind: ActionKind
    payload: Dict
    resource_name: str = DEFAULT_RESOURCE
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0
    max_retries: int = 3
    status: SyncStatus = SyncStatus.PENDING
    error_message: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "resource_name": self.resource_name,
            "enqueued_at": self.enqueued_at.isoformat(),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "status": self.status.value,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PendingAction":
        status = SyncStatus(data.get("status", SyncStatus.PENDING))
        if status == SyncStatus.SYNCING:
            # The process stopped mid-pass; the action never completed
            status = SyncStatus.PENDING
        return cls(
            id=str(data["id"]),
            kind=ActionKind(data["kind"]),
            payload=dict(data.get("payload") or {}),
            resource_name=data.get("resource_name", DEFAULT_RESOURCE),
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 3)),
            status=status,
            error_message=data.get("error_message"),
        )


@dataclass
class OfflineStatus:
    is_online: bool
    pending_actions: int
    last_sync: Optional[str]
    sync_in_progress: bool


@dataclass
class SyncResult:
    success: bool
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def generate_offline_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"offline_{int(time.time() * 1000)}_{suffix}"


class OfflineSyncEngine:
    """
    Manages the offline action queue and its synchronisation.

    The queue and the offline mirror are owned here and persisted to the
    local key-value store after every change (best effort: a failed write is
    logged and the in-memory queue stays authoritative for the session).
    Actions are replayed strictly in enqueue order; at most one sync pass
    runs at a time.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        record_store: Optional[RecordStore] = None,
        max_retries: int = 3,
        sync_interval_seconds: float = 30.0,
        debounce_seconds: float = 1.0,
        is_online: bool = True,
    ):
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.record_store = record_store
        self.max_retries = max_retries
        self.sync_interval_seconds = sync_interval_seconds
        self.debounce_seconds = debounce_seconds
        self.is_online = is_online
        self.sync_in_progress = False
        self.last_sync: Optional[str] = None

        self._queue: List[PendingAction] = []
        self._callbacks: List[Callable[[OfflineStatus], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._periodic_task: Optional[asyncio.Task] = None
        self._load_state()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> OfflineStatus:
        return OfflineStatus(
            is_online=self.is_online,
            pending_actions=len(self._queue),
            last_sync=self.last_sync,
            sync_in_progress=self.sync_in_progress,
        )

    def on_status_change(self, callback: Callable[[OfflineStatus], None]) -> Callable[[], None]:
        """Subscribe to status changes. Returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _notify_status_change(self) -> None:
        status = self.get_status()
        for callback in list(self._callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("Error in offline status callback")

    def get_pending_count(self) -> int:
        return len(self._queue)

    def get_pending_actions(self) -> List[PendingAction]:
        return list(self._queue)

    def has_conflicts(self, record_id: Any) -> bool:
        """True if a queued action for this id has already failed at least once."""
        wanted = str(record_id)
        return any(
            (a.id == wanted or str(a.payload.get("id")) == wanted) and a.retry_count > 0
            for a in self._queue
        )

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    async def queue_interaction(
        self,
        kind: ActionKind,
        payload: Dict,
        action_id: Optional[str] = None,
        resource_name: str = DEFAULT_RESOURCE,
    ) -> str:
        """Add a mutation to the queue; triggers a background sync when online."""
        kind = ActionKind(kind)
        action = PendingAction(
            id=action_id or generate_offline_id(),
            kind=kind,
            payload=dict(payload),
            resource_name=resource_name,
            max_retries=self.max_retries,
        )
        self._queue.append(action)
        self._save_pending_actions()

        if kind in (ActionKind.CREATE, ActionKind.UPDATE):
            self._store_offline_interaction(action.id, action.payload)

        self._notify_status_change()

        if self.is_online:
            self._spawn(self.sync_pending_actions())

        return action.id

    def get_offline_interactions(self) -> List[Dict]:
        """Mirrored payloads for display while offline."""
        mirror = load_json(self.store, OFFLINE_INTERACTIONS_KEY, {})
        if not isinstance(mirror, dict):
            return []
        return [entry for entry in mirror.values() if isinstance(entry, dict)]

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_pending_actions(self, record_store: Optional[RecordStore] = None) -> SyncResult:
        """
        Replay queued actions in enqueue order.
        A failing action is retried on later passes until ``max_retries`` is
        reached, then abandoned and reported in ``errors``.
        """
        if self.sync_in_progress or not self.is_online:
            return SyncResult(success=False, errors=["Sync already in progress or offline"])

        target = record_store or self.record_store
        if target is None:
            return SyncResult(success=False, errors=["No record store configured"])

        self.sync_in_progress = True
        self._notify_status_change()

        result = SyncResult(success=True)
        try:
            for action in list(self._queue):
                action.status = SyncStatus.SYNCING
                try:
                    await self._process_action(action, target)
                except Exception as exc:
                    logger.exception("Failed to sync action %s", action.id)
                    action.retry_count += 1
                    action.error_message = str(exc)
                    if action.retry_count >= action.max_retries:
                        action.status = SyncStatus.FAILED
                        self._remove_action(action.id)
                        self._remove_offline_interaction(action.id)
                        result.failed += 1
                        result.errors.append(
                            f"Action {action.id} failed after {action.max_retries} retries: {exc}"
                        )
                    else:
                        action.status = SyncStatus.PENDING
                    continue

                action.status = SyncStatus.SYNCED
                self._remove_action(action.id)
                self._remove_offline_interaction(action.id)
                result.processed += 1

            self.last_sync = datetime.now(timezone.utc).isoformat()
            save_json(self.store, LAST_SYNC_KEY, self.last_sync)
            self._save_pending_actions()
        except Exception as exc:
            logger.exception("Sync pass aborted")
            result.success = False
            result.errors.append(f"Sync failed: {exc}")
        finally:
            self.sync_in_progress = False
            self._notify_status_change()

        return result

    async def _process_action(self, action: PendingAction, record_store: RecordStore) -> None:
        if action.kind == ActionKind.CREATE:
            await record_store.create(action.resource_name, action.payload)
        elif action.kind == ActionKind.UPDATE:
            previous = self._get_offline_interaction(action.id)
            await record_store.update(action.resource_name, self._record_id(action), action.payload, previous)
        elif action.kind == ActionKind.DELETE:
            await record_store.delete(action.resource_name, self._record_id(action))
        else:
            raise ValueError(f"Unknown action type: {action.kind}")

    @staticmethod
    def _record_id(action: PendingAction) -> Any:
        record_id = action.payload.get("id")
        if record_id is None:
            raise ValueError(f"{action.kind.value} action {action.id} has no record id")
        return record_id

    def _remove_action(self, action_id: str) -> None:
        self._queue = [a for a in self._queue if a.id != action_id]

    def clear_offline_data(self) -> None:
        self._queue = []
        self.last_sync = None
        remove_key(self.store, PENDING_ACTIONS_KEY)
        remove_key(self.store, LAST_SYNC_KEY)
        remove_key(self.store, OFFLINE_INTERACTIONS_KEY)
        self._notify_status_change()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def set_online(self, is_online: bool) -> None:
        """Connectivity signal from the host."""
        was_online = self.is_online
        self.is_online = is_online
        self._notify_status_change()
        if is_online and not was_online:
            self._schedule_debounced_sync()

    def handle_visibility_change(self, visible: bool) -> None:
        """The app came back to the foreground."""
        if visible and self.is_online:
            self._schedule_debounced_sync()

    def _schedule_debounced_sync(self) -> None:
        if self._queue and not self.sync_in_progress:
            self._spawn(self._sync_after_delay(self.debounce_seconds))

    async def _sync_after_delay(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.sync_pending_actions()

    async def _periodic_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval_seconds)
            if self.is_online and self._queue and not self.sync_in_progress:
                await self.sync_pending_actions()

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def start(self) -> None:
        """Start periodic syncing on the running event loop."""
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_sync_loop())

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
            self._periodic_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for background sync tasks spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_state(self) -> None:
        stored = load_json(self.store, PENDING_ACTIONS_KEY, [])
        queue = []
        for row in stored if isinstance(stored, list) else []:
            try:
                queue.append(PendingAction.from_dict(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping unreadable pending action: %s", exc)
        self._queue = queue

        # Mirror entries must belong to a queued action
        mirror = self._load_mirror()
        queued_ids = {a.id for a in queue}
        orphaned = [key for key in mirror if key not in queued_ids]
        if orphaned:
            logger.warning("Dropping %d offline entries with no pending action", len(orphaned))
            for key in orphaned:
                del mirror[key]
            save_json(self.store, OFFLINE_INTERACTIONS_KEY, mirror)

        last_sync = load_json(self.store, LAST_SYNC_KEY)
        self.last_sync = last_sync if isinstance(last_sync, str) else None

    def _save_pending_actions(self) -> None:
        save_json(self.store, PENDING_ACTIONS_KEY, [a.to_dict() for a in self._queue])

    def _load_mirror(self) -> Dict[str, Dict]:
        mirror = load_json(self.store, OFFLINE_INTERACTIONS_KEY, {})
        return mirror if isinstance(mirror, dict) else {}

    def _store_offline_interaction(self, action_id: str, payload: Dict) -> None:
        mirror = self._load_mirror()
        mirror[action_id] = {
            **payload,
            "id": action_id,
            "_pending_sync": True,
            "_queued_at": datetime.now(timezone.utc).isoformat(),
        }
        save_json(self.store, OFFLINE_INTERACTIONS_KEY, mirror)

    def _get_offline_interaction(self, action_id: str) -> Optional[Dict]:
        entry = self._load_mirror().get(action_id)
        if not isinstance(entry, dict):
            return None
        return {k: v for k, v in entry.items() if k not in MIRROR_MARKERS}

    def _remove_offline_interaction(self, action_id: str) -> None:
        mirror = self._load_mirror()
        if mirror.pop(action_id, None) is not None:
            save_json(self.store, OFFLINE_INTERACTIONS_KEY, mirror)
