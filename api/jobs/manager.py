"""
Regeneration scheduler for audio feature caches.

Turns "regenerate these descriptor keys" requests into regeneration jobs:

- keys already being regenerated for the same (audio source, profile) pair
  are dropped, so at most one job is in flight per key,
- net-new keys enter the pending set synchronously, before the job is
  scheduled, so any diff computed afterwards reports them as regenerating,
- the timeline collaborator is awaited from an asyncio task; its failures
  are recorded on the job and in the history, never retried.
"""

import asyncio
import inspect
import time
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ..descriptor_identity import (
    ParsedDescriptorKey,
    adhoc_hash_from_profile_id,
    make_group_key,
    parse_descriptor_key,
    sanitize_analysis_profile_id,
)
from ..shared.logger import get_logger

logger = get_logger(__name__)


class RegenerationStatus(str, Enum):
    """Status of a regeneration job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RegenerationTrigger(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class HistoryAction(str, Enum):
    MANUAL_REGENERATE = "manual_regenerate"
    AUTO_REGENERATE = "auto_regenerate"
    DISMISSED = "dismissed"
    DELETED_EXTRANEOUS = "deleted_extraneous"


class HistoryOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_STATUSES = (RegenerationStatus.SUCCEEDED, RegenerationStatus.FAILED)


@dataclass
class RegenerationJob:
    """One regeneration request for a (audio source, profile) pair."""

    id: str
    audio_source_id: str
    analysis_profile_id: str
    descriptor_ids: List[str]
    calculator_ids: List[str]
    trigger: RegenerationTrigger
    status: RegenerationStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_traceback: Optional[str] = None

    @property
    def group_key(self) -> str:
        return make_group_key(self.audio_source_id, self.analysis_profile_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "audio_source_id": self.audio_source_id,
            "analysis_profile_id": self.analysis_profile_id,
            "descriptor_ids": self.descriptor_ids,
            "calculator_ids": self.calculator_ids,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "duration_seconds": self._get_duration(),
        }

    def _get_duration(self) -> Optional[float]:
        if not self.started_at:
            return None

        end_time = self.completed_at or datetime.now()
        return (end_time - self.started_at).total_seconds()


@dataclass
class HistoryEntry:
    id: str
    descriptor_ids: List[str]
    action: HistoryAction
    timestamp: datetime
    outcome: HistoryOutcome
    audio_source_id: Optional[str] = None
    analysis_profile_id: Optional[str] = None
    duration_ms: Optional[float] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "descriptor_ids": self.descriptor_ids,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value,
            "audio_source_id": self.audio_source_id,
            "analysis_profile_id": self.analysis_profile_id,
            "duration_ms": self.duration_ms,
            "note": self.note,
        }


JobCallback = Callable[[RegenerationJob], None]


class RegenerationScheduler:
    """
    Schedules regeneration jobs against the timeline collaborator.

    The collaborator needs ``reanalyze_audio_feature_calculators(source,
    calculator_ids, profile_id)`` and ``restart_audio_feature_analysis(source)``;
    both may return a bool or an awaitable of one. A registry, when given,
    fills in the calculator of keys that do not name one.
    """

    def __init__(self, timeline: Any = None, registry: Any = None):
        self.timeline = timeline
        self.registry = registry
        self._jobs: Dict[str, RegenerationJob] = {}
        self._pending: Dict[str, Set[str]] = {}
        self._history: List[HistoryEntry] = []
        self._tasks: Set[asyncio.Task] = set()
        self._callbacks: Dict[Optional[str], List[JobCallback]] = {}
        # Bumped by reset() so jobs still in flight do not write into fresh state.
        self._generation = 0

    # -------------------------------------------------------------- submit

    def regenerate_descriptors(
        self,
        audio_source_id: str,
        profile_id: Optional[str],
        descriptor_keys: Iterable[str],
        trigger: RegenerationTrigger = RegenerationTrigger.MANUAL,
    ) -> Optional[RegenerationJob]:
        """Submit a regeneration job for the keys not already pending.

        Returns:
            The job, or None when there is nothing new to regenerate.

        Raises:
            ValueError: If a key is malformed, belongs to another profile
                than ``profile_id``, or no audio source is given.
        """
        if not audio_source_id:
            raise ValueError("regenerate_descriptors requires an audio source id")
        keys = list(dict.fromkeys(descriptor_keys))
        parsed = {key: parse_descriptor_key(key) for key in keys}
        if not keys:
            return None

        profile = sanitize_analysis_profile_id(profile_id)
        foreign = [key for key in keys if sanitize_analysis_profile_id(parsed[key].profile_key) != profile]
        if foreign:
            raise ValueError(f"Descriptor keys {foreign} do not belong to analysis profile '{profile}'")
        trigger = RegenerationTrigger(trigger)
        group_key = make_group_key(audio_source_id, profile)
        pending = self._pending.get(group_key, set())
        new_keys = [key for key in keys if key not in pending]
        if not new_keys:
            logger.debug("All %d keys already regenerating for %s", len(keys), group_key)
            return None

        self._pending.setdefault(group_key, set()).update(new_keys)

        job = RegenerationJob(
            id=f"regen_{uuid.uuid4().hex[:8]}",
            audio_source_id=audio_source_id,
            analysis_profile_id=profile,
            descriptor_ids=new_keys,
            calculator_ids=self._derive_calculator_ids(audio_source_id, profile, [parsed[k] for k in new_keys]),
            trigger=trigger,
            status=RegenerationStatus.QUEUED,
            created_at=datetime.now(),
        )
        self._jobs[job.id] = job
        logger.info(
            "Regeneration job %s queued for %s (%d descriptors, %s)",
            job.id,
            group_key,
            len(new_keys),
            trigger.value,
        )

        job.status = RegenerationStatus.RUNNING
        job.started_at = datetime.now()
        self._notify_callbacks(job)
        self._schedule(job)
        return job

    def _derive_calculator_ids(
        self,
        audio_source_id: str,
        profile: str,
        parsed_keys: List[ParsedDescriptorKey],
    ) -> List[str]:
        calculator_ids: List[str] = []
        for parsed in parsed_keys:
            calculator_id = parsed.calculator_id
            if calculator_id and self.registry is not None:
                info = self.registry.lookup(calculator_id)
                calculator_id = info.id if info else calculator_id
            if not calculator_id:
                calculator_id = self._calculator_from_registry(parsed) or self._calculator_from_cache(
                    audio_source_id, profile, parsed
                )
            if calculator_id and calculator_id not in calculator_ids:
                calculator_ids.append(calculator_id)
        return calculator_ids

    def _calculator_from_registry(self, parsed: ParsedDescriptorKey) -> Optional[str]:
        if self.registry is None:
            return None
        info = self.registry.find_by_feature(parsed.feature_key)
        return info.id if info else None

    def _calculator_from_cache(self, audio_source_id: str, profile: str, parsed: ParsedDescriptorKey) -> Optional[str]:
        get_cache = getattr(self.timeline, "get_cache", None)
        cache = get_cache(audio_source_id) if get_cache else None
        if cache is None:
            return None
        for track in cache.feature_tracks.values():
            if track.feature_key.casefold() != parsed.feature_key.casefold():
                continue
            if cache.resolve_track_profile(track) != profile:
                continue
            if adhoc_hash_from_profile_id(profile) != parsed.overrides_hash:
                continue
            return track.calculator_id
        return None

    # ------------------------------------------------------------- execute

    def _schedule(self, job: RegenerationJob) -> None:
        generation = self._generation
        self.spawn(lambda: self._execute_job(job, generation))

    def spawn(self, make_coroutine: Callable[[], Awaitable[None]]) -> None:
        """Run a coroutine as a tracked task on the running loop.

        Without a running loop the coroutine is run with ``asyncio.run``,
        together with every task it spawns in turn, so nothing is left
        behind when that loop closes.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._run_until_idle(make_coroutine))
            return

        task = loop.create_task(make_coroutine())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_until_idle(self, make_coroutine: Callable[[], Awaitable[None]]) -> None:
        try:
            await make_coroutine()
        except Exception as e:
            logger.error("Error in background task: %s", e)
        await self.wait_for_idle()

    async def _execute_job(self, job: RegenerationJob, generation: int) -> None:
        started = time.perf_counter()
        try:
            if self.timeline is None:
                raise RuntimeError("No timeline collaborator configured")
            if job.calculator_ids:
                result = self.timeline.reanalyze_audio_feature_calculators(
                    job.audio_source_id, list(job.calculator_ids), job.analysis_profile_id
                )
            else:
                result = self.timeline.restart_audio_feature_analysis(job.audio_source_id)
            if inspect.isawaitable(result):
                result = await result
            if not result:
                raise RuntimeError(f"Reanalysis of {job.audio_source_id} reported failure")

            job.status = RegenerationStatus.SUCCEEDED
            logger.info("Regeneration job %s succeeded", job.id)

        except asyncio.CancelledError:
            job.status = RegenerationStatus.FAILED
            job.error = "Regeneration job cancelled"
            logger.warning("Regeneration job %s cancelled", job.id)
            raise

        except Exception as e:
            job.status = RegenerationStatus.FAILED
            job.error = str(e)
            job.error_traceback = traceback.format_exc()
            logger.error("Regeneration job %s failed: %s", job.id, e)

        finally:
            job.completed_at = datetime.now()
            if generation == self._generation:
                self._clear_pending(job.group_key, job.descriptor_ids)
                self.record_history(
                    HistoryAction.AUTO_REGENERATE
                    if job.trigger == RegenerationTrigger.AUTO
                    else HistoryAction.MANUAL_REGENERATE,
                    job.descriptor_ids,
                    HistoryOutcome.SUCCESS if job.status == RegenerationStatus.SUCCEEDED else HistoryOutcome.FAILURE,
                    audio_source_id=job.audio_source_id,
                    analysis_profile_id=job.analysis_profile_id,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    note=job.error,
                )
                self._notify_callbacks(job)

    def _clear_pending(self, group_key: str, keys: Iterable[str]) -> None:
        pending = self._pending.get(group_key)
        if pending is None:
            return
        pending.difference_update(keys)
        if not pending:
            del self._pending[group_key]

    async def wait_for_idle(self) -> None:
        """Wait until every scheduled job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------- reads

    @property
    def pending(self) -> Dict[str, Set[str]]:
        """Group key -> descriptor keys being regenerated (copy)."""
        return {key: set(keys) for key, keys in self._pending.items()}

    def is_pending(self, audio_source_id: str, profile_id: Optional[str], key: str) -> bool:
        return key in self._pending.get(make_group_key(audio_source_id, profile_id), ())

    def get_job(self, job_id: str) -> Optional[RegenerationJob]:
        return self._jobs.get(job_id)

    @property
    def jobs(self) -> List[RegenerationJob]:
        """All jobs in submission order."""
        return list(self._jobs.values())

    def list_jobs(
        self,
        status: Optional[RegenerationStatus] = None,
        limit: int = 50,
    ) -> List[RegenerationJob]:
        """List jobs, newest first.

        Args:
            status: Filter by status
            limit: Maximum number of jobs to return
        """
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        jobs.reverse()
        return jobs[:limit]

    @property
    def active_jobs(self) -> List[RegenerationJob]:
        return [job for job in self._jobs.values() if job.status not in TERMINAL_STATUSES]

    # ------------------------------------------------------------ history

    def record_history(
        self,
        action: HistoryAction,
        descriptor_ids: Iterable[str],
        outcome: HistoryOutcome = HistoryOutcome.SUCCESS,
        audio_source_id: Optional[str] = None,
        analysis_profile_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        note: Optional[str] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            id=f"hist_{uuid.uuid4().hex[:8]}",
            descriptor_ids=list(descriptor_ids),
            action=HistoryAction(action),
            timestamp=datetime.now(),
            outcome=HistoryOutcome(outcome),
            audio_source_id=audio_source_id,
            analysis_profile_id=analysis_profile_id,
            duration_ms=duration_ms,
            note=note,
        )
        self._history.append(entry)
        return entry

    @property
    def history(self) -> List[HistoryEntry]:
        """History entries, oldest first."""
        return list(self._history)

    def history_summary(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Newest first, truncated to ``limit`` entries."""
        entries = list(reversed(self._history))
        return entries[:limit] if limit is not None and limit >= 0 else entries

    # ---------------------------------------------------------- callbacks

    def register_callback(self, callback: JobCallback, job_id: Optional[str] = None) -> None:
        """Call ``callback`` on transitions of ``job_id`` (every job when None)."""
        self._callbacks.setdefault(job_id, []).append(callback)

    def unregister_callback(self, callback: JobCallback, job_id: Optional[str] = None) -> None:
        callbacks = self._callbacks.get(job_id, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _notify_callbacks(self, job: RegenerationJob) -> None:
        callbacks = list(self._callbacks.get(job.id, [])) + list(self._callbacks.get(None, []))

        for callback in callbacks:
            try:
                callback(job)
            except Exception as e:
                logger.error("Error in job callback: %s", e)

        self._dispatch_websocket_notification(job)

    def _dispatch_websocket_notification(self, job: RegenerationJob) -> None:
        """Push the job transition to websocket subscribers.

        Goes through ``spawn``, so it is drained with the jobs.
        """
        # Import here to avoid circular imports
        from websocket import notify_job_completed, notify_job_failed, notify_job_started

        async def send_notification():
            job_data = job.to_dict()

            if job.status == RegenerationStatus.RUNNING:
                await notify_job_started(job.id, job_data)
            elif job.status == RegenerationStatus.SUCCEEDED:
                await notify_job_completed(job.id, job_data)
            elif job.status == RegenerationStatus.FAILED:
                await notify_job_failed(job.id, job.error or "Unknown error", job.error_traceback)

        self.spawn(send_notification)

    # -------------------------------------------------------------- reset

    def reset(self) -> None:
        """Forget jobs, pending keys and history."""
        self._generation += 1
        self._jobs.clear()
        self._pending.clear()
        self._history.clear()
