"""JSON file storage layer for completed traces.

Stores StoredTrace objects as JSON files under .calltrace/traces/ and moves
expired traces to .calltrace/archive/ when archiving is enabled. Uses
atomic writes to prevent corruption. File I/O runs in worker threads so
the event loop is never blocked by a slow disk.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

from pydantic import ValidationError

from calltrace.errors import DuplicateTraceError, StorageError
from calltrace.logging_setup import get_logger
from calltrace.models.config import StorageConfig
from calltrace.models.query import (
    CleanupResult,
    ExportedData,
    PerformanceThreshold,
    StoreStatistics,
    ToolSummary,
    TraceFilters,
)
from calltrace.models.trace import StoredTrace

logger = get_logger(__name__)

_TRACE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def quality_level(trace: StoredTrace) -> str | None:
    """Bucket a trace's response quality into high/medium/low.

    Returns None for traces stored without analytics.
    """
    if trace.analytics is None:
        return None
    quality = trace.analytics.quality_metrics.response_quality
    if quality >= 80:
        return "high"
    if quality >= 50:
        return "medium"
    return "low"


def metric_value(trace: StoredTrace, metric: str) -> float | None:
    """Resolve a named numeric metric of a trace, or None if unknown."""
    if metric == "duration_ms":
        return trace.duration_ms
    if metric == "tool_calls":
        return float(len(trace.execution_flow.tool_calls))
    if metric == "error_count":
        return float(len(trace.execution_flow.errors))
    if trace.analytics is None:
        return None
    execution = trace.analytics.execution_metrics
    if metric == "optimization_score":
        return trace.analytics.performance_insights.optimization_score
    if metric == "response_quality":
        return trace.analytics.quality_metrics.response_quality
    value = getattr(execution, metric, None)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _compare(actual: float, threshold: PerformanceThreshold) -> bool:
    if threshold.operator == "gt":
        return actual > threshold.value
    if threshold.operator == "gte":
        return actual >= threshold.value
    if threshold.operator == "lt":
        return actual < threshold.value
    if threshold.operator == "lte":
        return actual <= threshold.value
    return actual == threshold.value


def matches(trace: StoredTrace, filters: TraceFilters) -> bool:
    """Return True if trace satisfies every set filter."""
    if filters.start is not None and trace.stored_at < filters.start:
        return False
    if filters.end is not None and trace.stored_at > filters.end:
        return False
    if filters.command and filters.command.lower() not in trace.command.lower():
        return False
    if filters.tools and not trace.tools_used().intersection(filters.tools):
        return False
    if filters.success is not None and trace.success != filters.success:
        return False
    if filters.roles and trace.options.get("role") not in filters.roles:
        return False
    if filters.quality_levels and quality_level(trace) not in filters.quality_levels:
        return False
    if filters.performance_threshold is not None:
        actual = metric_value(trace, filters.performance_threshold.metric)
        if actual is None or not _compare(actual, filters.performance_threshold):
            return False
    return True


def _sort_key(trace: StoredTrace, sort_by: str):
    if sort_by == "duration_ms":
        return (trace.duration_ms, trace.stored_at)
    if sort_by == "command":
        return (trace.command, trace.stored_at)
    return (trace.stored_at, trace.id or "")


class TraceStore:
    """Persist and query StoredTrace objects as JSON files in .calltrace/.

    File layout:
        .calltrace/
            traces/
                {trace-id}.json    # One file per completed trace
            archive/
                {trace-id}.json    # Expired traces kept by cleanup()

    Writes are atomic (write to .tmp, then rename) to prevent partial
    files. Mutation is serialized per trace id; reads are served from a
    bounded LRU of recently stored or retrieved traces when possible.
    """

    def __init__(self, project_root: Path, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig()
        self.storage_dir = project_root / self.config.storage_dir
        self.traces_dir = self.storage_dir / "traces"
        self.archive_dir = self.storage_dir / "archive"
        self._memory: OrderedDict[str, StoredTrace] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._initialized = False

    # -- lifecycle --

    async def initialize(self) -> None:
        """Create .calltrace/traces/ and .calltrace/archive/ directories."""
        try:
            await asyncio.to_thread(self.ensure_dirs)
        except OSError as exc:
            raise StorageError(f"cannot create storage directories: {exc}") from exc
        self._initialized = True
        logger.debug("trace_store_initialized", storage_dir=str(self.storage_dir))

    async def close(self) -> None:
        """Drop the in-memory cache. Stored files are untouched."""
        self._memory.clear()
        self._locks.clear()
        self._initialized = False

    def ensure_dirs(self) -> None:
        self.traces_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    # -- writes --

    async def store(self, trace: StoredTrace) -> str:
        """Persist a completed trace and return its id.

        Args:
            trace: The trace to persist. An id is assigned when missing.

        Returns:
            The trace id.

        Raises:
            DuplicateTraceError: If a trace with the same id was already stored.
            StorageError: On any I/O failure or an unusable id.
        """
        trace_id = trace.id or uuid4().hex
        self._check_id(trace_id)
        # Detached from the caller so the cached copy stays immutable.
        trace = trace.model_copy(update={"id": trace_id}, deep=True)

        async with self._lock_for(trace_id):
            path = self._trace_path(trace_id)
            if trace_id in self._memory or await asyncio.to_thread(path.exists):
                raise DuplicateTraceError(f"trace {trace_id} already stored", trace_id=trace_id)
            content = trace.model_dump_json(indent=2)
            try:
                await asyncio.to_thread(self._write_atomic, path, content)
            except OSError as exc:
                logger.warning("trace_store_write_failed", trace_id=trace_id, error=str(exc))
                raise StorageError(f"failed to write trace {trace_id}: {exc}", trace_id=trace_id) from exc
            self._remember(trace_id, trace)

        logger.debug("trace_stored", trace_id=trace_id, command=trace.command)
        return trace_id

    async def delete(self, trace_id: str) -> bool:
        """Delete a stored trace.

        Returns:
            True if the trace existed and was deleted, False otherwise.
        """
        self._check_id(trace_id)
        async with self._lock_for(trace_id):
            self._memory.pop(trace_id, None)
            path = self._trace_path(trace_id)
            try:
                existed = await asyncio.to_thread(self._unlink, path)
            except OSError as exc:
                raise StorageError(f"failed to delete trace {trace_id}: {exc}", trace_id=trace_id) from exc
        self._locks.pop(trace_id, None)
        return existed

    async def cleanup(self, force: bool = False, now: datetime | None = None) -> CleanupResult:
        """Remove traces older than the retention window, or all when forced.

        With archive_expired set, the newest archive_limit expired traces
        (all of them when archive_limit is 0) are moved to archive/ instead
        of being deleted.

        Args:
            force: Remove every stored trace regardless of age.
            now: Reference time for the retention cutoff. Defaults to now.

        Returns:
            Exact counts of deleted and archived traces.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.config.retention_days)
        traces = await self._load_all()
        expired = [t for t in traces if force or t.stored_at < cutoff]
        expired.sort(key=lambda t: t.stored_at, reverse=True)

        to_archive: list[StoredTrace] = []
        if self.config.archive_expired:
            limit = self.config.archive_limit or len(expired)
            to_archive = expired[:limit]
        archive_ids = {t.id for t in to_archive}

        result = CleanupResult()
        for trace in expired:
            trace_id = trace.id
            async with self._lock_for(trace_id):
                self._memory.pop(trace_id, None)
                path = self._trace_path(trace_id)
                try:
                    if trace_id in archive_ids:
                        await asyncio.to_thread(self._move, path, self.archive_dir / path.name)
                        result.archived += 1
                    elif await asyncio.to_thread(self._unlink, path):
                        result.deleted += 1
                except OSError as exc:
                    logger.warning("trace_cleanup_failed", trace_id=trace_id, error=str(exc))
            self._locks.pop(trace_id, None)

        logger.info("trace_cleanup", deleted=result.deleted, archived=result.archived, forced=force)
        return result

    # -- reads --

    async def retrieve(self, trace_id: str) -> StoredTrace | None:
        """Load a stored trace by id.

        Returns:
            The StoredTrace, or None if no trace with that id exists.

        Raises:
            StorageError: If the file exists but cannot be read or decoded.
        """
        if not _TRACE_ID_RE.match(trace_id or ""):
            return None
        cached = self._memory.get(trace_id)
        if cached is not None:
            self._memory.move_to_end(trace_id)
            return cached.model_copy(deep=True)
        trace = await asyncio.to_thread(self._read, self._trace_path(trace_id))
        if trace is not None:
            self._remember(trace_id, trace)
            return trace.model_copy(deep=True)
        return None

    async def search(self, filters: TraceFilters | None = None) -> list[StoredTrace]:
        """Return stored traces matching every set filter.

        Results are ordered by stored_at descending unless filters names
        another sort key; limit is applied after sorting. Unreadable files
        are skipped with a warning.
        """
        filters = filters or TraceFilters()
        traces = [t for t in await self._load_all() if matches(t, filters)]
        traces.sort(key=lambda t: _sort_key(t, filters.sort_by), reverse=filters.descending)
        if filters.limit is not None:
            traces = traces[: filters.limit]
        return [t.model_copy(deep=True) for t in traces]

    async def get_statistics(self) -> StoreStatistics:
        """Aggregate entry counts, size estimates and per-session/per-tool summaries."""
        traces = await self._load_all()
        disk_size, archived = await asyncio.to_thread(self._disk_usage)
        stats = StoreStatistics(
            total_entries=len(traces),
            memory_entries=len(self._memory),
            disk_entries=len(traces),
            archived_entries=archived,
            disk_size_bytes=disk_size,
            memory_size_bytes=sum(len(t.model_dump_json()) for t in self._memory.values()),
        )
        if traces:
            stats.oldest_stored_at = min(t.stored_at for t in traces)
            stats.newest_stored_at = max(t.stored_at for t in traces)

        for trace in traces:
            session = trace.context.get("session_id")
            if session is not None:
                key = str(session)
                stats.sessions[key] = stats.sessions.get(key, 0) + 1
            seen: set[str] = set()
            for call in trace.execution_flow.tool_calls:
                summary = stats.tools.setdefault(call.tool, ToolSummary())
                summary.calls += 1
                if not call.success:
                    summary.failures += 1
                if call.tool not in seen:
                    summary.traces += 1
                    seen.add(call.tool)
        return stats

    async def export(self, format: str = "json", filters: TraceFilters | None = None) -> ExportedData:
        """Export matching trace summaries as json records or csv text."""
        from calltrace.analytics.export import export_traces

        return export_traces(await self.search(filters), format)

    # -- internals --

    def _trace_path(self, trace_id: str) -> Path:
        return self.traces_dir / f"{trace_id}.json"

    def _check_id(self, trace_id: str) -> None:
        if not _TRACE_ID_RE.match(trace_id or "") or trace_id.startswith("."):
            raise StorageError(f"invalid trace id: {trace_id!r}", trace_id=trace_id)

    def _lock_for(self, trace_id: str) -> asyncio.Lock:
        lock = self._locks.get(trace_id)
        if lock is None:
            lock = self._locks[trace_id] = asyncio.Lock()
        return lock

    def _remember(self, trace_id: str, trace: StoredTrace) -> None:
        if self.config.max_memory_entries == 0:
            return
        self._memory[trace_id] = trace
        self._memory.move_to_end(trace_id)
        while len(self._memory) > self.config.max_memory_entries:
            self._memory.popitem(last=False)

    def _write_atomic(self, path: Path, content: str) -> None:
        self.ensure_dirs()
        tmp_file = path.with_name(f"{path.name}.tmp")
        tmp_file.write_text(content, encoding="utf-8")
        tmp_file.rename(path)

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _move(self, source: Path, target: Path) -> None:
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        os.replace(source, target)

    @staticmethod
    def _read(path: Path) -> StoredTrace | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"failed to read {path.name}: {exc}", trace_id=path.stem) from exc
        try:
            return StoredTrace.model_validate_json(content)
        except ValidationError as exc:
            raise StorageError(f"corrupted trace file {path.name}: {exc}", trace_id=path.stem) from exc

    def _read_all(self) -> list[StoredTrace]:
        if not self.traces_dir.exists():
            return []
        traces: list[StoredTrace] = []
        for path in sorted(self.traces_dir.glob("*.json")):
            cached = self._memory.get(path.stem)
            if cached is not None:
                traces.append(cached)
                continue
            try:
                trace = self._read(path)
            except StorageError as exc:
                logger.warning("trace_file_skipped", path=str(path), error=str(exc))
                continue
            if trace is None:
                continue
            if trace.id != path.stem:
                trace = trace.model_copy(update={"id": path.stem})
            traces.append(trace)
        return traces

    async def _load_all(self) -> list[StoredTrace]:
        return await asyncio.to_thread(self._read_all)

    def _disk_usage(self) -> tuple[int, int]:
        size = 0
        if self.traces_dir.exists():
            size = sum(p.stat().st_size for p in self.traces_dir.glob("*.json"))
        archived = len(list(self.archive_dir.glob("*.json"))) if self.archive_dir.exists() else 0
        return size, archived
