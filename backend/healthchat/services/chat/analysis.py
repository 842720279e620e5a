"""Background analysis of a conversation after each assistant reply.

Each assistant message gets one task that runs every configured analysis kind
concurrently. Results land in an ephemeral map keyed by message id:

    {message_id: {"diagnosis": AnalysisJob, "solution": AnalysisJob, "memory": AnalysisJob}}

Jobs settle independently (a failing job never cancels its siblings) and
failures are only logged. Once every job for a message has settled, the entry
is kept for `retention_seconds` and then purged.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from healthchat.services.functions.base import ANALYSIS_KINDS, AnalysisRequest, BaseFunctionsClient

logger = logging.getLogger(__name__)


@dataclass
class AnalysisJob:
    kind: str
    status: str = "loading"  # "loading" | "success" | "error"
    added: int = 0
    updated: int = 0
    items: list[Any] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "status": self.status,
            "added": self.added,
            "updated": self.updated,
            "items": self.items,
            "error": self.error,
        }


class AnalysisTracker:
    def __init__(
        self,
        functions: BaseFunctionsClient,
        *,
        kinds: tuple[str, ...] = ANALYSIS_KINDS,
        retention_seconds: float = 10.0,
        notify: Callable[[dict], None] | None = None,
    ):
        self.functions = functions
        self.kinds = kinds
        self.retention_seconds = retention_seconds
        self._notify = notify or (lambda event: None)
        self.jobs: dict[str, dict[str, AnalysisJob]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._dispatched: set[str] = set()

    def dispatch(self, message_id: str, request: AnalysisRequest) -> asyncio.Task | None:
        """Start the analysis jobs for an assistant message. Only the first call per id runs."""
        if message_id in self._dispatched:
            logger.debug(f"Analysis already dispatched for message {message_id}")
            return None

        self._dispatched.add(message_id)
        self.jobs[message_id] = {kind: AnalysisJob(kind) for kind in self.kinds}
        self._publish(message_id)
        task = asyncio.create_task(self._run(message_id, request))
        self._tasks[message_id] = task
        task.add_done_callback(lambda t: self._forget(message_id, t))
        return task

    def summary(self, message_id: str) -> list[AnalysisJob]:
        """Successful jobs for a message; failed and pending jobs are left out."""
        return [job for job in self.jobs.get(message_id, {}).values() if job.status == "success"]

    def clear(self) -> None:
        """Drop every visible entry. Jobs still running finish remotely but are no longer recorded."""
        self.jobs.clear()
        # Replies of the cleared transcript are never applied again
        self._dispatched.clear()

    async def join(self) -> None:
        """Wait until every dispatched analysis task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        self.jobs.clear()
        self._dispatched.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _run(self, message_id: str, request: AnalysisRequest) -> None:
        logger.info(f"Starting analysis for message {message_id}")
        entry = self.jobs[message_id]
        results = await asyncio.gather(
            *(self._run_job(message_id, entry, kind, request) for kind in self.kinds),
            return_exceptions=True,
        )
        succeeded = sum(1 for r in results if isinstance(r, AnalysisJob) and r.status == "success")
        logger.info(f"Analysis complete for message {message_id}: {succeeded}/{len(self.kinds)} succeeded")

        if self.jobs.get(message_id) is not entry:
            return
        await asyncio.sleep(self.retention_seconds)
        if self.jobs.get(message_id) is entry:
            del self.jobs[message_id]
            self._notify({"type": "analysis", "message_id": message_id, "jobs": [], "summary": [], "expired": True})

    async def _run_job(
        self, message_id: str, entry: dict[str, AnalysisJob], kind: str, request: AnalysisRequest
    ) -> AnalysisJob:
        try:
            outcome = await self.functions.analyze(kind, request)
            job = AnalysisJob(
                kind,
                status="success",
                added=outcome.added,
                updated=outcome.updated,
                items=list(outcome.items),
            )
        except Exception as e:
            logger.warning(f"{kind} analysis failed for conversation {request.conversation_id}: {e}")
            job = AnalysisJob(kind, status="error", error=str(e) or "Analysis failed")

        # Entry was cleared or replaced by a switch; keep the result out of view.
        if self.jobs.get(message_id) is entry:
            entry[kind] = job
            self._publish(message_id)
        return job

    def _publish(self, message_id: str) -> None:
        entry = self.jobs.get(message_id)
        if entry is None:
            return
        self._notify({
            "type": "analysis",
            "message_id": message_id,
            "jobs": [job.to_dict() for job in entry.values()],
            "summary": [job.to_dict() for job in self.summary(message_id)],
        })

    def _forget(self, message_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(message_id) is task:
            del self._tasks[message_id]
