"""Job execution: agent registry and the async fan-out scheduler."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Type

from sqlalchemy.orm import Session

from gapminer.agents.base import BaseAgent
from gapminer.agents.meso import MesoAgent
from gapminer.agents.meta import MetaAgent
from gapminer.agents.micro import MicroAgent
from gapminer.config import settings
from gapminer.services.context_store import ContextStore
from gapminer.services.extraction import Extractor
from gapminer.services.llm_client import LLMCapability

logger = logging.getLogger(__name__)


class Worker:
    """Runs one agent job synchronously in its own database session."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        context_store: ContextStore,
        extractor: Optional[Extractor] = None,
    ):
        """Initialize worker."""
        self.session_factory = session_factory
        self.context_store = context_store
        self.extractor = extractor

        # Agent registry
        self.agents: Dict[str, Type[BaseAgent]] = {
            "micro": MicroAgent,
            "meso": MesoAgent,
            "meta": MetaAgent,
        }

    def process_job(self, job_type: str, payload: Dict[str, Any], llm: LLMCapability) -> Dict[str, Any]:
        """
        Process a single job.

        Args:
            job_type: Registry key of the agent to run
            payload: Agent input payload
            llm: LLM capability for this run

        Returns:
            Agent output dict

        Raises:
            AgentFailure: If the agent fails
            ValueError: If the job type is unknown
        """
        agent_class = self.agents.get(job_type)
        if not agent_class:
            raise ValueError(f"Unknown agent: {job_type}")

        logger.info(f"Processing {job_type} job {payload.get('agent_id')}")

        db = self.session_factory()
        try:
            agent = agent_class(llm, db, self.context_store, self.extractor)
            return agent.execute(payload)
        finally:
            db.close()


@dataclass
class JobOutcome:
    """Settled result of one submitted job."""

    key: Hashable
    ok: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timed_out: bool = False


@dataclass
class ScheduledJob:
    """A submitted job and the signal set once a pool thread picks it up."""

    future: "asyncio.Future"
    started: asyncio.Event


def _consume_exception(future: "asyncio.Future") -> None:
    # Keeps abandoned (timed-out) futures from logging "exception was never retrieved"
    if not future.cancelled():
        future.exception()


class JobScheduler:
    """Thread-pool backed scheduler awaited from the asyncio event loop.

    Jobs run in worker threads; the orchestrator suspends on the returned
    futures. The per-job timeout counts from the moment a thread starts the
    job, so time spent queued behind a full pool is not charged to it. A job
    that outlives its timeout is reported as timed out and left to finish in
    the background, never killed.
    """

    def __init__(self, worker: Worker, max_workers: Optional[int] = None):
        self.worker = worker
        self.max_workers = max_workers or settings.WORKER_POOL_SIZE
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gapminer-job")

    def submit(self, job_type: str, payload: Dict[str, Any], llm: LLMCapability) -> ScheduledJob:
        """Submit a job; must be called from inside a running event loop."""
        loop = asyncio.get_running_loop()
        started = asyncio.Event()

        def job():
            if not loop.is_closed():
                loop.call_soon_threadsafe(started.set)
            return self.worker.process_job(job_type, payload, llm)

        future = loop.run_in_executor(self._executor, job)
        future.add_done_callback(_consume_exception)
        return ScheduledJob(future=future, started=started)

    async def _settle(self, key: Hashable, job: ScheduledJob, timeout: Optional[float]) -> JobOutcome:
        try:
            # Time queued behind a busy pool does not count toward the timeout
            waiter = asyncio.ensure_future(job.started.wait())
            try:
                await asyncio.wait([waiter, job.future], return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
            result = await asyncio.wait_for(asyncio.shield(job.future), timeout)
            return JobOutcome(key=key, ok=True, result=result)
        except asyncio.TimeoutError:
            logger.warning(f"Job {key} timed out after {timeout}s")
            return JobOutcome(key=key, ok=False, error=f"Timed out after {timeout}s", timed_out=True)
        except Exception as e:
            return JobOutcome(key=key, ok=False, error=str(e))

    async def gather(self, jobs: Dict[Hashable, ScheduledJob], timeout: Optional[float]) -> Dict[Hashable, JobOutcome]:
        """
        Await every job with a per-job timeout.

        Args:
            jobs: Submitted jobs keyed by caller-chosen keys
            timeout: Seconds each job may run once started

        Returns:
            Outcomes keyed like ``jobs``
        """
        outcomes = await asyncio.gather(
            *(self._settle(key, job, timeout) for key, job in jobs.items())
        )
        return {outcome.key: outcome for outcome in outcomes}

    async def run(self, job_type: str, payload: Dict[str, Any], llm: LLMCapability, timeout: Optional[float]) -> JobOutcome:
        """Submit a single job and await it."""
        job = self.submit(job_type, payload, llm)
        return await self._settle(payload.get("agent_id", job_type), job, timeout)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
