"""Orchestrator: drives the micro -> meso -> meta iteration loop for a run."""

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from gapminer.config import settings
from gapminer.database import SessionLocal, utcnow
from gapminer.errors import ConfigurationError, GapMinerError, RunFailure, RunNotFound, StageFailure
from gapminer.models import Agent, Iteration, Log, Paper, Run
from gapminer.schemas.run import (
    IterationSummary,
    PaperInput,
    RankedGapOut,
    RunConfig,
    RunCreate,
    RunResults,
    RunResultsResponse,
    RunStatus,
)
from gapminer.services.context_store import ContextStore, meta_key
from gapminer.services.convergence import ConvergenceEvaluator
from gapminer.services.extraction import Extractor, FileExtractor
from gapminer.services.llm_client import LLMCapability, LLMClient
from gapminer.services.run_log import log_event
from gapminer.worker import JobScheduler, Worker

logger = logging.getLogger(__name__)

# Allowed forward moves of Run.status
_TRANSITIONS = {
    "pending": ("running", "cancelled"),
    "running": ("completed", "failed", "cancelled"),
}


def transition(run: Run, status: str) -> None:
    """Move a run to ``status``; status only ever moves forward."""
    if status not in _TRANSITIONS.get(run.status, ()):
        raise GapMinerError(f"Illegal run status transition {run.status} -> {status}")
    run.status = status


class Orchestrator:
    """Owns Run and Iteration state and schedules agents.

    Holds no per-run state in memory between iterations: everything needed
    to continue a run is read back from the database and the context store.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        scheduler: Optional[JobScheduler] = None,
        context_store: Optional[ContextStore] = None,
        evaluator: Optional[ConvergenceEvaluator] = None,
        extractor: Optional[Extractor] = None,
        job_timeout: Optional[float] = None,
        llm: Optional[LLMCapability] = None,
    ):
        """Initialize orchestrator."""
        self.llm = llm
        self.session_factory = session_factory
        self.context_store = context_store or ContextStore(session_factory)
        self.extractor = extractor or FileExtractor()
        self.scheduler = scheduler or JobScheduler(Worker(session_factory, self.context_store, self.extractor))
        self.evaluator = evaluator or ConvergenceEvaluator()
        self.job_timeout = job_timeout or settings.JOB_TIMEOUT_SECONDS

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def _get_run(db: Session, run_id: UUID) -> Run:
        run = db.get(Run, run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        return run

    @staticmethod
    def _papers(db: Session, run_id: UUID) -> List[Paper]:
        return db.query(Paper).filter(Paper.run_id == run_id).order_by(Paper.created_at, Paper.paper_id).all()

    @staticmethod
    def _paper_row(run_id: UUID, paper: PaperInput) -> Paper:
        metadata = dict(paper.metadata)
        if paper.year is not None:
            metadata["year"] = paper.year
        return Paper(
            run_id=run_id,
            paper_id=paper.id,
            title=paper.title,
            content_ref=paper.content_ref,
            metadata_=metadata,
        )

    @staticmethod
    def _check_unique(papers: Sequence[PaperInput]) -> None:
        ids = [p.id for p in papers]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate paper ids: {', '.join(duplicates)}")

    def create_run(self, request: RunCreate) -> Run:
        """
        Persist a new pending run and its papers.

        Args:
            request: Validated run request

        Returns:
            The created Run

        Raises:
            ConfigurationError: On duplicate paper ids
        """
        self._check_unique(request.papers)

        with self._session() as db:
            run = Run(
                owner_id=request.owner_id,
                query=request.query,
                config=request.run_config().model_dump(),
                status="pending",
            )
            db.add(run)
            db.flush()

            for paper in request.papers:
                db.add(self._paper_row(run.id, paper))

            log_event(db, run.id, "info", f"Run created with {len(request.papers)} papers")
            db.commit()

            logger.info(f"Created run {run.id}")
            return run

    def validate(
        self, run_id: UUID, papers: Optional[Sequence[Union[PaperInput, Dict[str, Any]]]] = None
    ) -> List[PaperInput]:
        """
        Check that a run can start, without changing any state.

        Args:
            run_id: Run to check
            papers: Additional papers supplied with the start request

        Returns:
            The supplied papers that are not yet attached to the run

        Raises:
            ConfigurationError: If the run is missing, not pending, has no
                papers or has an out-of-range configuration
        """
        try:
            supplied = [p if isinstance(p, PaperInput) else PaperInput(**p) for p in (papers or [])]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid paper reference: {e}") from e
        self._check_unique(supplied)

        with self._session() as db:
            run = self._get_run(db, run_id)
            if run.status != "pending":
                raise ConfigurationError(f"Run {run_id} is {run.status}, expected pending")

            try:
                RunConfig(**(run.config or {}))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid run configuration: {e}") from e

            stored_ids = {p.paper_id for p in self._papers(db, run_id)}

        new_papers = [p for p in supplied if p.id not in stored_ids]
        if not stored_ids and not new_papers:
            raise ConfigurationError("Run has no papers")
        return new_papers

    async def start(
        self,
        run_id: UUID,
        papers: Optional[Sequence[Union[PaperInput, Dict[str, Any]]]] = None,
        llm: Optional[LLMCapability] = None,
    ) -> RunStatus:
        """
        Validate and execute a run to a terminal status.

        Args:
            run_id: Pending run
            papers: Papers to attach in addition to those stored with the run
            llm: LLM capability; falls back to the orchestrator default,
                then to the OpenRouter client

        Returns:
            Final status snapshot

        Raises:
            ConfigurationError: If the run cannot start
        """
        new_papers = self.validate(run_id, papers)
        llm = llm or self.llm or LLMClient()

        with self._session() as db:
            run = self._get_run(db, run_id)
            for paper in new_papers:
                db.add(self._paper_row(run_id, paper))
            transition(run, "running")
            run.started_at = utcnow()
            log_event(db, run_id, "info", f"Run started: up to {run.max_iterations} iterations")
            db.commit()

        await self._execute(run_id, llm, first_iteration=1, last_good=None)
        return self.get_status(run_id)

    async def resume(self, run_id: UUID, llm: Optional[LLMCapability] = None) -> RunStatus:
        """
        Continue a run left in ``running`` after a crash.

        Picks up at the iteration after the last completed one; agents that
        already completed in an interrupted iteration are not re-run.
        """
        llm = llm or self.llm or LLMClient()

        with self._session() as db:
            run = self._get_run(db, run_id)
            if run.status != "running":
                raise ConfigurationError(f"Run {run_id} is {run.status}, only running runs can resume")

            last = (
                db.query(Iteration)
                .filter(Iteration.run_id == run_id, Iteration.status == "completed")
                .order_by(Iteration.iteration_number.desc())
                .first()
            )
            last_good = last.iteration_number if last else None
            log_event(db, run_id, "info", f"Resuming after iteration {last_good or 0}")
            db.commit()

        await self._execute(run_id, llm, first_iteration=(last_good or 0) + 1, last_good=last_good)
        return self.get_status(run_id)

    async def _execute(self, run_id: UUID, llm: LLMCapability, first_iteration: int, last_good: Optional[int]) -> None:
        """Iteration loop followed by finalization."""
        with self._session() as db:
            run = self._get_run(db, run_id)
            max_iterations = run.max_iterations
            threshold = run.convergence_threshold
            query = run.query
            papers = [p.as_payload() for p in self._papers(db, run_id)]
            cancelled = run.cancel_requested

        converged = False
        failure: Optional[StageFailure] = None

        try:
            for iteration in range(first_iteration, max_iterations + 1):
                if cancelled:
                    break

                try:
                    score = await self._run_iteration(
                        run_id, iteration, query, papers, llm, max_iterations, last_good
                    )
                except StageFailure as e:
                    failure = e
                    break

                last_good = iteration

                if self.evaluator.is_converged(score, threshold):
                    converged = True
                    with self._session() as db:
                        log_event(db, run_id, "info", f"Converged at iteration {iteration} (score {score})")
                        db.commit()
                    break

                with self._session() as db:
                    cancelled = self._get_run(db, run_id).cancel_requested

            self._finalize(run_id, last_good, converged, cancelled, failure, len(papers))

        except Exception as e:
            logger.error(f"Run {run_id} crashed: {e}", exc_info=True)
            with self._session() as db:
                run = self._get_run(db, run_id)
                if not run.is_terminal:
                    transition(run, "failed")
                    run.error_message = f"Unexpected error: {e}"
                    run.completed_at = utcnow()
                    log_event(db, run_id, "error", f"Run failed: {e}")
                    db.commit()

    async def _run_iteration(
        self,
        run_id: UUID,
        iteration: int,
        query: str,
        papers: List[Dict[str, Any]],
        llm: LLMCapability,
        max_iterations: int,
        previous: Optional[int],
    ) -> Optional[float]:
        """
        Run one micro -> meso -> meta pass.

        Returns:
            Convergence score against the previous iteration, None for the first

        Raises:
            StageFailure: If every micro agent, the meso agent or the meta agent fails
        """
        started = time.time()
        previous_key = meta_key(previous) if previous else None

        with self._session() as db:
            row = (
                db.query(Iteration)
                .filter(Iteration.run_id == run_id, Iteration.iteration_number == iteration)
                .first()
            )
            if row is None:
                row = Iteration(run_id=run_id, iteration_number=iteration)
                db.add(row)
            row.status = "running"
            row.started_at = utcnow()
            row.error_message = None
            log_event(db, run_id, "info", f"Iteration {iteration} started with {len(papers)} papers")
            db.commit()

        try:
            # Fan out one micro job per paper
            jobs = {}
            for paper in papers:
                payload = {
                    "run_id": str(run_id),
                    "iteration": iteration,
                    "agent_id": f"micro-{iteration}-{paper['paper_id']}",
                    "question": query,
                    "paper": paper,
                    "prior_context_key": previous_key,
                }
                jobs[paper["paper_id"]] = self.scheduler.submit("micro", payload, llm)

            outcomes = await self.scheduler.gather(jobs, self.job_timeout)

            # Fan-in barrier: completed agent rows that also settled in time
            with self._session() as db:
                completed = {
                    a.agent_id
                    for a in db.query(Agent).filter(
                        Agent.run_id == run_id,
                        Agent.iteration_number == iteration,
                        Agent.agent_type == "micro",
                        Agent.status == "completed",
                    )
                }

                micro_refs = []
                failed_papers = []
                for paper in papers:
                    paper_id = paper["paper_id"]
                    agent_id = f"micro-{iteration}-{paper_id}"
                    outcome = outcomes[paper_id]
                    if outcome.ok and agent_id in completed:
                        micro_refs.append(
                            {"paper_id": paper_id, "agent_id": agent_id, "context_key": outcome.result["context_key"]}
                        )
                    else:
                        failed_papers.append(paper_id)
                        reason = "timed out" if outcome.timed_out else outcome.error
                        log_event(
                            db,
                            run_id,
                            "warning",
                            f"Paper {paper_id} excluded from iteration {iteration}: {reason}",
                        )
                db.commit()

            if not micro_refs:
                raise StageFailure("micro", iteration, f"All {len(papers)} micro agents failed")

            meso = await self.scheduler.run(
                "meso",
                {
                    "run_id": str(run_id),
                    "iteration": iteration,
                    "agent_id": f"meso-{iteration}",
                    "question": query,
                    "micro_refs": micro_refs,
                },
                llm,
                self.job_timeout,
            )
            if not meso.ok:
                raise StageFailure("meso", iteration, meso.error or "unknown error")

            meta = await self.scheduler.run(
                "meta",
                {
                    "run_id": str(run_id),
                    "iteration": iteration,
                    "agent_id": f"meta-{iteration}",
                    "question": query,
                    "clusters_key": meso.result["context_key"],
                    "total_papers": len(papers),
                    "previous_key": previous_key,
                },
                llm,
                self.job_timeout,
            )
            if not meta.ok:
                raise StageFailure("meta", iteration, meta.error or "unknown error")

        except StageFailure as e:
            with self._session() as db:
                row = (
                    db.query(Iteration)
                    .filter(Iteration.run_id == run_id, Iteration.iteration_number == iteration)
                    .one()
                )
                row.status = "failed"
                row.error_message = e.reason
                row.processing_time = round(time.time() - started, 3)
                row.completed_at = utcnow()
                log_event(db, run_id, "error", str(e), metadata={"stage": e.stage})
                db.commit()
            raise

        gaps = meta.result["gaps"]

        score = None
        if previous_key:
            stored = self.context_store.get(run_id, previous_key)
            previous_gaps = stored.value.get("gaps", []) if stored else []
            score = self.evaluator.evaluate(gaps, previous_gaps)

        insights = {
            "clusters": len(meso.result.get("clusters", [])),
            "papers_analyzed": len(micro_refs),
            "papers_failed": len(failed_papers),
            "failed_papers": failed_papers,
            "top_gap": gaps[0]["title"] if gaps else None,
        }

        with self._session() as db:
            row = (
                db.query(Iteration)
                .filter(Iteration.run_id == run_id, Iteration.iteration_number == iteration)
                .one()
            )
            row.status = "completed"
            row.gaps_found = len(gaps)
            row.convergence_score = score
            row.insights = insights
            row.processing_time = round(time.time() - started, 3)
            row.completed_at = utcnow()

            run = self._get_run(db, run_id)
            run.current_iteration = min(iteration, max_iterations)
            run.progress_percentage = round(iteration / max_iterations * 100, 2)

            log_event(
                db,
                run_id,
                "info",
                f"Iteration {iteration} completed: {len(gaps)} gaps"
                + (f", convergence {score}" if score is not None else ""),
                metadata=insights,
            )
            db.commit()

        return score

    def _finalize(
        self,
        run_id: UUID,
        last_good: Optional[int],
        converged: bool,
        cancelled: bool,
        failure: Optional[StageFailure],
        total_papers: int,
    ) -> None:
        """Write final results and move the run to its terminal status."""
        with self._session() as db:
            run = self._get_run(db, run_id)

            if last_good is None:
                if cancelled:
                    transition(run, "cancelled")
                    log_event(db, run_id, "info", "Run cancelled before any iteration completed")
                else:
                    reason = failure.reason if failure else "no iteration completed"
                    error = RunFailure(f"No iteration completed: {reason}")
                    transition(run, "failed")
                    run.error_message = str(error)
                    log_event(db, run_id, "error", f"Run failed: {error}")
                run.completed_at = utcnow()
                db.commit()
                return

            run.results = self._build_results(db, run_id, last_good, converged, total_papers)
            run.completed_at = utcnow()

            if failure is not None:
                run.error_message = f"Stopped after iteration {last_good}: {failure}"
                log_event(db, run_id, "warning", run.error_message)

            if cancelled:
                transition(run, "cancelled")
                log_event(db, run_id, "info", f"Run cancelled after iteration {last_good}")
            else:
                transition(run, "completed")
                run.progress_percentage = 100.0
                log_event(db, run_id, "info", f"Run completed after iteration {last_good}")

            db.commit()
            logger.info(f"Run {run_id} finalized as {run.status}")

    def _build_results(
        self, db: Session, run_id: UUID, final_iteration: int, converged: bool, total_papers: int
    ) -> Dict[str, Any]:
        stored = self.context_store.get(run_id, meta_key(final_iteration))
        output = stored.value if stored else {}

        ranked = [
            RankedGapOut(
                title=gap["title"],
                confidence=gap["confidence"],
                evidence={
                    "supportingPapers": gap.get("supporting_papers", []),
                    "contradictingPapers": gap.get("contradicting_papers", []),
                    "evidenceCount": gap.get("evidence_count", 0),
                    "breadth": gap.get("evidence_breadth", 0.0),
                    "explicitness": gap.get("explicitness", 0.0),
                    "novelty": gap.get("novelty", 0.0),
                    "latestYear": gap.get("latest_year"),
                },
                recommendation=gap.get("recommended_action", ""),
                rationale=gap.get("rationale", ""),
            )
            for gap in output.get("gaps", [])
        ]

        iterations = (
            db.query(Iteration)
            .filter(Iteration.run_id == run_id)
            .order_by(Iteration.iteration_number)
            .all()
        )
        history = [
            IterationSummary(
                iteration=it.iteration_number,
                status=it.status,
                gaps_found=it.gaps_found,
                convergence_score=it.convergence_score,
                processing_time=it.processing_time,
                error_message=it.error_message,
            )
            for it in iterations
        ]

        # Papers that made it past the fan-in barrier of the final iteration
        final = next(it for it in iterations if it.iteration_number == final_iteration)
        analyzed = (final.insights or {}).get("papers_analyzed", 0)

        results = RunResults(
            ranked_gaps=ranked,
            iteration_history=history,
            final_iteration=final_iteration,
            converged=converged,
            coverage={"papersAnalyzed": analyzed, "papersTotal": total_papers},
            synthesis=output.get("synthesis", ""),
        )
        return results.model_dump(by_alias=True)

    def cancel(self, run_id: UUID) -> RunStatus:
        """
        Request cancellation.

        A pending run is cancelled immediately; a running run stops at the
        next iteration boundary. Terminal runs are left unchanged.
        """
        with self._session() as db:
            run = self._get_run(db, run_id)
            if run.status == "pending":
                transition(run, "cancelled")
                run.completed_at = utcnow()
                log_event(db, run_id, "info", "Run cancelled before start")
            elif run.status == "running" and not run.cancel_requested:
                run.cancel_requested = True
                log_event(db, run_id, "info", "Cancellation requested")
            db.commit()

        return self.get_status(run_id)

    def get_status(self, run_id: UUID) -> RunStatus:
        """Status snapshot with the latest log message."""
        with self._session() as db:
            run = self._get_run(db, run_id)
            last_log = (
                db.query(Log)
                .filter(Log.run_id == run_id)
                .order_by(Log.created_at.desc())
                .first()
            )
            return RunStatus(
                run_id=run.id,
                status=run.status,
                current_iteration=run.current_iteration,
                progress_percentage=run.progress_percentage,
                last_log_message=last_log.message if last_log else None,
                error_message=run.error_message,
            )

    def get_results(self, run_id: UUID) -> RunResultsResponse:
        with self._session() as db:
            run = self._get_run(db, run_id)
            return RunResultsResponse(
                run_id=run.id,
                status=run.status,
                results=run.results,
                error_message=run.error_message,
            )
