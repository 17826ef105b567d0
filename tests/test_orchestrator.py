"""Tests for the orchestrator iteration loop."""

import asyncio
import uuid

import pytest
from pydantic import ValidationError

from gapminer.errors import ConfigurationError, RunNotFound
from gapminer.models import Agent, Iteration, Log, Run
from gapminer.schemas.run import RunCreate
from tests.conftest import FakeLLM, StubEvaluator


def create_run(orchestrator, papers, max_iterations=3, threshold=0.7):
    request = RunCreate(
        query="Where is evidence on small-data robustness missing?",
        papers=papers,
        max_iterations=max_iterations,
        convergence_threshold=threshold,
    )
    return orchestrator.create_run(request)


def _iterations(test_db, run_id):
    test_db.expire_all()
    return (
        test_db.query(Iteration)
        .filter(Iteration.run_id == run_id)
        .order_by(Iteration.iteration_number)
        .all()
    )


def _agents(test_db, run_id, agent_type, status=None):
    query = test_db.query(Agent).filter(Agent.run_id == run_id, Agent.agent_type == agent_type)
    if status:
        query = query.filter(Agent.status == status)
    return query.all()


def _run(test_db, run_id):
    test_db.expire_all()
    return test_db.get(Run, run_id)


def test_single_iteration_run(make_orchestrator, make_papers, test_db):
    """Test one iteration over three papers completes with ranked gaps."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(3), max_iterations=1, threshold=0.9)
    llm = FakeLLM()

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "completed"
    assert status.current_iteration == 1
    assert status.progress_percentage == 100.0

    iterations = _iterations(test_db, run.id)
    assert len(iterations) == 1
    assert iterations[0].status == "completed"
    assert iterations[0].convergence_score is None
    assert iterations[0].gaps_found == 2
    assert iterations[0].insights["papers_analyzed"] == 3
    assert iterations[0].insights["top_gap"] == "Lack of large-scale evaluation"

    assert len(_agents(test_db, run.id, "micro", "completed")) == 3
    assert len(_agents(test_db, run.id, "meso", "completed")) == 1
    assert len(_agents(test_db, run.id, "meta", "completed")) == 1

    results = _run(test_db, run.id).results
    assert len(results["rankedGaps"]) >= 1
    top = results["rankedGaps"][0]
    assert top["title"] == "Lack of large-scale evaluation"
    assert top["recommendation"] == "Study lack of large-scale evaluation"
    assert top["evidence"]["supportingPapers"] == ["p1", "p2", "p3"]
    assert results["finalIteration"] == 1
    assert results["converged"] is False
    assert results["coverage"] == {"papersAnalyzed": 3, "papersTotal": 3}
    assert results["iterationHistory"][0]["gapsFound"] == 2


def test_convergence_stops_early(make_orchestrator, make_papers, test_db):
    """Test a converged second iteration ends the run with two iterations."""
    evaluator = StubEvaluator(0.95)
    orchestrator = make_orchestrator(evaluator=evaluator)
    run = create_run(orchestrator, make_papers(3), max_iterations=3, threshold=0.7)

    status = asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))

    assert status.status == "completed"
    iterations = _iterations(test_db, run.id)
    assert [it.iteration_number for it in iterations] == [1, 2]
    assert iterations[1].convergence_score == 0.95
    assert evaluator.calls == 1

    results = _run(test_db, run.id).results
    assert results["converged"] is True
    assert results["finalIteration"] == 2


def test_runs_to_max_iterations_without_convergence(make_orchestrator, make_papers, test_db):
    """Test the iteration cap terminates a run that never converges."""
    orchestrator = make_orchestrator(evaluator=StubEvaluator(0.0))
    run = create_run(orchestrator, make_papers(2), max_iterations=3)

    status = asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))

    assert status.status == "completed"
    assert status.current_iteration == 3
    assert len(_iterations(test_db, run.id)) == 3
    assert _run(test_db, run.id).results["converged"] is False


def test_stable_rankings_converge_with_real_evaluator(make_orchestrator, make_papers, test_db):
    """Test identical gap titles converge at the second iteration."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(2), max_iterations=3, threshold=0.7)

    asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))

    iterations = _iterations(test_db, run.id)
    assert len(iterations) == 2
    assert iterations[1].convergence_score == 1.0


def test_later_iterations_read_previous_gaps(make_orchestrator, make_papers):
    """Test micro agents see the previous iteration's gaps and synthesis."""
    orchestrator = make_orchestrator(evaluator=StubEvaluator(0.0))
    run = create_run(orchestrator, make_papers(1), max_iterations=2)
    llm = FakeLLM()

    asyncio.run(orchestrator.start(run.id, llm=llm))

    micro_prompts = [p for task, p in llm.prompts if task == "micro"]
    assert "Previously identified research gaps" not in micro_prompts[0]
    assert "- Limited cross-domain transfer" in micro_prompts[1]
    assert "Previous synthesis of the field" not in micro_prompts[0]
    assert "The field relies on small benchmarks." in micro_prompts[1]


def test_partial_micro_failure(make_orchestrator, make_papers, test_db):
    """Test two failing papers out of five do not fail the iteration."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(5), max_iterations=1)
    llm = FakeLLM(failing_titles={"Paper B", "Paper D"})

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "completed"
    iteration = _iterations(test_db, run.id)[0]
    assert iteration.status == "completed"
    assert iteration.insights["papers_failed"] == 2
    assert sorted(iteration.insights["failed_papers"]) == ["p2", "p4"]

    failed = _agents(test_db, run.id, "micro", "failed")
    assert len(failed) == 2
    assert all(a.error_message and a.output_data is None for a in failed)

    results = _run(test_db, run.id).results
    assert results["coverage"] == {"papersAnalyzed": 3, "papersTotal": 5}
    assert "p2" not in results["rankedGaps"][0]["evidence"]["supportingPapers"]

    warnings = test_db.query(Log).filter(Log.run_id == run.id, Log.level == "warning").all()
    assert len(warnings) == 2


def test_total_micro_failure_fails_run(make_orchestrator, make_papers, test_db):
    """Test a run with every paper failing skips meso and fails."""
    orchestrator = make_orchestrator()
    papers = make_papers(5)
    run = create_run(orchestrator, papers, max_iterations=2)
    llm = FakeLLM(failing_titles={p["title"] for p in papers})

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "failed"
    assert "No iteration completed" in status.error_message
    assert llm.calls["meso"] == 0
    assert _agents(test_db, run.id, "meso") == []

    iterations = _iterations(test_db, run.id)
    assert len(iterations) == 1
    assert iterations[0].status == "failed"

    run_row = _run(test_db, run.id)
    assert run_row.results is None
    assert run_row.current_iteration == 0

    logs = test_db.query(Log).filter(Log.run_id == run.id).all()
    assert any(log.level == "error" and "micro stage failed" in log.message for log in logs)


def test_stage_failure_after_good_iteration_finalizes(make_orchestrator, make_papers, test_db):
    """Test a failed second iteration still returns the first iteration's gaps."""
    orchestrator = make_orchestrator(evaluator=StubEvaluator(0.0))
    run = create_run(orchestrator, make_papers(2), max_iterations=3)
    llm = FakeLLM()

    def break_meso():
        llm.fail_meso = True

    llm.on_meta = break_meso

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "completed"
    assert "Stopped after iteration 1" in status.error_message

    iterations = _iterations(test_db, run.id)
    assert [it.status for it in iterations] == ["completed", "failed"]

    results = _run(test_db, run.id).results
    assert results["finalIteration"] == 1
    assert len(results["rankedGaps"]) == 2


def test_slow_micro_job_times_out(make_orchestrator, make_papers, test_db):
    """Test a micro job exceeding the timeout is excluded."""
    orchestrator = make_orchestrator(job_timeout=1.0)
    run = create_run(orchestrator, make_papers(3), max_iterations=1)
    llm = FakeLLM(slow_titles={"Paper C": 2.5})

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "completed"
    iteration = _iterations(test_db, run.id)[0]
    assert iteration.insights["failed_papers"] == ["p3"]

    logs = test_db.query(Log).filter(Log.run_id == run.id, Log.level == "warning").all()
    assert any("timed out" in log.message for log in logs)


def test_queued_micro_jobs_are_not_charged_for_waiting(make_orchestrator, make_papers, test_db):
    """Test papers queued behind a full pool still get their whole timeout."""
    orchestrator = make_orchestrator(job_timeout=1.5, max_workers=1)
    run = create_run(orchestrator, make_papers(3), max_iterations=1)
    llm = FakeLLM(slow_titles={"Paper A": 0.8, "Paper B": 0.8, "Paper C": 0.8})

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "completed"
    iteration = _iterations(test_db, run.id)[0]
    assert iteration.insights["failed_papers"] == []
    assert iteration.insights["papers_analyzed"] == 3


def test_micro_agents_run_concurrently(make_orchestrator, make_papers, test_db):
    """Test the per-paper fan-out overlaps instead of running one paper at a time."""
    orchestrator = make_orchestrator(job_timeout=10, max_workers=3)
    run = create_run(orchestrator, make_papers(3), max_iterations=1)
    llm = FakeLLM(slow_titles={"Paper A": 1.0, "Paper B": 1.0, "Paper C": 1.0})

    asyncio.run(orchestrator.start(run.id, llm=llm))

    test_db.expire_all()
    micro = _agents(test_db, run.id, "micro", status="completed")
    assert len(micro) == 3
    # Every paper started before any paper finished
    assert max(a.started_at for a in micro) < min(a.completed_at for a in micro)

    iteration = _iterations(test_db, run.id)[0]
    assert iteration.processing_time < 2.5


def test_cancel_running_stops_at_iteration_boundary(make_orchestrator, make_papers, test_db):
    """Test cancellation is honoured after the current iteration settles."""
    orchestrator = make_orchestrator(evaluator=StubEvaluator(0.0))
    run = create_run(orchestrator, make_papers(2), max_iterations=3)
    llm = FakeLLM(on_meta=lambda: orchestrator.cancel(run.id))

    status = asyncio.run(orchestrator.start(run.id, llm=llm))

    assert status.status == "cancelled"
    iterations = _iterations(test_db, run.id)
    assert len(iterations) == 1
    assert iterations[0].status == "completed"

    run_row = _run(test_db, run.id)
    assert run_row.cancel_requested is True
    assert run_row.results["finalIteration"] == 1


def test_cancel_pending_run(make_orchestrator, make_papers):
    """Test a pending run is cancelled immediately and cannot start."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(1))

    assert orchestrator.cancel(run.id).status == "cancelled"

    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))

    # Terminal runs are left as they are
    assert orchestrator.cancel(run.id).status == "cancelled"


def test_start_validation(make_orchestrator, make_papers, test_db):
    """Test invalid starts are rejected before the run changes state."""
    orchestrator = make_orchestrator()

    with pytest.raises(RunNotFound):
        asyncio.run(orchestrator.start(uuid.uuid4(), llm=FakeLLM()))

    empty = create_run(orchestrator, [])
    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.start(empty.id, llm=FakeLLM()))
    assert _run(test_db, empty.id).status == "pending"

    papers = make_papers(2)
    with pytest.raises(ConfigurationError):
        orchestrator.validate(empty.id, [papers[0], papers[0]])


def test_start_attaches_supplied_papers(make_orchestrator, make_papers, test_db):
    """Test papers passed to start are added to the run."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, [], max_iterations=1)

    status = asyncio.run(orchestrator.start(run.id, make_papers(2), llm=FakeLLM()))

    assert status.status == "completed"
    assert len(_agents(test_db, run.id, "micro", "completed")) == 2


def test_start_twice_rejected(make_orchestrator, make_papers):
    """Test a run cannot be started again once it left pending."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(1), max_iterations=1)
    asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))

    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))


def test_run_request_bounds():
    """Test out-of-range configuration is rejected at the schema."""
    with pytest.raises(ValidationError):
        RunCreate(query="q", maxIterations=11)
    with pytest.raises(ValidationError):
        RunCreate(query="q", convergenceThreshold=1.5)
    with pytest.raises(ValidationError):
        RunCreate(query="q", papers=[{"id": "bad id", "title": "t", "contentRef": "x"}])


def test_duplicate_paper_ids_rejected(make_orchestrator, make_papers):
    """Test a run cannot be created with repeated paper ids."""
    orchestrator = make_orchestrator()
    paper = make_papers(1)[0]
    with pytest.raises(ConfigurationError):
        create_run(orchestrator, [paper, paper])


def test_resume_continues_after_last_completed_iteration(make_orchestrator, make_papers, test_db):
    """Test a crashed run resumes without re-running completed agents."""
    orchestrator = make_orchestrator(evaluator=StubEvaluator(0.0))
    run = create_run(orchestrator, make_papers(2), max_iterations=2)
    llm = FakeLLM()
    asyncio.run(orchestrator.start(run.id, llm=llm))
    calls_before = sum(llm.calls.values())

    # Simulate a crash in the middle of iteration 2
    iteration = _iterations(test_db, run.id)[1]
    run_row = test_db.get(Run, run.id)
    run_row.status = "running"
    run_row.results = None
    iteration.status = "running"
    test_db.commit()

    status = asyncio.run(orchestrator.resume(run.id, llm=llm))

    assert status.status == "completed"
    assert sum(llm.calls.values()) == calls_before
    assert [it.status for it in _iterations(test_db, run.id)] == ["completed", "completed"]
    assert _run(test_db, run.id).results["finalIteration"] == 2
    assert len(_agents(test_db, run.id, "micro")) == 4


def test_resume_requires_running(make_orchestrator, make_papers):
    """Test only running runs can resume."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(1))

    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.resume(run.id, llm=FakeLLM()))


def test_status_snapshot(make_orchestrator, make_papers):
    """Test the status snapshot exposes the latest log message."""
    orchestrator = make_orchestrator()
    run = create_run(orchestrator, make_papers(1), max_iterations=1)

    pending = orchestrator.get_status(run.id)
    assert pending.status == "pending"
    assert pending.current_iteration == 0
    assert pending.last_log_message == "Run created with 1 papers"

    asyncio.run(orchestrator.start(run.id, llm=FakeLLM()))

    done = orchestrator.get_status(run.id)
    assert done.last_log_message is not None
    assert orchestrator.get_results(run.id).results["finalIteration"] == 1
