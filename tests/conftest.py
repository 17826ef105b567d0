"""Pytest configuration and fixtures."""

import json
import re
import threading
import time
from collections import Counter

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gapminer import models  # noqa: F401
from gapminer.config import settings
from gapminer.database import Base
from gapminer.errors import TransientProviderError
from gapminer.models import Run
from gapminer.orchestrator import Orchestrator
from gapminer.services.blob_store import LocalBlobStore
from gapminer.services.context_store import ContextStore
from gapminer.services.convergence import ConvergenceEvaluator
from gapminer.services.extraction import FileExtractor
from gapminer.worker import JobScheduler, Worker

DEFAULT_GAPS = ["Lack of large-scale evaluation", "Limited cross-domain transfer"]


class FakeLLM:
    """Deterministic LLM that answers micro, meso and meta prompts.

    Micro prompts are keyed by their ``Title:`` line so individual papers
    can be made to fail, fail transiently, or stall.
    """

    def __init__(
        self,
        failing_titles=(),
        transient_failures=None,
        slow_titles=None,
        fail_meso=False,
        fail_meta=False,
        gap_titles=None,
        on_meta=None,
    ):
        self.failing_titles = set(failing_titles)
        self.transient_failures = dict(transient_failures or {})
        self.slow_titles = dict(slow_titles or {})
        self.fail_meso = fail_meso
        self.fail_meta = fail_meta
        self.gap_titles = list(gap_titles or DEFAULT_GAPS)
        self.on_meta = on_meta
        self.calls = Counter()
        self.prompts = []
        self._lock = threading.Lock()

    def complete(self, prompt, options=None):
        task = (options or {}).get("task")
        with self._lock:
            self.calls[task] += 1
            self.prompts.append((task, prompt))

        if task == "micro":
            return self._micro(prompt)
        if task == "meso":
            return self._meso(prompt)
        if task == "meta":
            return self._meta(prompt)
        raise AssertionError(f"Unexpected task {task!r}")

    def _micro(self, prompt):
        title = re.search(r"^Title: (.+)$", prompt, re.MULTILINE).group(1).strip()

        with self._lock:
            remaining = self.transient_failures.get(title, 0)
            if remaining:
                self.transient_failures[title] = remaining - 1
                raise TransientProviderError("Retryable error: 429")

        if title in self.slow_titles:
            time.sleep(self.slow_titles[title])

        if title in self.failing_titles:
            return "I cannot analyse this paper."

        prior = re.search(r"Previously identified research gaps:\n((?:- .+\n)+)", prompt)
        prior_titles = [line[2:].strip() for line in prior.group(1).splitlines()] if prior else []

        return json.dumps({
            "contributions": [{"description": f"A method for {title}", "type": "method"}],
            "limitations": [{"description": f"{title} is only evaluated on small datasets", "explicit": True}],
            "methodology": {"approach": "empirical", "techniques": ["ablation"], "datasets": ["toy"]},
            "summary": f"This paper studies {title}.",
            "supplementary_notes": f"{title} reports results on one benchmark.",
            "gap_evidence_assessment": [
                {"gap_title": t, "stance": "supports", "evidence": "small datasets only"} for t in prior_titles
            ],
        })

    @staticmethod
    def _paper_ids(prompt):
        return list(dict.fromkeys(re.findall(r"^\[([^\]]+)\]", prompt, re.MULTILINE)))

    def _meso(self, prompt):
        if self.fail_meso:
            return json.dumps({"groups": []})
        ids = self._paper_ids(prompt)
        return json.dumps({
            "clusters": [
                {
                    "label": "Evaluation practice",
                    "description": "Papers evaluated on small benchmarks",
                    "paper_ids": ids,
                    "confidence": 0.8,
                    "gap_hints": ["How do results scale?"],
                },
                {
                    "label": "Unknown",
                    "paper_ids": ["not-a-paper"],
                    "confidence": 0.9,
                },
            ]
        })

    def _meta(self, prompt):
        if self.on_meta:
            self.on_meta()
        if self.fail_meta:
            return "```json\n{\"gaps\": \"nope\"}\n```"
        ids = self._paper_ids(prompt)
        gaps = []
        for index, title in enumerate(self.gap_titles):
            supporting = ids if index == 0 else ids[: max(1, len(ids) // 2)]
            gaps.append({
                "title": title,
                "rationale": f"Rationale for {title}",
                "supporting_papers": supporting + ["ghost-paper"],
                "explicit": index == 0,
                "recommended_action": f"Study {title.lower()}",
            })
        return json.dumps({"gaps": gaps, "synthesis": "The field relies on small benchmarks."})


class StubEvaluator(ConvergenceEvaluator):
    """Evaluator returning a fixed score from a given iteration on."""

    def __init__(self, score, from_call=1):
        super().__init__()
        self.score = score
        self.from_call = from_call
        self.calls = 0

    def evaluate(self, current_gaps, previous_gaps):
        self.calls += 1
        return self.score if self.calls >= self.from_call else 0.0


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No backoff sleeps between agent retries."""
    monkeypatch.setattr(settings, "RETRY_BACKOFF_MIN", 0.0)
    monkeypatch.setattr(settings, "RETRY_BACKOFF_MAX", 0.0)


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite so worker threads get their own connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a test database session for each test."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def context_store(session_factory, blob_store):
    return ContextStore(session_factory, blob_store)


@pytest.fixture
def run(test_db):
    """A pending run row."""
    run = Run(
        owner_id="tester",
        query="How robust are small-data methods?",
        config={"max_iterations": 3, "convergence_threshold": 0.7, "domains": []},
        status="pending",
    )
    test_db.add(run)
    test_db.commit()
    return run


@pytest.fixture
def make_papers(tmp_path):
    """Write paper text files and return entry-input paper dicts."""

    def _make(count, prefix="Paper"):
        papers_dir = tmp_path / "papers"
        papers_dir.mkdir(exist_ok=True)
        papers = []
        for index in range(count):
            letter = chr(ord("A") + index)
            path = papers_dir / f"p{index + 1}.txt"
            path.write_text(f"{prefix} {letter} full text. We evaluate on a small dataset.\n")
            papers.append({
                "id": f"p{index + 1}",
                "title": f"{prefix} {letter}",
                "content_ref": str(path),
                "year": 2015 + index,
            })
        return papers

    return _make


@pytest.fixture
def worker(session_factory, context_store):
    return Worker(session_factory, context_store, FileExtractor())


@pytest.fixture
def make_orchestrator(session_factory, context_store):
    """Build orchestrators over the test database; schedulers are drained on teardown."""
    schedulers = []

    def _make(evaluator=None, job_timeout=None, llm=None, max_workers=4):
        scheduler = JobScheduler(Worker(session_factory, context_store, FileExtractor()), max_workers=max_workers)
        schedulers.append(scheduler)
        return Orchestrator(
            session_factory=session_factory,
            scheduler=scheduler,
            context_store=context_store,
            evaluator=evaluator,
            job_timeout=job_timeout,
            llm=llm,
        )

    yield _make

    for scheduler in schedulers:
        scheduler.shutdown(wait=True)
