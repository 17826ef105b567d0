"""Base agent with retry, validation and Agent-row bookkeeping."""

import logging
import time
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from gapminer.config import settings
from gapminer.database import utcnow
from gapminer.errors import AgentFailure, InvalidAgentOutput, TransientProviderError
from gapminer.models import Agent, Result
from gapminer.services.context_store import ContextStore
from gapminer.services.extraction import Extractor
from gapminer.services.llm_client import LLMCapability
from gapminer.services.run_log import log_event
from gapminer.services.validators import parse_json_object

logger = logging.getLogger(__name__)


class BaseAgent:
    """Base class for all agents.

    ``execute`` owns the agent's row in ``agents``: it is created (or reused
    on redelivery), marked running, and finally marked completed with the
    output or failed with the error. Subclasses implement ``_run`` and may
    override ``_validate``.

    Context Store writes go through their own sessions and must happen in
    ``_run`` before any rows are added to ``self.db``.
    """

    AGENT_TYPE = ""
    input_schema: Type[BaseModel] = BaseModel

    def __init__(
        self,
        llm_client: LLMCapability,
        db_session: Session,
        context_store: ContextStore,
        extractor: Optional[Extractor] = None,
    ):
        """Initialize base agent."""
        self.llm = llm_client
        self.db = db_session
        self.context_store = context_store
        self.extractor = extractor

    def execute(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute the agent once, recording the outcome on its Agent row.

        Re-delivering a payload whose agent already completed returns the
        stored output without running again.

        Args:
            payload: Input payload dict

        Returns:
            Agent output dict (also stored as ``output_data``)

        Raises:
            AgentFailure: If the agent fails for any reason
        """
        try:
            data = self.input_schema(**payload)
        except ValidationError as e:
            raise AgentFailure(payload.get("agent_id", "unknown"), f"Invalid payload: {e}") from e

        row = self._claim_row(data)
        if row.status == "completed":
            logger.info(f"Agent {data.agent_id} already completed, skipping redelivery")
            return row.output_data or {}

        row.status = "running"
        row.started_at = utcnow()
        row.error_message = None
        row.output_data = None
        self.db.commit()

        start = time.time()
        try:
            result = self._run(data, row)

            if not self._validate(result):
                raise InvalidAgentOutput(f"Output of {data.agent_id} failed validation")

            row.status = "completed"
            row.output_data = result
            row.processing_time = round(time.time() - start, 3)
            row.completed_at = utcnow()
            log_event(
                self.db,
                data.run_id,
                "info",
                f"Agent {data.agent_id} completed in {row.processing_time}s",
                agent_ref=row.id,
            )
            self.db.commit()

            logger.info(f"Agent {self.__class__.__name__} ({data.agent_id}) succeeded")
            return result

        except Exception as e:
            logger.error(f"Agent {self.__class__.__name__} ({data.agent_id}) error: {str(e)}")
            self.db.rollback()

            row.status = "failed"
            row.output_data = None
            row.error_message = str(e) or e.__class__.__name__
            row.processing_time = round(time.time() - start, 3)
            row.completed_at = utcnow()
            log_event(
                self.db,
                data.run_id,
                "error",
                f"Agent {data.agent_id} failed: {row.error_message}",
                metadata={"error_type": e.__class__.__name__},
                agent_ref=row.id,
            )
            self.db.commit()

            raise AgentFailure(data.agent_id, row.error_message) from e

    def _claim_row(self, data: BaseModel) -> Agent:
        """Fetch or create the Agent row keyed on (run, iteration, agent_id)."""

        def lookup() -> Optional[Agent]:
            return (
                self.db.query(Agent)
                .filter(
                    Agent.run_id == data.run_id,
                    Agent.iteration_number == data.iteration,
                    Agent.agent_id == data.agent_id,
                )
                .first()
            )

        row = lookup()
        if row is not None:
            return row

        row = Agent(
            run_id=data.run_id,
            iteration_number=data.iteration,
            agent_type=self.AGENT_TYPE,
            agent_id=data.agent_id,
            status="pending",
            input_data=data.model_dump(mode="json"),
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent redelivery created it first
            self.db.rollback()
            row = lookup()
            if row is None:
                raise
        return row

    def _complete(self, prompt: str, options: Dict[str, Any]) -> str:
        """Call the LLM, retrying transient provider errors with exponential backoff."""
        retrying = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(settings.AGENT_MAX_RETRIES + 1),
            wait=wait_exponential(multiplier=1, min=settings.RETRY_BACKOFF_MIN, max=settings.RETRY_BACKOFF_MAX),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self.llm.complete, prompt, options)

    def _complete_json(self, prompt: str, options: Dict[str, Any], schema: Type[BaseModel]) -> BaseModel:
        """Call the LLM in JSON mode and parse the response into ``schema``."""
        response = self._complete(prompt, {**options, "json_mode": True})
        parsed = parse_json_object(response)
        try:
            return schema(**parsed)
        except ValidationError as e:
            raise InvalidAgentOutput(f"Response does not match {schema.__name__}: {e}") from e

    def _add_result(self, row: Agent, result_type: str, data: Dict[str, Any]) -> Result:
        """Stage a Result row; committed together with the agent's completion."""
        result = Result(
            run_id=row.run_id,
            agent_ref=row.id,
            iteration_number=row.iteration_number,
            result_type=result_type,
            data=data,
        )
        self.db.add(result)
        return result

    def _run(self, data: BaseModel, row: Agent) -> Dict[str, Any]:
        """
        Run the agent logic (to be implemented by subclasses).

        Args:
            data: Validated input
            row: This instance's Agent row

        Returns:
            Output dict
        """
        raise NotImplementedError

    def _validate(self, result: Dict[str, Any]) -> bool:
        """
        Validate the agent output (to be overridden by subclasses).

        Args:
            result: Agent output

        Returns:
            True if valid, False otherwise
        """
        return True
