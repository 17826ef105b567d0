"""Error taxonomy for the gap-discovery pipeline."""


class GapMinerError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(GapMinerError):
    """Invalid run parameters or empty paper list; raised before a run starts."""


class TransientProviderError(GapMinerError):
    """Retryable LLM provider failure (rate limit, 5xx, timeout)."""


class InvalidAgentOutput(GapMinerError):
    """LLM output that could not be parsed or failed validation."""


class AgentFailure(GapMinerError):
    """A single agent instance failed after exhausting its retries."""

    def __init__(self, agent_id: str, message: str):
        super().__init__(f"Agent {agent_id} failed: {message}")
        self.agent_id = agent_id
        self.reason = message


class StageFailure(GapMinerError):
    """A whole stage of an iteration failed (meso, meta, or every micro agent)."""

    def __init__(self, stage: str, iteration: int, message: str):
        super().__init__(f"{stage} stage failed in iteration {iteration}: {message}")
        self.stage = stage
        self.iteration = iteration
        self.reason = message


class RunFailure(GapMinerError):
    """The run could not produce a single completed iteration."""


class ContextError(GapMinerError):
    """Context store misuse: bad key, oversize value, or shape mismatch."""


class RunNotFound(ConfigurationError):
    """The referenced run does not exist."""
