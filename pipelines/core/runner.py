"""Sequential pipeline execution engine."""

import time
from typing import Any, Dict, List, Optional

from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent

logger = get_logger(__name__)


class PipelineRunner:
    """
    Sequential pipeline executor.

    Executes agents in order, passing the context dict between them.
    Architecture: Input → Agent1 → Agent2 → Agent3 → Output

    Runs once per inbound message, so per-agent progress is logged at
    DEBUG and only the summary line at INFO.
    """

    def __init__(
        self,
        agents: List[BaseAgent],
        name: Optional[str] = None,
    ) -> None:
        """
        Args:
            agents: Ordered list of agents to execute sequentially.
            name: Optional pipeline name for logging.

        Raises:
            ValueError: If agents list is empty.
        """
        if not agents:
            raise ValueError("Pipeline must contain at least one agent")
        self.agents = agents
        self.name = name or "Pipeline"

    def run(self, initial_context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute pipeline sequentially.

        Agent output is merged into the context for the next agent. Per-agent
        durations are recorded under `agent_timings_ms`.

        Args:
            initial_context: Initial input data dict.

        Returns:
            Final context dict after all agents have executed.

        Raises:
            TypeError: If an agent returns non-dict output.
            RuntimeError: If any agent fails during execution.
        """
        context = dict(initial_context)
        timings: Dict[str, float] = {}
        started = time.perf_counter()

        for idx, agent in enumerate(self.agents, start=1):
            agent_name = getattr(agent, "name", agent.__class__.__name__)
            logger.debug(f"{self.name}: agent {idx}/{len(self.agents)} started: {agent_name}")
            agent_started = time.perf_counter()

            try:
                result = agent.run(context)
                if not isinstance(result, dict):
                    raise TypeError(
                        f"Agent '{agent_name}' returned {type(result).__name__}, expected dict"
                    )
            except Exception as e:
                logger.exception(f"Agent '{agent_name}' failed with error: {e}")
                raise RuntimeError(f"Pipeline stopped at agent '{agent_name}': {e}") from e

            context.update(result)
            timings[agent_name] = round((time.perf_counter() - agent_started) * 1000, 2)

        context["agent_timings_ms"] = timings
        logger.info(
            f"Pipeline {self.name} completed in "
            f"{(time.perf_counter() - started) * 1000:.1f}ms"
        )
        return context

    def __repr__(self) -> str:
        agent_names = [getattr(a, "name", a.__class__.__name__) for a in self.agents]
        return f"PipelineRunner(name={self.name!r}, agents={agent_names})"
