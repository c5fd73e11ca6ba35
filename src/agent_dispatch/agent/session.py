"""Action/observation loop driving one agent session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, assert_never

from agent_dispatch.agent.actions import (
    ActionItem,
    Finish,
    InvalidActionItem,
    Observation,
    TextItem,
    action_name,
)
from agent_dispatch.agent.engine import ReasoningEngine, ReasoningEngineError
from agent_dispatch.agent.executor import ActionExecutor
from agent_dispatch.agent.history import (
    ROLE_ASSISTANT,
    ActionTurn,
    History,
    InvalidActionTurn,
    MessageTurn,
)
from agent_dispatch.orchestrator.models import FailureClass

logger = logging.getLogger(__name__)

ITERATION_LIMIT_REASON = "iteration limit exceeded"


class SessionStatus(str, Enum):
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class SessionResult:
    """Terminal result of a session: the ``Finish`` payload or a failure."""

    status: SessionStatus
    iterations: int
    result: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    failure_class: FailureClass | None = None
    retryable: bool = False

    @classmethod
    def finished(cls, result: dict[str, Any], *, iterations: int) -> SessionResult:
        return cls(status=SessionStatus.FINISHED, iterations=iterations, result=dict(result))

    @classmethod
    def failed(
        cls,
        reason: str,
        *,
        failure_class: FailureClass,
        iterations: int,
        retryable: bool = False,
    ) -> SessionResult:
        return cls(
            status=SessionStatus.FAILED,
            iterations=iterations,
            reason=reason,
            failure_class=failure_class,
            retryable=retryable,
        )

    @property
    def succeeded(self) -> bool:
        return self.status is SessionStatus.FINISHED


class AgentSession:
    """Runs the reasoning engine against an executor until ``Finish`` or the iteration bound.

    Every engine call is one iteration. Within a response, items are handled
    in order; the first ``Finish`` ends the session and nothing after it runs.
    """

    def __init__(
        self,
        *,
        engine: ReasoningEngine,
        executor: ActionExecutor,
        max_iterations: int = 100,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        self.engine = engine
        self.executor = executor
        self.max_iterations = max_iterations
        self.iteration = 0
        self._history = History()
        self._terminal_result: SessionResult | None = None
        self._started = False

    @property
    def history(self) -> History:
        return self._history

    @property
    def terminal_result(self) -> SessionResult | None:
        return self._terminal_result

    def run(self, initial_context: str) -> SessionResult:
        if self._started:
            raise RuntimeError("AgentSession.run() may only be called once.")
        self._started = True
        self._history = History.start(initial_context)

        while self.iteration < self.max_iterations:
            logger.debug("Agent iteration %d", self.iteration + 1)
            try:
                items = self.engine.request(self._history)
            except ReasoningEngineError as error:
                self.iteration += 1
                logger.error("Reasoning engine failed: %s", error)
                return self._terminate(
                    SessionResult.failed(
                        f"reasoning engine failed: {error}",
                        failure_class=FailureClass.ENGINE_UNAVAILABLE,
                        iterations=self.iteration,
                        retryable=error.transient,
                    ),
                )
            self.iteration += 1

            for item in items:
                if isinstance(item, TextItem):
                    self._history = self._history.append(
                        MessageTurn(role=ROLE_ASSISTANT, content=item.text),
                    )
                elif isinstance(item, InvalidActionItem):
                    logger.warning("Invalid tool call %r: %s", item.name, item.error)
                    self._history = self._history.append(
                        InvalidActionTurn(
                            name=item.name,
                            error=item.error,
                            observation=Observation.error(f"Invalid tool call: {item.error}"),
                            call_id=item.call_id,
                        ),
                    )
                elif isinstance(item, ActionItem):
                    if isinstance(item.action, Finish):
                        logger.info("Agent finished after %d iteration(s)", self.iteration)
                        return self._terminate(
                            SessionResult.finished(item.action.result, iterations=self.iteration),
                        )
                    observation = self._execute(item)
                    self._history = self._history.append(
                        ActionTurn(
                            action=item.action,
                            observation=observation,
                            call_id=item.call_id,
                        ),
                    )
                else:
                    assert_never(item)

        logger.error("Agent hit the iteration limit (%d)", self.max_iterations)
        return self._terminate(
            SessionResult.failed(
                ITERATION_LIMIT_REASON,
                failure_class=FailureClass.ITERATION_LIMIT,
                iterations=self.iteration,
            ),
        )

    def _execute(self, item: ActionItem) -> Observation:
        name = action_name(item.action)
        logger.info("Executing action %s", name)
        try:
            observation = self.executor.execute(item.action)
        except Exception as error:  # noqa: BLE001
            logger.exception("Action %s raised", name)
            return Observation.error(f"Execution error: {error}")
        if not observation.succeeded and observation.output.startswith("Forbidden:"):
            logger.warning("Action %s forbidden: %s", name, observation.output)
        return observation

    def _terminate(self, result: SessionResult) -> SessionResult:
        self._terminal_result = result
        return result
