"""Step execution engine for provisioning workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .config import HostConfig, ProvisioConfig, load_config
from .contracts import LedgerLookup, StepContext, StepOutcome
from .errors import FatalStepError, ProvisioError, TransientInfraError
from .host import HostCapabilities
from .persistence.models import ErrorDetail
from .registry.models import StepSpec
from .utils import retry
from .vault import SecretStore, get_secret_store

logger = logging.getLogger(__name__)

Action = Callable[[StepContext], Awaitable[Optional[Dict[str, Any]]]]


class StepExecutor:
    """Runs a step's action (or compensation) against the host.

    Retries transient failures of retryable steps with bounded exponential
    backoff, enforces the step timeout and turns every failure into an
    :class:`ErrorDetail` whose message is safe to return to callers.
    """

    def __init__(
        self,
        host: HostCapabilities,
        vault: SecretStore | None = None,
        config: ProvisioConfig | None = None,
        actions: Mapping[str, Action] | None = None,
    ) -> None:
        self.host = host
        self.config = config or load_config()
        self.vault = vault or get_secret_store(config=self.config)
        if actions is None:
            from .actions import ACTIONS

            actions = ACTIONS
        self._actions = actions

    @property
    def host_config(self) -> HostConfig:
        return self.config.host

    def timeout_for(self, step: StepSpec) -> float:
        """Explicit step timeout, else the configured default for its class."""
        if step.timeout is not None:
            return step.timeout
        return getattr(self.config.timeouts, step.timeout_class)

    def context_for(
        self,
        run_id: str,
        step: StepSpec,
        params: Mapping[str, str],
        outputs: Mapping[str, Mapping[str, Any]],
        ledger_lookup: LedgerLookup | None = None,
        output: Mapping[str, Any] | None = None,
    ) -> StepContext:
        """Build the read-only view ``step`` is allowed to see."""
        extra: Dict[str, Any] = {}
        if ledger_lookup is not None:
            extra["ledger_lookup"] = ledger_lookup
        return StepContext.build(
            run_id,
            step,
            params,
            outputs,
            host=self.host,
            vault=self.vault,
            host_config=self.config.host,
            timeout=self.timeout_for(step),
            output=output,
            **extra,
        )

    async def execute(self, step: StepSpec, context: StepContext) -> StepOutcome:
        """Run the forward action of ``step``."""
        return await self._invoke(step, step.action, context, step.retryable)

    async def compensate(self, step: StepSpec, context: StepContext) -> StepOutcome:
        """Undo ``step``. Steps without a compensation succeed trivially."""
        if step.compensation is None:
            return StepOutcome(ok=True)
        return await self._invoke(step, step.compensation, context, retryable=True)

    async def _invoke(
        self, step: StepSpec, action_name: str, context: StepContext, retryable: bool
    ) -> StepOutcome:
        action = self._actions.get(action_name)
        if action is None:
            return StepOutcome(
                ok=False,
                error=ErrorDetail.from_exception(
                    FatalStepError(f"no action registered as '{action_name}'")
                ),
            )

        policy = self.config.retry
        max_attempts = max(1, policy.attempts) if retryable else 1
        timeout = self.timeout_for(step)
        attempt = 0
        while True:
            attempt += 1
            try:
                output = await asyncio.wait_for(action(context), timeout=timeout)
                return StepOutcome(ok=True, output=dict(output or {}), attempts=attempt)
            except asyncio.TimeoutError:
                error: ProvisioError = TransientInfraError(
                    f"step '{step.name}' timed out after {timeout:g}s"
                )
            except ProvisioError as exc:
                error = exc
            except Exception as exc:
                logger.error(
                    f"Action {action_name} raised {type(exc).__name__} in run {context.run_id}"
                )
                error = FatalStepError(f"step '{step.name}' failed unexpectedly")

            if not isinstance(error, TransientInfraError):
                return StepOutcome(
                    ok=False, error=ErrorDetail.from_exception(error), attempts=attempt
                )
            if attempt >= max_attempts:
                if retryable:
                    error = FatalStepError(
                        f"{error.message} (gave up after {attempt} attempts)"
                    )
                return StepOutcome(
                    ok=False, error=ErrorDetail.from_exception(error), attempts=attempt
                )

            delay = await retry.schedule_retry(
                attempt, base=policy.base, cap=policy.cap, jitter=policy.jitter
            )
            logger.warning(
                f"Step {step.name} of run {context.run_id} failed transiently "
                f"(attempt {attempt}/{max_attempts}); retried after {delay:.2f}s"
            )
