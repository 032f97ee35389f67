# research_engine/services/steps.py
"""
Durable step executor.

`run(name, fn)` executes `fn` at most once per (run_id, name) to completion:
the JSON-safe result is checkpointed and a replay of the same run returns the
stored value without calling `fn` again. Failures are retried with
exponential backoff unless they are `NonRetriableError`.

`sleep(name, seconds)` is checkpointed the same way, so a worker that
crashes mid-poll resumes after the last completed wait.

Step results go through JSON on the first call too, so callers always see
the same shape whether the step ran or was replayed.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable
from uuid import UUID

from pydantic_core import to_jsonable_python
from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import get_settings
from .repository import ResearchRepository

logger = logging.getLogger(__name__)

settings = get_settings()


class NonRetriableError(Exception):
    """Fails the current step immediately, skipping step-level retries."""


class StepExecutor:
    def __init__(
        self,
        repository: ResearchRepository,
        run_id: UUID,
        *,
        max_attempts: int | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.run_id = run_id
        self.max_attempts = max_attempts or settings.STEP_MAX_ATTEMPTS
        self.sleeper = sleeper

    def _log_retry(self, name: str):
        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Step '%s' failed (attempt %d/%d): %s",
                name,
                retry_state.attempt_number,
                self.max_attempts,
                exc,
                extra={"run_id": str(self.run_id), "step": name, "attempt": retry_state.attempt_number},
            )

        return _before_sleep

    def run(self, name: str, fn: Callable[[], Any]) -> Any:
        found, stored = self.repository.get_checkpoint(self.run_id, name)
        if found:
            logger.info(
                "Replaying checkpointed step '%s'",
                name,
                extra={"run_id": str(self.run_id), "step": name},
            )
            return stored

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_not_exception_type(NonRetriableError),
            before_sleep=self._log_retry(name),
            sleep=self.sleeper,
            reraise=True,
        )
        result = to_jsonable_python(retrying(fn))
        self.repository.save_checkpoint(self.run_id, name, result)
        return result

    def sleep(self, name: str, seconds: float) -> None:
        found, _ = self.repository.get_checkpoint(self.run_id, name)
        if found:
            return
        self.sleeper(seconds)
        self.repository.save_checkpoint(self.run_id, name, {"slept": seconds})
