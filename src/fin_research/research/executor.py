"""Single-task executor: cache read-through, bounded provider call, retries."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from fin_research.cache import ResponseCache
from fin_research.providers.base import (
    ProviderError,
    ProviderResponse,
    ProviderTimeoutError,
    UnsupportedCapabilityError,
)
from fin_research.providers.registry import ProviderRegistry
from fin_research.research.errors import PersistenceError
from fin_research.research.failure_classifier import classify_provider_failure
from fin_research.research.models import (
    TRANSIENT_FAILURE_CLASSES,
    ExecutionFailure,
    ExecutionResult,
    ResearchTask,
    TaskStatus,
)
from fin_research.research.pricing import estimate_cost_usd
from fin_research.research.store import SessionStore

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Runs one task against the registry and records the artifact on success.

    The executor keeps no per-task state between calls. A shared bounded
    semaphore caps concurrent provider calls. A slot is taken when the call
    starts and given back when its worker thread finishes, so a call that
    timed out keeps its slot until the provider actually returns. No slot
    is held during backoff.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: ProviderRegistry,
        store: SessionStore,
        cache: ResponseCache | None = None,
        max_concurrency: int = 4,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        call_timeout_seconds: float = 30.0,
        capability_pricing: str | None = None,
        cancel_event: threading.Event | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.cache = cache
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.capability_pricing = capability_pricing
        self.cancel_event = cancel_event or threading.Event()
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._pool = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix="fin-research-call")
        self._random = rng or random.Random()  # noqa: S311

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def estimate_cost(self, task: ResearchTask) -> float:
        return estimate_cost_usd(task.capability, pricing=self.capability_pricing)

    def run(self, task: ResearchTask, *, session_id: str) -> ExecutionResult:
        """Execute ``task``; PersistenceError from the store propagates."""

        task.status = TaskStatus.IN_PROGRESS
        try:
            provider_name = self.registry.provider_for(task.capability)
        except UnsupportedCapabilityError as error:
            logger.warning("No provider for %s: %s", task.capability.value, error)
            return self._failed(task, error, attempts=1, cost_usd=0.0)

        scope = f"{provider_name}.{task.capability.value}"
        cached = self._cached_response(scope, task)
        if cached is not None:
            logger.debug("Cache hit for task %s (%s)", task.task_id, scope)
            return self._succeeded(task, session_id, cached, attempts=0, cached=True)

        cost_usd = self.estimate_cost(task)
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._call(task)
            except PersistenceError:
                raise
            except Exception as error:  # noqa: BLE001
                classification = classify_provider_failure(error)
                retryable = classification.failure_class in TRANSIENT_FAILURE_CLASSES
                if not retryable or attempt >= self.max_attempts:
                    logger.warning(
                        "Task %s (%s) failed after %d attempt(s): %s [%s]",
                        task.task_id,
                        task.capability.value,
                        attempt,
                        error,
                        classification.failure_class.value,
                    )
                    return self._failed(task, error, attempts=attempt, cost_usd=cost_usd)
                delay = self._compute_retry_delay(retry_number=attempt)
                logger.warning(
                    "Task %s (%s) attempt %d failed (%s); retrying in %.2fs",
                    task.task_id,
                    task.capability.value,
                    attempt,
                    classification.failure_class.value,
                    delay,
                )
                if self.cancel_event.wait(delay):
                    logger.info("Cancellation requested; abandoning retries of %s", task.task_id)
                    return self._failed(task, error, attempts=attempt, cost_usd=cost_usd)
                continue

            if self.cache is not None:
                self.cache.set(scope, task.arguments, {"data": response.data, "source": response.source})
            return self._succeeded(task, session_id, response, attempts=attempt, cached=False, cost_usd=cost_usd)

    def _call(self, task: ResearchTask) -> ProviderResponse:
        if not self._slots.acquire(timeout=self.call_timeout_seconds):
            raise ProviderTimeoutError(
                f"no free provider slot for {task.capability.value} within {self.call_timeout_seconds:g}s",
            )
        try:
            future = self._pool.submit(self.registry.dispatch, task.capability, dict(task.arguments))
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        try:
            return future.result(timeout=self.call_timeout_seconds)
        except TimeoutError as error:
            if not future.cancel():
                logger.warning(
                    "Abandoned %s call of task %s after %gs; its slot stays taken until the provider returns",
                    task.capability.value,
                    task.task_id,
                    self.call_timeout_seconds,
                )
            raise ProviderTimeoutError(
                f"{task.capability.value} call exceeded {self.call_timeout_seconds:g}s",
            ) from error

    def _cached_response(self, scope: str, task: ResearchTask) -> ProviderResponse | None:
        if self.cache is None:
            return None
        entry = self.cache.get(scope, task.arguments)
        if not isinstance(entry, dict) or "data" not in entry or not entry.get("source"):
            return None
        return ProviderResponse(data=entry["data"], source=str(entry["source"]))

    def _succeeded(  # noqa: PLR0913
        self,
        task: ResearchTask,
        session_id: str,
        response: ProviderResponse,
        *,
        attempts: int,
        cached: bool,
        cost_usd: float = 0.0,
    ) -> ExecutionResult:
        payload: dict[str, Any] = {
            "task": {
                "task_id": task.task_id,
                "capability": task.capability.value,
                "arguments": task.arguments,
                "digest": task.digest,
            },
            "data": response.data,
            "cached": cached,
        }
        artifact = self.store.append_artifact(session_id, payload, response.source)
        return ExecutionResult(
            task=task,
            artifact=artifact,
            attempts=attempts,
            cached=cached,
            cost_usd=0.0 if cached else cost_usd,
        )

    def _failed(
        self,
        task: ResearchTask,
        error: Exception,
        *,
        attempts: int,
        cost_usd: float,
    ) -> ExecutionResult:
        classification = classify_provider_failure(error)
        return ExecutionResult(
            task=task,
            failure=ExecutionFailure(
                failure_class=classification.failure_class,
                message=str(error),
                reason_code=classification.reason_code,
                status_code=error.status_code if isinstance(error, ProviderError) else None,
                details=classification.to_event_details(),
            ),
            attempts=attempts,
            cost_usd=cost_usd,
        )

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)
