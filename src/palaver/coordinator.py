"""Concurrent, failure-isolated execution of one round of tool calls."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping

from palaver.errors import ToolExecutionError, ToolValidationError
from palaver.events import EventListener, ToolCompleted
from palaver.instrumentation import record_error, tool_span
from palaver.tools import ToolCallRequest, ToolCallResult, ToolExecutor, ToolOutput

logger = logging.getLogger(__name__)


class ToolExecutionCoordinator:
    """Dispatches tool calls to a :class:`ToolExecutor`.

    Every request gets exactly one result, in request order, whatever
    happens to its siblings.  Invalid requests fail immediately without
    taking a concurrency slot.

    Args:
        executor: The tool boundary.
        max_concurrency: Most calls in flight at once.
        timeout: Seconds each call may run before it is failed.
        retries: Extra attempts for a call that raised or timed out.
        listener: Receives a :class:`ToolCompleted` per result.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        max_concurrency: int = 5,
        timeout: float | None = 30.0,
        retries: int = 0,
        listener: EventListener | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if retries < 0:
            raise ValueError("retries cannot be negative")
        self.executor = executor
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.retries = retries
        self.listener = listener

    async def execute_all(
        self, requests: list[ToolCallRequest],
    ) -> list[ToolCallResult]:
        results: list[ToolCallResult | None] = [None] * len(requests)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        pending: list[tuple[int, ToolCallRequest]] = []
        seen: set[str] = set()

        for i, request in enumerate(requests):
            try:
                self._validate(request, seen)
            except ToolValidationError as e:
                logger.warning(f"Rejected tool call {request.id}: {e}")
                results[i] = self._finish(ToolCallResult(
                    id=request.id, name=request.name, success=False,
                    content=f"Error: {e}", error=str(e),
                ))
                continue
            seen.add(request.id)
            pending.append((i, request))

        if pending:
            logger.info(
                f"Executing {len(pending)} tool call(s), "
                f"at most {self.max_concurrency} at a time"
            )
            outcomes = await asyncio.gather(*(
                self._run_one(request, semaphore) for _, request in pending
            ))
            for (i, _), outcome in zip(pending, outcomes):
                results[i] = outcome

        successes = sum(1 for r in results if r.success)
        logger.info(f"Tool round complete: {successes}/{len(results)} succeeded")
        return results

    def _validate(self, request: ToolCallRequest, seen: set[str]) -> None:
        if not request.name or request.name not in self.executor:
            raise ToolValidationError(f"tool '{request.name}' not found")
        if not isinstance(request.arguments, Mapping):
            raise ToolValidationError(
                f"arguments for '{request.name}' must be an object"
            )
        if request.id in seen:
            raise ToolValidationError(f"duplicate tool call id '{request.id}'")

    async def _run_one(
        self, request: ToolCallRequest, semaphore: asyncio.Semaphore,
    ) -> ToolCallResult:
        async with semaphore:
            async with tool_span(request.name, request.id) as span:
                attempts = self.retries + 1
                for attempt in range(1, attempts + 1):
                    try:
                        output = await asyncio.wait_for(
                            self.executor.execute(request.name, dict(request.arguments)),
                            timeout=self.timeout,
                        )
                        break
                    except asyncio.TimeoutError:
                        error = ToolExecutionError(
                            f"tool '{request.name}' timed out after {self.timeout}s"
                        )
                        cause: Exception = error
                    except Exception as e:
                        error = ToolExecutionError(f"tool '{request.name}' raised: {e}")
                        cause = e
                    if attempt < attempts:
                        logger.warning(f"{error}; retrying ({attempt}/{self.retries})")
                        continue
                    logger.error(str(error))
                    record_error(span, cause)
                    return self._finish(self._failure(request, error))
        return self._finish(self._success(request, output))

    def _success(self, request: ToolCallRequest, output) -> ToolCallResult:
        if isinstance(output, ToolOutput):
            return ToolCallResult(
                id=request.id, name=request.name, success=output.success,
                content=output.content, error=output.error,
            )
        if isinstance(output, str):
            content = output
        else:
            try:
                content = json.dumps(output)
            except (TypeError, ValueError):
                content = str(output)
        return ToolCallResult(
            id=request.id, name=request.name, success=True, content=content,
        )

    def _failure(self, request: ToolCallRequest, error: Exception) -> ToolCallResult:
        return ToolCallResult(
            id=request.id, name=request.name, success=False,
            content=f"Error: {error}", error=str(error),
        )

    def _finish(self, result: ToolCallResult) -> ToolCallResult:
        if self.listener is not None:
            self.listener(ToolCompleted(
                id=result.id, name=result.name, success=result.success,
            ))
        return result
