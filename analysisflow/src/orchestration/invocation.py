"""
Invocation Layer - Calls out to agent workers and sibling services.

Two primitives:
- FunctionInvoker.invoke_with_retry(): awaited POST to a named function with
  bounded retries and a growing delay. Used for batch notifications, trade
  execution and fallback invocations where the caller needs the outcome.
- AgentInvoker.invoke_agent_with_retry(): claims the agent's step as running
  and schedules the call as an asyncio task. The caller never waits for the
  agent; a call that still fails after its retries resets the step to
  pending and is published on INVOCATION_FAILURES, where the coordinator
  picks it up as an `invocation_failed` callback.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, TYPE_CHECKING

import aiohttp

from ..utils.http import HttpClientBase, sanitize_error_message
from ..workflow.agents import AgentId, Phase
from ..workflow.models import AnalysisContext, CompletionType, ErrorType, StepStatus
from .errors import InvocationError
from .message_bus import MessageBus, MessageTopic, create_message

if TYPE_CHECKING:
    from ..data.repository import AnalysisRepository
    from ..utils.config import CoordinatorSettings
    from .services import AnalysisRun

logger = logging.getLogger(__name__)


REBALANCE_COORDINATOR = 'rebalance-coordinator'
EXECUTE_TRADE = 'execute-trade'


@dataclass
class InvocationResult:
    """Outcome of an awaited invocation."""
    success: bool
    data: Optional[dict] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'data': self.data,
            'error': self.error,
            'attempts': self.attempts,
        }


class FunctionInvoker(HttpClientBase):
    """
    HTTP client for the function endpoints (agents, rebalance coordinator,
    trade execution).

    Every call is a POST of a JSON body to {base_url}/{function_name} with
    the service token as a bearer credential.
    """

    def __init__(
        self,
        base_url: str,
        service_token: str = '',
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_delay_seconds: float = 2.0,
    ):
        super().__init__(timeout_seconds=timeout_seconds)
        self.base_url = base_url.rstrip('/')
        self.service_token = service_token
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

    @classmethod
    def from_settings(cls, settings: 'CoordinatorSettings') -> 'FunctionInvoker':
        return cls(
            base_url=settings.invocation_base_url,
            service_token=settings.service_token,
            timeout_seconds=settings.invocation_timeout_seconds,
            max_retries=settings.invocation_max_retries,
            retry_delay_seconds=settings.invocation_retry_delay_seconds,
        )

    def _headers(self) -> dict:
        headers = {'Content-Type': 'application/json'}
        if self.service_token:
            headers['Authorization'] = f"Bearer {self.service_token}"
        return headers

    async def _post(self, function_name: str, payload: dict) -> dict:
        session = await self._get_session()
        url = f"{self.base_url}/{function_name}"

        try:
            async with session.post(url, json=payload, headers=self._headers()) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise InvocationError(
                        function_name,
                        f"Invocation error: HTTP {response.status} {sanitize_error_message(body)[:200]}",
                        status=response.status,
                    )
                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = None
        except asyncio.TimeoutError:
            raise InvocationError(function_name, f"Invocation error: {function_name} timed out")
        except aiohttp.ClientError as e:
            raise InvocationError(function_name, f"Invocation error: {sanitize_error_message(e)}")

        if not data:
            raise InvocationError(function_name, f"No response data from {function_name}")
        if not isinstance(data, dict):
            raise InvocationError(
                function_name,
                f"Invalid response type from {function_name}: expected object, got {type(data).__name__}",
            )
        # cancellation replies are a valid outcome, not a failure
        if data.get('success') is False and not data.get('canceled') and not data.get('isCanceled'):
            raise InvocationError(
                function_name,
                f"Function error: {data.get('error') or data.get('message') or 'Unknown error'}",
            )
        return data

    async def invoke_with_retry(
        self,
        function_name: str,
        payload: dict,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> InvocationResult:
        """
        POST payload to a function, retrying failed attempts.

        Args:
            function_name: Target function id
            payload: JSON body
            max_retries: Extra attempts after the first (default from config)
            retry_delay: Initial delay in seconds, grows by 1.5x per retry

        Returns:
            InvocationResult; never raises for invocation failures
        """
        retries = self.max_retries if max_retries is None else max_retries
        delay = self.retry_delay_seconds if retry_delay is None else retry_delay
        last_error: Optional[str] = None

        for attempt in range(retries + 1):
            try:
                logger.debug(f"Invoking {function_name} (attempt {attempt + 1}/{retries + 1})")
                data = await self._post(function_name, payload)
                return InvocationResult(success=True, data=data, attempts=attempt + 1)
            except InvocationError as e:
                last_error = str(e)
                logger.warning(f"{function_name} failed (attempt {attempt + 1}/{retries + 1}): {last_error}")
                if attempt < retries:
                    await asyncio.sleep(delay)
                    delay *= 1.5

        message = f"Failed after {retries + 1} attempts: {last_error or 'Unknown error'}"
        logger.error(f"{function_name} final failure: {message}")
        return InvocationResult(success=False, error=message, attempts=retries + 1)


class AgentInvoker:
    """
    Starts agents on behalf of the coordinator.

    The step claim (pending/error -> running) happens before anything is
    sent, so a duplicate callback racing this one finds the step running
    and skips its own invocation.
    """

    def __init__(
        self,
        repository: 'AnalysisRepository',
        functions: FunctionInvoker,
        message_bus: Optional[MessageBus] = None,
        default_max_retries: int = 2,
    ):
        self.repository = repository
        self.functions = functions
        self.message_bus = message_bus
        self.default_max_retries = default_max_retries
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def build_payload(
        self,
        run: 'AnalysisRun',
        agent: AgentId,
        phase: Optional[Phase],
        context: Optional[AnalysisContext],
        context_extra: Optional[dict] = None,
        payload_extra: Optional[dict] = None,
    ) -> dict:
        """Request body an agent worker receives."""
        body: dict[str, Any] = {
            'analysisId': run.analysis_id,
            'ticker': run.ticker,
            'userId': run.user_id,
            'apiSettings': run.api_settings.for_agent(agent),
        }
        if context is not None or context_extra:
            base = context or AnalysisContext()
            if phase is not None:
                body['analysisContext'] = base.with_phase(phase, **(context_extra or {}))
            else:
                data = base.to_dict()
                data.update(context_extra or {})
                body['analysisContext'] = data
        if phase is not None:
            body['phase'] = phase.value
        if payload_extra:
            body.update(payload_extra)
        return body

    async def claim_step(self, run: 'AnalysisRun', agent: AgentId, phase: Phase, force: bool = False) -> bool:
        """Move the step to running; False when another caller already holds it."""
        allowed_from = None if force else (StepStatus.PENDING, StepStatus.ERROR)
        update = await self.repository.update_workflow_step(
            run.analysis_id, phase, agent, StepStatus.RUNNING, allowed_from=allowed_from,
        )
        if not update.applied:
            current = update.previous.value if update.previous else 'missing'
            logger.warning(
                f"Skipping invocation of {agent.display_name} for {run.analysis_id}: "
                f"step is {current}"
            )
        return update.applied

    async def invoke_agent_with_retry(
        self,
        run: 'AnalysisRun',
        agent: AgentId,
        phase: Phase,
        context: Optional[AnalysisContext] = None,
        max_retries: Optional[int] = None,
        context_extra: Optional[dict] = None,
        payload_extra: Optional[dict] = None,
        force: bool = False,
        claimed: bool = False,
    ) -> bool:
        """
        Fire-and-forget agent invocation.

        Pass claimed=True when the caller already won the step with claim_step().

        Returns:
            True if the step was claimed and the call scheduled, False if the
            step was already running/completed (duplicate)
        """
        if not claimed and not await self.claim_step(run, agent, phase, force):
            return False

        body = self.build_payload(run, agent, phase, context, context_extra, payload_extra)
        retries = self.default_max_retries if max_retries is None else max_retries

        task = asyncio.create_task(self._run_invocation(run, agent, phase, body, retries))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(f"Scheduled {agent.function_id} for {run.ticker} ({run.analysis_id}, phase {phase.value})")
        return True

    async def _run_invocation(
        self,
        run: 'AnalysisRun',
        agent: AgentId,
        phase: Phase,
        body: dict,
        max_retries: int,
    ) -> None:
        try:
            result = await self.functions.invoke_with_retry(agent.function_id, body, max_retries=max_retries)
        except Exception as e:
            logger.error(f"Unexpected error invoking {agent.function_id}: {e}", exc_info=True)
            result = InvocationResult(success=False, error=str(e))

        if result.success:
            await self._publish(
                MessageTopic.AGENT_INVOCATIONS,
                {'agent': agent.function_id, 'phase': phase.value, 'attempts': result.attempts},
                run.analysis_id,
            )
            return

        await self._handle_invocation_failure(run, agent, phase, body, result.error or 'Unknown error')

    async def _handle_invocation_failure(
        self,
        run: 'AnalysisRun',
        agent: AgentId,
        phase: Phase,
        body: dict,
        error: str,
    ) -> None:
        logger.error(f"Invocation of {agent.function_id} for {run.analysis_id} failed: {error}")

        try:
            await self.repository.update_workflow_step(
                run.analysis_id, phase, agent, StepStatus.PENDING,
                allowed_from=(StepStatus.RUNNING,),
            )
        except Exception as e:
            logger.error(f"Failed to reset {agent.display_name} to pending: {e}", exc_info=True)

        await self._publish(
            MessageTopic.INVOCATION_FAILURES,
            {
                'analysisId': run.analysis_id,
                'ticker': run.ticker,
                'userId': run.user_id,
                'phase': phase.value,
                'agent': agent.function_id,
                'apiSettings': run.api_settings.to_dict(),
                'analysisContext': body.get('analysisContext'),
                'error': f"Invocation failed: {error}",
                'errorType': ErrorType.OTHER.value,
                'completionType': CompletionType.INVOCATION_FAILED.value,
            },
            run.analysis_id,
        )

    async def invoke_agent_awaited(
        self,
        run: 'AnalysisRun',
        agent: AgentId,
        phase: Phase,
        context: Optional[AnalysisContext] = None,
        max_retries: Optional[int] = None,
        context_extra: Optional[dict] = None,
        force: bool = False,
    ) -> InvocationResult:
        """Claim the step and wait for the agent to accept the request."""
        if not await self.claim_step(run, agent, phase, force):
            return InvocationResult(success=False, error=f"{agent.display_name} step could not be claimed")

        body = self.build_payload(run, agent, phase, context, context_extra)
        retries = self.default_max_retries if max_retries is None else max_retries
        result = await self.functions.invoke_with_retry(agent.function_id, body, max_retries=retries)

        await self._publish(
            MessageTopic.AGENT_INVOCATIONS,
            {
                'agent': agent.function_id,
                'phase': phase.value,
                'awaited': True,
                'success': result.success,
                'error': result.error,
            },
            run.analysis_id,
        )
        return result

    async def notify_rebalance(
        self,
        run: 'AnalysisRun',
        rebalance_request_id: str,
        success: bool,
        error: Optional[str] = None,
    ) -> InvocationResult:
        """Tell the parent batch that this member finished (or failed)."""
        payload = {
            'action': 'analysis-completed',
            'rebalanceRequestId': rebalance_request_id,
            'analysisId': run.analysis_id,
            'ticker': run.ticker,
            'userId': run.user_id,
            'apiSettings': run.api_settings.to_dict(),
            'success': success,
        }
        if error is not None:
            payload['error'] = error

        result = await self.functions.invoke_with_retry(REBALANCE_COORDINATOR, payload)
        if result.success:
            logger.info(f"Notified rebalance {rebalance_request_id} of {run.analysis_id} (success={success})")
        else:
            logger.error(f"Failed to notify rebalance {rebalance_request_id}: {result.error}")

        await self._publish(
            MessageTopic.BATCH_NOTIFICATIONS,
            {
                'rebalanceRequestId': rebalance_request_id,
                'success': success,
                'error': error,
                'delivered': result.success,
            },
            run.analysis_id,
        )
        return result

    async def _publish(self, topic: MessageTopic, payload: dict, analysis_id: str) -> None:
        if self.message_bus is None:
            return
        await self.message_bus.publish(create_message(topic, 'agent_invoker', payload, analysis_id=analysis_id))

    async def drain(self) -> None:
        """Wait until every scheduled invocation (and any it triggers) finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.functions.close()
