"""
Cancellation checks run at the top of every callback path.

An analysis stops when it was cancelled directly, when it already completed,
or when its parent rebalance request was cancelled; the last case also
cancels the analysis record itself.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..workflow.models import AnalysisStatus, now_iso
from .responses import CoordinatorResponse, cancelled_response
from .services import AnalysisRun, WorkflowServices

logger = logging.getLogger(__name__)


CANCELLED_REBALANCE_STATUSES = ('cancelled', 'canceled')


@dataclass
class CancellationCheck:
    should_continue: bool
    is_canceled: bool = False
    reason: Optional[str] = None


async def check_combined_cancellation(services: WorkflowServices, run: AnalysisRun) -> CancellationCheck:
    """Check the analysis status and its parent rebalance request."""
    repository = services.repository
    record = await repository.get_analysis(run.analysis_id)

    if record is None:
        return CancellationCheck(False, False, 'Analysis not found')

    if record.analysis_status is AnalysisStatus.CANCELLED:
        if record.rebalance_request_id:
            await services.invoker.notify_rebalance(
                run, record.rebalance_request_id, success=False, error='Analysis cancelled by user',
            )
        return CancellationCheck(False, True, 'Analysis cancelled')

    if record.analysis_status is AnalysisStatus.COMPLETED:
        return CancellationCheck(False, False, 'Analysis already completed')

    if record.rebalance_request_id:
        rebalance_status = await repository.get_rebalance_status(record.rebalance_request_id)
        if rebalance_status in CANCELLED_REBALANCE_STATUSES:
            await repository.update_status(
                run.analysis_id,
                AnalysisStatus.CANCELLED,
                full_analysis_patch={
                    'canceledAt': now_iso(),
                    'cancelReason': 'Parent rebalance cancelled',
                },
            )
            logger.info(
                f"Analysis {run.analysis_id} cancelled with parent rebalance {record.rebalance_request_id}"
            )
            return CancellationCheck(False, True, 'Parent rebalance cancelled')

    return CancellationCheck(True)


async def check_and_handle_cancellation(
    services: WorkflowServices,
    run: AnalysisRun,
) -> Optional[CoordinatorResponse]:
    """Terminal response when the run must stop, otherwise None."""
    check = await check_combined_cancellation(services, run)
    if check.should_continue:
        return None
    logger.info(f"Stopping {run.analysis_id}: {check.reason}")
    return cancelled_response(f"Analysis stopped: {check.reason}", canceled=check.is_canceled)
