"""
Analysis Repository - Persistence primitives for analysis runs.

The coordinator is stateless per call; everything it knows about a run is
reloaded from here at the start of each callback. The primitives are:
- conditional status writes (never overwrite 'cancelled', optional
  current-value precondition)
- JSON merge writes (`||`) that leave sibling keys untouched
- row-locked read-modify-write of full_analysis, used for workflowSteps and
  debate round bookkeeping
- agent error recording through the update_agent_error function, with a
  direct JSON merge when the function is not installed

AnalysisRepository holds the workflow-level helpers built on those
primitives; PostgresAnalysisRepository implements the primitives on asyncpg.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Callable, Optional, TYPE_CHECKING

from ..workflow.agents import AgentId, Phase
from ..workflow.models import (
    AnalysisRecord,
    AnalysisStatus,
    Decision,
    StepStatus,
    StepUpdate,
    WorkflowSteps,
    now_iso,
)

try:
    import asyncpg
    ASYNCPG_AVAILABLE = True
except ImportError:
    ASYNCPG_AVAILABLE = False
    asyncpg = None

if TYPE_CHECKING:
    from .database import DatabasePool

logger = logging.getLogger(__name__)


FullAnalysisMutator = Callable[[dict], bool]


class AnalysisRepository(ABC):
    """Storage interface used by every coordinator component."""

    # -------------------------------------------------------------------------
    # Primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        """Load one analysis, or None if it does not exist."""

    @abstractmethod
    async def find_active_analyses(self, user_id: str, ticker: str) -> list[AnalysisRecord]:
        """Pending/Running analyses for (user, ticker), newest first."""

    @abstractmethod
    async def create_analysis(
        self,
        user_id: str,
        ticker: str,
        full_analysis: dict,
        rebalance_request_id: Optional[str] = None,
        analysis_context: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> AnalysisRecord:
        """Insert a Pending analysis with decision PENDING and confidence 0."""

    @abstractmethod
    async def update_fields(self, analysis_id: str, **fields: Any) -> None:
        """
        Overwrite plain columns.

        Accepted: rebalance_request_id, analysis_context, metadata,
        agent_insights, full_analysis.
        """

    @abstractmethod
    async def update_status(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        allowed_from: Optional[tuple[AnalysisStatus, ...]] = None,
        decision: Optional[str] = None,
        confidence: Optional[float] = None,
        full_analysis_patch: Optional[dict] = None,
        metadata_patch: Optional[dict] = None,
    ) -> bool:
        """
        Conditionally write analysis_status.

        The write never applies to a cancelled record. When allowed_from is
        given it only applies if the current status is one of those values.

        Returns:
            True if a row was updated
        """

    @abstractmethod
    async def update_full_analysis(self, analysis_id: str, mutator: FullAnalysisMutator) -> bool:
        """
        Atomically read, mutate and write full_analysis.

        mutator receives the current blob and edits it in place; returning
        False skips the write.

        Returns:
            Whatever the mutator returned (False when the row is missing)
        """

    @abstractmethod
    async def merge_agent_insights(self, analysis_id: str, patch: dict) -> None:
        """Merge keys into agent_insights without touching siblings."""

    @abstractmethod
    async def remove_agent_insights(self, analysis_id: str, keys: list[str]) -> None:
        """Drop keys from agent_insights."""

    @abstractmethod
    async def record_agent_error(
        self,
        analysis_id: str,
        agent_key: str,
        message: str,
        error_type: str,
    ) -> None:
        """Store `<agent_key>_error` in agent_insights and log an error message."""

    @abstractmethod
    async def append_message(
        self,
        analysis_id: str,
        agent_name: str,
        message: str,
        message_type: str = 'analysis',
    ) -> None:
        """Insert a row into analysis_messages."""

    @abstractmethod
    async def touch(self, analysis_id: str) -> None:
        """Bump updated_at."""

    @abstractmethod
    async def get_rebalance_status(self, rebalance_request_id: str) -> Optional[str]:
        """Status of a parent rebalance request, or None if unknown."""

    @abstractmethod
    async def fetch_api_settings(self, user_id: str) -> Optional[dict]:
        """The user's api_settings row as a dict, or None."""

    @abstractmethod
    async def fetch_pending_trade_orders(self, user_id: str, analysis_id: str) -> list[dict]:
        """Pending trading_actions produced by one analysis."""

    # -------------------------------------------------------------------------
    # Helpers built on the primitives
    # -------------------------------------------------------------------------

    async def get_analysis_for_user(self, analysis_id: str, user_id: str) -> Optional[AnalysisRecord]:
        record = await self.get_analysis(analysis_id)
        if record is None or record.user_id != str(user_id):
            return None
        return record

    async def get_status(self, analysis_id: str) -> Optional[AnalysisStatus]:
        record = await self.get_analysis(analysis_id)
        return record.analysis_status if record else None

    async def update_workflow_step(
        self,
        analysis_id: str,
        phase: Phase,
        agent: AgentId,
        status: StepStatus,
        error_type: Optional[str] = None,
        allowed_from: Optional[tuple[StepStatus, ...]] = None,
    ) -> StepUpdate:
        """
        Update one agent's step inside workflowSteps.

        Returns the StepUpdate with the previous status, so callers can tell
        whether they won a pending -> running transition.
        """
        holder: dict[str, StepUpdate] = {}

        def mutate(full_analysis: dict) -> bool:
            steps = WorkflowSteps.from_list(full_analysis.get('workflowSteps'))
            update = steps.update_agent_status(
                phase, agent, status,
                error_type=error_type,
                allowed_from=allowed_from,
            )
            holder['update'] = update
            if update.applied:
                full_analysis['workflowSteps'] = steps.to_list()
                full_analysis['lastUpdated'] = now_iso()
            return update.applied

        await self.update_full_analysis(analysis_id, mutate)
        update = holder.get('update') or StepUpdate(phase, agent, None, None, False, False)

        if update.applied:
            logger.info(
                f"Step {agent.display_name} ({phase.value}) "
                f"{update.previous.value if update.previous else 'missing'} -> {status.value} "
                f"for analysis {analysis_id}"
            )
        else:
            logger.debug(
                f"Step {agent.display_name} ({phase.value}) not updated to {status.value}: "
                f"current={update.previous.value if update.previous else 'missing'}"
            )
        return update

    async def merge_full_analysis(self, analysis_id: str, patch: dict) -> bool:
        """Shallow-merge keys into full_analysis."""
        def mutate(full_analysis: dict) -> bool:
            full_analysis.update(patch)
            return True

        return await self.update_full_analysis(analysis_id, mutate)


class PostgresAnalysisRepository(AnalysisRepository):
    """
    AnalysisRepository on asyncpg.

    Tables: analysis_history, analysis_messages, api_settings,
    rebalance_requests and trading_actions; ensure_schema() creates them.
    """

    _COLUMNS = (
        "id, user_id, ticker, analysis_status, decision, confidence, agent_insights, "
        "full_analysis, rebalance_request_id, analysis_context, metadata, "
        "created_at, updated_at, completed_at"
    )

    _UPDATABLE = frozenset({
        'rebalance_request_id', 'analysis_context', 'metadata',
        'agent_insights', 'full_analysis',
    })

    def __init__(self, db: 'DatabasePool'):
        self.db = db

    async def ensure_schema(self) -> None:
        """Create the coordinator tables and the update_agent_error function if missing."""
        async with self.db.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS analysis_history (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    user_id TEXT NOT NULL,
                    ticker VARCHAR(20) NOT NULL,
                    analysis_date DATE NOT NULL DEFAULT CURRENT_DATE,
                    decision VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                    confidence DOUBLE PRECISION NOT NULL DEFAULT 0,
                    agent_insights JSONB NOT NULL DEFAULT '{}'::jsonb,
                    analysis_status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    full_analysis JSONB NOT NULL DEFAULT '{}'::jsonb,
                    rebalance_request_id TEXT,
                    analysis_context JSONB,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    completed_at TIMESTAMPTZ
                );

                CREATE INDEX IF NOT EXISTS idx_analysis_user_ticker
                    ON analysis_history (user_id, ticker, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_analysis_rebalance
                    ON analysis_history (rebalance_request_id);
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS analysis_messages (
                    id BIGSERIAL PRIMARY KEY,
                    analysis_id UUID NOT NULL REFERENCES analysis_history (id) ON DELETE CASCADE,
                    agent_name TEXT NOT NULL,
                    message TEXT NOT NULL,
                    message_type VARCHAR(20) NOT NULL DEFAULT 'analysis',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );

                CREATE INDEX IF NOT EXISTS idx_analysis_messages_analysis
                    ON analysis_messages (analysis_id, created_at);
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_settings (
                    user_id TEXT PRIMARY KEY,
                    ai_provider TEXT,
                    ai_api_key TEXT,
                    ai_model TEXT,
                    alpaca_paper_api_key TEXT,
                    alpaca_paper_secret_key TEXT,
                    alpaca_live_api_key TEXT,
                    alpaca_live_secret_key TEXT,
                    alpaca_paper_trading BOOLEAN NOT NULL DEFAULT TRUE,
                    research_debate_rounds INTEGER,
                    auto_execute_trades BOOLEAN NOT NULL DEFAULT FALSE,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS rebalance_requests (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );

                CREATE TABLE IF NOT EXISTS trading_actions (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    user_id TEXT NOT NULL,
                    analysis_id UUID REFERENCES analysis_history (id) ON DELETE SET NULL,
                    ticker VARCHAR(20) NOT NULL,
                    action VARCHAR(10) NOT NULL,
                    dollar_amount DOUBLE PRECISION,
                    shares DOUBLE PRECISION,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );
            """)

            await conn.execute("""
                CREATE OR REPLACE FUNCTION update_agent_error(
                    p_analysis_id UUID,
                    p_agent_key TEXT,
                    p_message TEXT,
                    p_error_type TEXT
                ) RETURNS VOID AS $$
                BEGIN
                    UPDATE analysis_history
                    SET agent_insights = COALESCE(agent_insights, '{}'::jsonb) || jsonb_build_object(
                            p_agent_key || '_error',
                            jsonb_build_object(
                                'message', p_message,
                                'type', p_error_type,
                                'timestamp', to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD"T"HH24:MI:SS.MS"Z"')
                            )
                        ),
                        updated_at = NOW()
                    WHERE id = p_analysis_id;

                    INSERT INTO analysis_messages (analysis_id, agent_name, message, message_type)
                    VALUES (p_analysis_id, p_agent_key, 'ERROR: ' || p_message, 'error');
                END;
                $$ LANGUAGE plpgsql;
            """)

            logger.info("Analysis coordinator tables ready")

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        row = await self.db.fetchrow(
            f"SELECT {self._COLUMNS} FROM analysis_history WHERE id = $1",
            analysis_id,
        )
        return AnalysisRecord.from_row(row) if row else None

    async def find_active_analyses(self, user_id: str, ticker: str) -> list[AnalysisRecord]:
        rows = await self.db.fetch(
            f"""
            SELECT {self._COLUMNS} FROM analysis_history
            WHERE user_id = $1 AND ticker = $2
              AND analysis_status = ANY($3::text[])
            ORDER BY created_at DESC
            """,
            user_id, ticker,
            [AnalysisStatus.PENDING.value, AnalysisStatus.RUNNING.value],
        )
        return [AnalysisRecord.from_row(r) for r in rows]

    async def create_analysis(
        self,
        user_id: str,
        ticker: str,
        full_analysis: dict,
        rebalance_request_id: Optional[str] = None,
        analysis_context: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> AnalysisRecord:
        row = await self.db.fetchrow(
            f"""
            INSERT INTO analysis_history (
                user_id, ticker, analysis_date, decision, confidence,
                agent_insights, analysis_status, full_analysis,
                rebalance_request_id, analysis_context, metadata
            )
            VALUES ($1, $2, $3, $4, 0, '{{}}'::jsonb, $5, $6, $7, $8, COALESCE($9, '{{}}'::jsonb))
            RETURNING {self._COLUMNS}
            """,
            user_id, ticker, date.today(), Decision.PENDING.value,
            AnalysisStatus.PENDING.value, full_analysis,
            rebalance_request_id, analysis_context, metadata,
        )
        record = AnalysisRecord.from_row(row)
        logger.info(f"Created analysis {record.id} for {ticker}")
        return record

    async def update_fields(self, analysis_id: str, **fields: Any) -> None:
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not fields:
            return

        names = list(fields)
        assignments = ", ".join(f"{name} = ${i + 2}" for i, name in enumerate(names))
        await self.db.execute(
            f"UPDATE analysis_history SET {assignments}, updated_at = NOW() WHERE id = $1",
            analysis_id, *[fields[n] for n in names],
        )

    async def update_status(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        allowed_from: Optional[tuple[AnalysisStatus, ...]] = None,
        decision: Optional[str] = None,
        confidence: Optional[float] = None,
        full_analysis_patch: Optional[dict] = None,
        metadata_patch: Optional[dict] = None,
    ) -> bool:
        allowed = [s.value for s in allowed_from] if allowed_from is not None else None
        updated_id = await self.db.fetchval(
            """
            UPDATE analysis_history
            SET analysis_status = $2,
                decision = COALESCE($3, decision),
                confidence = COALESCE($4, confidence),
                full_analysis = COALESCE(full_analysis, '{}'::jsonb) || COALESCE($5::jsonb, '{}'::jsonb),
                metadata = COALESCE(metadata, '{}'::jsonb) || COALESCE($6::jsonb, '{}'::jsonb),
                completed_at = CASE WHEN $2 = 'completed' THEN NOW() ELSE completed_at END,
                updated_at = NOW()
            WHERE id = $1
              AND analysis_status <> 'cancelled'
              AND ($7::text[] IS NULL OR analysis_status = ANY($7::text[]))
            RETURNING id
            """,
            analysis_id, status.value, decision, confidence,
            full_analysis_patch, metadata_patch, allowed,
        )
        applied = updated_id is not None
        if applied:
            logger.info(f"Analysis {analysis_id} status -> {status.value}")
        else:
            logger.warning(
                f"Analysis {analysis_id} status not changed to {status.value} "
                f"(cancelled, missing or precondition {allowed} not met)"
            )
        return applied

    async def update_full_analysis(self, analysis_id: str, mutator: FullAnalysisMutator) -> bool:
        async with self.db.transaction() as conn:
            row = await conn.fetchrow(
                "SELECT full_analysis FROM analysis_history WHERE id = $1 FOR UPDATE",
                analysis_id,
            )
            if row is None:
                logger.warning(f"Analysis {analysis_id} not found for full_analysis update")
                return False

            full_analysis = dict(row['full_analysis'] or {})
            changed = mutator(full_analysis)
            if changed:
                await conn.execute(
                    "UPDATE analysis_history SET full_analysis = $2, updated_at = NOW() WHERE id = $1",
                    analysis_id, full_analysis,
                )
            return changed

    async def merge_agent_insights(self, analysis_id: str, patch: dict) -> None:
        await self.db.execute(
            """
            UPDATE analysis_history
            SET agent_insights = COALESCE(agent_insights, '{}'::jsonb) || $2::jsonb,
                updated_at = NOW()
            WHERE id = $1
            """,
            analysis_id, patch,
        )

    async def remove_agent_insights(self, analysis_id: str, keys: list[str]) -> None:
        if not keys:
            return
        await self.db.execute(
            """
            UPDATE analysis_history
            SET agent_insights = COALESCE(agent_insights, '{}'::jsonb) - $2::text[],
                updated_at = NOW()
            WHERE id = $1
            """,
            analysis_id, list(keys),
        )

    async def record_agent_error(
        self,
        analysis_id: str,
        agent_key: str,
        message: str,
        error_type: str,
    ) -> None:
        try:
            await self.db.fetchval(
                "SELECT update_agent_error($1, $2, $3, $4)",
                analysis_id, agent_key, message, error_type,
            )
        except asyncpg.UndefinedFunctionError as e:
            logger.info(f"update_agent_error unavailable ({e}), using direct update")
            await self.merge_agent_insights(analysis_id, {
                f"{agent_key}_error": {
                    'message': message,
                    'type': error_type,
                    'timestamp': now_iso(),
                }
            })
            await self.append_message(analysis_id, agent_key, f"ERROR: {message}", 'error')

    async def append_message(
        self,
        analysis_id: str,
        agent_name: str,
        message: str,
        message_type: str = 'analysis',
    ) -> None:
        await self.db.execute(
            """
            INSERT INTO analysis_messages (analysis_id, agent_name, message, message_type)
            VALUES ($1, $2, $3, $4)
            """,
            analysis_id, agent_name, message, message_type,
        )

    async def touch(self, analysis_id: str) -> None:
        await self.db.execute(
            "UPDATE analysis_history SET updated_at = NOW() WHERE id = $1",
            analysis_id,
        )

    async def get_rebalance_status(self, rebalance_request_id: str) -> Optional[str]:
        return await self.db.fetchval(
            "SELECT status FROM rebalance_requests WHERE id = $1",
            rebalance_request_id,
        )

    async def fetch_api_settings(self, user_id: str) -> Optional[dict]:
        row = await self.db.fetchrow(
            "SELECT * FROM api_settings WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return None
        # JSON-safe: sent to agents inside apiSettings
        return {
            key: value.isoformat() if isinstance(value, (date, datetime)) else value
            for key, value in dict(row).items()
        }

    async def fetch_pending_trade_orders(self, user_id: str, analysis_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """
            SELECT id, ticker, action, dollar_amount, shares
            FROM trading_actions
            WHERE user_id = $1 AND analysis_id = $2 AND status = 'pending'
            ORDER BY created_at
            """,
            user_id, analysis_id,
        )
        return [dict(r) for r in rows]
