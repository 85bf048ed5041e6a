"""
Context Builder - Cross-cutting context threaded through every invocation.

build_analysis_context() layers fresh portfolio/position state and the user's
preferences over a seed context (usually the one persisted on the record), so
each agent sees the same holdings without querying the broker itself.
persist_analysis_context() writes the result back under
full_analysis.analysisContext without touching sibling keys.
"""

import asyncio
import logging
from typing import Optional, TYPE_CHECKING

import aiohttp

from ..utils.http import HttpClientBase, sanitize_error_message
from ..workflow.models import (
    AnalysisContext,
    AnalysisRecord,
    ApiSettings,
    ContextType,
    PositionContext,
)

if TYPE_CHECKING:
    from ..data.repository import AnalysisRepository
    from ..utils.config import CoordinatorSettings

logger = logging.getLogger(__name__)


PAPER_BROKER_URL = 'https://paper-api.alpaca.markets'
LIVE_BROKER_URL = 'https://api.alpaca.markets'

PREFERENCE_KEYS = ('profit_target', 'stop_loss', 'near_limit_threshold', 'near_position_threshold')


def empty_portfolio() -> dict:
    return {
        'account': {
            'buying_power': 0,
            'cash': 0,
            'portfolio_value': 0,
            'long_market_value': 0,
            'equity': 0,
            'reserved_capital': 0,
        },
        'positions': [],
        'openOrders': [],
        'pendingOrders': [],
        'totalValue': 0,
        'cash': 0,
    }


def _augment_portfolio(portfolio: dict) -> dict:
    data = dict(portfolio)
    data.setdefault('account', empty_portfolio()['account'])
    data.setdefault('positions', [])
    data.setdefault('openOrders', [])
    if not isinstance(data.get('totalValue'), (int, float)):
        data['totalValue'] = data['account'].get('portfolio_value', 0) or 0
    if not isinstance(data.get('cash'), (int, float)):
        data['cash'] = data['account'].get('cash', 0) or 0
    data.setdefault('pendingOrders', data['openOrders'])
    return data


def _has_account_cash(portfolio: Optional[dict]) -> bool:
    if not portfolio or not isinstance(portfolio.get('account'), dict):
        return False
    return isinstance(portfolio['account'].get('cash'), (int, float))


class BrokerPortfolioClient(HttpClientBase):
    """
    Reads account, positions and open orders from the broker REST API.

    Only used when the user has broker keys and the caller did not supply a
    portfolio snapshot.
    """

    def __init__(self, paper_base_url: str = PAPER_BROKER_URL, live_base_url: str = LIVE_BROKER_URL,
                 timeout_seconds: float = 15.0):
        super().__init__(timeout_seconds=timeout_seconds, pool_size=5)
        self.paper_base_url = paper_base_url.rstrip('/')
        self.live_base_url = live_base_url.rstrip('/')

    async def fetch_portfolio(self, api_key: str, secret_key: str, paper: bool = True) -> dict:
        """
        Fetch the portfolio snapshot.

        Raises:
            RuntimeError: If the account or positions request fails
        """
        base_url = self.paper_base_url if paper else self.live_base_url
        headers = {'APCA-API-KEY-ID': api_key, 'APCA-API-SECRET-KEY': secret_key}
        session = await self._get_session()

        try:
            async with session.get(f"{base_url}/v2/account", headers=headers) as response:
                if response.status != 200:
                    body = await response.text()
                    raise RuntimeError(
                        f"Broker account fetch failed: {response.status} {sanitize_error_message(body)}"
                    )
                account = await response.json()

            async with session.get(f"{base_url}/v2/positions", headers=headers) as response:
                if response.status != 200:
                    raise RuntimeError(f"Broker positions fetch failed: {response.status}")
                positions = await response.json()

            async with session.get(f"{base_url}/v2/orders", params={'status': 'open'}, headers=headers) as response:
                if response.status == 200:
                    open_orders = await response.json()
                else:
                    logger.warning(f"Failed to fetch open orders ({response.status}), continuing without them")
                    open_orders = []

        except asyncio.TimeoutError:
            raise RuntimeError("Broker request timed out")
        except aiohttp.ClientError as e:
            raise RuntimeError(f"Broker connection error: {sanitize_error_message(e)}")

        reserved = 0.0
        for order in open_orders:
            if order.get('side') != 'buy':
                continue
            if order.get('notional'):
                reserved += float(order['notional'])
            elif order.get('qty') and order.get('limit_price'):
                reserved += float(order['qty']) * float(order['limit_price'])

        account_data = {
            'buying_power': float(account.get('buying_power') or 0),
            'cash': float(account.get('cash') or 0),
            'portfolio_value': float(account.get('portfolio_value') or 0),
            'long_market_value': float(account.get('long_market_value') or 0),
            'equity': float(account.get('equity') or 0),
            'reserved_capital': reserved,
        }

        return {
            'account': account_data,
            'positions': positions,
            'openOrders': open_orders,
            'pendingOrders': open_orders,
            'totalValue': account_data['portfolio_value'],
            'cash': account_data['cash'],
        }


def _position_for(portfolio: dict, ticker: str) -> PositionContext:
    for position in portfolio.get('positions') or []:
        symbol = str(position.get('symbol') or '')
        if symbol.upper() != ticker.upper():
            continue
        unrealized_plpc = position.get('unrealized_plpc')
        return PositionContext(
            stock_in_holdings=True,
            entry_price=float(position.get('avg_entry_price') or 0),
            current_price=float(position.get('current_price') or 0),
            shares=float(position.get('qty') or 0),
            market_value=float(position.get('market_value') or 0),
            unrealized_pl=float(position.get('unrealized_pl') or 0),
            unrealized_pl_percent=float(unrealized_plpc) * 100 if unrealized_plpc is not None else 0.0,
        )
    return PositionContext(stock_in_holdings=False)


async def build_analysis_context(
    user_id: str,
    ticker: str,
    api_settings: ApiSettings,
    seed_context: Optional[AnalysisContext],
    settings: 'CoordinatorSettings',
    broker_client: Optional[BrokerPortfolioClient] = None,
) -> AnalysisContext:
    """
    Merge a seed context with fresh portfolio state and user preferences.

    Preferences and target allocations come from the already resolved
    api_settings; the broker is only queried when keys exist and the seed has
    no usable snapshot. Broker failures fall back to an empty portfolio.
    """
    context = seed_context.merged_with(None) if seed_context else AnalysisContext()
    portfolio = context.portfolio_data

    credentials = api_settings.broker_credentials()
    if credentials and broker_client is not None and not _has_account_cash(portfolio):
        api_key, secret_key, paper = credentials
        try:
            portfolio = await broker_client.fetch_portfolio(api_key, secret_key, paper=paper)
            logger.info(f"Fetched broker portfolio for {ticker} (user {user_id})")
        except RuntimeError as e:
            logger.error(f"Failed to refresh broker portfolio for {ticker}: {e}")
            portfolio = empty_portfolio()

    portfolio = _augment_portfolio(portfolio or empty_portfolio())

    preferences = dict(settings.default_preferences)
    for key in PREFERENCE_KEYS:
        value = api_settings.extra.get(key)
        if value is not None:
            preferences[key] = value

    allocations = dict(settings.default_target_allocations)
    if api_settings.extra.get('target_cash_allocation') is not None:
        allocations['cash'] = api_settings.extra['target_cash_allocation']
    if api_settings.extra.get('target_stock_allocation') is not None:
        allocations['stocks'] = api_settings.extra['target_stock_allocation']

    context.portfolio_data = portfolio
    context.preferences = preferences
    context.target_allocations = allocations
    context.position = _position_for(portfolio, ticker)
    if context.type is ContextType.REBALANCE and not context.rebalance_request_id:
        logger.warning(f"Rebalance context for {ticker} has no rebalanceRequestId")

    return context


async def persist_analysis_context(
    repository: 'AnalysisRepository',
    analysis_id: str,
    context: AnalysisContext,
) -> None:
    """Store the context under full_analysis.analysisContext."""
    await repository.merge_full_analysis(analysis_id, {'analysisContext': context.to_dict()})
    logger.debug(f"Persisted analysis context for {analysis_id}")


def reconstruct_context(stored: Optional[AnalysisContext], incoming: Optional[AnalysisContext]) -> Optional[AnalysisContext]:
    """Stored context with the caller's fields layered on top."""
    if stored is None:
        return incoming
    return stored.merged_with(incoming)


def resolve_context(record: AnalysisRecord, incoming: Optional[AnalysisContext] = None) -> AnalysisContext:
    """
    Context for the next invocation of a run.

    The persisted context is the base; a linked rebalance_request_id on the
    record always wins over an individual type carried by the caller.
    """
    context = reconstruct_context(record.stored_context, incoming) or AnalysisContext()
    if record.rebalance_request_id:
        context.type = ContextType.REBALANCE
        context.rebalance_request_id = context.rebalance_request_id or record.rebalance_request_id
    return context
