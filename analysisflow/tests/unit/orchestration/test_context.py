"""
Unit tests for the context builder.

Uses aioresponses to mock the broker REST API.
Tests cover:
- BrokerPortfolioClient snapshot assembly and error handling
- build_analysis_context() merging of seed, portfolio and preferences
- resolve_context() rebalance linkage
"""

import pytest
from aioresponses import aioresponses

from analysisflow.src.orchestration.context import (
    BrokerPortfolioClient,
    build_analysis_context,
    empty_portfolio,
    persist_analysis_context,
    reconstruct_context,
    resolve_context,
)
from analysisflow.src.workflow.models import AnalysisContext, ApiSettings, ContextType


PAPER = 'https://paper-api.alpaca.markets'


def _mock_broker(mocked, orders_status=200):
    mocked.get(f"{PAPER}/v2/account", payload={
        'buying_power': '2000', 'cash': '1000.5', 'portfolio_value': '5000',
        'long_market_value': '4000', 'equity': '5000',
    })
    mocked.get(f"{PAPER}/v2/positions", payload=[{
        'symbol': 'AAPL', 'qty': '10', 'avg_entry_price': '150', 'current_price': '180',
        'market_value': '1800', 'unrealized_pl': '300', 'unrealized_plpc': '0.2',
    }])
    mocked.get(
        f"{PAPER}/v2/orders?status=open",
        status=orders_status,
        payload=[
            {'side': 'buy', 'notional': '100'},
            {'side': 'buy', 'qty': '2', 'limit_price': '50'},
            {'side': 'sell', 'notional': '999'},
        ],
    )


# =============================================================================
# Broker client
# =============================================================================

class TestBrokerPortfolioClient:
    """Tests for BrokerPortfolioClient with mocked HTTP responses."""

    @pytest.fixture
    async def client(self):
        client = BrokerPortfolioClient()
        yield client
        await client.close()

    @pytest.mark.asyncio
    async def test_fetch_portfolio(self, client):
        with aioresponses() as mocked:
            _mock_broker(mocked)

            portfolio = await client.fetch_portfolio('key', 'secret', paper=True)

        assert portfolio['account']['cash'] == 1000.5
        assert portfolio['account']['reserved_capital'] == 200.0
        assert portfolio['totalValue'] == 5000.0
        assert portfolio['positions'][0]['symbol'] == 'AAPL'
        assert len(portfolio['openOrders']) == 3

    @pytest.mark.asyncio
    async def test_open_orders_failure_tolerated(self, client):
        with aioresponses() as mocked:
            _mock_broker(mocked, orders_status=500)

            portfolio = await client.fetch_portfolio('key', 'secret')

        assert portfolio['openOrders'] == []
        assert portfolio['account']['reserved_capital'] == 0

    @pytest.mark.asyncio
    async def test_account_failure_raises(self, client):
        with aioresponses() as mocked:
            mocked.get(f"{PAPER}/v2/account", status=401, body='unauthorized')

            with pytest.raises(RuntimeError, match="Broker account fetch failed: 401"):
                await client.fetch_portfolio('key', 'secret')


# =============================================================================
# build_analysis_context
# =============================================================================

class FakeBroker:
    def __init__(self, portfolio=None, error=None):
        self.portfolio = portfolio
        self.error = error
        self.calls = []

    async def fetch_portfolio(self, api_key, secret_key, paper=True):
        self.calls.append((api_key, secret_key, paper))
        if self.error:
            raise self.error
        return self.portfolio


BROKER_SETTINGS = ApiSettings(alpaca_paper_api_key='pk', alpaca_paper_secret_key='ps')


class TestBuildAnalysisContext:
    """Tests for build_analysis_context()."""

    @pytest.mark.asyncio
    async def test_defaults_without_broker(self, settings, api_settings):
        context = await build_analysis_context('u1', 'AAPL', api_settings, None, settings)

        assert context.type is ContextType.INDIVIDUAL
        assert context.portfolio_data == empty_portfolio()
        assert context.preferences == settings.default_preferences
        assert context.target_allocations == settings.default_target_allocations
        assert not context.position.stock_in_holdings

    @pytest.mark.asyncio
    async def test_user_preferences_override(self, settings):
        api_settings = ApiSettings.from_dict({'profit_target': 40, 'target_cash_allocation': 35})

        context = await build_analysis_context('u1', 'AAPL', api_settings, None, settings)

        assert context.preferences['profit_target'] == 40
        assert context.target_allocations['cash'] == 35

    @pytest.mark.asyncio
    async def test_fetches_portfolio_and_position(self, settings):
        broker = FakeBroker(portfolio={
            'account': {'cash': 100.0, 'portfolio_value': 1000.0},
            'positions': [{
                'symbol': 'aapl', 'qty': '5', 'avg_entry_price': '10', 'current_price': '12',
                'market_value': '60', 'unrealized_pl': '10', 'unrealized_plpc': '0.2',
            }],
            'openOrders': [],
        })

        context = await build_analysis_context('u1', 'AAPL', BROKER_SETTINGS, None, settings, broker)

        assert broker.calls == [('pk', 'ps', True)]
        assert context.portfolio_data['totalValue'] == 1000.0
        assert context.portfolio_data['cash'] == 100.0
        assert context.position.stock_in_holdings
        assert context.position.shares == 5
        assert context.position.unrealized_pl_percent == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_seed_snapshot_skips_broker(self, settings):
        broker = FakeBroker(portfolio={})
        seed = AnalysisContext(portfolio_data={'account': {'cash': 50}, 'positions': []})

        context = await build_analysis_context('u1', 'AAPL', BROKER_SETTINGS, seed, settings, broker)

        assert broker.calls == []
        assert context.portfolio_data['cash'] == 50

    @pytest.mark.asyncio
    async def test_broker_failure_falls_back(self, settings):
        broker = FakeBroker(error=RuntimeError("Broker request timed out"))

        context = await build_analysis_context('u1', 'AAPL', BROKER_SETTINGS, None, settings, broker)

        assert context.portfolio_data == empty_portfolio()

    @pytest.mark.asyncio
    async def test_persist(self, repository, make_analysis, settings, api_settings):
        make_analysis(analysis_id='a1', full_analysis={'currentDebateCount': 1})
        context = await build_analysis_context('u1', 'AAPL', api_settings, None, settings)

        await persist_analysis_context(repository, 'a1', context)

        blob = repository.raw('a1').full_analysis
        assert blob['analysisContext']['type'] == 'individual'
        assert blob['currentDebateCount'] == 1


# =============================================================================
# resolve_context
# =============================================================================

class TestResolveContext:
    """Tests for reconstruct_context() and resolve_context()."""

    def test_reconstruct_without_stored(self):
        incoming = AnalysisContext(source='ui')
        assert reconstruct_context(None, incoming) is incoming

    def test_rebalance_link_wins(self, make_analysis):
        record = make_analysis(rebalance_request_id='rb-1')

        context = resolve_context(record, AnalysisContext(type=ContextType.INDIVIDUAL))

        assert context.type is ContextType.REBALANCE
        assert context.rebalance_request_id == 'rb-1'
        assert context.is_rebalance

    def test_stored_context_is_base(self, make_analysis):
        record = make_analysis(full_analysis={'analysisContext': {'type': 'individual', 'source': 'ui'}})

        context = resolve_context(record, AnalysisContext(triggered_by='schedule'))

        assert context.source == 'ui'
        assert context.triggered_by == 'schedule'
