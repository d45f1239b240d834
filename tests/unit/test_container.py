from dependency_injector import providers

from assetbook.config import Settings
from assetbook.container import Container
from assetbook.domain.enums import ReturnOfCapitalPolicy
from assetbook.service import PortfolioService


class TestSettings:
    def test_database_url(self):
        s = Settings(db_host="db", db_port=5433, db_user="u", db_password="p", db_name="books")
        assert s.database_url == "postgresql+asyncpg://u:p@db:5433/books"

    def test_defaults(self):
        s = Settings()
        assert s.rate_ttl_seconds == 900
        assert s.wallet_cache_ttl_seconds == 300
        assert s.return_of_capital_policy == ReturnOfCapitalPolicy.AGGREGATE_ONLY

    def test_policy_from_env(self, monkeypatch):
        monkeypatch.setenv("RETURN_OF_CAPITAL_POLICY", "PRO_RATA_LOTS")
        assert Settings().return_of_capital_policy == ReturnOfCapitalPolicy.PRO_RATA_LOTS


class TestContainer:
    async def test_service_wired_against_test_database(self, session_factory):
        container = Container()
        container.session_factory.override(providers.Object(session_factory))

        service = container.portfolio_service()
        wallet = await service.create_wallet("Main", "USD")
        view = await service.get_valuation(wallet.id)

        assert isinstance(service, PortfolioService)
        assert container.portfolio_service() is service
        assert view.valuation.total_value == 0
        container.session_factory.reset_override()
