from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from assetbook.db.session import Base
import assetbook.db.models  # noqa: F401 (registers all models)
from assetbook.domain.models.pricing import RateQuote
from assetbook.exceptions import RateSourceError
from assetbook.pricing.currency import CurrencyConverter
from assetbook.pricing.rate_cache import RateCache
from assetbook.service import PortfolioService, build_totals_fetcher
from assetbook.valuation.engine import ValuationEngine
from assetbook.valuation.snapshots import SnapshotRecorder
from assetbook.valuation.wallet_cache import WalletValueCache

RATE_AS_OF = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def engine(tmp_path):
    # File database: every session sees the same data, like a real server
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'assetbook.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await eng.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
async def session(session_factory) -> AsyncSession:
    async with session_factory() as sess:
        yield sess


@pytest.fixture()
def rates() -> dict[tuple[str, str], str]:
    return {
        ("USD", "VND"): "25000",
        ("VND", "USD"): "0.00004",
        ("EUR", "USD"): "1.1",
    }


@pytest.fixture()
def rate_source(rates) -> MagicMock:
    async def get_rate(source, target):
        key = (source.value, target.value)
        if key not in rates:
            raise RateSourceError(f"no rate for {key}")
        return RateQuote(rate=Decimal(rates[key]), as_of=RATE_AS_OF)

    source = MagicMock()
    source.get_rate = AsyncMock(side_effect=get_rate)
    return source


@pytest.fixture()
def build_service(session_factory, rate_source):
    def _build(source=None, price_source=None, rate_cache=None, **kwargs) -> PortfolioService:
        converter = CurrencyConverter(rate_cache or RateCache(), source or rate_source, max_attempts=1, retry_wait_max=0)
        engine = ValuationEngine(converter)
        cache = WalletValueCache(build_totals_fetcher(session_factory, engine), converter)
        recorder = SnapshotRecorder(session_factory, cache)
        return PortfolioService(
            session_factory, converter, engine, cache, recorder, price_source=price_source, **kwargs
        )

    return _build


@pytest.fixture()
def service(build_service) -> PortfolioService:
    return build_service()
