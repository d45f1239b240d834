from datetime import timedelta

from dependency_injector import containers, providers

from assetbook.config import Settings
from assetbook.db.session import build_engine, build_session_factory
from assetbook.pricing.currency import CurrencyConverter
from assetbook.pricing.rate_cache import RateCache
from assetbook.service import PortfolioService, build_totals_fetcher
from assetbook.valuation.engine import ValuationEngine
from assetbook.valuation.snapshots import SnapshotRecorder
from assetbook.valuation.wallet_cache import WalletValueCache


class Container(containers.DeclarativeContainer):
    settings = providers.Singleton(Settings)

    engine = providers.Singleton(
        build_engine,
        database_url=settings.provided.database_url,
        echo=settings.provided.debug,
    )

    session_factory = providers.Singleton(
        build_session_factory,
        engine=engine,
    )

    # Override with real RateSource / PriceSource implementations
    rate_source = providers.Object(None)
    price_source = providers.Object(None)

    rate_cache = providers.Singleton(
        RateCache,
        ttl_seconds=settings.provided.rate_ttl_seconds,
    )

    converter = providers.Singleton(
        CurrencyConverter,
        cache=rate_cache,
        rate_source=rate_source,
        max_attempts=settings.provided.rate_source_max_attempts,
    )

    valuation_engine = providers.Singleton(
        ValuationEngine,
        converter=converter,
        stale_after_seconds=settings.provided.price_stale_after_seconds,
    )

    wallet_cache = providers.Singleton(
        WalletValueCache,
        fetch=providers.Singleton(build_totals_fetcher, session_factory=session_factory, engine=valuation_engine),
        converter=converter,
        ttl_seconds=settings.provided.wallet_cache_ttl_seconds,
    )

    snapshot_recorder = providers.Singleton(
        SnapshotRecorder,
        session_factory=session_factory,
        cache=wallet_cache,
        dedup_seconds=settings.provided.snapshot_dedup_seconds,
        default_points=settings.provided.default_history_points,
    )

    portfolio_service = providers.Singleton(
        PortfolioService,
        session_factory=session_factory,
        converter=converter,
        engine=valuation_engine,
        cache=wallet_cache,
        recorder=snapshot_recorder,
        price_source=price_source,
        return_of_capital_policy=settings.provided.return_of_capital_policy,
        snapshot_retention=providers.Callable(timedelta, days=settings.provided.snapshot_retention_days),
        default_timeout=settings.provided.command_timeout_seconds,
    )
