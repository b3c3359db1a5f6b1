import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import StoreWriteError
from ..models.asset import Asset, Currency
from ..models.historical_price import HistoricalPrice
from ..models.scheduler_log import SchedulerLog
from ..models.simulation import Simulation
from ..models.transaction import Transaction
from ..models.user import User
from ..schemas.scheduler import RunLog, RunStatus

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def to_price(value) -> Decimal:
    """Fixed 2-place decimal; missing provider values become 0."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class AssetRecord:
    ticker: str
    name: str
    currency: str
    market: Optional[str] = None


@dataclass
class PriceBarRecord:
    ticker: str
    date: date
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "ticker": self.ticker,
            "date": self.date.isoformat(),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": self.volume,
        }


@dataclass
class ActivityCounts:
    users: int = 0
    transactions: int = 0
    simulations: int = 0

    @property
    def any(self) -> bool:
        return self.users > 0 or self.transactions > 0 or self.simulations > 0


class Store(Protocol):
    """Persistence contract consumed by the ingestion engine, heuristic and scheduler."""

    async def list_assets(
        self, currency: Optional[Currency] = None, tickers: Optional[list[str]] = None
    ) -> list[AssetRecord]: ...

    async def get_asset(self, ticker: str) -> Optional[AssetRecord]: ...

    async def upsert_bars(self, bars: list[PriceBarRecord]) -> int: ...

    async def insert_bars(self, bars: list[PriceBarRecord]) -> int: ...

    async def delete_bars(self, ticker: str) -> int: ...

    async def count_bars(self, ticker: str) -> int: ...

    async def list_bars(self, ticker: str, since: Optional[date] = None) -> list[PriceBarRecord]: ...

    async def latest_bar(self, ticker: str) -> Optional[PriceBarRecord]: ...

    async def count_recent_activity(
        self, users_since: datetime, transactions_since: datetime, simulations_since: datetime
    ) -> ActivityCounts: ...

    async def create_run_log(self, log: RunLog) -> RunLog: ...

    async def update_run_log(self, log: RunLog) -> None: ...

    async def list_run_logs(
        self, limit: Optional[int] = 20, since: Optional[datetime] = None, status: Optional[RunStatus] = None
    ) -> list[RunLog]: ...

    async def count_run_logs(
        self, since: Optional[datetime] = None, status: Optional[RunStatus] = None
    ) -> int: ...


def _bar_row(bar: PriceBarRecord) -> dict:
    return {
        "ticker": bar.ticker,
        "date": bar.date,
        "open": bar.open,
        "high": bar.high,
        "low": bar.low,
        "close": bar.close,
        "volume": bar.volume,
        "updated_at": datetime.utcnow(),
    }


def _to_bar(row: HistoricalPrice) -> PriceBarRecord:
    return PriceBarRecord(
        ticker=row.ticker,
        date=row.date,
        open=to_price(row.open),
        high=to_price(row.high),
        low=to_price(row.low),
        close=to_price(row.close),
        volume=row.volume,
    )


def _to_run_log(row: SchedulerLog) -> RunLog:
    return RunLog(
        id=row.id,
        timestamp=row.timestamp,
        run_type=row.type,
        trigger=row.trigger,
        status=row.status,
        duration_ms=row.duration,
        records_updated=row.records_updated,
        errors=row.errors,
        detail=json.loads(row.details),
    )


class SqlStore:
    """SQLAlchemy-backed store. Each call uses its own session on an executor thread."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._in_session, fn, args)

    def _in_session(self, fn, args):
        db: Session = self.session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    # --- Assets ---

    async def list_assets(
        self, currency: Optional[Currency] = None, tickers: Optional[list[str]] = None
    ) -> list[AssetRecord]:
        return await self._run(self._list_assets, currency, tickers)

    def _list_assets(self, db: Session, currency, tickers) -> list[AssetRecord]:
        query = db.query(Asset)
        if currency:
            query = query.filter(Asset.currency == Currency(currency).value)
        if tickers is not None:
            query = query.filter(Asset.ticker.in_(tickers))
        rows = query.order_by(Asset.currency, Asset.ticker).all()
        return [AssetRecord(ticker=a.ticker, name=a.name, currency=a.currency, market=a.market) for a in rows]

    async def get_asset(self, ticker: str) -> Optional[AssetRecord]:
        assets = await self._run(self._list_assets, None, [ticker])
        return assets[0] if assets else None

    # --- Price bars ---

    def _upsert_statement(self, db: Session, rows: list[dict]):
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(HistoricalPrice).values(rows)
        elif dialect == "sqlite":
            stmt = sqlite.insert(HistoricalPrice).values(rows)
        else:
            raise StoreWriteError(f"Upsert not supported for dialect '{dialect}'")
        return stmt.on_conflict_do_update(
            index_elements=["ticker", "date"],
            set_={
                "open": stmt.excluded.open,
                "high": stmt.excluded.high,
                "low": stmt.excluded.low,
                "close": stmt.excluded.close,
                "volume": stmt.excluded.volume,
                "updated_at": stmt.excluded.updated_at,
            },
        )

    async def upsert_bars(self, bars: list[PriceBarRecord]) -> int:
        if not bars:
            return 0
        return await self._run(self._upsert_bars, bars)

    def _upsert_bars(self, db: Session, bars: list[PriceBarRecord]) -> int:
        # Last write wins for duplicate keys inside one batch
        rows = list({(b.ticker, b.date): _bar_row(b) for b in bars}.values())
        try:
            db.execute(self._upsert_statement(db, rows))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(f"Upsert of {len(rows)} bars failed: {e}") from e
        return len(bars)

    async def insert_bars(self, bars: list[PriceBarRecord]) -> int:
        if not bars:
            return 0
        return await self._run(self._insert_bars, bars)

    def _insert_bars(self, db: Session, bars: list[PriceBarRecord]) -> int:
        try:
            db.execute(HistoricalPrice.__table__.insert(), [_bar_row(b) for b in bars])
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(f"Bulk insert of {len(bars)} bars failed: {e}") from e
        return len(bars)

    async def delete_bars(self, ticker: str) -> int:
        return await self._run(self._delete_bars, ticker)

    def _delete_bars(self, db: Session, ticker: str) -> int:
        try:
            result = db.execute(delete(HistoricalPrice).where(HistoricalPrice.ticker == ticker))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(f"Delete of {ticker} bars failed: {e}") from e
        return result.rowcount or 0

    async def count_bars(self, ticker: str) -> int:
        return await self._run(self._count_bars, ticker)

    def _count_bars(self, db: Session, ticker: str) -> int:
        return db.query(func.count(HistoricalPrice.id)).filter(HistoricalPrice.ticker == ticker).scalar() or 0

    async def list_bars(self, ticker: str, since: Optional[date] = None) -> list[PriceBarRecord]:
        return await self._run(self._list_bars, ticker, since)

    def _list_bars(self, db: Session, ticker: str, since: Optional[date]) -> list[PriceBarRecord]:
        query = db.query(HistoricalPrice).filter(HistoricalPrice.ticker == ticker)
        if since:
            query = query.filter(HistoricalPrice.date >= since)
        return [_to_bar(row) for row in query.order_by(HistoricalPrice.date.desc()).all()]

    async def latest_bar(self, ticker: str) -> Optional[PriceBarRecord]:
        return await self._run(self._latest_bar, ticker)

    def _latest_bar(self, db: Session, ticker: str) -> Optional[PriceBarRecord]:
        row = (
            db.query(HistoricalPrice)
            .filter(HistoricalPrice.ticker == ticker)
            .order_by(HistoricalPrice.date.desc())
            .first()
        )
        return _to_bar(row) if row else None

    # --- Activity ---

    async def count_recent_activity(
        self, users_since: datetime, transactions_since: datetime, simulations_since: datetime
    ) -> ActivityCounts:
        return await self._run(self._count_recent_activity, users_since, transactions_since, simulations_since)

    def _count_recent_activity(self, db: Session, users_since, transactions_since, simulations_since) -> ActivityCounts:
        users = db.scalar(select(func.count(User.id)).where(User.updated_at >= users_since))
        transactions = db.scalar(
            select(func.count(Transaction.id)).where(Transaction.created_at >= transactions_since)
        )
        simulations = db.scalar(
            select(func.count(Simulation.id)).where(
                Simulation.updated_at >= simulations_since,
                Simulation.is_active.is_(True),
            )
        )
        return ActivityCounts(users=users or 0, transactions=transactions or 0, simulations=simulations or 0)

    # --- Run logs ---

    async def create_run_log(self, log: RunLog) -> RunLog:
        return await self._run(self._create_run_log, log)

    def _create_run_log(self, db: Session, log: RunLog) -> RunLog:
        row = SchedulerLog(
            timestamp=log.timestamp,
            type=log.run_type.value,
            trigger=log.trigger.value,
            status=log.status.value,
            duration=log.duration_ms,
            records_updated=log.records_updated,
            errors=log.errors,
            details=log.detail.model_dump_json(),
        )
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(f"Creating run log failed: {e}") from e
        log.id = row.id
        return log

    async def update_run_log(self, log: RunLog) -> None:
        await self._run(self._update_run_log, log)

    def _update_run_log(self, db: Session, log: RunLog) -> None:
        row = db.get(SchedulerLog, log.id)
        if row is None:
            raise StoreWriteError(f"Run log {log.id} not found")
        row.status = log.status.value
        row.duration = log.duration_ms
        row.records_updated = log.records_updated
        row.errors = log.errors
        row.details = log.detail.model_dump_json()
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreWriteError(f"Updating run log {log.id} failed: {e}") from e

    def _run_log_query(self, db: Session, since: Optional[datetime], status: Optional[RunStatus]):
        query = db.query(SchedulerLog)
        if since:
            query = query.filter(SchedulerLog.timestamp >= since)
        if status:
            query = query.filter(SchedulerLog.status == RunStatus(status).value)
        return query

    async def list_run_logs(
        self, limit: Optional[int] = 20, since: Optional[datetime] = None, status: Optional[RunStatus] = None
    ) -> list[RunLog]:
        return await self._run(self._list_run_logs, limit, since, status)

    def _list_run_logs(self, db: Session, limit, since, status) -> list[RunLog]:
        query = self._run_log_query(db, since, status).order_by(SchedulerLog.timestamp.desc(), SchedulerLog.id.desc())
        if limit:
            query = query.limit(limit)
        return [_to_run_log(row) for row in query.all()]

    async def count_run_logs(self, since: Optional[datetime] = None, status: Optional[RunStatus] = None) -> int:
        return await self._run(self._count_run_logs, since, status)

    def _count_run_logs(self, db: Session, since, status) -> int:
        return self._run_log_query(db, since, status).count()
