"""
Stock movement ledger.

Product.stock is a running balance of the stock_movements ledger:

    stock == opening stock + sum(entradas) - sum(saidas)

Every write runs in a single transaction that locks the product row before
touching it, so the ledger row and the balance are committed together or not
at all. Outbound movements decrement with a conditional UPDATE
(stock >= quantity) so two concurrent saidas can never both pass the
sufficiency check against the same stale balance.

Policies carried over from the existing system:
- an entrada with unit_value overwrites Product.total_cost (last known cost);
  deleting that entrada does not restore the previous value.
- compensating deletes are always applied, even when they leave stock
  negative. That case is logged as a warning.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Callable, Iterator, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from pricing_api.core.database import WRITE_LOCK
from pricing_api.core.errors import (
    ConflictRetryable,
    InsufficientStock,
    InvalidArgument,
    MovementError,
    NotFound,
    StorageUnavailable,
)
from pricing_api.models.product import Product, QUANTITY_PRECISION, QUANTITY_SCALE, COST_PRECISION, COST_SCALE
from pricing_api.models.stock_movement import StockMovement, ENTRADA, SAIDA


logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
# numeric_value_out_of_range
_OUT_OF_RANGE_SQLSTATE = "22003"

_KIND_ALIASES = {
    ENTRADA: ENTRADA,
    "inbound": ENTRADA,
    SAIDA: SAIDA,
    "saída": SAIDA,
    "outbound": SAIDA,
}

QUANTITY_STEP = Decimal(1).scaleb(-QUANTITY_SCALE)
COST_STEP = Decimal(1).scaleb(-COST_SCALE)


def _to_decimal(value, field: str, precision: int, scale: int) -> Decimal:
    if value is None or value == "" or isinstance(value, bool):
        raise InvalidArgument(f"{field} is required")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidArgument(f"{field} must be a number")
    if not number.is_finite():
        raise InvalidArgument(f"{field} must be a finite number")
    if abs(number) >= Decimal(10) ** (precision - scale):
        raise InvalidArgument(f"{field} is too large")
    if number != number.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_DOWN):
        raise InvalidArgument(f"{field} accepts at most {scale} decimal places")
    return number


def parse_quantity(value) -> Decimal:
    quantity = _to_decimal(value, "quantity", QUANTITY_PRECISION, QUANTITY_SCALE)
    if quantity <= 0:
        raise InvalidArgument("quantity must be greater than zero")
    return quantity.quantize(QUANTITY_STEP)


def parse_unit_value(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    unit_value = _to_decimal(value, "unit_value", COST_PRECISION, COST_SCALE)
    if unit_value < 0:
        raise InvalidArgument("unit_value cannot be negative")
    return unit_value.quantize(COST_STEP)


def parse_occurred_at(value, today: date) -> date:
    """
    Normalize a movement date to a calendar day.

    Accepts date/datetime objects, 'YYYY-MM-DD' strings and full ISO
    timestamps (reduced to their day). Anything else is rejected.
    """
    if value is None or value == "":
        return today
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidArgument("occurred_at must be a date in YYYY-MM-DD format")
    text = value.strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise InvalidArgument(f"occurred_at '{value}' is not a valid YYYY-MM-DD date")


def parse_kind(value) -> Optional[str]:
    if value is None or value == "":
        return None
    kind = _KIND_ALIASES.get(str(value).strip().lower())
    if kind is None:
        raise InvalidArgument("kind must be 'entrada' or 'saida'")
    return kind


def _as_quantity(value) -> Decimal:
    if value is None:
        return Decimal(0).quantize(QUANTITY_STEP)
    return Decimal(str(value)).quantize(QUANTITY_STEP)


def _shifted_stock(delta: Decimal):
    # Stored balances stay on the quantity scale even where NUMERIC is a binary float
    return func.round(Product.stock + delta, QUANTITY_SCALE)


def _storage_error(exc: DBAPIError) -> MovementError:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return ConflictRetryable()
    if isinstance(exc, OperationalError) and "locked" in str(orig).lower():
        return ConflictRetryable()
    if sqlstate == _OUT_OF_RANGE_SQLSTATE:
        return InvalidArgument("Resulting stock is out of range")
    if isinstance(exc, IntegrityError):
        return InvalidArgument("Movement violates a storage constraint")
    return StorageUnavailable(f"Storage error: {type(orig or exc).__name__}")


@dataclass(frozen=True)
class StockBalance:
    product_id: int
    stock: Decimal
    total_cost: Optional[Decimal]
    inbound_total: Decimal
    outbound_total: Decimal

    @property
    def ledger_net(self) -> Decimal:
        return self.inbound_total - self.outbound_total


class MovementHistory:
    """
    Ledger rows newest first (occurred_at desc, insertion order on ties).

    Iterating runs the query again, so the same object can be walked more
    than once. Rows are streamed in batches and come back detached.

    Each iteration holds a session (and its connection) until it is exhausted
    or closed. Callers that stop early should close the iterator, e.g. with
    contextlib.closing, instead of leaving it to garbage collection.
    """

    def __init__(self, session_factory: sessionmaker, statement, batch_size: int = 500):
        self._session_factory = session_factory
        self._statement = statement
        self._batch_size = batch_size

    def __iter__(self) -> Iterator[StockMovement]:
        statement = self._statement.execution_options(yield_per=self._batch_size)
        with self._session_factory() as db:
            for movement in db.scalars(statement):
                yield movement


class MovementService:
    def __init__(
        self,
        session_factory: sessionmaker,
        max_retries: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], date] = date.today,
    ):
        self._session_factory = session_factory
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._clock = clock

    def _run(self, operation: str, work: Callable[[Session], object], write: bool = True):
        """Run work in one transaction, retrying lock conflicts a bounded number of times."""
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._session_factory() as db:
                    with db.begin():
                        db.connection(execution_options={WRITE_LOCK: write})
                        return work(db)
            except MovementError:
                raise
            except DBAPIError as exc:
                error = _storage_error(exc)
                if isinstance(error, ConflictRetryable) and attempt <= self.max_retries:
                    logger.warning("%s conflicted (attempt %s/%s), retrying", operation, attempt, self.max_retries + 1)
                    time.sleep(self.retry_backoff * attempt)
                    continue
                if isinstance(error, ConflictRetryable):
                    logger.warning("%s gave up after %s attempts", operation, attempt)
                raise error from exc

    @staticmethod
    def _lock_product(db: Session, product_id: int, tenant_id: Optional[int]) -> Optional[Product]:
        query = select(Product).where(Product.id == product_id)
        if tenant_id is not None:
            query = query.where(Product.tenant_id == tenant_id)
        return db.execute(query.with_for_update()).scalar_one_or_none()

    @staticmethod
    def _current_stock(db: Session, product_id: int) -> Decimal:
        return _as_quantity(db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one())

    def record_inbound(
        self,
        product_id: int,
        quantity,
        lot: Optional[str] = None,
        unit_value=None,
        occurred_at=None,
        recorded_by: Optional[int] = None,
        tenant_id: Optional[int] = None,
    ) -> StockMovement:
        qty = parse_quantity(quantity)
        unit = parse_unit_value(unit_value)
        day = parse_occurred_at(occurred_at, self._clock())
        lot = lot.strip() if isinstance(lot, str) and lot.strip() else None

        def work(db: Session):
            product = self._lock_product(db, product_id, tenant_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")

            movement = StockMovement(
                tenant_id=product.tenant_id,
                product_id=product.id,
                recorded_by=recorded_by,
                kind=ENTRADA,
                quantity=qty,
                lot=lot,
                unit_value=unit,
                occurred_at=day,
            )
            db.add(movement)

            values = {"stock": _shifted_stock(qty)}
            if unit is not None:
                values["total_cost"] = unit
            db.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.flush()
            return movement, self._current_stock(db, product.id)

        movement, stock = self._run("record_inbound", work)
        logger.info("entrada %s product=%s qty=%s stock=%s", movement.id, movement.product_id, qty, stock)
        return movement

    def record_outbound(
        self,
        product_id: int,
        quantity,
        recorded_by: Optional[int] = None,
        tenant_id: Optional[int] = None,
    ) -> StockMovement:
        qty = parse_quantity(quantity)
        day = self._clock()

        def work(db: Session):
            product = self._lock_product(db, product_id, tenant_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")

            result = db.execute(
                update(Product)
                .where(Product.id == product.id, Product.stock >= qty)
                .values(stock=_shifted_stock(-qty))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientStock(product.id, qty, self._current_stock(db, product.id))

            movement = StockMovement(
                tenant_id=product.tenant_id,
                product_id=product.id,
                recorded_by=recorded_by,
                kind=SAIDA,
                quantity=qty,
                occurred_at=day,
            )
            db.add(movement)
            db.flush()
            return movement, self._current_stock(db, product.id)

        movement, stock = self._run("record_outbound", work)
        logger.info("saida %s product=%s qty=%s stock=%s", movement.id, movement.product_id, qty, stock)
        return movement

    def delete_inbound(self, movement_id: int, tenant_id: Optional[int] = None) -> None:
        self._delete(movement_id, ENTRADA, tenant_id)

    def delete_outbound(self, movement_id: int, tenant_id: Optional[int] = None) -> None:
        self._delete(movement_id, SAIDA, tenant_id)

    def _delete(self, movement_id: int, kind: str, tenant_id: Optional[int]) -> None:
        """Remove a ledger row and apply the inverse of its effect on stock."""

        def work(db: Session):
            query = select(StockMovement).where(StockMovement.id == movement_id, StockMovement.kind == kind)
            if tenant_id is not None:
                query = query.where(StockMovement.tenant_id == tenant_id)
            movement = db.execute(query.with_for_update()).scalar_one_or_none()
            if movement is None:
                raise NotFound(f"{kind.capitalize()} {movement_id} not found")

            delta = -movement.quantity if kind == ENTRADA else movement.quantity
            stock = None
            product = self._lock_product(db, movement.product_id, None)
            if product is None:
                logger.warning("%s %s references missing product %s, removing without adjustment", kind, movement_id, movement.product_id)
            else:
                db.execute(
                    update(Product)
                    .where(Product.id == product.id)
                    .values(stock=_shifted_stock(delta))
                    .execution_options(synchronize_session=False)
                )
                stock = self._current_stock(db, product.id)

            db.delete(movement)
            db.flush()
            return movement.product_id, stock

        product_id, stock = self._run(f"delete_{kind}", work)
        if stock is not None and stock < 0:
            logger.warning("reversal of %s %s left product %s with negative stock %s", kind, movement_id, product_id, stock)
        logger.info("%s %s deleted product=%s stock=%s", kind, movement_id, product_id, stock)

    def list_movements(
        self,
        product_id: Optional[int] = None,
        kind: Optional[str] = None,
        tenant_id: Optional[int] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> MovementHistory:
        kind = parse_kind(kind)
        if skip < 0 or (limit is not None and limit < 0):
            raise InvalidArgument("skip and limit cannot be negative")

        statement = select(StockMovement)
        if product_id is not None:
            statement = statement.where(StockMovement.product_id == product_id)
        if kind is not None:
            statement = statement.where(StockMovement.kind == kind)
        if tenant_id is not None:
            statement = statement.where(StockMovement.tenant_id == tenant_id)
        statement = statement.order_by(
            StockMovement.occurred_at.desc().nulls_last(),
            StockMovement.id.asc(),
        )
        if skip:
            statement = statement.offset(skip)
        if limit is not None:
            statement = statement.limit(limit)
        return MovementHistory(self._session_factory, statement)

    def stock_balance(self, product_id: int, tenant_id: Optional[int] = None) -> StockBalance:
        """Current stock next to the ledger totals it is derived from."""

        def work(db: Session):
            query = select(Product).where(Product.id == product_id)
            if tenant_id is not None:
                query = query.where(Product.tenant_id == tenant_id)
            product = db.execute(query).scalar_one_or_none()
            if product is None:
                raise NotFound(f"Product {product_id} not found")

            inbound_total, outbound_total = db.execute(
                select(
                    func.coalesce(func.sum(case((StockMovement.kind == ENTRADA, StockMovement.quantity), else_=0)), 0),
                    func.coalesce(func.sum(case((StockMovement.kind == SAIDA, StockMovement.quantity), else_=0)), 0),
                ).where(StockMovement.product_id == product.id)
            ).one()
            return StockBalance(
                product_id=product.id,
                stock=_as_quantity(product.stock),
                total_cost=product.total_cost,
                inbound_total=_as_quantity(inbound_total),
                outbound_total=_as_quantity(outbound_total),
            )

        return self._run("stock_balance", work, write=False)
