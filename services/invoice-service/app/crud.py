from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from . import models, schemas
from .exceptions import InvalidOperation

# The first allocation in a region increments this seed, yielding 10001
INVOICE_NUMBER_SEED = 10000

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

# === CUSTOMER LOOKUP ===

async def get_customer(db: AsyncSession, customer_id: str) -> Optional[models.Customer]:
    """Get an active (not soft-deleted) customer by ID"""
    result = await db.execute(
        select(models.Customer).where(
            models.Customer.id == customer_id,
            models.Customer.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()

# === INVOICE CRUD OPERATIONS ===

async def create_invoice(db: AsyncSession, **values: Any) -> models.Invoice:
    """Add an invoice row to the current transaction; the caller commits"""
    db_invoice = models.Invoice(**values)
    db.add(db_invoice)
    await db.flush()
    return db_invoice

async def get_invoice(db: AsyncSession, invoice_id: str) -> Optional[models.Invoice]:
    result = await db.execute(select(models.Invoice).where(models.Invoice.id == invoice_id))
    return result.scalar_one_or_none()

def _filter_conditions(filters: schemas.InvoiceFilter) -> List[Any]:
    conditions: List[Any] = []

    if filters.status:
        conditions.append(models.Invoice.status == filters.status.value)

    if filters.customer_id:
        conditions.append(models.Invoice.customer_id == filters.customer_id)

    if filters.region_id:
        conditions.append(models.Invoice.region_id == filters.region_id)

    if filters.start_date:
        conditions.append(models.Invoice.invoice_date >= filters.start_date)

    if filters.end_date:
        conditions.append(models.Invoice.invoice_date <= filters.end_date)

    if filters.min_amount is not None:
        conditions.append(models.Invoice.total >= filters.min_amount)

    if filters.max_amount is not None:
        conditions.append(models.Invoice.total <= filters.max_amount)

    if filters.search_term:
        term = filters.search_term.strip()
        pattern = f"%{term.lower()}%"
        search = [
            func.lower(models.Customer.business_name).like(pattern),
            func.lower(models.Customer.contact_name).like(pattern),
        ]
        if term.isdigit():
            search.append(models.Invoice.invoice_number == int(term))
        conditions.append(or_(*search))

    return conditions

async def get_invoices_filtered(
    db: AsyncSession,
    filters: schemas.InvoiceFilter,
    page: int = 1,
    limit: int = 20,
    ascending: bool = False,
) -> Tuple[List[models.Invoice], int]:
    """Get a page of invoices matching the filter plus the total match count"""
    conditions = _filter_conditions(filters)
    where = and_(*conditions) if conditions else None

    query = select(models.Invoice)
    count_query = select(func.count(models.Invoice.id))
    if filters.search_term:
        query = query.join(models.Customer, models.Customer.id == models.Invoice.customer_id)
        count_query = count_query.join(models.Customer, models.Customer.id == models.Invoice.customer_id)
    if where is not None:
        query = query.where(where)
        count_query = count_query.where(where)

    order = models.Invoice.invoice_date.asc() if ascending else models.Invoice.invoice_date.desc()
    query = query.order_by(order, models.Invoice.invoice_number.desc()).offset((page - 1) * limit).limit(limit)

    result = await db.execute(query)
    total = (await db.execute(count_query)).scalar_one()
    return list(result.scalars().all()), total

async def get_customer_invoices(db: AsyncSession, customer_id: str) -> List[models.Invoice]:
    result = await db.execute(
        select(models.Invoice)
        .where(models.Invoice.customer_id == customer_id)
        .order_by(models.Invoice.invoice_date.desc())
    )
    return list(result.scalars().all())

async def get_invoices_for_stats(
    db: AsyncSession,
    region_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[models.Invoice]:
    filters = schemas.InvoiceFilter(region_id=region_id, start_date=start_date, end_date=end_date)
    result = await db.execute(select(models.Invoice).where(*_filter_conditions(filters)))
    return list(result.scalars().all())

async def update_invoice_fields(db: AsyncSession, invoice: models.Invoice, values: Dict[str, Any]) -> models.Invoice:
    for field, value in values.items():
        setattr(invoice, field, value)
    await db.flush()
    return invoice

async def delete_invoice(db: AsyncSession, invoice: models.Invoice) -> None:
    await db.delete(invoice)
    await db.flush()

async def mark_overdue_invoices(db: AsyncSession, cutoff: datetime) -> int:
    """Move every SENT invoice due before the cutoff to OVERDUE in one statement"""
    result = await db.execute(
        update(models.Invoice)
        .where(
            models.Invoice.status == schemas.InvoiceStatus.SENT.value,
            models.Invoice.due_date < cutoff,
        )
        .values(status=schemas.InvoiceStatus.OVERDUE.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount

async def bulk_update_status(
    db: AsyncSession,
    invoice_ids: Sequence[str],
    status: schemas.InvoiceStatus,
    from_statuses: Iterable[schemas.InvoiceStatus],
) -> int:
    """Set status on the given invoices that are currently in one of from_statuses"""
    result = await db.execute(
        update(models.Invoice)
        .where(
            models.Invoice.id.in_(list(invoice_ids)),
            models.Invoice.status.in_([s.value for s in from_statuses]),
        )
        .values(status=status.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount

# === INVOICE SEQUENCES ===

def _upsert_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise RuntimeError(f"Invoice sequences need INSERT ... ON CONFLICT support, which the {dialect} dialect lacks") from None

async def allocate_invoice_number(db: AsyncSession, region_id: str) -> int:
    """Allocate the next invoice number for a region.

    The row is created if missing (concurrent creators collapse onto one row
    through ON CONFLICT DO NOTHING) and then incremented with a single
    UPDATE ... RETURNING, so the read-increment-write cannot interleave with
    another allocation. The row stays locked until the caller's transaction
    ends.
    """
    insert = _upsert_insert(db)
    await db.execute(
        insert(models.InvoiceSequence)
        .values(region_id=region_id, last_invoice_number=INVOICE_NUMBER_SEED)
        .on_conflict_do_nothing(index_elements=[models.InvoiceSequence.region_id])
    )
    result = await db.execute(
        update(models.InvoiceSequence)
        .where(models.InvoiceSequence.region_id == region_id)
        .values(last_invoice_number=models.InvoiceSequence.last_invoice_number + 1)
        .returning(models.InvoiceSequence.last_invoice_number)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one()

async def get_invoice_sequence(db: AsyncSession, region_id: str) -> Optional[models.InvoiceSequence]:
    result = await db.execute(
        select(models.InvoiceSequence).where(models.InvoiceSequence.region_id == region_id)
    )
    return result.scalar_one_or_none()

async def set_next_invoice_number(db: AsyncSession, region_id: str, next_number: int) -> None:
    """Make the next allocation in the region return next_number.

    The sequence only moves forward: asking for a number at or below one
    already issued raises InvalidOperation and leaves the sequence as is.
    """
    last_issued = next_number - 1
    insert = _upsert_insert(db)
    stmt = insert(models.InvoiceSequence).values(region_id=region_id, last_invoice_number=last_issued)
    await db.execute(
        stmt.on_conflict_do_update(
            index_elements=[models.InvoiceSequence.region_id],
            set_={"last_invoice_number": last_issued},
            where=models.InvoiceSequence.last_invoice_number <= last_issued,
        )
    )
    result = await db.execute(
        select(models.InvoiceSequence.last_invoice_number).where(models.InvoiceSequence.region_id == region_id)
    )
    current = result.scalar_one()
    if current != last_issued:
        raise InvalidOperation(
            f"Invoice numbers for region {region_id} are issued up to {current}; "
            f"the next number must be greater than {current}"
        )
