from typing import Any, Dict, List, Optional, Sequence, Tuple
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, models, schemas
from .core.logging import get_logger
from .exceptions import CustomerNotFound, InvalidOperation, InvoiceNotFound
from .invoice_calculator import InvoiceCalculator
from .reporting_service import InvoiceReportingService
from .settings_service import SettingsService

logger = get_logger("invoices")

Status = schemas.InvoiceStatus

# Allowed explicit status changes; re-setting the current status is always a no-op
STATUS_TRANSITIONS: Dict[Status, frozenset] = {
    Status.DRAFT: frozenset({Status.SENT, Status.PAID, Status.OVERDUE, Status.CANCELLED}),
    Status.SENT: frozenset({Status.PAID, Status.OVERDUE, Status.CANCELLED}),
    Status.OVERDUE: frozenset({Status.PAID}),
    Status.PAID: frozenset(),
    Status.CANCELLED: frozenset(),
}


class InvoiceLifecycleManager:
    """Numbering, creation, edits, status changes and reporting for invoices.

    The session is supplied by the caller, who owns its lifetime. Every
    mutating method commits its own unit of work.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings_service: Optional[SettingsService] = None,
        calculator: Optional[InvoiceCalculator] = None,
    ):
        self.db = db
        self.settings = settings_service or SettingsService(db)
        self.calculator = calculator or InvoiceCalculator()

    # === Numbering ===

    async def allocate_invoice_number(self, region_id: str) -> int:
        """Allocate and commit the next number for the region"""
        number = await crud.allocate_invoice_number(self.db, region_id)
        await self.db.commit()
        logger.info("Allocated invoice number %s for region %s", number, region_id)
        return number

    async def get_display_number(self, invoice: models.Invoice) -> str:
        sequence = await crud.get_invoice_sequence(self.db, invoice.region_id)
        if sequence is None:
            return self.calculator.format_invoice_number(invoice.invoice_number)
        return self.calculator.format_invoice_number(invoice.invoice_number, sequence.prefix, sequence.suffix)

    # === Creation & edits ===

    async def create_invoice(self, invoice_data: schemas.InvoiceCreate, region_id: str) -> models.Invoice:
        customer = await crud.get_customer(self.db, invoice_data.customer_id)
        if customer is None:
            raise CustomerNotFound(invoice_data.customer_id)

        tax_rates = await self.settings.get_tax_rates(region_id)
        payment_terms_days = await self.settings.get_payment_terms_days(region_id)

        invoice_date = invoice_data.invoice_date or datetime.now()
        due_date = invoice_data.due_date or self.calculator.calculate_due_date(invoice_date, payment_terms_days)

        line_items = self.calculator.price_line_items(invoice_data.line_items)
        totals = self.calculator.calculate_invoice_totals(line_items, tax_rates)

        invoice_number = await crud.allocate_invoice_number(self.db, region_id)
        invoice = await crud.create_invoice(
            self.db,
            invoice_number=invoice_number,
            region_id=region_id,
            customer_id=customer.id,
            invoice_date=invoice_date,
            due_date=due_date,
            status=(invoice_data.status or Status.DRAFT).value,
            line_items=self._serialize_line_items(line_items),
            subtotal=totals.subtotal,
            gst_amount=totals.gst_amount,
            pst_amount=totals.pst_amount,
            total=totals.total,
            gst_rate=tax_rates.gst,
            pst_rate=tax_rates.pst,
            payment_terms_days=payment_terms_days,
            notes=invoice_data.notes,
        )
        await self.db.commit()
        await self.db.refresh(invoice)

        logger.info(
            "Created invoice %s in region %s for customer %s, total %s",
            invoice.invoice_number, region_id, customer.id, invoice.total,
        )
        return invoice

    async def update_invoice(self, invoice_id: str, invoice_update: schemas.InvoiceUpdate) -> models.Invoice:
        invoice = await self._get_or_raise(invoice_id)
        changes = invoice_update.model_dump(exclude_unset=True)
        values: Dict[str, Any] = {}

        if changes.get("customer_id"):
            if await crud.get_customer(self.db, changes["customer_id"]) is None:
                raise CustomerNotFound(changes["customer_id"])
            values["customer_id"] = changes["customer_id"]

        for field in ("invoice_date", "due_date"):
            if changes.get(field):
                values[field] = changes[field]

        if "paid_date" in changes:
            values["paid_date"] = changes["paid_date"]

        if changes.get("status"):
            new_status = Status(changes["status"])
            self._check_transition(invoice, new_status)
            values["status"] = new_status.value

        if changes.get("payment_method"):
            values["payment_method"] = schemas.PaymentMethod(changes["payment_method"]).value

        if "notes" in changes:
            values["notes"] = changes["notes"]

        if invoice_update.line_items is not None:
            # Edited line items are priced at today's rates, not the ones captured at creation
            tax_rates = await self.settings.get_tax_rates(invoice.region_id)
            line_items = self.calculator.price_line_items(invoice_update.line_items)
            totals = self.calculator.calculate_invoice_totals(line_items, tax_rates)
            values.update(
                line_items=self._serialize_line_items(line_items),
                subtotal=totals.subtotal,
                gst_amount=totals.gst_amount,
                pst_amount=totals.pst_amount,
                total=totals.total,
                gst_rate=tax_rates.gst,
                pst_rate=tax_rates.pst,
            )

        await crud.update_invoice_fields(self.db, invoice, values)
        await self.db.commit()
        await self.db.refresh(invoice)

        logger.info("Updated invoice %s fields: %s", invoice.invoice_number, sorted(values))
        return invoice

    async def delete_invoice(self, invoice_id: str) -> None:
        invoice = await self._get_or_raise(invoice_id)
        if invoice.status == Status.PAID.value:
            raise InvalidOperation("Cannot delete paid invoices")

        await crud.delete_invoice(self.db, invoice)
        await self.db.commit()
        logger.info("Deleted invoice %s (region %s)", invoice.invoice_number, invoice.region_id)

    # === Status changes ===

    async def mark_as_sent(self, invoice_id: str, email_to: Optional[str] = None) -> models.Invoice:
        """Record that the invoice was sent.

        Re-sending an overdue invoice refreshes the sent timestamp and
        recipient but leaves it OVERDUE.
        """
        invoice = await self._get_or_raise(invoice_id)
        current = Status(invoice.status)
        if current in schemas.TERMINAL_STATUSES:
            raise InvalidOperation(f"Cannot send a {current.value} invoice")

        values: Dict[str, Any] = {"emailed_at": datetime.now(), "emailed_to": email_to}
        if current != Status.OVERDUE:
            values["status"] = Status.SENT.value

        await crud.update_invoice_fields(self.db, invoice, values)
        await self.db.commit()
        await self.db.refresh(invoice)
        logger.info("Invoice %s marked as sent to %s", invoice.invoice_number, email_to or "<no recipient>")
        return invoice

    async def mark_as_paid(
        self,
        invoice_id: str,
        payment_method: Optional[schemas.PaymentMethod],
        paid_date: Optional[datetime] = None,
    ) -> models.Invoice:
        if not payment_method:
            raise InvalidOperation("Payment method is required")

        invoice = await self._get_or_raise(invoice_id)
        self._check_transition(invoice, Status.PAID, allow_same=False)

        await crud.update_invoice_fields(
            self.db,
            invoice,
            {
                "status": Status.PAID.value,
                "payment_method": schemas.PaymentMethod(payment_method).value,
                "paid_date": paid_date or datetime.now(),
            },
        )
        await self.db.commit()
        await self.db.refresh(invoice)
        logger.info("Invoice %s paid by %s", invoice.invoice_number, invoice.payment_method)
        return invoice

    async def sweep_overdue(self, as_of: Optional[datetime] = None) -> int:
        """Mark SENT invoices due before local midnight as OVERDUE; returns the count"""
        as_of = as_of or datetime.now()
        start_of_day = as_of.replace(hour=0, minute=0, second=0, microsecond=0)

        count = await crud.mark_overdue_invoices(self.db, start_of_day)
        await self.db.commit()
        logger.info("Overdue sweep as of %s updated %d invoices", start_of_day.date(), count)
        return count

    async def bulk_update_status(self, invoice_ids: Sequence[str], status: Status) -> int:
        """Apply status to each listed invoice whose current status allows the move"""
        from_statuses = [source for source, targets in STATUS_TRANSITIONS.items() if status in targets]
        count = await crud.bulk_update_status(self.db, invoice_ids, status, from_statuses)
        await self.db.commit()
        logger.info("Bulk status update to %s changed %d of %d invoices", status.value, count, len(invoice_ids))
        return count

    # === Queries ===

    async def get_invoice(self, invoice_id: str) -> models.Invoice:
        return await self._get_or_raise(invoice_id)

    async def list_invoices(
        self,
        filters: schemas.InvoiceFilter,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[models.Invoice], int]:
        return await crud.get_invoices_filtered(self.db, filters, page=page, limit=limit)

    async def get_customer_invoices(self, customer_id: str) -> List[models.Invoice]:
        return await crud.get_customer_invoices(self.db, customer_id)

    async def statistics(
        self,
        region_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> schemas.InvoiceSummary:
        reporting = InvoiceReportingService(self.db, self.calculator)
        return await reporting.get_invoice_stats(region_id, start_date, end_date)

    # === Helpers ===

    async def _get_or_raise(self, invoice_id: str) -> models.Invoice:
        invoice = await crud.get_invoice(self.db, invoice_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice

    @staticmethod
    def _check_transition(invoice: models.Invoice, new_status: Status, allow_same: bool = True) -> None:
        current = Status(invoice.status)
        if current == new_status and allow_same:
            return
        if new_status not in STATUS_TRANSITIONS[current]:
            raise InvalidOperation(f"Cannot change invoice status from {current.value} to {new_status.value}")

    @staticmethod
    def _serialize_line_items(line_items: List[schemas.InvoiceLineItem]) -> List[Dict[str, Any]]:
        return [item.model_dump(mode="json") for item in line_items]
