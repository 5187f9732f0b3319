from typing import Dict, Optional
from datetime import datetime
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, schemas
from .invoice_calculator import InvoiceCalculator

UNPAID_STATUSES = (schemas.InvoiceStatus.SENT, schemas.InvoiceStatus.DRAFT)


class InvoiceReportingService:
    """Aggregates invoice figures for the dashboard statistics endpoint"""

    def __init__(self, db: AsyncSession, calculator: Optional[InvoiceCalculator] = None):
        self.db = db
        self.calculator = calculator or InvoiceCalculator()

    async def get_invoice_stats(
        self,
        region_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> schemas.InvoiceSummary:
        """Summarise invoices whose invoice date falls in the window.

        Revenue only counts PAID invoices, but the average divides that
        revenue by every matching invoice, drafts included. Revenue by month
        sums invoice totals (tax included) while revenue by service sums line
        item prices (tax excluded), so the two breakdowns do not reconcile.
        """
        invoices = await crud.get_invoices_for_stats(self.db, region_id, start_date, end_date)

        total_invoices = len(invoices)
        paid = [i for i in invoices if i.status == schemas.InvoiceStatus.PAID.value]
        unpaid_invoices = sum(1 for i in invoices if i.status in {s.value for s in UNPAID_STATUSES})
        overdue_invoices = sum(1 for i in invoices if i.status == schemas.InvoiceStatus.OVERDUE.value)

        total_revenue = sum((Decimal(str(i.total)) for i in paid), Decimal("0.00"))
        average_invoice_value = (
            self.calculator.round_currency(total_revenue / total_invoices) if total_invoices else Decimal("0.00")
        )

        revenue_by_service: Dict[schemas.ServiceType, Decimal] = {
            service_type: Decimal("0.00") for service_type in schemas.ServiceType
        }
        revenue_by_month: Dict[str, Decimal] = {}

        for invoice in paid:
            for item in invoice.line_items or []:
                try:
                    service_type = schemas.ServiceType(item.get("service_type"))
                except ValueError:
                    continue
                revenue_by_service[service_type] += Decimal(str(item.get("total_price") or 0))

            month_key = invoice.invoice_date.strftime("%Y-%m")
            revenue_by_month[month_key] = revenue_by_month.get(month_key, Decimal("0.00")) + Decimal(str(invoice.total))

        return schemas.InvoiceSummary(
            total_invoices=total_invoices,
            total_revenue=total_revenue,
            paid_invoices=len(paid),
            unpaid_invoices=unpaid_invoices,
            overdue_invoices=overdue_invoices,
            average_invoice_value=average_invoice_value,
            revenue_by_service=revenue_by_service,
            revenue_by_month=dict(sorted(revenue_by_month.items())),
        )
