import math
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Union

from . import schemas

Number = Union[Decimal, int, float, str]
DateLike = Union[date, datetime]

INVOICE_NUMBER_WIDTH = 5


class InvoiceCalculator:
    """Invoice money and date arithmetic.

    Every monetary step is rounded to cents on its own (line total, subtotal,
    each tax, grand total), matching the figures printed on issued invoices.
    Rounding the exact sum only at the end gives different results on some
    inputs and must not be substituted.
    """

    CENT = Decimal("0.01")

    def round_currency(self, amount: Number) -> Decimal:
        """Round to 2 decimal places, half away from zero"""
        return self._to_decimal(amount).quantize(self.CENT, rounding=ROUND_HALF_UP)

    def calculate_line_item_total(self, quantity: Number, unit_price: Number) -> Decimal:
        """Calculate total for a single line item (quantity * unit_price)"""
        return self.round_currency(self._to_decimal(quantity) * self._to_decimal(unit_price))

    def price_line_items(self, line_items: Iterable[schemas.InvoiceLineItem]) -> List[schemas.InvoiceLineItem]:
        """Return copies of the line items with total_price recomputed"""
        return [
            item.model_copy(update={"total_price": self.calculate_line_item_total(item.quantity, item.unit_price)})
            for item in line_items
        ]

    def calculate_subtotal(self, line_items: Iterable[schemas.InvoiceLineItem]) -> Decimal:
        subtotal = sum(
            (self.calculate_line_item_total(item.quantity, item.unit_price) for item in line_items),
            Decimal("0.00"),
        )
        return self.round_currency(subtotal)

    def calculate_tax(self, subtotal: Number, rate: Number) -> Decimal:
        """Tax on the subtotal at the given fractional rate (0.05 == 5%)"""
        return self.round_currency(self._to_decimal(subtotal) * self._to_decimal(rate))

    def calculate_total(self, subtotal: Number, gst_amount: Number, pst_amount: Number) -> Decimal:
        return self.round_currency(
            self._to_decimal(subtotal) + self._to_decimal(gst_amount) + self._to_decimal(pst_amount)
        )

    def calculate_invoice_totals(
        self,
        line_items: Iterable[schemas.InvoiceLineItem],
        tax_rates: schemas.TaxRates,
    ) -> schemas.InvoiceTotals:
        """Subtotal first, then GST and PST each from the subtotal, then the total"""
        subtotal = self.calculate_subtotal(line_items)
        gst_amount = self.calculate_tax(subtotal, tax_rates.gst)
        pst_amount = self.calculate_tax(subtotal, tax_rates.pst)
        total = self.calculate_total(subtotal, gst_amount, pst_amount)

        return schemas.InvoiceTotals(
            subtotal=subtotal,
            gst_amount=gst_amount,
            pst_amount=pst_amount,
            total=total,
        )

    def calculate_due_date(self, invoice_date: DateLike, payment_terms_days: int) -> DateLike:
        """Calculate due date based on payment terms (net calendar days)"""
        return invoice_date + timedelta(days=payment_terms_days)

    def is_overdue(self, due_date: DateLike, current_date: Optional[DateLike] = None) -> bool:
        current_date = current_date or datetime.now()
        return self._to_datetime(current_date) > self._to_datetime(due_date)

    def get_days_overdue(self, due_date: DateLike, current_date: Optional[DateLike] = None) -> int:
        """Whole days overdue; any started day counts as a full day"""
        current_date = current_date or datetime.now()
        if not self.is_overdue(due_date, current_date):
            return 0

        elapsed = abs(self._to_datetime(current_date) - self._to_datetime(due_date))
        elapsed_ms = elapsed // timedelta(milliseconds=1)
        return math.ceil(elapsed_ms / 86_400_000)

    def format_invoice_number(self, number: int, prefix: Optional[str] = None, suffix: Optional[str] = None) -> str:
        """Zero-pad to 5 digits and wrap with the sequence prefix/suffix"""
        formatted = str(number).zfill(INVOICE_NUMBER_WIDTH)
        if prefix:
            formatted = prefix + formatted
        if suffix:
            formatted = formatted + suffix
        return formatted

    def format_currency(self, amount: Number) -> str:
        """Format as Canadian dollars, e.g. $1,036.00"""
        rounded = self.round_currency(amount)
        sign = "-" if rounded < 0 else ""
        return f"{sign}${abs(rounded):,.2f}"

    @staticmethod
    def _to_decimal(value: Number) -> Decimal:
        if isinstance(value, Decimal):
            return value
        if isinstance(value, float):
            # str() keeps the literal the caller meant (0.065, not 0.06500000000000000472)
            return Decimal(str(value))
        return Decimal(value)

    @staticmethod
    def _to_datetime(value: DateLike) -> datetime:
        if isinstance(value, datetime):
            return value
        return datetime(value.year, value.month, value.day)
