"""Error taxonomy for the invoicing engine.

The HTTP layer translates these into responses; nothing here knows about
status codes.
"""


class InvoiceServiceError(Exception):
    """Base class for invoicing errors."""


class NotFoundError(InvoiceServiceError):
    pass


class CustomerNotFound(NotFoundError):
    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer not found: {customer_id}")


class InvoiceNotFound(NotFoundError):
    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvalidOperation(InvoiceServiceError):
    """An operation would violate an invoice invariant (e.g. deleting a paid invoice)."""


class ConfigurationUnavailable(InvoiceServiceError):
    """The configuration store could not be read."""
