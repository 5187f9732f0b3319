import os
import sys
from datetime import datetime
from decimal import Decimal

import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

# Adjust path to import app and other modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import models
from app.database import Base, create_session_factory


# --- Test Database Setup ---
# A file database per test so separate sessions (and the TestClient's own
# event loop) see the same tables.

@pytest_asyncio.fixture()
async def engine(tmp_path):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'invoices.db'}", poolclass=NullPool)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def customer(db_session):
    db_customer = models.Customer(
        region_id="BC",
        business_name="Granville Island Bistro",
        contact_name="Maria Lopez",
        email="maria@bistro.example.com",
    )
    db_session.add(db_customer)
    await db_session.commit()
    return db_customer


async def add_invoice(db_session, customer, **overrides):
    """Insert an invoice row directly, bypassing numbering and pricing."""
    values = {
        "invoice_number": 20000,
        "region_id": "BC",
        "customer_id": customer.id,
        "invoice_date": datetime(2024, 3, 5, 10, 0),
        "due_date": datetime(2024, 4, 4, 10, 0),
        "status": "DRAFT",
        "line_items": [],
        "subtotal": Decimal("0.00"),
        "gst_amount": Decimal("0.00"),
        "pst_amount": Decimal("0.00"),
        "total": Decimal("0.00"),
        "gst_rate": Decimal("0.05"),
        "pst_rate": Decimal("0.07"),
        "payment_terms_days": 30,
    }
    values.update(overrides)
    invoice = models.Invoice(**values)
    db_session.add(invoice)
    await db_session.commit()
    return invoice
