import math
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from . import schemas
from .core.config import settings
from .core.logging import get_logger, setup_logging
from .database import create_engine, create_session_factory, get_db
from .exceptions import ConfigurationUnavailable, InvalidOperation, NotFoundError
from .invoice_service import InvoiceLifecycleManager
from .settings_service import SettingsService

logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    engine = create_engine()
    app.state.session_factory = create_session_factory(engine)
    logger.info("Database engine started")
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Database engine disposed")


app = FastAPI(
    title=settings.APP_NAME,
    description="Invoice numbering, pricing, status tracking and reporting",
    version=settings.VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "invoices", "description": "Invoice CRUD operations"},
        {"name": "status", "description": "Send, pay and overdue tracking"},
        {"name": "reporting", "description": "Invoice statistics"},
        {"name": "settings", "description": "Company info, pricing, tax rates and defaults"},
    ],
)

# Security
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    """Extract user ID from JWT token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.AUTH_SECRET_KEY, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    return user_id


def get_manager(db: AsyncSession = Depends(get_db)) -> InvoiceLifecycleManager:
    return InvoiceLifecycleManager(db)


def get_settings_service(db: AsyncSession = Depends(get_db)) -> SettingsService:
    return SettingsService(db)


# === ERROR MAPPING ===

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(InvalidOperation)
async def invalid_operation_handler(request: Request, exc: InvalidOperation):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ConfigurationUnavailable)
async def configuration_unavailable_handler(request: Request, exc: ConfigurationUnavailable):
    logger.error("Configuration store unavailable: %s", exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "invoice-service"}

# === INVOICE ENDPOINTS ===

@app.post("/invoices", response_model=schemas.Invoice, status_code=status.HTTP_201_CREATED, tags=["invoices"])
async def create_invoice(
    invoice_data: schemas.InvoiceCreate,
    region_id: str = Query(settings.DEFAULT_REGION_ID, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    """Create a new invoice with line items"""
    return await manager.create_invoice(invoice_data, region_id)


@app.get("/invoices", response_model=schemas.InvoiceList, tags=["invoices"])
async def list_invoices(
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    invoice_status: Optional[schemas.InvoiceStatus] = Query(None, alias="status"),
    customer_id: Optional[str] = Query(None, alias="customerId"),
    region_id: Optional[str] = Query(None, alias="regionId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    min_amount: Optional[Decimal] = Query(None, alias="minAmount"),
    max_amount: Optional[Decimal] = Query(None, alias="maxAmount"),
    search: Optional[str] = None,
):
    """List invoices with filtering, newest first"""
    filters = schemas.InvoiceFilter(
        status=invoice_status,
        customer_id=customer_id,
        region_id=region_id,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        search_term=search,
    )
    invoices, total = await manager.list_invoices(filters, page=page, limit=limit)
    return schemas.InvoiceList(
        data=[schemas.Invoice.model_validate(invoice) for invoice in invoices],
        pagination=schemas.Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@app.get("/invoices/stats", response_model=schemas.InvoiceSummary, tags=["reporting"])
async def get_invoice_stats(
    region_id: Optional[str] = Query(None, alias="regionId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    return await manager.statistics(region_id, schemas.to_local_naive(start_date), schemas.to_local_naive(end_date))


@app.post("/invoices/update-overdue", response_model=schemas.CountResponse, tags=["status"])
async def update_overdue_invoices(
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    """Externally triggered overdue sweep"""
    count = await manager.sweep_overdue()
    return schemas.CountResponse(count=count, message=f"Updated {count} invoices to overdue status")


@app.post("/invoices/bulk-status", response_model=schemas.CountResponse, tags=["status"])
async def bulk_update_status(
    bulk: schemas.BulkStatusUpdate,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    count = await manager.bulk_update_status(bulk.invoice_ids, bulk.status)
    return schemas.CountResponse(count=count, message=f"Updated {count} invoices to {bulk.status.value}")


@app.get("/invoices/customer/{customer_id}", response_model=List[schemas.Invoice], tags=["invoices"])
async def get_customer_invoices(
    customer_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    return await manager.get_customer_invoices(customer_id)

# === SETTINGS ENDPOINTS ===

@app.get("/invoices/settings/company-info", response_model=schemas.CompanyInfo, tags=["settings"])
async def get_company_info(
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.get_company_info(region_id)


@app.put("/invoices/settings/company-info", response_model=schemas.CompanyInfo, tags=["settings"])
async def update_company_info(
    update: schemas.CompanyInfoUpdate,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.update_company_info(update, region_id)


@app.get(
    "/invoices/settings/service-pricing",
    response_model=Dict[schemas.ServiceType, schemas.ServicePricing],
    tags=["settings"],
)
async def get_service_pricing(
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.get_service_pricing(region_id)


@app.put(
    "/invoices/settings/service-pricing/{service_type}",
    response_model=schemas.ServicePricing,
    tags=["settings"],
)
async def update_service_pricing(
    service_type: schemas.ServiceType,
    update: schemas.ServicePricingUpdate,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.update_service_pricing(service_type, update, region_id)


@app.get("/invoices/settings/tax-rates", response_model=schemas.TaxRates, tags=["settings"])
async def get_tax_rates(
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.get_tax_rates(region_id)


@app.put("/invoices/settings/tax-rates", response_model=schemas.TaxRates, tags=["settings"])
async def update_tax_rates(
    update: schemas.TaxRatesUpdate,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.update_tax_rates(update, region_id)


@app.get("/invoices/settings/defaults", response_model=schemas.InvoiceDefaults, tags=["settings"])
async def get_invoice_defaults(
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.get_invoice_defaults(region_id)


@app.put("/invoices/settings/defaults", response_model=schemas.InvoiceDefaults, tags=["settings"])
async def update_invoice_defaults(
    update: schemas.InvoiceDefaultsUpdate,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.update_invoice_defaults(update, region_id)


@app.get("/invoices/settings/all", response_model=schemas.AllSettings, tags=["settings"])
async def get_all_settings(
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.get_all_settings(region_id)


@app.get("/invoices/settings/raw/{category}/{key}", response_model=schemas.RawSetting, tags=["settings"])
async def get_raw_setting(
    category: str,
    key: str,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    value = await service.get_setting(category, key, region_id)
    if value is None:
        raise HTTPException(status_code=404, detail="Setting not found")
    return schemas.RawSetting(category=category, key=key, region_id=region_id, value=value)


@app.put("/invoices/settings/raw/{category}/{key}", response_model=schemas.RawSetting, tags=["settings"])
async def update_raw_setting(
    category: str,
    key: str,
    update: schemas.RawSettingUpdate,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    return await service.update_setting(category, key, update.value, region_id, update.description)


@app.delete("/invoices/settings/raw/{category}/{key}", status_code=status.HTTP_204_NO_CONTENT, tags=["settings"])
async def delete_raw_setting(
    category: str,
    key: str,
    region_id: Optional[str] = Query(None, alias="regionId"),
    user_id: str = Depends(get_current_user_id),
    service: SettingsService = Depends(get_settings_service),
):
    if not await service.delete_setting(category, key, region_id):
        raise HTTPException(status_code=404, detail="Setting not found")

# === SINGLE INVOICE ENDPOINTS ===

@app.get("/invoices/{invoice_id}", response_model=schemas.Invoice, tags=["invoices"])
async def get_invoice(
    invoice_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    return await manager.get_invoice(invoice_id)


@app.put("/invoices/{invoice_id}", response_model=schemas.Invoice, tags=["invoices"])
async def update_invoice(
    invoice_id: str,
    invoice_update: schemas.InvoiceUpdate,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    return await manager.update_invoice(invoice_id, invoice_update)


@app.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["invoices"])
async def delete_invoice(
    invoice_id: str,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    await manager.delete_invoice(invoice_id)


@app.post("/invoices/{invoice_id}/send", response_model=schemas.Invoice, tags=["status"])
async def send_invoice(
    invoice_id: str,
    payload: Optional[schemas.MarkSentRequest] = None,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    email_to = payload.email_to if payload else None
    return await manager.mark_as_sent(invoice_id, email_to)


@app.post("/invoices/{invoice_id}/pay", response_model=schemas.Invoice, tags=["status"])
async def pay_invoice(
    invoice_id: str,
    payload: schemas.MarkPaidRequest,
    user_id: str = Depends(get_current_user_id),
    manager: InvoiceLifecycleManager = Depends(get_manager),
):
    return await manager.mark_as_paid(invoice_id, payload.payment_method, payload.paid_date)
