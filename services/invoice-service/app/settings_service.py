from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, models, schemas
from .core.logging import get_logger
from .exceptions import ConfigurationUnavailable, InvalidOperation

logger = get_logger("settings")

INVOICE_CATEGORY = "invoice"
COMPANY_INFO_KEY = "company_info"
SERVICE_PRICING_KEY = "service_pricing"
TAX_RATES_KEY = "tax_rates"
DEFAULTS_KEY = "defaults"

SETTING_DESCRIPTIONS = {
    COMPANY_INFO_KEY: ("Company information for invoices", True),
    SERVICE_PRICING_KEY: ("Service pricing configuration", True),
    TAX_RATES_KEY: ("Tax rates configuration", True),
    DEFAULTS_KEY: ("Invoice default settings", False),
}

ModelT = TypeVar("ModelT", bound=BaseModel)


class SettingsService:
    """Typed access to the invoice settings stored as JSON rows.

    Reads resolve a region-specific row first, then the global row (NULL
    region), then the model defaults. Writes always target the exact scope
    they are given. A failing query or a malformed stored value raises
    ConfigurationUnavailable rather than falling back to defaults.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # === Typed getters ===

    async def get_tax_rates(self, region_id: Optional[str] = None) -> schemas.TaxRates:
        return await self._get_typed(TAX_RATES_KEY, schemas.TaxRates, region_id)

    async def get_invoice_defaults(self, region_id: Optional[str] = None) -> schemas.InvoiceDefaults:
        return await self._get_typed(DEFAULTS_KEY, schemas.InvoiceDefaults, region_id)

    async def get_payment_terms_days(self, region_id: Optional[str] = None) -> int:
        defaults = await self.get_invoice_defaults(region_id)
        return defaults.payment_terms_days

    async def get_company_info(self, region_id: Optional[str] = None) -> schemas.CompanyInfo:
        return await self._get_typed(COMPANY_INFO_KEY, schemas.CompanyInfo, region_id)

    async def get_service_pricing(
        self, region_id: Optional[str] = None
    ) -> Dict[schemas.ServiceType, schemas.ServicePricing]:
        stored = await self._resolve(SERVICE_PRICING_KEY, region_id)
        if not stored:
            return {pricing.service_type: pricing for pricing in schemas.DEFAULT_SERVICE_PRICING}

        pricing: Dict[schemas.ServiceType, schemas.ServicePricing] = {}
        for service_type in schemas.ServiceType:
            entry = stored.get(service_type.value)
            if not entry:
                continue
            try:
                pricing[service_type] = schemas.ServicePricing(service_type=service_type, **entry)
            except (TypeError, ValidationError) as exc:
                raise self._invalid(SERVICE_PRICING_KEY, exc) from exc
        return pricing

    async def get_all_settings(self, region_id: Optional[str] = None) -> schemas.AllSettings:
        return schemas.AllSettings(
            company_info=await self.get_company_info(region_id),
            service_pricing=await self.get_service_pricing(region_id),
            tax_rates=await self.get_tax_rates(region_id),
            invoice_defaults=await self.get_invoice_defaults(region_id),
        )

    # === Typed updates ===

    async def update_tax_rates(
        self, update: schemas.TaxRatesUpdate, region_id: Optional[str] = None
    ) -> schemas.TaxRates:
        current = await self.get_tax_rates(region_id)
        updated = current.model_copy(update=update.model_dump(exclude_unset=True, exclude_none=True))
        await self._store(TAX_RATES_KEY, updated.model_dump(mode="json"), region_id)
        await self.db.commit()
        logger.info("Tax rates for region %s set to gst=%s pst=%s", region_id or "<global>", updated.gst, updated.pst)
        return updated

    async def update_invoice_defaults(
        self, update: schemas.InvoiceDefaultsUpdate, region_id: Optional[str] = None
    ) -> schemas.InvoiceDefaults:
        current = await self.get_invoice_defaults(region_id)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        updated = current.model_copy(update=changes)

        if changes.get("next_invoice_number") and region_id:
            try:
                await crud.set_next_invoice_number(self.db, region_id, updated.next_invoice_number)
            except InvalidOperation:
                await self.db.rollback()
                raise
            logger.info("Invoice sequence for region %s reset, next number %s", region_id, updated.next_invoice_number)

        await self._store(DEFAULTS_KEY, updated.model_dump(mode="json"), region_id)
        await self.db.commit()
        return updated

    async def update_company_info(
        self, update: schemas.CompanyInfoUpdate, region_id: Optional[str] = None
    ) -> schemas.CompanyInfo:
        current = await self.get_company_info(region_id)
        updated = current.model_copy(update=update.model_dump(exclude_unset=True, exclude_none=True))
        await self._store(COMPANY_INFO_KEY, updated.model_dump(mode="json"), region_id)
        await self.db.commit()
        return updated

    async def update_service_pricing(
        self,
        service_type: schemas.ServiceType,
        update: schemas.ServicePricingUpdate,
        region_id: Optional[str] = None,
    ) -> schemas.ServicePricing:
        pricing = await self.get_service_pricing(region_id)
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        current = pricing.get(service_type)
        if current is None:
            if "unit_price" not in changes or "description" not in changes:
                raise InvalidOperation(f"No pricing stored for {service_type.value}; unit_price and description are required")
            updated = schemas.ServicePricing(service_type=service_type, **changes)
        else:
            updated = current.model_copy(update=changes)
        pricing[service_type] = updated

        value = {
            item.service_type.value: {"unit_price": str(item.unit_price), "description": item.description}
            for item in pricing.values()
        }
        await self._store(SERVICE_PRICING_KEY, value, region_id)
        await self.db.commit()
        return updated

    # === Raw settings ===

    async def get_setting(self, category: str, key: str, region_id: Optional[str] = None) -> Optional[Any]:
        setting = await self._find(category, key, region_id)
        return setting.value if setting else None

    async def update_setting(
        self,
        category: str,
        key: str,
        value: Any,
        region_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> models.Setting:
        setting = await self._find(category, key, region_id)
        if setting:
            setting.value = value
            setting.description = description
        else:
            setting = models.Setting(
                category=category,
                key=key,
                value=value,
                region_id=region_id,
                description=description,
                is_system=False,
            )
            self.db.add(setting)
        await self.db.commit()
        await self.db.refresh(setting)
        return setting

    async def delete_setting(self, category: str, key: str, region_id: Optional[str] = None) -> bool:
        setting = await self._find(category, key, region_id)
        if not setting:
            return False
        if setting.is_system:
            raise InvalidOperation("Cannot delete system settings")
        await self.db.delete(setting)
        await self.db.commit()
        return True

    # === Internals ===

    async def _get_typed(self, key: str, model: Type[ModelT], region_id: Optional[str]) -> ModelT:
        stored = await self._resolve(key, region_id)
        if not stored:
            return model()
        # Keys missing or null in the stored blob fall back to the model defaults
        try:
            return model(**{name: value for name, value in stored.items() if value is not None and name in model.model_fields})
        except ValidationError as exc:
            raise self._invalid(key, exc) from exc

    async def _resolve(self, key: str, region_id: Optional[str]) -> Optional[Dict[str, Any]]:
        setting = None
        if region_id:
            setting = await self._find(INVOICE_CATEGORY, key, region_id)
        if not (setting and setting.value):
            setting = await self._find(INVOICE_CATEGORY, key, None)
        if not (setting and setting.value):
            return None
        if not isinstance(setting.value, dict):
            raise self._invalid(key, TypeError(f"expected an object, got {type(setting.value).__name__}"))
        return setting.value

    @staticmethod
    def _invalid(key: str, exc: Exception) -> ConfigurationUnavailable:
        logger.error("Stored setting %s/%s is malformed: %s", INVOICE_CATEGORY, key, exc)
        return ConfigurationUnavailable(f"Stored setting {INVOICE_CATEGORY}/{key} is malformed")

    async def _find(self, category: str, key: str, region_id: Optional[str]) -> Optional[models.Setting]:
        query = select(models.Setting).where(
            models.Setting.category == category,
            models.Setting.key == key,
        )
        if region_id is None:
            query = query.where(models.Setting.region_id.is_(None))
        else:
            query = query.where(models.Setting.region_id == region_id)

        try:
            result = await self.db.execute(query.limit(1))
        except SQLAlchemyError as exc:
            logger.error("Settings lookup failed for %s/%s: %s", category, key, exc)
            raise ConfigurationUnavailable(f"Unable to read setting {category}/{key}") from exc
        return result.scalar_one_or_none()

    async def _store(self, key: str, value: Dict[str, Any], region_id: Optional[str]) -> None:
        setting = await self._find(INVOICE_CATEGORY, key, region_id)
        if setting:
            setting.value = value
            return

        description, is_system = SETTING_DESCRIPTIONS[key]
        self.db.add(
            models.Setting(
                category=INVOICE_CATEGORY,
                key=key,
                value=value,
                region_id=region_id,
                description=description,
                is_system=is_system,
            )
        )
