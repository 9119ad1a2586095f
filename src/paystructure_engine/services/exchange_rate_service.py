"""Exchange rate maintenance with variance-gated changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystructure_engine.calculators.currency import CurrencyConverter
from paystructure_engine.config import Settings, get_settings
from paystructure_engine.exceptions import ApprovalStateError, ConfigValidationError
from paystructure_engine.models import CurrencyApprovalRequest, ExchangeRate, as_utc
from paystructure_engine.services.approval_service import ApprovalService

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class RateChangeResult:
    """Either the rate that was stored, or the request now gating it."""

    rate: ExchangeRate | None = None
    approval_request: CurrencyApprovalRequest | None = None

    @property
    def applied(self) -> bool:
        return self.rate is not None


class ExchangeRateService:
    """Stores time-bounded rates, keeping at most one open rate per pair.

    Setting a new rate closes the currently open rate at the new rate's
    effective_from. When the change versus the open rate reaches an enabled
    rate_variance rule's percentage, the change is held in an approval
    request and applied by ``apply_approved_rate_change`` once approved.
    """

    def __init__(
        self,
        session: AsyncSession,
        approvals: ApprovalService | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.approvals = approvals or ApprovalService(session)
        self.settings = settings or get_settings()
        self.converter = CurrencyConverter(session, self.settings)

    async def get_open_rate(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
    ) -> ExchangeRate | None:
        result = await self.session.execute(
            select(ExchangeRate).where(
                ExchangeRate.organization_id == organization_id,
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.effective_to.is_(None),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def variance_percentage(current: Decimal, proposed: Decimal) -> Decimal:
        return abs(proposed - current) / current * HUNDRED

    async def set_rate(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        effective_from: datetime,
        source: str = "manual",
        created_by: UUID | None = None,
    ) -> RateChangeResult:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            raise ConfigValidationError("Exchange rate needs two distinct currencies")
        if rate <= 0:
            raise ConfigValidationError(f"Exchange rate must be positive, got {rate}")

        current = await self.get_open_rate(organization_id, from_currency, to_currency)
        if current is not None:
            variance = self.variance_percentage(Decimal(current.rate), rate)
            rules = await self.converter.load_rules(organization_id, "rate_variance")
            rule = CurrencyConverter.select_rule(
                rules, "rate_variance", from_currency, to_currency, variance_percentage=variance
            )
            if rule is not None:
                pending = self.converter.pending_from_rule(
                    rule,
                    organization_id,
                    "rate_change",
                    f"rate:{from_currency}:{to_currency}:{as_utc(effective_from).isoformat()}:{rate}",
                    from_currency,
                    to_currency,
                    proposed_rate=rate,
                    current_rate=Decimal(current.rate),
                    requested_by=created_by,
                    payload={
                        "effective_from": as_utc(effective_from).isoformat(),
                        "source": source,
                        "variance_percentage": str(variance),
                    },
                )
                request = await self.approvals.open_request(pending)
                logger.warning(
                    "Rate change %s->%s from %s to %s (%s%%) held for approval %s",
                    from_currency, to_currency, current.rate, rate, variance, request.id,
                )
                return RateChangeResult(approval_request=request)

        stored = await self._store(
            organization_id, from_currency, to_currency, rate, effective_from, source, created_by, current
        )
        return RateChangeResult(rate=stored)

    async def apply_approved_rate_change(self, request_id: UUID) -> ExchangeRate:
        request = await self.approvals.get_request(request_id)
        if request.request_type != "rate_change":
            raise ApprovalStateError(request_id, "not a rate change request")
        if request.status != "approved":
            raise ApprovalStateError(request_id, f"request is {request.status}")

        payload = request.request_payload or {}
        current = await self.get_open_rate(request.organization_id, request.from_currency, request.to_currency)
        return await self._store(
            request.organization_id,
            request.from_currency,
            request.to_currency,
            Decimal(request.proposed_rate),
            datetime.fromisoformat(payload["effective_from"]),
            payload.get("source", "manual"),
            request.requested_by,
            current,
        )

    async def _store(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        effective_from: datetime,
        source: str,
        created_by: UUID | None,
        current: ExchangeRate | None,
    ) -> ExchangeRate:
        if current is not None:
            if as_utc(current.effective_from) >= as_utc(effective_from):
                raise ConfigValidationError(
                    f"New {from_currency}->{to_currency} rate must start after "
                    f"the open rate's effective_from {current.effective_from}"
                )
            current.effective_to = effective_from

        new_rate = ExchangeRate(
            organization_id=organization_id,
            from_currency=from_currency,
            to_currency=to_currency,
            rate=rate,
            effective_from=effective_from,
            source=source,
            created_by=created_by,
        )
        self.session.add(new_rate)
        await self.session.flush()

        logger.info("Stored %s->%s rate %s from %s", from_currency, to_currency, rate, effective_from)
        return new_rate
