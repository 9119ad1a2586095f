"""Currency conversion with time-bounded rates and approval gating."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import (
    ROUND_DOWN,
    ROUND_HALF_DOWN,
    ROUND_HALF_EVEN,
    ROUND_HALF_UP,
    ROUND_UP,
    Decimal,
)
from typing import Iterable
from uuid import UUID, uuid4

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from paystructure_engine.calculators.types import ConversionResult, PendingApproval
from paystructure_engine.config import Settings, get_settings
from paystructure_engine.exceptions import (
    ApprovalRequired,
    ConversionNotApproved,
    ExchangeRateTimeout,
    NoExchangeRate,
)
from paystructure_engine.models import (
    CurrencyApprovalRequest,
    CurrencyApprovalRule,
    CurrencyConversion,
    ExchangeRate,
    OrganizationCurrencyConfig,
    as_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

RATE_PRECISION = Decimal("0.00000001")

ROUNDING_METHODS = {
    "half_up": ROUND_HALF_UP,
    "half_down": ROUND_HALF_DOWN,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


@dataclass(frozen=True)
class RateQuote:
    """Rate found for a pair and how it was derived."""

    rate: Decimal
    source: str  # direct, inverse, triangulated
    exchange_rate_ids: tuple[UUID, ...]


class CurrencyConverter:
    """Converts amounts between currencies for one organization.

    Rate lookup, in order:
    1) a direct rate for the pair effective at the time
    2) the inverse of the reverse pair's rate
    3) triangulation through the organization's base currency

    Before converting, enabled conversion_threshold rules are evaluated in
    descending priority. The first match defers the conversion behind an
    approval request; the conversion runs only once that request is
    approved. Every executed conversion is recorded as an immutable
    CurrencyConversion row, keyed by ``reference_key`` when one is given.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self._config_cache: dict[UUID, OrganizationCurrencyConfig | None] = {}

    async def get_currency_config(self, organization_id: UUID) -> OrganizationCurrencyConfig | None:
        if organization_id not in self._config_cache:
            result = await self.session.execute(
                select(OrganizationCurrencyConfig).where(
                    OrganizationCurrencyConfig.organization_id == organization_id
                )
            )
            self._config_cache[organization_id] = result.scalar_one_or_none()
        return self._config_cache[organization_id]

    async def get_base_currency(self, organization_id: UUID) -> str:
        config = await self.get_currency_config(organization_id)
        return config.base_currency if config else self.settings.default_base_currency

    # ===== Rates =====

    async def lookup_rate(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
        as_of: datetime,
    ) -> RateQuote:
        """Find a rate within the configured timeout."""
        timeout = self.settings.exchange_rate_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.find_rate(organization_id, from_currency, to_currency, as_of),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ExchangeRateTimeout(from_currency, to_currency, timeout) from None

    async def find_rate(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
        as_of: datetime,
    ) -> RateQuote:
        if from_currency == to_currency:
            return RateQuote(Decimal("1"), "identity", ())

        direct = await self._rate_row(organization_id, from_currency, to_currency, as_of)
        if direct is not None:
            return RateQuote(Decimal(direct.rate), "direct", (direct.id,))

        reverse = await self._rate_row(organization_id, to_currency, from_currency, as_of)
        if reverse is not None:
            inverted = (Decimal("1") / Decimal(reverse.rate)).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)
            return RateQuote(inverted, "inverse", (reverse.id,))

        base = await self.get_base_currency(organization_id)
        if base not in (from_currency, to_currency):
            first = await self._leg(organization_id, from_currency, base, as_of)
            second = await self._leg(organization_id, base, to_currency, as_of)
            if first is not None and second is not None:
                rate = (first.rate * second.rate).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)
                return RateQuote(rate, "triangulated", first.exchange_rate_ids + second.exchange_rate_ids)

        raise NoExchangeRate(from_currency, to_currency, as_of)

    async def _leg(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
        as_of: datetime,
    ) -> RateQuote | None:
        row = await self._rate_row(organization_id, from_currency, to_currency, as_of)
        if row is not None:
            return RateQuote(Decimal(row.rate), "direct", (row.id,))
        row = await self._rate_row(organization_id, to_currency, from_currency, as_of)
        if row is not None:
            return RateQuote(Decimal("1") / Decimal(row.rate), "inverse", (row.id,))
        return None

    async def _rate_row(
        self,
        organization_id: UUID,
        from_currency: str,
        to_currency: str,
        as_of: datetime,
    ) -> ExchangeRate | None:
        result = await self.session.execute(
            select(ExchangeRate)
            .where(
                ExchangeRate.organization_id == organization_id,
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.effective_from <= as_of,
                or_(ExchangeRate.effective_to.is_(None), ExchangeRate.effective_to > as_of),
            )
            .order_by(ExchangeRate.effective_from.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ===== Rounding and rules =====

    @staticmethod
    def round_amount(amount: Decimal, method: str = "half_up", decimal_places: int = 2) -> Decimal:
        """Round using an organization's configured method."""
        quantum = Decimal(1).scaleb(-decimal_places)
        return amount.quantize(quantum, rounding=ROUNDING_METHODS[method])

    @staticmethod
    def select_rule(
        rules: Iterable[CurrencyApprovalRule],
        rule_type: str,
        from_currency: str,
        to_currency: str,
        amount: Decimal | None = None,
        variance_percentage: Decimal | None = None,
    ) -> CurrencyApprovalRule | None:
        """First enabled matching rule by descending priority."""
        candidates = sorted(
            (r for r in rules if r.is_enabled and r.rule_type == rule_type),
            key=lambda r: (-r.priority, r.rule_name, str(r.id)),
        )
        for rule in candidates:
            if rule.currencies and from_currency not in rule.currencies and to_currency not in rule.currencies:
                continue
            if rule_type == "conversion_threshold":
                if rule.threshold_amount is not None and amount is not None and amount >= Decimal(rule.threshold_amount):
                    return rule
            elif rule_type == "rate_variance":
                if (
                    rule.variance_percentage is not None
                    and variance_percentage is not None
                    and variance_percentage >= Decimal(rule.variance_percentage)
                ):
                    return rule
        return None

    async def load_rules(self, organization_id: UUID, rule_type: str) -> list[CurrencyApprovalRule]:
        result = await self.session.execute(
            select(CurrencyApprovalRule).where(
                CurrencyApprovalRule.organization_id == organization_id,
                CurrencyApprovalRule.rule_type == rule_type,
                CurrencyApprovalRule.is_enabled.is_(True),
            )
        )
        return list(result.scalars().all())

    def pending_from_rule(
        self,
        rule: CurrencyApprovalRule,
        organization_id: UUID,
        request_type: str,
        reference_key: str,
        from_currency: str,
        to_currency: str,
        **details,
    ) -> PendingApproval:
        hours = rule.expiration_hours or self.settings.approval_expiration_hours
        return PendingApproval(
            organization_id=organization_id,
            request_type=request_type,
            reference_key=reference_key,
            rule_id=rule.id,
            required_approvals=rule.required_approvals,
            from_currency=from_currency,
            to_currency=to_currency,
            expires_at=utc_now() + timedelta(hours=hours),
            approver_user_ids=tuple(UUID(str(u)) for u in rule.approver_user_ids or ()),
            **details,
        )

    # ===== Conversion =====

    async def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        organization_id: UUID,
        as_of: datetime,
        reference_key: str | None = None,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
        requested_by: UUID | None = None,
    ) -> ConversionResult:
        """Convert an amount, honoring approval rules.

        Raises NoExchangeRate, ExchangeRateTimeout, ApprovalRequired
        (suspension: open the attached pending request, or wait for the
        referenced one) and ConversionNotApproved.
        """
        if from_currency == to_currency:
            return ConversionResult(amount, Decimal("1"), None, "identity")

        if reference_key is not None:
            existing = await self._existing_conversion(reference_key)
            if existing is not None:
                return ConversionResult(
                    Decimal(existing.to_amount),
                    Decimal(existing.rate_used),
                    existing.id,
                    existing.rate_source,
                )

        quote = await self.lookup_rate(organization_id, from_currency, to_currency, as_of)
        approval_request_id = await self._check_approval(
            organization_id, amount, from_currency, to_currency, quote, reference_key, requested_by
        )

        config = await self.get_currency_config(organization_id)
        converted = self.round_amount(
            amount * quote.rate,
            config.rounding_method if config else "half_up",
            config.decimal_places if config else 2,
        )

        conversion = CurrencyConversion(
            id=uuid4(),
            organization_id=organization_id,
            from_currency=from_currency,
            to_currency=to_currency,
            from_amount=amount,
            to_amount=converted,
            rate_used=quote.rate,
            rate_source=quote.source,
            exchange_rate_ids=[str(i) for i in quote.exchange_rate_ids],
            approval_request_id=approval_request_id,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=reference_key,
            converted_at=utc_now(),
        )
        self.session.add(conversion)
        await self.session.flush()

        logger.debug(
            "Converted %s %s to %s %s at %s (%s)",
            amount, from_currency, converted, to_currency, quote.rate, quote.source,
        )
        return ConversionResult(converted, quote.rate, conversion.id, quote.source)

    async def _existing_conversion(self, reference_key: str) -> CurrencyConversion | None:
        result = await self.session.execute(
            select(CurrencyConversion).where(CurrencyConversion.idempotency_key == reference_key)
        )
        return result.scalar_one_or_none()

    async def _check_approval(
        self,
        organization_id: UUID,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        quote: RateQuote,
        reference_key: str | None,
        requested_by: UUID | None,
    ) -> UUID | None:
        """Return the approving request id, or None when no rule applies."""
        if reference_key is not None:
            result = await self.session.execute(
                select(CurrencyApprovalRequest).where(
                    CurrencyApprovalRequest.organization_id == organization_id,
                    CurrencyApprovalRequest.reference_key == reference_key,
                )
            )
            request = result.scalar_one_or_none()
            if request is not None:
                return self._gate_on_request(request)

        rules = await self.load_rules(organization_id, "conversion_threshold")
        rule = self.select_rule(rules, "conversion_threshold", from_currency, to_currency, amount=amount)
        if rule is None:
            return None

        key = reference_key or f"conversion:{uuid4()}"
        pending = self.pending_from_rule(
            rule,
            organization_id,
            "conversion",
            key,
            from_currency,
            to_currency,
            amount=amount,
            proposed_rate=quote.rate,
            requested_by=requested_by,
        )
        logger.warning(
            "Conversion of %s %s->%s requires %s approval(s) under rule %s",
            amount, from_currency, to_currency, rule.required_approvals, rule.rule_name,
        )
        raise ApprovalRequired(f"rule '{rule.rule_name}' matched", pending=pending)

    @staticmethod
    def _gate_on_request(request: CurrencyApprovalRequest) -> UUID:
        if request.status == "approved":
            return request.id
        if request.status == "pending":
            if request.expires_at is not None and as_utc(request.expires_at) <= utc_now():
                raise ConversionNotApproved(request.id, "expired")
            raise ApprovalRequired(
                f"request {request.id} has {request.current_approvals}/{request.required_approvals} approvals",
                request_id=request.id,
            )
        raise ConversionNotApproved(request.id, request.status)
