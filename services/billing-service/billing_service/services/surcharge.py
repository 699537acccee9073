"""Processing-fee surcharge rules.

Everything here is pure: no database, no gateway. Amounts are ``Decimal`` and
rounded half-up to cents.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from ..config import Settings, get_settings
from ..exceptions import ValidationError
from ..money import round_money, to_decimal

PAYMENT_METHOD_TYPES = ("card", "bank_account")
CARD_TYPES = ("credit", "debit")
_STATE_CODE = re.compile(r"^[A-Za-z]{2}$")


@dataclass(frozen=True)
class SurchargeConfig:
    enabled: bool
    credit_card_rate: Decimal
    credit_card_fixed: Decimal
    debit_card_rate: Decimal
    debit_card_fixed: Decimal
    restricted_states: frozenset[str]
    display_name: str = "Processing Fee"

    @classmethod
    def from_settings(cls, settings: Settings) -> SurchargeConfig:
        return cls(
            enabled=settings.SURCHARGE_ENABLED,
            credit_card_rate=settings.SURCHARGE_CREDIT_CARD_RATE,
            credit_card_fixed=settings.SURCHARGE_CREDIT_CARD_FIXED,
            debit_card_rate=settings.SURCHARGE_DEBIT_CARD_RATE,
            debit_card_fixed=settings.SURCHARGE_DEBIT_CARD_FIXED,
            restricted_states=settings.restricted_states,
            display_name=settings.SURCHARGE_DISPLAY_NAME,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "credit_card_rate": self.credit_card_rate,
            "credit_card_fixed": self.credit_card_fixed,
            "debit_card_rate": self.debit_card_rate,
            "debit_card_fixed": self.debit_card_fixed,
            "display_name": self.display_name,
            "restricted_states": sorted(self.restricted_states),
        }


@dataclass(frozen=True)
class SurchargeQuote:
    original_amount: Decimal
    surcharge_amount: Decimal
    total_amount: Decimal
    surcharge_enabled: bool
    payment_method_type: str


def calculate_surcharge(
    amount,
    payment_method_type: str,
    card_type: str | None = "credit",
    state_code: str | None = None,
    config: SurchargeConfig | None = None,
) -> SurchargeQuote:
    if config is None:
        config = surcharge_config()

    try:
        original = to_decimal(amount)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError("Amount must be a number") from exc
    if not original.is_finite() or original < 0:
        raise ValidationError("Amount must be zero or greater")
    if payment_method_type not in PAYMENT_METHOD_TYPES:
        raise ValidationError("payment_method_type must be one of: card, bank_account")
    card_type = card_type or "credit"
    if card_type not in CARD_TYPES:
        raise ValidationError("card_type must be one of: credit, debit")
    if state_code is not None and not _STATE_CODE.match(state_code):
        raise ValidationError("state_code must be a two-letter state code")

    enabled = config.enabled
    if state_code and state_code.upper() in config.restricted_states:
        enabled = False

    surcharge = Decimal("0.00")
    if enabled and payment_method_type == "card":
        if card_type == "credit":
            surcharge = round_money(original * config.credit_card_rate + config.credit_card_fixed)
        else:
            surcharge = round_money(original * config.debit_card_rate + config.debit_card_fixed)

    return SurchargeQuote(
        original_amount=round_money(original),
        surcharge_amount=surcharge,
        total_amount=round_money(original + surcharge),
        surcharge_enabled=enabled,
        payment_method_type=payment_method_type,
    )


def surcharge_config() -> SurchargeConfig:
    return SurchargeConfig.from_settings(get_settings())
