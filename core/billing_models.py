# core/billing_models.py
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_LEAD_UNIT_PRICE_CENTS = 4000
CARD_VERIFICATION_CENTS = 100
PACKAGE_LEAD_COUNT = 40
UPFRONT_BUNDLE_LEAD_COUNT = 10


class BillingModel(str, Enum):
    PACKAGE_40_PAID_IN_FULL = "package_40_paid_in_full"
    COMMITMENT_40_WITH_10_UPFRONT = "commitment_40_with_10_upfront"
    PAY_PER_LEAD_PERPETUAL = "pay_per_lead_perpetual"
    PAY_PER_LEAD_40_FIRST_LEAD = "pay_per_lead_40_first_lead"


DEFAULT_BILLING_MODEL = BillingModel.COMMITMENT_40_WITH_10_UPFRONT

BILLING_MODEL_LABELS = {
    BillingModel.PACKAGE_40_PAID_IN_FULL: "$1,600 paid in full (40 leads)",
    BillingModel.COMMITMENT_40_WITH_10_UPFRONT: "$400 upfront, then billed per 10 leads (40 total)",
    BillingModel.PAY_PER_LEAD_PERPETUAL: "$40 pay-per-lead with $1 card verification",
    BillingModel.PAY_PER_LEAD_40_FIRST_LEAD: "$40 first lead, then $40 per lead (perpetual)",
}


@dataclass(frozen=True)
class BillingModelDefaults:
    billing_model: BillingModel
    lead_unit_price_cents: int
    lead_charge_threshold: int
    prepaid_lead_credits: int
    lead_commitment_total: Optional[int]
    initial_charge_cents: int


def normalize_billing_model(value: Any) -> BillingModel:
    """Unknown or missing models fall back to the commitment model."""
    if isinstance(value, BillingModel):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        try:
            return BillingModel(candidate)
        except ValueError:
            if candidate:
                logger.warning(
                    f"⚠️ Unknown billing model '{candidate}', using {DEFAULT_BILLING_MODEL.value}"
                )
    return DEFAULT_BILLING_MODEL


def normalize_unit_price_cents(value: Any) -> int:
    """Floors positive numbers; everything else gets the standard lead price."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_LEAD_UNIT_PRICE_CENTS
    if isinstance(value, float) and not math.isfinite(value):
        return DEFAULT_LEAD_UNIT_PRICE_CENTS
    cents = int(math.floor(value))
    return cents if cents > 0 else DEFAULT_LEAD_UNIT_PRICE_CENTS


def billing_model_label(model: Union[BillingModel, str, None]) -> str:
    return BILLING_MODEL_LABELS[normalize_billing_model(model)]


def defaults_for(
    model: Union[BillingModel, str, None],
    unit_price_cents_hint: Any = None,
) -> BillingModelDefaults:
    billing_model = normalize_billing_model(model)
    unit = normalize_unit_price_cents(unit_price_cents_hint)

    if billing_model == BillingModel.PACKAGE_40_PAID_IN_FULL:
        return BillingModelDefaults(
            billing_model=billing_model,
            lead_unit_price_cents=unit,
            lead_charge_threshold=UPFRONT_BUNDLE_LEAD_COUNT,
            prepaid_lead_credits=PACKAGE_LEAD_COUNT,
            lead_commitment_total=PACKAGE_LEAD_COUNT,
            initial_charge_cents=unit * PACKAGE_LEAD_COUNT,
        )

    if billing_model == BillingModel.PAY_PER_LEAD_PERPETUAL:
        return BillingModelDefaults(
            billing_model=billing_model,
            lead_unit_price_cents=unit,
            lead_charge_threshold=1,
            prepaid_lead_credits=0,
            lead_commitment_total=None,
            initial_charge_cents=CARD_VERIFICATION_CENTS,
        )

    if billing_model == BillingModel.PAY_PER_LEAD_40_FIRST_LEAD:
        return BillingModelDefaults(
            billing_model=billing_model,
            lead_unit_price_cents=unit,
            lead_charge_threshold=1,
            prepaid_lead_credits=1,
            lead_commitment_total=None,
            initial_charge_cents=unit,
        )

    return BillingModelDefaults(
        billing_model=billing_model,
        lead_unit_price_cents=unit,
        lead_charge_threshold=UPFRONT_BUNDLE_LEAD_COUNT,
        prepaid_lead_credits=UPFRONT_BUNDLE_LEAD_COUNT,
        lead_commitment_total=PACKAGE_LEAD_COUNT,
        initial_charge_cents=unit * UPFRONT_BUNDLE_LEAD_COUNT,
    )
