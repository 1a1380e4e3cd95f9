"""Billing resolution and credit computation for credential usage.

Per-model billing configuration lives on the credential as a JSON object::

    {"gpt-4o": {"multiplier": 1.5, "rmbPerMTok": 20}, "legacy-model": 2}

Bare numbers are legacy multiplier-only entries priced at 0. The map is
validated strictly when written (:func:`validate_model_billing_config`) and
read tolerantly at consumption time (:func:`parse_model_billing_config`).
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from tokenledger.errors import BadRequestError
from tokenledger.models.credential import Credential

logger = logging.getLogger(__name__)

EPSILON = 1e-9
TOKENS_PER_PRICE_UNIT = 1_000_000
MINOR_UNITS_PER_CURRENCY = 100

SOURCE_MODEL_CONFIG = "model_config"
SOURCE_DEFAULT = "default"
SOURCE_MISSING = "missing"


@dataclass(frozen=True)
class ModelBillingEntry:
    multiplier: float
    rmb_per_mtok: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"multiplier": self.multiplier, "rmbPerMTok": self.rmb_per_mtok}


@dataclass(frozen=True)
class BillingResolution:
    """Multipliers and price that apply to one credential/model pair."""

    credential_multiplier: float
    model_multiplier: float
    model_multiplier_source: str
    rmb_per_mtok: float
    rmb_price_source: str


@dataclass(frozen=True)
class CreditComputation:
    total_tokens: int
    token_cost: float
    base_credit: int
    consumed_credit: int


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _load_config(raw: str | Mapping[str, Any] | None) -> Mapping[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable per-model billing config: %.80r", raw)
        return {}
    if not isinstance(parsed, Mapping):
        logger.warning("Ignoring per-model billing config that is not an object")
        return {}
    return parsed


def parse_model_billing_config(raw: str | Mapping[str, Any] | None) -> dict[str, ModelBillingEntry]:
    """Read a stored per-model billing map, dropping entries that do not parse."""
    entries: dict[str, ModelBillingEntry] = {}
    for model, value in _load_config(raw).items():
        name = str(model).strip()
        if not name:
            continue
        if _is_finite_number(value):
            multiplier, price = value, 0
        elif isinstance(value, Mapping):
            multiplier = value.get("multiplier", 1)
            price = value.get("rmbPerMTok", value.get("rmb_per_mtok", 0))
            if price is None:
                price = 0
        else:
            continue
        if not _is_finite_number(multiplier) or multiplier <= 0:
            continue
        if not _is_finite_number(price) or price < 0:
            continue
        entries[name] = ModelBillingEntry(multiplier=float(multiplier), rmb_per_mtok=float(price))
    return entries


def validate_model_billing_config(config: Mapping[str, Any] | None) -> dict[str, dict[str, float]]:
    """Validate a per-model billing map before it is stored.

    Returns:
        The normalized map ``{model: {"multiplier": m, "rmbPerMTok": p}}``.

    Raises:
        BadRequestError: On empty or duplicate model names (after trimming),
            a multiplier that is not a finite number > 0, or a price that is
            not a finite number >= 0.
    """
    if config is None:
        return {}
    if not isinstance(config, Mapping):
        raise BadRequestError("Model billing config must be an object keyed by model name")

    normalized: dict[str, dict[str, float]] = {}
    for model, value in config.items():
        name = str(model).strip() if model is not None else ""
        if not name:
            raise BadRequestError("Model billing config contains an empty model name")
        if name in normalized:
            raise BadRequestError(f"Duplicate model billing config for '{name}'")

        if _is_finite_number(value):
            multiplier, price = value, 0
        elif isinstance(value, Mapping):
            multiplier = value.get("multiplier")
            price = value.get("rmbPerMTok", 0)
            if price is None:
                price = 0
        else:
            raise BadRequestError(f"Invalid billing config for model '{name}'")

        if not _is_finite_number(multiplier) or multiplier <= 0:
            raise BadRequestError(f"Invalid credit consumption multiplier for model '{name}'")
        if not _is_finite_number(price) or price < 0:
            raise BadRequestError(f"Invalid rmbPerMTok for model '{name}'")

        normalized[name] = ModelBillingEntry(float(multiplier), float(price)).to_dict()
    return normalized


def credential_multiplier(credential: Credential | None) -> float:
    if credential is None:
        return 1.0
    value = credential.credit_consumption_multiplier
    if _is_finite_number(value) and value > 0:
        return float(value)
    return 1.0


def resolve_billing(credential: Credential | None, model: str | None) -> BillingResolution:
    """Resolve the multipliers and price for ``model`` served by ``credential``."""
    flat = credential_multiplier(credential)
    model_name = (model or "").strip()

    if credential is not None and model_name:
        config = parse_model_billing_config(credential.credit_consumption_multiplier_by_model)
        entry = config.get(model_name)
        if entry is not None:
            return BillingResolution(
                credential_multiplier=flat,
                model_multiplier=entry.multiplier,
                model_multiplier_source=SOURCE_MODEL_CONFIG,
                rmb_per_mtok=entry.rmb_per_mtok,
                rmb_price_source=SOURCE_MODEL_CONFIG,
            )

    return BillingResolution(
        credential_multiplier=flat,
        model_multiplier=1.0,
        model_multiplier_source=SOURCE_DEFAULT,
        rmb_per_mtok=0.0,
        rmb_price_source=SOURCE_MISSING,
    )


def compute_consumed_credit(total_tokens: int, resolution: BillingResolution) -> CreditComputation:
    """Convert a token count into credits.

    ``base = ceil(cost * 100)`` in currency minor units, then
    ``consumed = ceil(base * model_multiplier * credential_multiplier)``;
    both ceilings subtract a small epsilon so exact products are not bumped
    up by float noise.
    """
    token_cost = (total_tokens / TOKENS_PER_PRICE_UNIT) * resolution.rmb_per_mtok
    base_credit = 0
    if token_cost > 0:
        base_credit = max(0, math.ceil(token_cost * MINOR_UNITS_PER_CURRENCY - EPSILON))

    consumed_credit = 0
    if base_credit > 0:
        scaled = base_credit * resolution.model_multiplier * resolution.credential_multiplier
        consumed_credit = max(0, math.ceil(scaled - EPSILON))

    return CreditComputation(
        total_tokens=total_tokens,
        token_cost=token_cost,
        base_credit=base_credit,
        consumed_credit=consumed_credit,
    )


def _fmt(value: float) -> str:
    return f"{value:g}"


def describe_consumption(
    model: str | None,
    resolution: BillingResolution,
    computation: CreditComputation,
) -> str:
    """Audit description recorded on each consume transaction."""
    return (
        f"Token usage: totalTokens={computation.total_tokens}, model={model or '-'}, "
        f"rmbPerMTok={_fmt(resolution.rmb_per_mtok)} ({resolution.rmb_price_source}), "
        f"tokenCost={computation.token_cost:.6f}, baseCredit={computation.base_credit}, "
        f"modelMultiplier={_fmt(resolution.model_multiplier)} ({resolution.model_multiplier_source}), "
        f"credentialMultiplier={_fmt(resolution.credential_multiplier)}, "
        f"consumedCredit={computation.consumed_credit}"
    )
