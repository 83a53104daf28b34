"""Pricing and plan configuration.

Fee tables, role overrides and subscription plan allowances are data,
not code.  They are loaded ONCE at startup into an immutable
``PricingConfig`` and handed to the FeeResolver and EntitlementGate
through their constructors.  Nothing in the billing path reads a
module-level table directly, so tests can build a config with exactly
the numbers they need.

SOURCES, IN ORDER
------------------
  1. Built-in defaults (the tables below).
  2. A JSON file named by PRICING_CONFIG_PATH, shaped like::

       {
         "currency": "usd",
         "base_fees": {"verification_fee": 1500},
         "role_overrides": {"partner": {"verification_fee": 750}},
         "plans": {"employer_basic": {"job_posting": {"included": true, "limit": 5}}}
       }

     Each top-level section REPLACES the matching built-in section
     (except base_fees, which is merged key by key).
  3. JOB_POSTING_FEE / VERIFICATION_FEE / HIRE_SUCCESS_FEE env vars,
     which win over both.

All amounts are integers in minor currency units (cents).
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

JOB_POSTING_FEE = "job_posting_fee"
VERIFICATION_FEE = "verification_fee"
HIRE_SUCCESS_FEE = "hire_success_fee"

ACTION_TYPES = (JOB_POSTING_FEE, VERIFICATION_FEE, HIRE_SUCCESS_FEE)

_DEFAULT_BASE_FEES: dict[str, int] = {
    JOB_POSTING_FEE: 5000,
    VERIFICATION_FEE: 1500,
    HIRE_SUCCESS_FEE: 10000,
}

_DEFAULT_ROLE_OVERRIDES: dict[str, dict[str, int]] = {
    "admin": {JOB_POSTING_FEE: 0, VERIFICATION_FEE: 0, HIRE_SUCCESS_FEE: 0},
    "partner": {JOB_POSTING_FEE: 2500, VERIFICATION_FEE: 750, HIRE_SUCCESS_FEE: 5000},
    "early_adopter": {
        JOB_POSTING_FEE: 4000,
        VERIFICATION_FEE: 1200,
        HIRE_SUCCESS_FEE: 8000,
    },
}

# plan -> feature -> (included, limit).  limit None means unlimited.
_DEFAULT_PLANS: dict[str, dict[str, tuple[bool, int | None]]] = {
    "employer_basic": {
        "job_posting": (True, 5),
        "verification": (False, None),
        "candidate_search": (True, 100),
    },
    "employer_growth": {
        "job_posting": (True, 20),
        "verification": (False, None),
        "candidate_search": (True, 500),
    },
    "employer_enterprise": {
        "job_posting": (True, 999),
        "verification": (True, 50),
        "candidate_search": (True, 9999),
    },
    "recruiter_essential": {
        "job_posting": (True, 10),
        "verification": (False, None),
        "candidate_search": (True, 200),
    },
    "recruiter_professional": {
        "job_posting": (True, 30),
        "verification": (True, 20),
        "candidate_search": (True, 1000),
    },
    "recruiter_agency": {
        "job_posting": (True, 999),
        "verification": (True, 100),
        "candidate_search": (True, 9999),
    },
    "candidate_free": {"verification": (True, 2)},
    "candidate_premium": {"verification": (True, 10)},
    "candidate_career_pro": {"verification": (True, 999)},
}

# Which subscription feature (if any) can cover a billable action.
_ACTION_FEATURES: dict[str, str] = {
    JOB_POSTING_FEE: "job_posting",
    VERIFICATION_FEE: "verification",
}

_FEE_ENV_VARS = {
    JOB_POSTING_FEE: "JOB_POSTING_FEE",
    VERIFICATION_FEE: "VERIFICATION_FEE",
    HIRE_SUCCESS_FEE: "HIRE_SUCCESS_FEE",
}


@dataclass(frozen=True, slots=True)
class FeatureAllowance:
    """What a plan grants for one feature."""

    included: bool
    limit: int | None = None


@dataclass(frozen=True)
class PricingConfig:
    currency: str
    base_fees: Mapping[str, int]
    role_overrides: Mapping[str, Mapping[str, int]]
    plans: Mapping[str, Mapping[str, FeatureAllowance]]
    action_features: Mapping[str, str]

    def is_known_action(self, action_type: str) -> bool:
        return action_type in self.base_fees

    def role_override(self, role: str | None, action_type: str) -> int | None:
        if not role:
            return None
        return self.role_overrides.get(role, {}).get(action_type)

    def allowance(self, plan: str, feature: str) -> FeatureAllowance | None:
        """Return the plan's allowance for a feature, or None if not listed."""
        features = self.plans.get(plan)
        if features is None:
            return None
        return features.get(feature)

    def feature_for(self, action_type: str) -> str | None:
        return self.action_features.get(action_type)


def _amount(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer (got {value!r})")
    return value


def _freeze_plans(
    raw: Mapping[str, Mapping[str, object]],
) -> Mapping[str, Mapping[str, FeatureAllowance]]:
    plans: dict[str, Mapping[str, FeatureAllowance]] = {}
    for plan, features in raw.items():
        frozen: dict[str, FeatureAllowance] = {}
        for feature, entry in features.items():
            if isinstance(entry, tuple):
                included, limit = entry
            elif isinstance(entry, Mapping):
                included = bool(entry.get("included", False))
                limit = entry.get("limit")
            else:
                raise ValueError(
                    f"plan {plan!r} feature {feature!r} must be an object (got {entry!r})"
                )
            if limit is not None:
                limit = _amount(f"plan {plan!r} feature {feature!r} limit", limit)
            frozen[feature] = FeatureAllowance(included=included, limit=limit)
        plans[plan] = MappingProxyType(frozen)
    return MappingProxyType(plans)


def build_pricing(
    overrides: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
) -> PricingConfig:
    """Assemble a PricingConfig from defaults + optional overrides + env vars.

    Raises ValueError on malformed amounts or limits so a bad config
    fails at startup, not on the first billable request.
    """
    overrides = overrides or {}
    env = env if env is not None else {}

    currency = str(overrides.get("currency", "usd")).lower()

    base_fees = dict(_DEFAULT_BASE_FEES)
    for action, value in dict(overrides.get("base_fees", {})).items():  # type: ignore[call-overload]
        base_fees[action] = _amount(f"base_fees.{action}", value)
    for action, var in _FEE_ENV_VARS.items():
        raw = env.get(var, "").strip()
        if not raw:
            continue
        try:
            base_fees[action] = _amount(var, int(raw))
        except ValueError:
            raise ValueError(f"{var} must be a non-negative integer (got {raw!r})") from None

    raw_roles = overrides.get("role_overrides", _DEFAULT_ROLE_OVERRIDES)
    role_overrides = MappingProxyType(
        {
            role: MappingProxyType(
                {a: _amount(f"role_overrides.{role}.{a}", v) for a, v in fees.items()}
            )
            for role, fees in dict(raw_roles).items()  # type: ignore[call-overload]
        }
    )

    plans = _freeze_plans(overrides.get("plans", _DEFAULT_PLANS))  # type: ignore[arg-type]

    return PricingConfig(
        currency=currency,
        base_fees=MappingProxyType(base_fees),
        role_overrides=role_overrides,
        plans=plans,
        action_features=MappingProxyType(dict(_ACTION_FEATURES)),
    )


def load_pricing(path: str | None = None) -> PricingConfig:
    overrides: dict[str, object] = {}
    if path:
        try:
            overrides = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise ValueError(f"PRICING_CONFIG_PATH could not be loaded: {exc}") from exc
        if not isinstance(overrides, dict):
            raise ValueError("PRICING_CONFIG_PATH must contain a JSON object")
        logger.info("Pricing overrides loaded from %s", path)
    return build_pricing(overrides, os.environ)


PRICING = load_pricing(SETTINGS.pricing_config_path)
