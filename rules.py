"""
rules.py - Reconciliation rule configuration.

A rule set has three sections:

    enabled_rules  -> one boolean switch per matching technique
    thresholds     -> numeric knobs with documented ranges
    weights        -> integer weights for the four sub-scores (sum == 100)

Rule files written by the rules editor use camelCase keys
(`enabledRules.exactReferenceMatch`, `weights.referenceMatch`, ...). Both
camelCase and snake_case keys are accepted.

Invalid configurations are rejected with `ConfigurationError`. Nothing is
clamped or guessed: a weight set summing to 110 is an error, not 100.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from logging_config import get_logger

logger = get_logger(__name__)

RULES_PATH_ENV = "RECON_RULES_PATH"
REQUIRED_WEIGHT_TOTAL = 100


class ConfigurationError(ValueError):
    """Raised when a rule set is missing, unreadable, or out of range."""


class _RulesSection(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class EnabledRules(_RulesSection):
    """On/off switch per matching technique.

    A disabled technique contributes no score and its weight is dropped from
    the combination, so the remaining weights still span 0-100.
    """

    exact_reference_match: bool = Field(
        default=True,
        description="Score 100 when the payment reference equals the invoice reference.",
    )
    fuzzy_customer_match: bool = Field(
        default=True,
        description="Score payer name against customer name with the name similarity.",
    )
    amount_tolerance: bool = Field(
        default=True,
        description=(
            "Score amount proximity and require amounts within tolerance "
            "for a full match."
        ),
    )
    duplicate_detection: bool = Field(
        default=True,
        description="Flag later re-submissions of an already resolved payment.",
    )
    partial_payment_matching: bool = Field(
        default=True,
        description="Allow payments covering a fraction of an invoice.",
    )
    date_proximity: bool = Field(
        default=True,
        description="Score payment date against invoice due date.",
    )


class Thresholds(_RulesSection):
    """Numeric knobs. Ranges mirror the sliders of the rules editor."""

    min_confidence_score: float = Field(
        default=50,
        ge=0,
        le=100,
        description="Minimum combined confidence (0-100) required to accept any match.",
    )
    name_match_sensitivity: float = Field(
        default=70,
        ge=0,
        le=100,
        description=(
            "Similarity bar (0-100) for payer vs customer names. Names below "
            "the bar score 0; at 100 only identical names score."
        ),
    )
    amount_match_tolerance: float = Field(
        default=1.0,
        ge=0,
        le=5,
        description="Allowed amount difference as a percentage of the invoice remaining-due.",
    )
    date_difference_threshold: int = Field(
        default=7,
        ge=0,
        le=30,
        description="Days between payment date and due date at which the date score reaches 0.",
    )
    partial_payment_min_percentage: float = Field(
        default=25,
        ge=0,
        le=100,
        description="Smallest share of the invoice amount accepted as a partial payment.",
    )


class Weights(_RulesSection):
    """Sub-score weights. Must be non-negative integers summing to 100."""

    reference_match: int = Field(default=40, ge=0, le=100)
    amount_match: int = Field(default=30, ge=0, le=100)
    name_match: int = Field(default=20, ge=0, le=100)
    date_match: int = Field(default=10, ge=0, le=100)

    @property
    def total(self) -> int:
        return self.reference_match + self.amount_match + self.name_match + self.date_match

    @model_validator(mode="after")
    def _check_total(self) -> "Weights":
        if self.total != REQUIRED_WEIGHT_TOTAL:
            raise ValueError(
                f"weights must sum to {REQUIRED_WEIGHT_TOTAL}, got {self.total} "
                f"(reference={self.reference_match}, amount={self.amount_match}, "
                f"name={self.name_match}, date={self.date_match})"
            )
        return self


class ReconciliationRules(_RulesSection):
    """Complete, validated rule set consumed read-only by the matcher."""

    enabled_rules: EnabledRules = Field(default_factory=EnabledRules)
    thresholds: Thresholds = Field(default_factory=Thresholds)
    weights: Weights = Field(default_factory=Weights)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "enabledRules": {
                        "exactReferenceMatch": True,
                        "fuzzyCustomerMatch": True,
                        "amountTolerance": True,
                        "duplicateDetection": True,
                        "partialPaymentMatching": True,
                        "dateProximity": True,
                    },
                    "thresholds": {
                        "minConfidenceScore": 50,
                        "nameMatchSensitivity": 70,
                        "amountMatchTolerance": 1,
                        "dateDifferenceThreshold": 7,
                        "partialPaymentMinPercentage": 25,
                    },
                    "weights": {
                        "referenceMatch": 40,
                        "amountMatch": 30,
                        "nameMatch": 20,
                        "dateMatch": 10,
                    },
                }
            ]
        }
    )

    def to_camel_dict(self) -> dict[str, Any]:
        """Dump in the camelCase layout used by rule files."""
        return self.model_dump(by_alias=True)


DEFAULT_RULES = ReconciliationRules()


def _describe_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "rules"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def validate_rules(raw: ReconciliationRules | dict[str, Any] | None) -> ReconciliationRules:
    """Validate a rule set and return it as a `ReconciliationRules`.

    Instances are re-validated from their dumped form, so an object built
    with `model_construct` (which skips validation) is still checked.
    """
    if raw is None:
        raise ConfigurationError("rules must be provided")

    if isinstance(raw, ReconciliationRules):
        payload: Any = raw.model_dump()
    elif isinstance(raw, dict):
        payload = raw
    else:
        raise ConfigurationError(
            f"rules must be a mapping or ReconciliationRules, got {type(raw).__name__}"
        )

    try:
        rules = ReconciliationRules.model_validate(payload)
    except ValidationError as exc:
        message = _describe_validation_error(exc)
        logger.error("rules_invalid | errors=%s", message)
        raise ConfigurationError(f"Invalid reconciliation rules: {message}") from exc

    logger.debug(
        "rules_validated | weights=%s | min_confidence=%.1f | amount_tolerance_pct=%.2f",
        rules.weights.model_dump(),
        rules.thresholds.min_confidence_score,
        rules.thresholds.amount_match_tolerance,
    )
    return rules


def load_rules(path: Optional[str | Path] = None) -> ReconciliationRules:
    """Load rules from a JSON file.

    Resolution order: explicit `path`, then `RECON_RULES_PATH` (a `.env`
    file is honored), then `DEFAULT_RULES`.
    """
    load_dotenv()

    if path is None:
        env_path = os.getenv(RULES_PATH_ENV, "").strip()
        if not env_path:
            logger.info("rules_source | source=defaults")
            return DEFAULT_RULES
        path = env_path

    rules_path = Path(path)
    if not rules_path.is_file():
        raise ConfigurationError(f"Rules file not found: {rules_path}")

    try:
        raw = json.loads(rules_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Could not read rules file '{rules_path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Rules file '{rules_path}' is not valid JSON: {exc}") from exc

    rules = validate_rules(raw)
    logger.info("rules_source | source=file | path=%s", rules_path)
    return rules
