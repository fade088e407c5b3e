"""
Migration Ledger Validation and Hardening

Input validation for ledger creation parameters and identities, plus
state machine invariant enforcement:

1. Identity validation (Ethereum-style addresses)
2. Bounded integer validation for amounts, rates and durations
3. State transition and monotonicity invariants

Security Model:
    - All creation parameters are untrusted until validated
    - Validation collects every failure before raising
    - State mutations are checked against the transition table

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set


NULL_ADDRESS = "0x" + "0" * 40


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class InvariantViolation(Exception):
    """State machine invariant violated."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')

    # Limits
    MAX_PERCENTAGE = 100
    MAX_BASIS_POINTS = 10_000

    @classmethod
    def validate_address(
        cls,
        value: Any,
        field_name: str = "address",
        allow_null: bool = True,
    ) -> ValidationResult:
        """Validate an Ethereum-style address, returning it lowercased."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])

        lower = value.strip().lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be valid address (0x + 40 hex)", value)
            ])

        if not allow_null and lower == NULL_ADDRESS:
            return ValidationResult.failure([
                ValidationError(field_name, "Must not be the null address", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_int(
        cls,
        value: Any,
        field_name: str,
        min_value: int = 0,
        max_value: Optional[int] = None,
    ) -> ValidationResult:
        """Validate an integer within [min_value, max_value]."""
        # bool is an int subclass and never a meaningful amount
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])

        errors = []
        if value < min_value:
            errors.append(ValidationError(field_name, f"Below minimum ({min_value})", value))
        if max_value is not None and value > max_value:
            errors.append(ValidationError(field_name, f"Exceeds maximum ({max_value})", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(value)

    @classmethod
    def validate_percentage(cls, value: Any, field_name: str = "percentage") -> ValidationResult:
        """Validate a whole percentage (0-100)."""
        return cls.validate_int(value, field_name, 0, cls.MAX_PERCENTAGE)

    @classmethod
    def validate_basis_points(cls, value: Any, field_name: str = "basis_points") -> ValidationResult:
        """Validate a rate in basis points (0-10000)."""
        return cls.validate_int(value, field_name, 0, cls.MAX_BASIS_POINTS)


def collect(*results: ValidationResult) -> List[Any]:
    """Return the sanitized values of all results, raising every failure at once."""
    errors: List[ValidationError] = []
    for result in results:
        errors.extend(result.errors)
    if errors:
        raise ValidationErrors(errors)
    return [r.sanitized_value for r in results]


def normalize_address(value: Any, field_name: str = "address") -> str:
    """Validate and lowercase a single address, raising on failure."""
    result = Validators.validate_address(value, field_name)
    result.raise_if_invalid()
    return result.sanitized_value


def derive_address(label: str) -> str:
    """Derive a deterministic address from a label (simulations and tests)."""
    return "0x" + hashlib.sha256(label.encode("utf-8")).hexdigest()[:40]


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_monotonic_increase(
        field_name: str,
        old_value: int,
        new_value: int,
    ) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be monotonically increasing: "
                f"cannot go from {old_value} to {new_value}"
            )

