"""
Input validation and expiry helpers.
"""
import re
from datetime import datetime, timezone
from typing import Optional, Union

from .exceptions import IntentValidationError
from .models import AssetType, CreateIntentInput, PaymentAsset, PaymentIntent

EVM_ADDRESS_PATTERN = re.compile(r"0x[0-9a-fA-F]{40}")
_DIGITS_PATTERN = re.compile(r"[0-9]+")
_DECIMAL_PATTERN = re.compile(r"[0-9]+(\.[0-9]+)?")
# fromisoformat before 3.11 only takes 3 or 6 fractional digits
_FRACTION_PATTERN = re.compile(r"(:[0-9]{2})\.([0-9]+)")


def _normalize_fraction(text: str) -> str:
    return _FRACTION_PATTERN.sub(
        lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1
    )


def is_valid_evm_address(value: str) -> bool:
    return isinstance(value, str) and EVM_ADDRESS_PATTERN.fullmatch(value) is not None


def is_positive_integer_string(value: str) -> bool:
    if not isinstance(value, str) or not _DIGITS_PATTERN.fullmatch(value):
        return False
    return int(value) > 0


def parse_timestamp(value: Union[datetime, str]) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken to be UTC.

    Raises:
        IntentValidationError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise IntentValidationError("expiresAt must be a valid ISO datetime string")
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _normalize_fraction(text)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise IntentValidationError("expiresAt must be a valid ISO datetime string")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_expired(expires_at: Union[datetime, str], now: Optional[datetime] = None) -> bool:
    """True once `now` has reached `expires_at`."""
    now = now or datetime.now(timezone.utc)
    return parse_timestamp(expires_at) <= parse_timestamp(now)


def is_intent_expired(intent: PaymentIntent, now: Optional[datetime] = None) -> bool:
    return is_expired(intent.expires_at, now)


def validate_asset(asset: PaymentAsset) -> None:
    if not asset.symbol.strip():
        raise IntentValidationError("asset.symbol is required")
    if asset.decimals < 0:
        raise IntentValidationError("asset.decimals must be a non-negative integer")
    if asset.type == AssetType.ERC20:
        if not asset.contract_address:
            raise IntentValidationError("asset.contractAddress is required for erc20 assets")
        if not is_valid_evm_address(asset.contract_address):
            raise IntentValidationError("asset.contractAddress must be a valid EVM address")


def validate_create_intent_input(data: CreateIntentInput, now: Optional[datetime] = None) -> datetime:
    """
    Check every field of a creation request.

    Args:
        data: Creation request
        now: Reference time for the expiry check (defaults to current UTC time)

    Returns:
        The parsed, UTC-normalized expiry

    Raises:
        IntentValidationError: On the first invalid field
    """
    validate_asset(data.asset)

    if not data.reference.strip():
        raise IntentValidationError("reference is required")
    if not is_valid_evm_address(data.recipient):
        raise IntentValidationError("recipient must be a valid EVM address")
    if not is_positive_integer_string(data.amount):
        raise IntentValidationError("amount must be a positive integer string in base units")

    expires_at = parse_timestamp(data.expires_at)
    if is_expired(expires_at, now):
        raise IntentValidationError("expiresAt must be in the future")

    if data.confirmation_policy and data.confirmation_policy.min_confirmations < 0:
        raise IntentValidationError("confirmationPolicy.minConfirmations must be >= 0")

    return expires_at


def to_base_units(human_amount: str, decimals: int) -> str:
    """
    Convert a human decimal amount ("1.5") into a base-unit integer string.

    Raises:
        IntentValidationError: If the amount is malformed or too precise for `decimals`
    """
    normalized = (human_amount or "").strip()
    if not normalized:
        raise IntentValidationError("amount is required")
    if not isinstance(decimals, int) or decimals < 0:
        raise IntentValidationError("decimals must be a non-negative integer")
    if not _DECIMAL_PATTERN.fullmatch(normalized):
        raise IntentValidationError("amount must be a positive decimal number")

    whole, _, fraction = normalized.partition(".")
    if len(fraction) > decimals:
        raise IntentValidationError("too many decimal places for asset decimals")

    return str(int(whole + fraction.ljust(decimals, "0")))
