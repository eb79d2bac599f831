from __future__ import annotations

import inspect
import math
import os
from dataclasses import dataclass
from numbers import Real
from typing import Any, Awaitable, Callable, Optional

from utils.otp_errors import ConfigurationError


SendEmail = Callable[[str, str], Awaitable[Any]]

DEFAULT_EXP_MINUTES = 5
DEFAULT_MAX_ATTEMPTS = 3
# One year.
MAX_OTP_VALIDITY_MS = 365 * 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class OtpOptions:
    otp_validity_ms: int
    max_attempts: int
    send_email: SendEmail


@dataclass(frozen=True)
class OtpAdapterConfig:
    """The bundle a host hands to every adapter call: options plus the adapter itself."""

    options: Optional[OtpOptions]
    module: Any


def _is_async_callable(fn: Any) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def validate_otp_options(options: Optional[OtpOptions]) -> None:
    """
    Fail fast on a malformed options object.

    Raises ConfigurationError naming the first offending field.
    """
    if options is None:
        raise ConfigurationError("options", "Options object is required")

    validity = getattr(options, "otp_validity_ms", None)
    if isinstance(validity, bool) or not isinstance(validity, Real) or validity <= 0:
        raise ConfigurationError("otp_validity_ms", "Invalid or missing otp_validity_ms")
    if not math.isfinite(validity) or validity > MAX_OTP_VALIDITY_MS:
        raise ConfigurationError(
            "otp_validity_ms", f"otp_validity_ms must be finite and at most {MAX_OTP_VALIDITY_MS}"
        )

    max_attempts = getattr(options, "max_attempts", None)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts <= 0:
        raise ConfigurationError("max_attempts", "Invalid or missing max_attempts")

    send_email = getattr(options, "send_email", None)
    if not callable(send_email) or not _is_async_callable(send_email):
        raise ConfigurationError("send_email", "Invalid or missing send_email coroutine function")
    try:
        inspect.signature(send_email).bind("user@example.com", "000000")
    except (TypeError, ValueError):
        raise ConfigurationError("send_email", "send_email must accept (email, code)")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(name, f"{name} must be an integer, got {raw!r}")


def load_options(send_email: SendEmail) -> OtpOptions:
    """Builds OtpOptions from the environment. Call validate_otp_options on the result."""
    if os.getenv("OTP_VALIDITY_MS") is not None:
        validity_ms = _env_int("OTP_VALIDITY_MS", 0)
    else:
        validity_ms = _env_int("OTP_EXP_MINUTES", DEFAULT_EXP_MINUTES) * 60 * 1000
    return OtpOptions(
        otp_validity_ms=validity_ms,
        max_attempts=_env_int("OTP_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
        send_email=send_email,
    )
