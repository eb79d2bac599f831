from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised at startup when the OTP options bundle is malformed."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class OtpError(Exception):
    status_code = 400
    default_message = "OTP error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class OtpNotFound(OtpError):
    status_code = 404
    default_message = "OTP not found"


class OtpExpired(OtpError):
    status_code = 401
    default_message = "OTP expired"


class OtpInvalid(OtpError):
    status_code = 401
    default_message = "Invalid OTP"


class OtpAttemptsExhausted(OtpError):
    status_code = 401
    default_message = "Max attempts reached. OTP invalidated."


class OtpDeliveryFailure(OtpError):
    status_code = 502
    default_message = "Failed to deliver OTP"


class OtpConflict(OtpError):
    # Too many concurrent writers on one record; safe to retry.
    status_code = 409
    default_message = "OTP is being verified concurrently, try again"
