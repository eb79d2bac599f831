from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from utils.otp_config import OtpOptions
from utils.otp_errors import (
    OtpAttemptsExhausted,
    OtpConflict,
    OtpDeliveryFailure,
    OtpExpired,
    OtpInvalid,
    OtpNotFound,
)
from utils.otp_store import OtpStore, utc_now


logger = logging.getLogger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999
MAX_VERIFY_RETRIES = 5


def _gen_otp() -> str:
    # Uniform over [100000, 999999], so always six digits.
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def secrets_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def expiration_time(otp_validity_ms: int, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + timedelta(milliseconds=otp_validity_ms)


async def otp_issue(
    store: OtpStore,
    *,
    email: str,
    options: OtpOptions,
    now: Optional[datetime] = None,
) -> dict:
    """
    Issues a fresh OTP for 'email', persists it and hands it to options.send_email.

    An existing record is overwritten in place and keeps its attempts counter,
    so asking for a new code never buys extra guesses.
    """
    email = normalize_email(email)
    code = _gen_otp()
    expires_at = expiration_time(options.otp_validity_ms, now)

    record = await store.latest(email)
    if record is None or not await store.overwrite(record, code, expires_at):
        # No prior record, or it was consumed between the read and the write.
        await store.create(email, code, expires_at)

    logger.info("OTP issued for %s, expires at %s", email, expires_at.isoformat())

    try:
        await options.send_email(email, code)
    except Exception as e:
        logger.warning("OTP delivery to %s failed: %s", email, e)
        raise OtpDeliveryFailure(f"Failed to deliver OTP: {e}") from e

    return {"ok": True}


async def otp_verify(
    store: OtpStore,
    *,
    email: str,
    otp: str,
    options: OtpOptions,
    now: Optional[datetime] = None,
) -> bool:
    """
    Checks 'otp' against the newest record for 'email' and consumes it on success.

    Raises OtpNotFound, OtpExpired, OtpInvalid or OtpAttemptsExhausted. Every
    mutation is conditional on the version that was read; a lost race re-reads
    the record. Each competing write uses up a retry, so the budget grows with
    max_attempts; past it OtpConflict is raised and that guess is not counted.
    An empty code is rejected without touching the record.
    """
    email = normalize_email(email)
    otp = (otp or "").strip()
    if not otp:
        raise OtpInvalid("OTP required")
    now = now or utc_now()
    retries = max(MAX_VERIFY_RETRIES, options.max_attempts + 2)

    for _ in range(retries):
        record = await store.latest(email)
        if record is None:
            raise OtpNotFound()

        if now > record.expires_at:
            if not await store.delete(record):
                continue
            logger.warning("Expired OTP presented for %s", email)
            raise OtpExpired()

        if not secrets_equal(record.code, otp):
            attempts = record.attempts + 1
            if attempts >= options.max_attempts:
                if not await store.delete(record):
                    continue
                logger.warning("OTP for %s invalidated after %d attempts", email, attempts)
                raise OtpAttemptsExhausted()
            if not await store.save_attempts(record, attempts):
                continue
            raise OtpInvalid()

        if not await store.delete(record):
            continue
        logger.info("OTP consumed for %s", email)
        return True

    logger.warning("OTP verification for %s gave up after %d conflicts", email, retries)
    raise OtpConflict()
