from __future__ import annotations

import pytest

from utils.otp_adapter import initialize_otp_adapter
from utils.otp_config import OtpOptions
from utils.otp_store import MemoryOtpStore


class RecordingSender:
    """send_email stand-in that remembers what it was asked to deliver."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    async def __call__(self, email: str, code: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((email, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def options(sender):
    return OtpOptions(otp_validity_ms=300000, max_attempts=3, send_email=sender)


@pytest.fixture
def store():
    return MemoryOtpStore()


@pytest.fixture
def otp_config(options, store):
    return initialize_otp_adapter(options, store)
