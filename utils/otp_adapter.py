"""
OTP auth adapter: the surface a host auth framework drives.

    config = initialize_otp_adapter(options, store)
    await config.module.ensure_schema()
    config.module.validate_options(config)

    await config.module.challenge({"email": email}, None, config)
    await config.module.validate_auth_data({"email": email, "otp": otp}, config)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from utils.otp_config import OtpAdapterConfig, OtpOptions, validate_otp_options
from utils.otp_errors import ConfigurationError
from utils.otp_service import normalize_email, otp_issue, otp_verify
from utils.otp_store import OtpStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """
    Built by host code only. privileged=True skips OTP checks entirely,
    so a host must derive it from its own authenticated credentials.
    """

    privileged: bool = False


class OtpAdapter:
    def __init__(self, store: OtpStore):
        self.store = store

    async def ensure_schema(self) -> None:
        await self.store.ensure_schema()

    async def validate_app_id(self) -> None:
        return None

    def validate_options(self, config: OtpAdapterConfig) -> None:
        validate_otp_options(getattr(config, "options", None))
        module = getattr(config, "module", None)
        if not isinstance(module, OtpAdapter):
            raise ConfigurationError("module", "Module must be an instance of OtpAdapter")
        if module is not self:
            raise ConfigurationError("module", "Module does not match this OtpAdapter instance")

    async def challenge(
        self,
        challenge_data: Mapping[str, Any],
        auth_data: Any,
        config: OtpAdapterConfig,
    ) -> dict:
        return await otp_issue(self.store, email=challenge_data.get("email", ""), options=config.options)

    async def validate_auth_data(
        self,
        auth_data: Mapping[str, Any],
        config: OtpAdapterConfig,
        context: Optional[AuthContext] = None,
    ) -> bool:
        if isinstance(context, AuthContext) and context.privileged:
            logger.info("Privileged caller: OTP check skipped for %s", auth_data.get("email"))
            return True
        return await otp_verify(
            self.store,
            email=auth_data.get("email", ""),
            otp=str(auth_data.get("otp") or ""),
            options=config.options,
        )


def initialize_otp_adapter(options: OtpOptions, store: OtpStore) -> OtpAdapterConfig:
    return OtpAdapterConfig(options=options, module=OtpAdapter(store))


def normalize_linked_identity(
    current_identity: Optional[Mapping[str, Any]],
    primary_email: Optional[str],
) -> Optional[dict]:
    """Post-save hook: returns the identity with its email synced to the account's, or None."""
    if not current_identity or not primary_email:
        return None
    primary = normalize_email(primary_email)
    if normalize_email(current_identity.get("email") or "") == primary:
        return None
    return {**current_identity, "email": primary}
