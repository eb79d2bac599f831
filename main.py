from __future__ import annotations

import logging
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from routers.auth import router as otp_router
from utils.brevo_email import send_otp_email
from utils.otp_adapter import initialize_otp_adapter
from utils.otp_config import load_options
from utils.otp_store import make_store, utc_now


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="OTP Auth Backend")

app.include_router(otp_router, prefix="/api")


async def _purge_expired_otps() -> int:
    """Drop OTP records nobody came back to verify."""
    deleted = await app.state.otp.module.store.purge_expired(utc_now())
    if deleted:
        logger.info("Purged %d expired OTP records", deleted)
    return deleted


@app.on_event("startup")
async def _startup():
    config = initialize_otp_adapter(load_options(send_otp_email), make_store())
    # Fail fast on bad config, and have the table in place before the first request.
    config.module.validate_options(config)
    await config.module.ensure_schema()
    app.state.otp = config

    sched = AsyncIOScheduler(timezone=os.getenv("TZ", "UTC"))
    sched.add_job(
        _purge_expired_otps,
        "interval",
        minutes=int(os.getenv("OTP_PURGE_MINUTES", "30")),
        id="purge_expired_otps",
        replace_existing=True,
    )
    sched.start()
    app.state._scheduler = sched


@app.on_event("shutdown")
def _stop_scheduler():
    sched = getattr(app.state, "_scheduler", None)
    if sched:
        sched.shutdown(wait=False)


@app.get("/")
def root():
    return {"status": "Backend running"}
