import logging
import os

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from carehub.config import env_csv, env_int
from carehub.routers import admin, jobs, providers, requests, wallet
from carehub.services.marketplace import Marketplace, get_marketplace

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="CareHub API", version="0.1.0")

cors_origins = env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(providers.router)
app.include_router(jobs.router)
app.include_router(requests.router)
app.include_router(wallet.router)
app.include_router(admin.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready(market: Marketplace = Depends(get_marketplace)):
    return {"status": "ready", "payment_gateway_configured": market.ledger.payment_gateway_enabled}


def run() -> None:
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=env_int("PORT", 8000), log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    run()
