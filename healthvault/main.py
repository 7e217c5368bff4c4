"""
FastAPI application entrypoint.

Run locally:  uvicorn healthvault.main:app --reload
"""

import logging

from fastapi import FastAPI

from healthvault.api.routes import router
from healthvault.config import settings
from healthvault.models.database import Base, engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)

app = FastAPI(
    title="Health Vault API",
    description=(
        "Migrates a patient's FHIR R4 records from connected providers into a "
        "local vault and evaluates preventive-care gaps over them."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
