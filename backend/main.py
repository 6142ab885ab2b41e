from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from config import get_config
from database import init_db
from ledger_api import router as ledger_router, register_error_handlers

logging.basicConfig(
    level=getattr(logging, get_config().log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Finance Ledger API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)
app.include_router(ledger_router)


@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("Ledger database initialized")


@app.get("/")
def read_root():
    return {"message": "Personal Finance Ledger API is running"}
