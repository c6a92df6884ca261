# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Money tolerance for the accounting identity and cost-value checks
    LEDGER_COST_EPSILON = os.environ.get("LEDGER_COST_EPSILON", "0.01")

    # Average-cost movement that forces sale COGS to be re-costed
    LEDGER_AVG_COST_EPSILON = os.environ.get("LEDGER_AVG_COST_EPSILON", "0.000001")

    # Upper bound on waiting for another writer of the same product
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "5"))

    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
