"""Database - Engine + schema for customers, partners, consents, data requests

How: SQLAlchemy Core engine, raw SQL via text(); JSON columns stored as TEXT
so the same schema runs on SQLite (dev/tests) and PostgreSQL.
"""

import os

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

logger = structlog.get_logger()


def create_db_engine(database_url: str) -> Engine:
    """Create engine; SQLite files get their directory created"""
    if database_url.startswith("sqlite"):
        path = database_url.split("///", 1)[-1] if "///" in database_url else ""
        directory = os.path.dirname(path)
        if path and directory:
            os.makedirs(directory, exist_ok=True)
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def init_schema(engine: Engine):
    """Create core tables if missing"""
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS customers (
                customer_id TEXT PRIMARY KEY,
                encrypted_fields TEXT NOT NULL,
                phone_hash TEXT,
                email_hash TEXT,
                pan_hash TEXT,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """))

        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS partners (
                partner_id TEXT PRIMARY KEY,
                partner_name TEXT NOT NULL,
                public_key TEXT,
                api_token_hash TEXT NOT NULL,
                callback_url TEXT,
                status TEXT NOT NULL,
                requested_contract TEXT,
                approved_contract BOOLEAN NOT NULL DEFAULT FALSE,
                contract_data TEXT,
                contract_version INTEGER NOT NULL DEFAULT 0,
                contract_approved_at TEXT,
                contract_approved_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """))

        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS consents (
                consent_id TEXT PRIMARY KEY,
                customer_id TEXT NOT NULL,
                partner_id TEXT NOT NULL,
                allowed_fields TEXT NOT NULL,
                purpose TEXT NOT NULL,
                retention_period_days INTEGER NOT NULL,
                legal_basis TEXT NOT NULL,
                contract_text TEXT NOT NULL,
                contract_id TEXT,
                status TEXT NOT NULL,
                consent_duration_ms BIGINT NOT NULL,
                consent_method TEXT NOT NULL,
                device_fingerprint TEXT,
                ip_address_hash TEXT,
                withdrawal_method TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """))

        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS data_requests (
                request_id TEXT PRIMARY KEY,
                consent_id TEXT NOT NULL,
                partner_id TEXT NOT NULL,
                customer_id TEXT NOT NULL,
                requested_fields TEXT NOT NULL,
                request_signature TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                processed_at TEXT,
                expires_at TEXT
            )
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_consents_customer
            ON consents(customer_id, status)
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_consents_partner
            ON consents(partner_id, status)
        """))

        conn.commit()
        logger.info("Core tables initialized")
