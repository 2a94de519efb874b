from contextlib import contextmanager
import psycopg
from psycopg.rows import dict_row
from .settings import DATABASE_URL

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL,
    price       NUMERIC(12, 2)
);

CREATE TABLE IF NOT EXISTS purchases_pending (
    ref_command TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    item_id     TEXT NOT NULL REFERENCES items(id),
    amount      NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
    status      TEXT NOT NULL DEFAULT 'pending' CHECK (status = 'pending'),
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS purchases (
    id                BIGSERIAL PRIMARY KEY,
    ref_command       TEXT NOT NULL,
    user_id           TEXT NOT NULL,
    item_id           TEXT NOT NULL,
    amount            NUMERIC(12, 2) NOT NULL,
    status            TEXT NOT NULL CHECK (status = 'completed'),
    payment_method    TEXT,
    payment_reference TEXT,
    client_contact    TEXT,
    raw_notification  JSONB NOT NULL,
    created_at        TIMESTAMPTZ NOT NULL,
    updated_at        TIMESTAMPTZ NOT NULL,
    CONSTRAINT purchases_ref_command_key UNIQUE (ref_command)
);
"""


@contextmanager
def get_conn():
    conn = psycopg.connect(DATABASE_URL, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    with get_conn() as conn:
        conn.execute(SCHEMA)
