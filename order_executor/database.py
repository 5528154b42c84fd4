"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine, Session

from order_executor.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)


def _run_migrations():
    """Run lightweight schema migrations for columns added after first release."""
    from sqlalchemy import text

    inspector = inspect(engine)

    if "orders" in inspector.get_table_names():
        columns = {col["name"] for col in inspector.get_columns("orders")}
        if "stop_loss_price" not in columns:
            logger.info("Migrating: adding orders.stop_loss_price")
            with engine.connect() as conn:
                conn.execute(text("ALTER TABLE orders ADD COLUMN stop_loss_price FLOAT"))
                conn.commit()

        existing_indexes = inspector.get_indexes("orders")
        has_unique_idx = any(
            idx["name"] == "uq_orders_idempotency_key" for idx in existing_indexes
        )
        existing_uniques = inspector.get_unique_constraints("orders")
        has_unique_idx = has_unique_idx or any(
            uc["name"] == "uq_orders_idempotency_key" for uc in existing_uniques
        )
        if not has_unique_idx:
            logger.info("Migrating: adding unique index on orders idempotency key")
            with engine.connect() as conn:
                conn.execute(text(
                    "CREATE UNIQUE INDEX uq_orders_idempotency_key "
                    "ON orders (user_id, external_id, order_dir)"
                ))
                conn.commit()


def create_db_and_tables():
    """Create all tables. Called on startup."""
    import order_executor.models  # noqa: F401  registers table metadata

    SQLModel.metadata.create_all(engine)
    _run_migrations()


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
