"""
Create the billing tables directly from the models (local development only).
Deployed databases are upgraded with run_migrations.py instead.
"""
from billing_service.db.base import Base
from billing_service.db.session import SQLALCHEMY_DATABASE_URL, engine
import billing_service.models  # noqa: F401  register all models with Base


def create_all() -> None:
    print(f"Creating billing tables on {engine.url.render_as_string(hide_password=True)}...")
    Base.metadata.create_all(bind=engine)
    for table in sorted(Base.metadata.tables):
        print(f"  - {table}")
    if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
        print("⚠️ SQLite database: fine for local runs, not for the reconciliation workers")
    print("✅ Billing tables ready")


if __name__ == "__main__":
    create_all()
