"""
Run schema migrations before the app starts.
Deploy startCommand runs: python run_migrations.py && uvicorn billing_service.main:app ...
so every deploy upgrades the database to the latest Alembic revision with no manual step.
"""
import os
import sys

from alembic import command
from alembic.config import Config


def run():
    root = os.path.dirname(os.path.abspath(__file__))
    os.chdir(root)
    sys.path.insert(0, root)

    from billing_service.core.config import get_settings

    cfg = Config(os.path.join(root, "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", get_settings().DATABASE_URL)
    print("▶ Upgrading database to head...")
    command.upgrade(cfg, "head")
    print("✅ Migrations complete")


if __name__ == "__main__":
    run()
