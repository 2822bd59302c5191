"""Initial schema

Revision ID: 5c1e7a20b9d4
Revises: 
Create Date: 2026-10-12 09:17:38.402615

"""
from pathlib import Path
from typing import Sequence, Union

from alembic import context, op
from sqlalchemy.util import await_only


# revision identifiers, used by Alembic.
revision: str = '5c1e7a20b9d4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

DB_DIR = Path(__file__).parent.parent.parent / "leadflow" / "db"


def _execute_script(sql: str) -> None:
    # Multi-statement scripts (plpgsql bodies included) need asyncpg's simple
    # query protocol, which SQLAlchemy's prepared statements do not use
    if context.is_offline_mode():
        op.execute(sql)
        return
    driver_connection = op.get_bind().connection.driver_connection
    await_only(driver_connection.execute(sql))


def upgrade() -> None:
    """Upgrade schema."""
    _execute_script((DB_DIR / "functions" / "functions.sql").read_text())

    # Execute SQL files in order (users, leads, discovery runs, queue)
    for sql_file in sorted((DB_DIR / "models").glob("*.sql")):
        _execute_script(sql_file.read_text())


def downgrade() -> None:
    """Downgrade schema."""
    # Drop tables in reverse order due to foreign key constraints
    op.execute("DROP TABLE IF EXISTS queue_jobs CASCADE")
    op.execute("DROP TABLE IF EXISTS lead_discovery_leads CASCADE")
    op.execute("DROP TABLE IF EXISTS lead_discovery_runs CASCADE")
    op.execute("DROP TABLE IF EXISTS leads CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column() CASCADE")
