"""Orders and shipments baseline.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _is_postgres(bind) -> bool:
    return str(getattr(getattr(bind, "dialect", None), "name", "") or "").lower().startswith("postgres")


def _now_default(bind):
    return sa.text("NOW()") if _is_postgres(bind) else sa.text("CURRENT_TIMESTAMP")


def _table_exists(bind, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return bool(inspector.has_table(table_name))


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if not inspector.has_table(table_name):
        return False
    for index in inspector.get_indexes(table_name):
        if str(index.get("name") or "") == index_name:
            return True
    return False


def upgrade() -> None:
    bind = op.get_bind()
    now_default = _now_default(bind)

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("order_id", sa.String(length=4), nullable=False),
            sa.Column("user_id", sa.Text(), nullable=False),
            sa.Column("item_id", sa.Text(), nullable=False),
            sa.Column("applicant_key", sa.Text(), nullable=False),
            sa.Column("name", sa.Text(), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("item_name", sa.Text(), nullable=False),
            sa.Column("price", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=1), nullable=False, server_default=sa.text("'N'")),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=now_default),
            sa.PrimaryKeyConstraint("applicant_key", "order_id", name="pk_orders"),
            sa.CheckConstraint("status IN ('N', 'Y')", name="ck_orders_status"),
        )
    if not _index_exists(bind, "orders", "idx_orders_applicant_status"):
        op.create_index("idx_orders_applicant_status", "orders", ["applicant_key", "status"], unique=False)

    if not _table_exists(bind, "shipments"):
        op.create_table(
            "shipments",
            sa.Column("shipment_id", sa.String(length=4), nullable=False),
            sa.Column("order_id", sa.String(length=4), nullable=False),
            sa.Column("item_id", sa.Text(), nullable=False),
            sa.Column("applicant_key", sa.Text(), nullable=False),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=now_default),
            sa.PrimaryKeyConstraint("applicant_key", "shipment_id", name="pk_shipments"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    if _table_exists(bind, "shipments"):
        op.drop_table("shipments")
    if _index_exists(bind, "orders", "idx_orders_applicant_status"):
        op.drop_index("idx_orders_applicant_status", table_name="orders")
    if _table_exists(bind, "orders"):
        op.drop_table("orders")
