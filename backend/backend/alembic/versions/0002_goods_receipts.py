"""goods receipt notes and partially received purchase orders

Revision ID: 0002_goods_receipts
Revises: 0001_initial_schema
Create Date: 2026-10-17T15:00:00.000000Z
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_goods_receipts"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade():
    from app.db.models.purchasing import GoodsReceipt, GoodsReceiptLine

    bind = op.get_bind()
    # 'partially_received' does not fit the original width
    with op.batch_alter_table("purch_order") as batch:
        batch.alter_column("status", existing_type=sa.String(16), type_=sa.String(24), existing_nullable=False)
    GoodsReceipt.__table__.create(bind=bind, checkfirst=True)
    GoodsReceiptLine.__table__.create(bind=bind, checkfirst=True)


def downgrade():
    from app.db.models.purchasing import GoodsReceipt, GoodsReceiptLine

    bind = op.get_bind()
    GoodsReceiptLine.__table__.drop(bind=bind, checkfirst=True)
    GoodsReceipt.__table__.drop(bind=bind, checkfirst=True)
    with op.batch_alter_table("purch_order") as batch:
        batch.alter_column("status", existing_type=sa.String(24), type_=sa.String(16), existing_nullable=False)
