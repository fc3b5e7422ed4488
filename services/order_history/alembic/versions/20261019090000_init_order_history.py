from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261019090000"
down_revision = None

JSON_PAYLOAD = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

def upgrade():
    # order aggregate, as written by the order-management system
    op.create_table(
        'tables',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('area_name', sa.String(length=64), nullable=True),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_type', sa.String(length=32), nullable=False, server_default='DINE_IN'),
        sa.Column('order_status', sa.String(length=32), nullable=False, server_default='PENDING'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('table_id', sa.Integer(), sa.ForeignKey('tables.id'), nullable=True),
        sa.Column('customer_id', sa.String(length=64), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('estimated_delivery_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_from_whatsapp', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subtotal', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'delivery_info',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('recipient_name', sa.String(length=255), nullable=True),
        sa.Column('recipient_phone', sa.String(length=32), nullable=True),
        sa.Column('full_address', sa.Text(), nullable=True),
        sa.Column('delivery_instructions', sa.Text(), nullable=True),
        sa.Column('street', sa.String(length=255), nullable=True),
        sa.Column('number', sa.String(length=32), nullable=True),
        sa.Column('interior_number', sa.String(length=32), nullable=True),
        sa.Column('neighborhood', sa.String(length=120), nullable=True),
        sa.Column('city', sa.String(length=120), nullable=True),
        sa.Column('state', sa.String(length=120), nullable=True),
        sa.Column('zip_code', sa.String(length=16), nullable=True),
        sa.Column('country', sa.String(length=64), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('variant_id', sa.String(length=64), nullable=True),
        sa.Column('variant_name', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('final_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('preparation_status', sa.String(length=32), nullable=False, server_default='PENDING'),
        sa.Column('preparation_notes', sa.String(length=500), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        'order_item_modifiers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_item_id', sa.Integer(), sa.ForeignKey('order_items.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('modifier_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
    )
    op.create_table(
        'order_item_pizza_customizations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_item_id', sa.Integer(), sa.ForeignKey('order_items.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('customization_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('half', sa.String(length=16), nullable=False, server_default='FULL'),
        sa.Column('action', sa.String(length=16), nullable=False, server_default='ADD'),
    )
    op.create_table(
        'adjustments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_percentage', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('value', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
    )

    # audit trail
    op.create_table(
        'order_history',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True),
        sa.Column('order_id', sa.Integer(), nullable=False, index=True),
        sa.Column('sequence', sa.BigInteger(), nullable=False),
        sa.Column('operation', sa.String(length=16), nullable=False),
        sa.Column('changed_by', sa.String(length=64), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', JSON_PAYLOAD, nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('order_id', 'sequence', name='uq_order_history_order_sequence'),
    )

def downgrade():
    op.drop_table('order_history')
    op.drop_table('adjustments')
    op.drop_table('order_item_pizza_customizations')
    op.drop_table('order_item_modifiers')
    op.drop_table('order_items')
    op.drop_table('delivery_info')
    op.drop_table('orders')
    op.drop_table('tables')
