"""
Alembic migration: Initial fulfillment core schema.

Creates clients, addresses, orders, order items, shipping labels, inbound
webhooks and the append-only audit ledger, together with their enum types,
indexes and constraints.

Revision ID: 001
Revises:
Create Date: 2026-10-17 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

address_type = postgresql.ENUM('shipping', 'billing', name='address_type', create_type=False)
order_status = postgresql.ENUM(
    'new', 'confirmed', 'paid', 'fulfilled', 'completed', 'cancelled', 'on_hold', 'failed',
    name='order_status',
    create_type=False,
)
carrier = postgresql.ENUM('dpd', 'balikovna', name='carrier', create_type=False)
label_status = postgresql.ENUM('generated', 'voided', 'failed', name='label_status', create_type=False)
webhook_source = postgresql.ENUM('dpd', 'balikovna', 'payment', name='webhook_source', create_type=False)
webhook_status = postgresql.ENUM('pending', 'processed', 'failed', name='webhook_status', create_type=False)
actor_type = postgresql.ENUM('api', 'system', 'user', name='actor_type', create_type=False)

ENUM_TYPES = (
    address_type,
    order_status,
    carrier,
    label_status,
    webhook_source,
    webhook_status,
    actor_type,
)


def _id_column() -> sa.Column:
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        nullable=False,
        server_default=sa.text('gen_random_uuid()'),
        comment='Unique identifier for the record',
    )


def _timestamp_columns() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Upgrade database schema to the initial fulfillment core tables.
    """
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    # Create clients table
    op.create_table(
        'clients',
        _id_column(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=True),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_clients'),
    )
    op.create_index('ix_clients_email', 'clients', ['email'])

    # Create addresses table
    op.create_table(
        'addresses',
        _id_column(),
        sa.Column('type', address_type, nullable=False, server_default='shipping'),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('street1', sa.String(length=255), nullable=False),
        sa.Column('street2', sa.String(length=255), nullable=True),
        sa.Column('city', sa.String(length=100), nullable=False),
        sa.Column('postal_code', sa.String(length=20), nullable=False),
        sa.Column(
            'country_code',
            sa.String(length=2),
            nullable=False,
            comment='ISO 3166-1 alpha-2 country code',
        ),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_addresses'),
    )

    # Create orders table
    op.create_table(
        'orders',
        _id_column(),
        sa.Column('number', sa.String(length=50), nullable=False, comment='Human-readable order number'),
        sa.Column(
            'status',
            order_status,
            nullable=False,
            server_default='new',
            comment='Current order status',
        ),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='CZK'),
        sa.Column('total_amount', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0.00'),
        sa.Column('carrier', carrier, nullable=True),
        sa.Column('shipping_method', sa.String(length=50), nullable=True),
        sa.Column('pickup_point_id', sa.String(length=100), nullable=True),
        sa.Column(
            'external_shipment_id',
            sa.String(length=100),
            nullable=True,
            comment='Carrier shipment covering this order',
        ),
        sa.Column(
            'parcel_group_id',
            sa.String(length=100),
            nullable=True,
            comment='Shared identifier of orders consolidated into one shipment',
        ),
        sa.Column('label_path', sa.String(length=500), nullable=True),
        sa.Column(
            'payment_reference',
            sa.String(length=255),
            nullable=True,
            comment='External payment correlation id',
        ),
        sa.Column('shipping_address_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('billing_address_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            'metadata',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.ForeignKeyConstraint(
            ['client_id'], ['clients.id'], name='fk_orders_client_id', ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['shipping_address_id'],
            ['addresses.id'],
            name='fk_orders_shipping_address_id',
            ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['billing_address_id'],
            ['addresses.id'],
            name='fk_orders_billing_address_id',
            ondelete='SET NULL',
        ),
        sa.UniqueConstraint('payment_reference', name='uq_orders_payment_reference'),
        sa.CheckConstraint(
            'parcel_group_id IS NULL OR external_shipment_id IS NOT NULL',
            name='ck_orders_parcel_group_has_shipment',
        ),
    )
    op.create_index('ix_orders_number', 'orders', ['number'], unique=True)
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_client_id', 'orders', ['client_id'])
    op.create_index('ix_orders_external_shipment_id', 'orders', ['external_shipment_id'])
    op.create_index('ix_orders_parcel_group_id', 'orders', ['parcel_group_id'])
    op.create_index(
        'ix_orders_consolidation',
        'orders',
        ['client_id', 'status', 'shipping_method', 'pickup_point_id'],
    )

    # Create order_items table
    op.create_table(
        'order_items',
        _id_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(precision=10, scale=2), nullable=False, server_default='0.00'),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_order_items_order_id', ondelete='CASCADE'
        ),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    # Create shipping_labels table
    op.create_table(
        'shipping_labels',
        _id_column(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('carrier', carrier, nullable=False),
        sa.Column('external_shipment_id', sa.String(length=100), nullable=True),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('file_path', sa.String(length=500), nullable=True, comment='Stored label artifact path'),
        sa.Column('format', sa.String(length=10), nullable=False, server_default='pdf'),
        sa.Column('status', label_status, nullable=False, server_default='generated'),
        sa.Column(
            'raw_response',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
            comment='Opaque carrier response or failure details',
        ),
        sa.Column(
            'metadata',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_shipping_labels'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_shipping_labels_order_id', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_shipping_labels_order_id', 'shipping_labels', ['order_id'])
    op.create_index(
        'ix_shipping_labels_external_shipment_id', 'shipping_labels', ['external_shipment_id']
    )
    op.create_index('ix_shipping_labels_status', 'shipping_labels', ['status'])
    op.create_index(
        'ix_shipping_labels_order_shipment',
        'shipping_labels',
        ['order_id', 'external_shipment_id'],
    )

    # Create webhooks table
    op.create_table(
        'webhooks',
        _id_column(),
        sa.Column('source', webhook_source, nullable=False),
        sa.Column('event', sa.String(length=100), nullable=True),
        sa.Column('event_type', sa.String(length=50), nullable=True),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            'headers',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column('status', webhook_status, nullable=False, server_default='pending'),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        *_timestamp_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_webhooks'),
    )
    op.create_index('ix_webhooks_source', 'webhooks', ['source'])
    op.create_index('ix_webhooks_status', 'webhooks', ['status'])

    # Create audit_log_entries table
    op.create_table(
        'audit_log_entries',
        _id_column(),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('actor_type', actor_type, nullable=False, server_default='system'),
        sa.Column('actor_id', sa.String(length=255), nullable=True),
        sa.Column(
            'metadata',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.PrimaryKeyConstraint('id', name='pk_audit_log_entries'),
    )
    op.create_index('ix_audit_log_entries_action', 'audit_log_entries', ['action'])
    op.create_index(
        'ix_audit_log_entries_entity', 'audit_log_entries', ['entity_type', 'entity_id']
    )


def downgrade() -> None:
    """
    Downgrade database schema by dropping the fulfillment core tables.
    """
    op.drop_table('audit_log_entries')
    op.drop_table('webhooks')
    op.drop_table('shipping_labels')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('addresses')
    op.drop_table('clients')

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
