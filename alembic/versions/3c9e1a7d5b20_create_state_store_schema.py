"""Create state store schema

Revision ID: 3c9e1a7d5b20
Revises:
Create Date: 2026-10-18 09:12:44.318204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from apps.backend.src.core.database import UTCDateTime


# revision identifiers, used by Alembic.
revision: str = '3c9e1a7d5b20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _guest_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('node_id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('template', sa.Boolean(), nullable=False),
        sa.Column('cpu_cores', sa.Integer(), nullable=True),
        sa.Column('cpu_usage', sa.Float(), nullable=True),
        sa.Column('memory_bytes', sa.BigInteger(), nullable=True),
        sa.Column('memory_usage', sa.BigInteger(), nullable=True),
        sa.Column('disk_size', sa.BigInteger(), nullable=True),
        sa.Column('disk_usage', sa.BigInteger(), nullable=True),
        sa.Column('network_in', sa.BigInteger(), nullable=True),
        sa.Column('network_out', sa.BigInteger(), nullable=True),
        sa.Column('uptime', sa.BigInteger(), nullable=True),
        sa.Column('ha_managed', sa.Boolean(), nullable=False),
        sa.Column('lock_status', sa.String(length=64), nullable=True),
        sa.Column('config', JSON_TYPE, nullable=True),
        sa.Column('config_digest', sa.String(length=64), nullable=True),
        sa.Column('missing_count', sa.Integer(), nullable=False),
        sa.Column('last_seen', UTCDateTime(), nullable=True),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.Column('updated_at', UTCDateTime(), nullable=False),
    ]


def _create_guest_table(table: str, *extra: sa.Column) -> None:
    op.create_table(table,
        *_guest_columns(),
        *extra,
        sa.ForeignKeyConstraint(
            ['node_id'], ['nodes.id'],
            name=op.f(f'fk_{table}_node_id_nodes'),
            ondelete='RESTRICT', onupdate='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f(f'pk_{table}')),
    )
    op.create_index(op.f(f'ix_{table}_node_id'), table, ['node_id'], unique=False)
    op.create_index(op.f(f'ix_{table}_status'), table, ['status'], unique=False)


def upgrade() -> None:
    """Upgrade schema."""
    # Nodes (root of the topology)
    op.create_table('nodes',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('cpu_usage', sa.Float(), nullable=True),
        sa.Column('cpu_max', sa.Integer(), nullable=True),
        sa.Column('memory_usage', sa.BigInteger(), nullable=True),
        sa.Column('memory_max', sa.BigInteger(), nullable=True),
        sa.Column('uptime', sa.BigInteger(), nullable=True),
        sa.Column('version', sa.String(length=64), nullable=True),
        sa.Column('config_digest', sa.String(length=64), nullable=True),
        sa.Column('missing_count', sa.Integer(), nullable=False),
        sa.Column('last_seen', UTCDateTime(), nullable=True),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.Column('updated_at', UTCDateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_nodes')),
    )
    op.create_index(op.f('ix_nodes_status'), 'nodes', ['status'], unique=False)
    op.create_index(op.f('ix_nodes_last_seen'), 'nodes', ['last_seen'], unique=False)

    # Guests
    _create_guest_table('vms', sa.Column('pid', sa.Integer(), nullable=True))
    _create_guest_table('containers',
        sa.Column('hostname', sa.String(length=255), nullable=True),
        sa.Column('swap_bytes', sa.BigInteger(), nullable=True),
        sa.Column('swap_usage', sa.BigInteger(), nullable=True),
        sa.Column('os_template', sa.String(length=255), nullable=True),
    )

    # Storage (cluster-scoped)
    op.create_table('storage',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('content_types', JSON_TYPE, nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('shared', sa.Boolean(), nullable=False),
        sa.Column('total_bytes', sa.BigInteger(), nullable=True),
        sa.Column('used_bytes', sa.BigInteger(), nullable=True),
        sa.Column('available_bytes', sa.BigInteger(), nullable=True),
        sa.Column('path', sa.String(length=1024), nullable=True),
        sa.Column('accessible_nodes', JSON_TYPE, nullable=False),
        sa.Column('config', JSON_TYPE, nullable=True),
        sa.Column('config_digest', sa.String(length=64), nullable=True),
        sa.Column('missing_count', sa.Integer(), nullable=False),
        sa.Column('last_seen', UTCDateTime(), nullable=True),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.Column('updated_at', UTCDateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_storage')),
    )
    op.create_index(op.f('ix_storage_type'), 'storage', ['type'], unique=False)

    # Tasks
    op.create_table('tasks',
        sa.Column('upid', sa.String(length=512), nullable=False),
        sa.Column('node_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('resource_type', sa.String(length=16), nullable=True),
        sa.Column('resource_id', sa.String(length=64), nullable=True),
        sa.Column('user', sa.String(length=128), nullable=True),
        sa.Column('start_time', UTCDateTime(), nullable=True),
        sa.Column('end_time', UTCDateTime(), nullable=True),
        sa.Column('exit_status', sa.String(length=512), nullable=True),
        sa.Column('log', JSON_TYPE, nullable=False),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.Column('updated_at', UTCDateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ['node_id'], ['nodes.id'],
            name=op.f('fk_tasks_node_id_nodes'),
            ondelete='CASCADE', onupdate='CASCADE',
        ),
        sa.PrimaryKeyConstraint('upid', name=op.f('pk_tasks')),
    )
    op.create_index(op.f('ix_tasks_node_id'), 'tasks', ['node_id'], unique=False)
    op.create_index(op.f('ix_tasks_status'), 'tasks', ['status'], unique=False)
    op.create_index('ix_tasks_resource', 'tasks', ['resource_type', 'resource_id'], unique=False)

    # Append-only state history
    op.create_table('state_snapshots',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), autoincrement=True, nullable=False),
        sa.Column('snapshot_time', UTCDateTime(), nullable=False),
        sa.Column('resource_type', sa.String(length=16), nullable=False),
        sa.Column('resource_id', sa.String(length=512), nullable=False),
        sa.Column('resource_data', JSON_TYPE, nullable=False),
        sa.Column('change_type', sa.String(length=16), nullable=False),
        sa.Column('created_at', UTCDateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_state_snapshots')),
    )
    op.create_index(op.f('ix_state_snapshots_change_type'), 'state_snapshots', ['change_type'], unique=False)
    op.create_index(
        'ix_state_snapshots_resource_history',
        'state_snapshots',
        ['resource_type', 'resource_id', 'snapshot_time'],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_state_snapshots_resource_history', table_name='state_snapshots')
    op.drop_index(op.f('ix_state_snapshots_change_type'), table_name='state_snapshots')
    op.drop_table('state_snapshots')

    op.drop_index('ix_tasks_resource', table_name='tasks')
    op.drop_index(op.f('ix_tasks_status'), table_name='tasks')
    op.drop_index(op.f('ix_tasks_node_id'), table_name='tasks')
    op.drop_table('tasks')

    op.drop_index(op.f('ix_storage_type'), table_name='storage')
    op.drop_table('storage')

    for table in ('containers', 'vms'):
        op.drop_index(op.f(f'ix_{table}_status'), table_name=table)
        op.drop_index(op.f(f'ix_{table}_node_id'), table_name=table)
        op.drop_table(table)

    op.drop_index(op.f('ix_nodes_last_seen'), table_name='nodes')
    op.drop_index(op.f('ix_nodes_status'), table_name='nodes')
    op.drop_table('nodes')
