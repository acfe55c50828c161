"""quality tables

Revision ID: a41c7e2d9b10
Revises:
Create Date: 2026-10-19 09:12:40.118352

Creates the duplicate rule, suspicion, exclusion, suspicion action and index
action tables. Databases created with create_tables() should be stamped with:

    alembic stamp head
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = 'a41c7e2d9b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'identitystore_duplicate_rule',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('checked_attributes', sa.JSON(), nullable=False),
        sa.Column('detection_limit', sa.Integer(), nullable=False),
        sa.Column('daemon_limitation_mode', sa.String(length=20), nullable=False),
        sa.Column('is_daemon', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('daemon_last_exec_date', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('code'),
    )

    op.create_table(
        'identitystore_quality_suspicious_identity',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_id', sa.String(length=60), nullable=False),
        sa.Column('duplicate_customer_id', sa.String(length=60), nullable=True),
        sa.Column(
            'id_duplicate_rule', sa.Integer(),
            sa.ForeignKey('identitystore_duplicate_rule.id'), nullable=False,
        ),
        sa.Column('duplicate_rule_code', sa.String(length=100), nullable=False),
        sa.Column('creation_date', sa.DateTime(), nullable=False),
        sa.Column('last_update_date', sa.DateTime(), nullable=True),
        sa.Column('suspicion_metadata', sa.JSON(), nullable=False),
        sa.Column('is_locked', sa.Boolean(), nullable=False),
        sa.Column('lock_end_date', sa.DateTime(), nullable=True),
        sa.Column('lock_author_name', sa.String(length=255), nullable=True),
        sa.Column('lock_author_type', sa.String(length=50), nullable=True),
        sa.UniqueConstraint(
            'customer_id', 'duplicate_customer_id', 'id_duplicate_rule',
            name='uq_suspicion_triple',
        ),
    )
    op.create_index(
        'ix_identitystore_quality_suspicious_identity_customer_id',
        'identitystore_quality_suspicious_identity', ['customer_id'],
    )
    op.create_index(
        'ix_identitystore_quality_suspicious_identity_duplicate_customer_id',
        'identitystore_quality_suspicious_identity', ['duplicate_customer_id'],
    )
    op.create_index(
        'ix_identitystore_quality_suspicious_identity_id_duplicate_rule',
        'identitystore_quality_suspicious_identity', ['id_duplicate_rule'],
    )

    op.create_table(
        'identitystore_quality_suspicious_identity_excluded',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('first_customer_id', sa.String(length=60), nullable=False),
        sa.Column('second_customer_id', sa.String(length=60), nullable=False),
        sa.Column('author_type', sa.String(length=50), nullable=True),
        sa.Column('author_name', sa.String(length=255), nullable=True),
        sa.Column('exclusion_date', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('first_customer_id', 'second_customer_id', name='uq_excluded_pair'),
    )

    op.create_table(
        'identitystore_quality_suspicion_action',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_id', sa.String(length=60), nullable=False),
        sa.Column('action_type', sa.String(length=50), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_identitystore_quality_suspicion_action_customer_id',
        'identitystore_quality_suspicion_action', ['customer_id'],
    )
    op.create_index(
        'idx_suspicion_action_date', 'identitystore_quality_suspicion_action', ['date', 'id'],
    )

    op.create_table(
        'identitystore_index_action',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_id', sa.String(length=60), nullable=False),
        sa.Column('action_type', sa.String(length=50), nullable=False),
        sa.Column('date_index', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_identitystore_index_action_customer_id', 'identitystore_index_action', ['customer_id'],
    )


def downgrade() -> None:
    op.drop_table('identitystore_index_action')
    op.drop_table('identitystore_quality_suspicion_action')
    op.drop_table('identitystore_quality_suspicious_identity_excluded')
    op.drop_table('identitystore_quality_suspicious_identity')
    op.drop_table('identitystore_duplicate_rule')
