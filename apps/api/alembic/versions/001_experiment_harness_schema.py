"""experiment harness schema

Revision ID: 001
Revises:
Create Date: 2026-01-14 20:02:55.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Journal entries (written by the journal surface, read by experiments)
    op.create_table(
        'journal_entry',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('athlete_id', sa.Integer(), nullable=False),
        sa.Column('entry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('emotional_state', sa.Text(), nullable=False, server_default=''),
        sa.Column('session_reflection', sa.Text(), nullable=False, server_default=''),
        sa.Column('mental_barriers', sa.Text(), nullable=False, server_default=''),
        sa.Column('is_flagged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_journal_entry_athlete_id', 'journal_entry', ['athlete_id'])
    op.create_index('ix_journal_entry_athlete_date', 'journal_entry', ['athlete_id', 'entry_date'])

    op.create_table(
        'experiment_run',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('batch_id', sa.String(36), nullable=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('temperature', sa.Float(), nullable=False, server_default='0.7'),
        sa.Column('prompt_version', sa.String(50), nullable=False, server_default='v1'),
        sa.Column('athlete_id', sa.Integer(), nullable=False),
        sa.Column('persona', sa.String(50), nullable=False, server_default='lasso'),
        sa.Column('experiment_type', sa.String(20), nullable=False, server_default='persona'),
        sa.Column('entry_order', sa.String(20), nullable=False, server_default='reverse'),
        sa.Column('max_entries', sa.Integer(), nullable=True),
        sa.Column('needle_fact', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tokens_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('estimated_cost', sa.Numeric(14, 8), nullable=False, server_default='0'),
        sa.Column('entries_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name='ck_experiment_run_status',
        ),
        sa.CheckConstraint(
            "experiment_type IN ('position', 'persona', 'compression')",
            name='ck_experiment_run_type',
        ),
    )
    op.create_index('ix_experiment_run_batch_id', 'experiment_run', ['batch_id'])
    op.create_index('ix_experiment_run_athlete_id', 'experiment_run', ['athlete_id'])
    op.create_index('ix_experiment_run_status', 'experiment_run', ['status'])
    op.create_index('ix_experiment_run_started_at', 'experiment_run', ['started_at'])

    op.create_table(
        'experiment_claim',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.Integer(), nullable=False),
        sa.Column('claim_text', sa.Text(), nullable=False),
        sa.Column('claim_type', sa.String(20), nullable=False),
        sa.Column('persona', sa.String(50), nullable=False),
        sa.Column('is_supported', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('referenced_date', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['experiment_run.id'], ),
        sa.CheckConstraint('confidence >= 0 AND confidence <= 1', name='ck_experiment_claim_confidence'),
    )
    op.create_index('ix_experiment_claim_run_id', 'experiment_claim', ['run_id'])

    op.create_table(
        'claim_receipt',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('claim_id', sa.Integer(), nullable=False),
        sa.Column('journal_entry_id', sa.Integer(), nullable=False),
        sa.Column('matched_snippet', sa.Text(), nullable=False),
        sa.Column('entry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['claim_id'], ['experiment_claim.id'], ),
        sa.CheckConstraint('confidence >= 0.3 AND confidence <= 1', name='ck_claim_receipt_confidence'),
    )
    op.create_index('ix_claim_receipt_claim_id', 'claim_receipt', ['claim_id'])

    op.create_table(
        'position_test',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.String(10), nullable=False),
        sa.Column('needle_fact', sa.Text(), nullable=False),
        sa.Column('fact_retrieved', sa.Boolean(), nullable=False),
        sa.Column('response_snippet', sa.Text(), nullable=False, server_default=''),
        sa.ForeignKeyConstraint(['run_id'], ['experiment_run.id'], ),
        sa.CheckConstraint("position IN ('start', 'middle', 'end')", name='ck_position_test_position'),
    )
    op.create_index('ix_position_test_run_id', 'position_test', ['run_id'])


def downgrade() -> None:
    op.drop_index('ix_position_test_run_id', table_name='position_test')
    op.drop_table('position_test')
    op.drop_index('ix_claim_receipt_claim_id', table_name='claim_receipt')
    op.drop_table('claim_receipt')
    op.drop_index('ix_experiment_claim_run_id', table_name='experiment_claim')
    op.drop_table('experiment_claim')
    op.drop_index('ix_experiment_run_started_at', table_name='experiment_run')
    op.drop_index('ix_experiment_run_status', table_name='experiment_run')
    op.drop_index('ix_experiment_run_athlete_id', table_name='experiment_run')
    op.drop_index('ix_experiment_run_batch_id', table_name='experiment_run')
    op.drop_table('experiment_run')
    op.drop_index('ix_journal_entry_athlete_date', table_name='journal_entry')
    op.drop_index('ix_journal_entry_athlete_id', table_name='journal_entry')
    op.drop_table('journal_entry')
