"""create quiz_result table for finished sessions

Revision ID: 5c2a9e41b7d0
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2a9e41b7d0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)

    # db.create_all() in dev may have created it already
    if 'quiz_result' in set(insp.get_table_names()):
        return

    op.create_table(
        'quiz_result',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_pin', sa.String(length=6), nullable=False),
        sa.Column('quiz_title', sa.String(length=255), nullable=False),
        sa.Column('game_mode', sa.String(length=32), nullable=False),
        sa.Column('player_count', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('saved_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_quiz_result_game_pin', 'quiz_result', ['game_pin'])
    op.create_index('ix_quiz_result_saved_at', 'quiz_result', ['saved_at'])


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    if 'quiz_result' not in set(insp.get_table_names()):
        return
    op.drop_index('ix_quiz_result_saved_at', table_name='quiz_result')
    op.drop_index('ix_quiz_result_game_pin', table_name='quiz_result')
    op.drop_table('quiz_result')
