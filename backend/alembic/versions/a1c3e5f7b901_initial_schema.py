"""initial schema: content, learner state, training sessions

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f7b901'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        'lessons',
        sa.Column('lesson_id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('goal', sa.Text(), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=True),
        sa.Column('grammar_ids_json', sa.JSON(), nullable=False),
        sa.Column('vocab_pack_ids_json', sa.JSON(), nullable=False),
        sa.Column('tags_json', sa.JSON(), nullable=True),
    )

    op.create_table(
        'grammar_points',
        sa.Column('grammar_id', sa.Integer(), primary_key=True),
        sa.Column('lesson_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('core_rule', sa.Text(), nullable=False),
        sa.Column('structure', sa.Text(), nullable=True),
        sa.Column('mnemonic', sa.Text(), nullable=True),
        sa.Column('examples_json', sa.JSON(), nullable=False),
        sa.Column('counter_examples_json', sa.JSON(), nullable=False),
        sa.Column('drills_json', sa.JSON(), nullable=False),
        sa.Column('level', sa.Integer(), nullable=True),
        sa.Column('tags_json', sa.JSON(), nullable=True),
    )
    op.create_index('ix_grammar_points_lesson_id', 'grammar_points', ['lesson_id'])

    op.create_table(
        'vocab',
        sa.Column('vocab_id', sa.Integer(), primary_key=True),
        sa.Column('surface', sa.Text(), nullable=False),
        sa.Column('reading', sa.Text(), nullable=False),
        sa.Column('meanings_json', sa.JSON(), nullable=False),
        sa.Column('level', sa.Integer(), nullable=True),
        sa.Column('tags_json', sa.JSON(), nullable=False),
    )
    op.create_index('ix_vocab_level', 'vocab', ['level'])

    op.create_table(
        'vocab_packs',
        sa.Column('pack_id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('pack_type', sa.String(20), nullable=True),
        sa.Column('lesson_id', sa.Integer(), nullable=True),
        sa.Column('vocab_ids_json', sa.JSON(), nullable=False),
        sa.Column('level', sa.Integer(), nullable=True),
    )
    op.create_index('ix_vocab_packs_lesson_id', 'vocab_packs', ['lesson_id'])

    op.create_table(
        'sentences',
        sa.Column('sentence_id', sa.Integer(), primary_key=True),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('translation', sa.Text(), nullable=True),
        sa.Column('style_tag', sa.String(20), nullable=False),
        sa.Column('lesson_id', sa.Integer(), nullable=True),
        sa.Column('level', sa.Integer(), nullable=True),
        sa.Column('grammar_ids_json', sa.JSON(), nullable=False),
        sa.Column('key_points_json', sa.JSON(), nullable=False),
        sa.Column('blocking_vocab_ids_json', sa.JSON(), nullable=False),
    )
    op.create_index('ix_sentences_style_tag', 'sentences', ['style_tag'])
    op.create_index('ix_sentences_lesson_id', 'sentences', ['lesson_id'])

    op.create_table(
        'user_progress',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('current_lesson_id', sa.Integer(), nullable=False),
        sa.Column('current_grammar_index', sa.Integer(), nullable=False),
        sa.Column('current_level', sa.Integer(), nullable=False),
        sa.Column('streak_days', sa.Integer(), nullable=False),
        sa.Column('max_streak_days', sa.Integer(), nullable=False),
        sa.Column('last_active_date', sa.String(10), nullable=True),
    )

    op.create_table(
        'user_grammar_state',
        sa.Column('grammar_id', sa.Integer(), primary_key=True),
        sa.Column('mastery', sa.Integer(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('next_review_at', sa.DateTime(), nullable=True),
        sa.Column('last_wrong_at', sa.DateTime(), nullable=True),
        sa.Column('wrong_count_7d', sa.Integer(), nullable=False),
        sa.Column('correct_streak', sa.Integer(), nullable=False),
    )
    op.create_index('ix_user_grammar_state_next_review_at', 'user_grammar_state', ['next_review_at'])

    op.create_table(
        'user_vocab_state',
        sa.Column('vocab_id', sa.Integer(), primary_key=True),
        sa.Column('strength', sa.Integer(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('next_review_at', sa.DateTime(), nullable=True),
        sa.Column('last_wrong_at', sa.DateTime(), nullable=True),
        sa.Column('is_blocking', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('wrong_count_7d', sa.Integer(), nullable=False),
    )
    op.create_index('ix_user_vocab_state_next_review_at', 'user_vocab_state', ['next_review_at'])

    op.create_table(
        'training_sessions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('date', sa.String(10), nullable=False, unique=True),
        sa.Column('planned_lesson_id', sa.Integer(), nullable=False),
        sa.Column('planned_grammar_id', sa.Integer(), nullable=False),
        sa.Column('planned_level', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('state_json', sa.JSON(), nullable=False),
        sa.Column('result_json', sa.JSON(), nullable=True),
        sa.Column('stars', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_training_sessions_planned_grammar_id', 'training_sessions', ['planned_grammar_id'])
    op.create_index('ix_training_sessions_status', 'training_sessions', ['status'])

    op.create_table(
        'user_achievements',
        sa.Column('achievement_id', sa.String(50), primary_key=True),
        sa.Column('category', sa.String(20), nullable=False),
        sa.Column('unlocked_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('detail_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_activity_log_event_type', 'activity_log', ['event_type'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('activity_log')
    op.drop_table('user_achievements')
    op.drop_table('training_sessions')
    op.drop_table('user_vocab_state')
    op.drop_table('user_grammar_state')
    op.drop_table('user_progress')
    op.drop_table('sentences')
    op.drop_table('vocab_packs')
    op.drop_table('vocab')
    op.drop_table('grammar_points')
    op.drop_table('lessons')
