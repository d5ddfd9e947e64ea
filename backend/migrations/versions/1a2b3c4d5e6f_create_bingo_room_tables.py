"""create bingo room tables: user, room, claim, player, marked_item, restart_vote, activity

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 11:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('image', sa.String(length=512), nullable=True),
        sa.Column('created', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'room',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('room_name', sa.String(length=32), nullable=False),
        sa.Column('room_password', sa.String(length=128), nullable=True),
        sa.Column('seed', sa.String(length=128), nullable=False),
        sa.Column('game_mode', sa.String(length=32), nullable=False),
        sa.Column('mode_kind', sa.String(length=16), nullable=False),
        sa.Column('required_lines', sa.Integer(), nullable=False),
        sa.Column('board_size', sa.Integer(), nullable=False),
        sa.Column('teams_json', sa.Text(), nullable=False),
        sa.Column('items_json', sa.Text(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('game_finished', sa.Boolean(), nullable=False),
        sa.Column('winning_team', sa.Integer(), nullable=True),
        sa.Column('restart_countdown', sa.Integer(), nullable=True),
        sa.Column('restart_scheduled', sa.DateTime(), nullable=True),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            '(game_finished = true AND winning_team IS NOT NULL) OR '
            '(game_finished = false AND winning_team IS NULL)',
            name='ck_room_finished_has_winner',
        ),
    )
    op.create_index('ix_room_owner_id', 'room', ['owner_id'])
    op.create_index('ix_room_last_updated', 'room', ['last_updated'])

    op.create_table(
        'claim',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('room_id', sa.Integer(), sa.ForeignKey('room.id'), nullable=False),
        sa.Column('cell_index', sa.Integer(), nullable=False),
        sa.Column('team_index', sa.Integer(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.Column('claimed_by', sa.String(length=64), nullable=False),
        sa.UniqueConstraint('room_id', 'cell_index', 'team_index', name='uq_claim_room_cell_team'),
    )
    op.create_index('ix_claim_room_id', 'claim', ['room_id'])

    op.create_table(
        'player',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('room_id', sa.Integer(), sa.ForeignKey('room.id'), nullable=False),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('team_index', sa.Integer(), nullable=True),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.Column('last_active', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('room_id', 'user_id', name='uq_player_room_user'),
    )
    op.create_index('ix_player_room_id', 'player', ['room_id'])

    op.create_table(
        'marked_item',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('player.id'), nullable=False),
        sa.Column('cell_index', sa.Integer(), nullable=False),
        sa.UniqueConstraint('player_id', 'cell_index', name='uq_marked_item_player_cell'),
    )
    op.create_index('ix_marked_item_player_id', 'marked_item', ['player_id'])

    op.create_table(
        'restart_vote',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('room_id', sa.Integer(), sa.ForeignKey('room.id'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.UniqueConstraint('room_id', 'user_id', name='uq_restart_vote_room_user'),
    )
    op.create_index('ix_restart_vote_room_id', 'restart_vote', ['room_id'])

    op.create_table(
        'activity',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('room_id', sa.Integer(), sa.ForeignKey('room.id'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('user_name', sa.String(length=128), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('item_title', sa.Text(), nullable=True),
        sa.Column('cell_index', sa.Integer(), nullable=True),
        sa.Column('team_index', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_activity_room_id', 'activity', ['room_id'])
    op.create_index('ix_activity_created_at', 'activity', ['created_at'])


def downgrade():
    for table in ('activity', 'restart_vote', 'marked_item', 'player', 'claim', 'room', 'user'):
        op.drop_table(table)
