"""create matrix editor schema"""

from alembic import op
import sqlalchemy as sa
from typing import Sequence, Union

revision: str = '20261017_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True)


def _fk(name: str, target: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey(target), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('full_name', sa.String()),
        sa.Column('is_admin', sa.Boolean(), server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.Float()),
    )
    op.create_table(
        'projects',
        _id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False, server_default='0'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('created_at', sa.Float()),
    )
    op.create_table(
        'project_members',
        _id(),
        _fk('project_id', 'projects.id'),
        _fk('user_id', 'users.id'),
        sa.Column('membership_type', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_member'),
    )
    op.create_table(
        'project_member_groups',
        _id(),
        _fk('project_id', 'projects.id'),
        sa.Column('group_name', sa.String(), nullable=False),
        sa.Column('description', sa.Text()),
    )
    op.create_table(
        'project_members_x_groups',
        _id(),
        _fk('membership_id', 'project_members.id'),
        _fk('group_id', 'project_member_groups.id'),
    )
    op.create_table(
        'matrices',
        _id(),
        _fk('project_id', 'projects.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('type', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('other_options', sa.JSON()),
        sa.Column('sync_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.Float()),
        sa.Column('last_modified_on', sa.Float()),
    )
    op.create_table(
        'characters',
        _id(),
        _fk('project_id', 'projects.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('type', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ordering', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.Float()),
        sa.Column('last_modified_on', sa.Float()),
    )
    op.create_table(
        'character_states',
        _id(),
        _fk('character_id', 'characters.id'),
        sa.Column('num', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text()),
    )
    op.create_table(
        'taxa',
        _id(),
        _fk('project_id', 'projects.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('genus', sa.String()),
        sa.Column('specific_epithet', sa.String()),
        sa.Column('subspecific_epithet', sa.String()),
        sa.Column('notes', sa.Text()),
        sa.Column('access', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.Float()),
        sa.Column('last_modified_on', sa.Float()),
    )
    op.create_table(
        'matrix_taxa_order',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('taxon_id', 'taxa.id'),
        sa.Column('position', sa.Integer(), nullable=False),
        _fk('user_id', 'users.id', nullable=True),
        _fk('group_id', 'project_member_groups.id', nullable=True),
        _fk('added_by_id', 'users.id', nullable=True),
        sa.Column('notes', sa.Text()),
        sa.UniqueConstraint('matrix_id', 'taxon_id', name='uq_matrix_taxon'),
    )
    op.create_table(
        'matrix_character_order',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('character_id', 'characters.id'),
        sa.Column('position', sa.Integer(), nullable=False),
        _fk('user_id', 'users.id', nullable=True),
        sa.UniqueConstraint('matrix_id', 'character_id', name='uq_matrix_character'),
    )
    op.create_table(
        'specimens',
        _id(),
        _fk('project_id', 'projects.id'),
        sa.Column('catalog_number', sa.String()),
        sa.Column('description', sa.Text()),
    )
    op.create_table(
        'taxa_x_specimens',
        _id(),
        _fk('taxon_id', 'taxa.id'),
        _fk('specimen_id', 'specimens.id'),
    )
    op.create_table(
        'media_views',
        _id(),
        _fk('project_id', 'projects.id'),
        sa.Column('name', sa.String(), nullable=False),
    )
    op.create_table(
        'media_files',
        _id(),
        _fk('project_id', 'projects.id'),
        _fk('specimen_id', 'specimens.id', nullable=True),
        _fk('view_id', 'media_views.id', nullable=True),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('media', sa.JSON()),
        sa.Column('created_at', sa.Float()),
    )
    op.create_table(
        'characters_x_media',
        _id(),
        _fk('character_id', 'characters.id'),
        _fk('state_id', 'character_states.id', nullable=True),
        _fk('media_id', 'media_files.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('created_on', sa.Float()),
    )
    op.create_table(
        'cells',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('taxon_id', 'taxa.id'),
        _fk('character_id', 'characters.id'),
        _fk('state_id', 'character_states.id', nullable=True),
        _fk('user_id', 'users.id'),
        sa.Column('is_npa', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_uncertain', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('start_value', sa.Float()),
        sa.Column('end_value', sa.Float()),
        sa.Column('created_on', sa.Float(), nullable=False),
        sa.Column('last_modified_on', sa.Float(), nullable=False),
    )
    op.create_index('ix_cells_matrix_id', 'cells', ['matrix_id'])
    op.create_table(
        'cell_notes',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('taxon_id', 'taxa.id'),
        _fk('character_id', 'characters.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_on', sa.Float()),
        sa.Column('last_modified_on', sa.Float()),
        sa.UniqueConstraint('matrix_id', 'taxon_id', 'character_id', name='uq_cell_note'),
    )
    op.create_table(
        'cell_comments',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('taxon_id', 'taxa.id'),
        _fk('character_id', 'characters.id'),
        _fk('user_id', 'users.id'),
        sa.Column('comment', sa.Text(), nullable=False),
        sa.Column('created_on', sa.Float(), nullable=False),
    )
    op.create_index('ix_cell_comments_matrix_id', 'cell_comments', ['matrix_id'])
    op.create_table(
        'cells_x_media',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('taxon_id', 'taxa.id'),
        _fk('character_id', 'characters.id'),
        _fk('media_id', 'media_files.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('set_by_automation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_on', sa.Float()),
    )
    op.create_index('ix_cells_x_media_matrix_id', 'cells_x_media', ['matrix_id'])
    op.create_table(
        'bibliographic_references',
        _id(),
        _fk('project_id', 'projects.id'),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('authors', sa.String()),
        sa.Column('year', sa.Integer()),
    )
    op.create_table(
        'media_files_x_bibliographic_references',
        _id(),
        _fk('media_id', 'media_files.id'),
        _fk('reference_id', 'bibliographic_references.id'),
    )
    op.create_table(
        'cells_x_bibliographic_references',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('taxon_id', 'taxa.id'),
        _fk('character_id', 'characters.id'),
        _fk('reference_id', 'bibliographic_references.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('pp', sa.String()),
        sa.Column('notes', sa.Text()),
        sa.Column('created_on', sa.Float()),
    )
    op.create_index(
        'ix_cells_x_bibliographic_references_matrix_id',
        'cells_x_bibliographic_references',
        ['matrix_id'],
    )
    op.create_table(
        'character_rules',
        _id(),
        _fk('character_id', 'characters.id'),
        _fk('state_id', 'character_states.id', nullable=True),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('created_on', sa.Float()),
    )
    op.create_table(
        'character_rule_actions',
        _id(),
        _fk('rule_id', 'character_rules.id'),
        sa.Column('action', sa.String(), nullable=False),
        _fk('character_id', 'characters.id'),
        _fk('state_id', 'character_states.id', nullable=True),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('created_on', sa.Float()),
    )
    op.create_table(
        'cell_batch_log',
        _id(),
        _fk('matrix_id', 'matrices.id'),
        _fk('user_id', 'users.id'),
        sa.Column('batch_type', sa.Integer(), nullable=False),
        sa.Column('started_on', sa.Float(), nullable=False),
        sa.Column('finished_on', sa.Float()),
        sa.Column('description', sa.Text()),
        sa.Column('reverted', sa.Boolean(), nullable=False, server_default=sa.false()),
        _fk('reverted_user_id', 'users.id', nullable=True),
    )
    op.create_index('ix_cell_batch_log_matrix_id', 'cell_batch_log', ['matrix_id'])
    op.create_table(
        'cell_change_log',
        _id(),
        sa.Column('change_type', sa.String(1), nullable=False),
        sa.Column('table_num', sa.Integer(), nullable=False),
        _fk('user_id', 'users.id'),
        sa.Column('changed_on', sa.Float(), nullable=False),
        _fk('matrix_id', 'matrices.id'),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('character_id', sa.Integer(), nullable=False),
        sa.Column('taxon_id', sa.Integer(), nullable=False),
        sa.Column('state_id', sa.Integer()),
        sa.Column('snapshot', sa.JSON()),
    )
    op.create_index('ix_cell_change_log_changed_on', 'cell_change_log', ['changed_on'])
    op.create_index('ix_cell_change_log_matrix_id', 'cell_change_log', ['matrix_id'])
    op.create_index('ix_cell_change_log_seq', 'cell_change_log', ['seq'])
    op.create_table(
        'change_log',
        _id(),
        sa.Column('table_num', sa.Integer(), nullable=False),
        sa.Column('row_id', sa.Integer(), nullable=False),
        sa.Column('change_type', sa.String(1), nullable=False),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('logged_on', sa.Float(), nullable=False),
        _fk('matrix_id', 'matrices.id'),
        sa.Column('seq', sa.Integer(), nullable=False),
    )
    op.create_index('ix_change_log_logged_on', 'change_log', ['logged_on'])
    op.create_index('ix_change_log_matrix_id', 'change_log', ['matrix_id'])
    op.create_index('ix_change_log_seq', 'change_log', ['seq'])
    op.create_table(
        'partitions',
        _id(),
        _fk('project_id', 'projects.id'),
        _fk('user_id', 'users.id', nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text()),
    )
    op.create_table(
        'characters_x_partitions',
        _id(),
        _fk('partition_id', 'partitions.id'),
        _fk('character_id', 'characters.id'),
        sa.UniqueConstraint('partition_id', 'character_id', name='uq_partition_character'),
    )
    op.create_table(
        'taxa_x_partitions',
        _id(),
        _fk('partition_id', 'partitions.id'),
        _fk('taxon_id', 'taxa.id'),
        sa.UniqueConstraint('partition_id', 'taxon_id', name='uq_partition_taxon'),
    )


def downgrade() -> None:
    for table in (
        'taxa_x_partitions',
        'characters_x_partitions',
        'partitions',
        'change_log',
        'cell_change_log',
        'cell_batch_log',
        'character_rule_actions',
        'character_rules',
        'cells_x_bibliographic_references',
        'media_files_x_bibliographic_references',
        'bibliographic_references',
        'cells_x_media',
        'cell_comments',
        'cell_notes',
        'cells',
        'characters_x_media',
        'media_files',
        'media_views',
        'taxa_x_specimens',
        'specimens',
        'matrix_character_order',
        'matrix_taxa_order',
        'taxa',
        'character_states',
        'characters',
        'matrices',
        'project_members_x_groups',
        'project_member_groups',
        'project_members',
        'projects',
        'users',
    ):
        op.drop_table(table)
