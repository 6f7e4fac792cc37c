"""Create market intelligence tables

Revision ID: a7c3e9f1b2d4
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a7c3e9f1b2d4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


property_type = sa.Enum(
    'flat', 'terraced', 'semi-detached', 'detached', 'other',
    name='propertytype',
)


def upgrade() -> None:
    # Contributed rent observations (append-only)
    op.create_table(
        'contributed_rental_data',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('submitter_ref', sa.String(64), nullable=True),
        sa.Column('postcode', sa.String(10), nullable=False),
        sa.Column('area', sa.String(100), nullable=False),
        sa.Column('property_type', property_type, nullable=False),
        sa.Column('bedrooms', sa.Integer(), nullable=False),
        sa.Column('monthly_rent', sa.Float(), nullable=False),
        sa.Column('bills_included', sa.Boolean(), nullable=False),
        sa.Column('included_bills', sa.JSON(), nullable=True),
        sa.Column('property_features', sa.JSON(), nullable=True),
        sa.Column('is_anonymous', sa.Boolean(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_contributed_rental_data'),
    )
    op.create_index('ix_contributed_rental_data_submitter_ref', 'contributed_rental_data', ['submitter_ref'])
    op.create_index('ix_contributed_rental_data_postcode', 'contributed_rental_data', ['postcode'])
    op.create_index('ix_contributed_rental_data_area', 'contributed_rental_data', ['area'])
    op.create_index('ix_contributed_rental_data_property_type', 'contributed_rental_data', ['property_type'])
    op.create_index('ix_contributed_area_type', 'contributed_rental_data', ['area', 'property_type'])

    # Derived per-area statistics
    op.create_table(
        'area_statistics',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('area', sa.String(100), nullable=False),
        sa.Column('average_rent', sa.Float(), nullable=False),
        sa.Column('property_type_averages', sa.JSON(), nullable=False),
        sa.Column('data_point_count', sa.Integer(), nullable=False),
        sa.Column('last_recalculated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_area_statistics'),
    )
    op.create_index('ix_area_statistics_area', 'area_statistics', ['area'], unique=True)

    # Stored investment recommendations, one set per user
    op.create_table(
        'investment_recommendations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_ref', sa.String(64), nullable=False),
        sa.Column('area', sa.String(100), nullable=False),
        sa.Column('property_type', sa.String(20), nullable=False),
        sa.Column('average_price', sa.Float(), nullable=False),
        sa.Column('monthly_rent', sa.Float(), nullable=False),
        sa.Column('rental_yield', sa.Float(), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_investment_recommendations'),
    )
    op.create_index('ix_investment_recommendations_user_ref', 'investment_recommendations', ['user_ref'])


def downgrade() -> None:
    op.drop_index('ix_investment_recommendations_user_ref', table_name='investment_recommendations')
    op.drop_table('investment_recommendations')

    op.drop_index('ix_area_statistics_area', table_name='area_statistics')
    op.drop_table('area_statistics')

    op.drop_index('ix_contributed_area_type', table_name='contributed_rental_data')
    op.drop_index('ix_contributed_rental_data_property_type', table_name='contributed_rental_data')
    op.drop_index('ix_contributed_rental_data_area', table_name='contributed_rental_data')
    op.drop_index('ix_contributed_rental_data_postcode', table_name='contributed_rental_data')
    op.drop_index('ix_contributed_rental_data_submitter_ref', table_name='contributed_rental_data')
    op.drop_table('contributed_rental_data')
    property_type.drop(op.get_bind(), checkfirst=True)
