"""create_user_profiles_table

Revision ID: 9b1f3c2d7a40
Revises:
Create Date: 2026-10-16 10:12:41.508213

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '9b1f3c2d7a40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the sticky bucketing table."""
    op.execute(
        """
        CREATE TABLE user_profiles (
            user_id TEXT NOT NULL,
            experiment_id TEXT NOT NULL,
            variation_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_profiles_pkey PRIMARY KEY (user_id, experiment_id)
        );
        """
    )

    op.execute(
        """
        CREATE INDEX ix_user_profiles_experiment_id
            ON user_profiles (experiment_id);
        """
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_user_profiles_experiment_id;")
    op.execute("DROP TABLE IF EXISTS user_profiles;")
