"""create tables

Revision ID: 5b2d8c41f0a3
Revises: 
Create Date: 2026-10-17 09:12:40.518203

"""
from typing import Sequence, Union

from alembic import op
from docshare.database import Base
from docshare.models.user import User  # noqa: F401


# revision identifiers, used by Alembic.
revision: str = '5b2d8c41f0a3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, documents, articles, comments and sessions."""
    bind = op.get_bind()
    Base.metadata.create_all(bind)


def downgrade() -> None:
    """Drop all application tables."""
    bind = op.get_bind()
    Base.metadata.drop_all(bind)
