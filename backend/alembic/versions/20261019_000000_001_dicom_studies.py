"""Initial database schema for the DICOM study catalog

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create dicom_studies table
    op.create_table(
        "dicom_studies",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("storage_path", sa.String(1024), nullable=False),
        sa.Column("file_name", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_dicom_studies")),
        sa.UniqueConstraint("storage_path", name=op.f("uq_dicom_studies_storage_path")),
    )
    op.create_index(op.f("ix_dicom_studies_name"), "dicom_studies", ["name"], unique=False)
    op.create_index(
        "ix_dicom_studies_created_at", "dicom_studies", ["created_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_dicom_studies_created_at", table_name="dicom_studies")
    op.drop_index(op.f("ix_dicom_studies_name"), table_name="dicom_studies")
    op.drop_table("dicom_studies")
