"""Create record store and dedup cluster tables."""

import sqlalchemy as sa

from alembic import op

revision = "3a7c4e91b2d0"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create records, candidate key, link and dedup tables with indexes."""
    op.create_table(
        "records",
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("oai_id", sa.String(length=255), nullable=True),
        sa.Column("format", sa.String(length=64), nullable=False),
        sa.Column(
            "data_json",
            sa.Text(),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column(
            "deleted",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "suppressed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("dedup_id", sa.String(length=64), nullable=True),
        sa.Column(
            "update_needed",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("created", sa.Text(), nullable=False),
        sa.Column("updated", sa.Text(), nullable=False),
    )
    op.create_index(
        "ix_records_source_id_update_needed",
        "records",
        ["source_id", "update_needed"],
        unique=False,
    )
    op.create_index("ix_records_dedup_id", "records", ["dedup_id"], unique=False)
    op.create_index("ix_records_updated", "records", ["updated"], unique=False)

    op.create_table(
        "record_keys",
        sa.Column("record_id", sa.String(length=255), nullable=False),
        sa.Column("key_type", sa.String(length=16), nullable=False),
        sa.Column("key_value", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["records.id"],
            name="fk_record_keys_record_id",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint(
            "record_id",
            "key_type",
            "key_value",
            name="pk_record_keys",
        ),
        sa.CheckConstraint(
            "key_type IN ('title', 'isbn', 'id')",
            name="ck_record_keys_key_type",
        ),
    )
    op.create_index(
        "ix_record_keys_key_type_key_value",
        "record_keys",
        ["key_type", "key_value"],
        unique=False,
    )

    op.create_table(
        "record_links",
        sa.Column("record_id", sa.String(length=255), nullable=False),
        sa.Column("link_type", sa.String(length=16), nullable=False),
        sa.Column("link_value", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["records.id"],
            name="fk_record_links_record_id",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint(
            "record_id",
            "link_type",
            "link_value",
            name="pk_record_links",
        ),
        sa.CheckConstraint(
            "link_type IN ('host', 'linking')",
            name="ck_record_links_link_type",
        ),
    )
    op.create_index(
        "ix_record_links_link_type_link_value",
        "record_links",
        ["link_type", "link_value"],
        unique=False,
    )

    op.create_table(
        "dedup_records",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "deleted",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("created", sa.Text(), nullable=False),
        sa.Column("changed", sa.Text(), nullable=False),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
    )
    op.create_index(
        "ix_dedup_records_changed",
        "dedup_records",
        ["changed"],
        unique=False,
    )

    op.create_table(
        "dedup_members",
        sa.Column("dedup_id", sa.String(length=64), nullable=False),
        sa.Column("record_id", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(
            ["dedup_id"],
            ["dedup_records.id"],
            name="fk_dedup_members_dedup_id",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("dedup_id", "record_id", name="pk_dedup_members"),
    )
    op.create_index(
        "ix_dedup_members_record_id",
        "dedup_members",
        ["record_id"],
        unique=False,
    )


def downgrade() -> None:
    """Drop record store and dedup cluster tables."""
    op.drop_index("ix_dedup_members_record_id", table_name="dedup_members")
    op.drop_table("dedup_members")
    op.drop_index("ix_dedup_records_changed", table_name="dedup_records")
    op.drop_table("dedup_records")
    op.drop_index("ix_record_links_link_type_link_value", table_name="record_links")
    op.drop_table("record_links")
    op.drop_index("ix_record_keys_key_type_key_value", table_name="record_keys")
    op.drop_table("record_keys")
    op.drop_index("ix_records_updated", table_name="records")
    op.drop_index("ix_records_dedup_id", table_name="records")
    op.drop_index("ix_records_source_id_update_needed", table_name="records")
    op.drop_table("records")
