"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade():
    op.create_table(
        "tags",
        sa.Column("name", sa.String(length=100), primary_key=True),
        sa.Column(
            "parent_name",
            sa.String(length=100),
            sa.ForeignKey("tags.name", onupdate="CASCADE"),
            nullable=True,
        ),
        *_timestamps(),
    )

    op.create_table(
        "entities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "tag_name",
            sa.String(length=100),
            sa.ForeignKey("tags.name", onupdate="CASCADE"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index("ix_entities_tag_name", "entities", ["tag_name"])

    op.create_table(
        "operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("observations", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "operation_id",
            sa.Integer(),
            sa.ForeignKey("operations.id"),
            nullable=True,
        ),
        sa.Column(
            "from_entity_id",
            sa.Integer(),
            sa.ForeignKey("entities.id"),
            nullable=False,
        ),
        sa.Column(
            "to_entity_id", sa.Integer(), sa.ForeignKey("entities.id"), nullable=False
        ),
        sa.Column("currency", sa.String(length=10), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "from_entity_id <> to_entity_id", name="ck_transactions_distinct_entities"
        ),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_from_entity", "transactions", ["from_entity_id"])
    op.create_index("ix_transactions_to_entity", "transactions", ["to_entity_id"])
    op.create_index("ix_transactions_currency", "transactions", ["currency"])

    op.create_table(
        "movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column("direction", sa.Integer(), nullable=False),
        sa.Column("account", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("type", sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("direction IN (1, -1)", name="ck_movements_direction"),
    )
    op.create_index("ix_movements_transaction", "movements", ["transaction_id"])

    op.create_table(
        "links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "shared_entity_id",
            sa.Integer(),
            sa.ForeignKey("entities.id"),
            nullable=False,
        ),
        sa.Column("password", sa.String(length=200), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=120), nullable=False),
        sa.Column(
            "name",
            sa.Enum(
                "ADMIN",
                "ACCOUNTS_VISUALIZE",
                "ACCOUNTS_VISUALIZE_SOME",
                name="permissionname",
            ),
            nullable=False,
        ),
        sa.Column("entities_ids_json", sa.Text(), nullable=True),
        sa.Column("entities_tags_json", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_permissions_user", "permissions", ["user_id"])


def downgrade():
    op.drop_index("ix_permissions_user", table_name="permissions")
    op.drop_table("permissions")
    op.drop_table("links")
    op.drop_index("ix_movements_transaction", table_name="movements")
    op.drop_table("movements")
    op.drop_index("ix_transactions_currency", table_name="transactions")
    op.drop_index("ix_transactions_to_entity", table_name="transactions")
    op.drop_index("ix_transactions_from_entity", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("operations")
    op.drop_index("ix_entities_tag_name", table_name="entities")
    op.drop_table("entities")
    op.drop_table("tags")
