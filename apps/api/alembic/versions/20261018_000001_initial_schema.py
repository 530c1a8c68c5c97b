"""create studio generation schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("gender", sa.String(), nullable=True),
        sa.Column("ethnicity", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_purchased", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_credit_transactions_user_id"), "credit_transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_kind"), "credit_transactions", ["kind"], unique=False)
    op.create_index(op.f("ix_credit_transactions_reference_id"), "credit_transactions", ["reference_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)

    op.create_table(
        "user_models",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("trigger_word", sa.String(), nullable=False),
        sa.Column("replicate_version_id", sa.String(), nullable=True),
        sa.Column("lora_weights_url", sa.String(), nullable=True),
        sa.Column("lora_scale", sa.Float(), nullable=True),
        sa.Column("extra_lora_url", sa.String(), nullable=True),
        sa.Column("extra_lora_scale", sa.Float(), nullable=True),
        sa.Column("training_status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_models_user_id"), "user_models", ["user_id"], unique=False)
    op.create_index(op.f("ix_user_models_training_status"), "user_models", ["training_status"], unique=False)

    op.create_table(
        "reference_images",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("image_url", sa.String(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reference_images_user_id"), "reference_images", ["user_id"], unique=False)

    op.create_table(
        "feed_posts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("feed_id", sa.String(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("post_type", sa.String(), nullable=False),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("brand_vibe", sa.String(), nullable=True),
        sa.Column("color_palette", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("generation_mode", sa.String(), nullable=True),
        sa.Column("job_handle", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("generation_prompt", sa.Text(), nullable=True),
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("credit_cost", sa.Integer(), nullable=True),
        sa.Column("credit_reference_id", sa.String(), nullable=True),
        sa.Column("generation_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("generation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_feed_posts_user_id"), "feed_posts", ["user_id"], unique=False)
    op.create_index(op.f("ix_feed_posts_feed_id"), "feed_posts", ["feed_id"], unique=False)
    op.create_index(op.f("ix_feed_posts_status"), "feed_posts", ["status"], unique=False)
    op.create_index(op.f("ix_feed_posts_job_handle"), "feed_posts", ["job_handle"], unique=False)
    op.create_index(op.f("ix_feed_posts_credit_reference_id"), "feed_posts", ["credit_reference_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_feed_posts_credit_reference_id"), table_name="feed_posts")
    op.drop_index(op.f("ix_feed_posts_job_handle"), table_name="feed_posts")
    op.drop_index(op.f("ix_feed_posts_status"), table_name="feed_posts")
    op.drop_index(op.f("ix_feed_posts_feed_id"), table_name="feed_posts")
    op.drop_index(op.f("ix_feed_posts_user_id"), table_name="feed_posts")
    op.drop_table("feed_posts")
    op.drop_index(op.f("ix_reference_images_user_id"), table_name="reference_images")
    op.drop_table("reference_images")
    op.drop_index(op.f("ix_user_models_training_status"), table_name="user_models")
    op.drop_index(op.f("ix_user_models_user_id"), table_name="user_models")
    op.drop_table("user_models")
    op.drop_index(op.f("ix_credit_transactions_created_at"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_reference_id"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_kind"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_user_id"), table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
