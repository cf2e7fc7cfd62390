"""Initial schema: batches, tasks, enterprise keys/usage and the credit ledger

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


LEDGER_FUNCTIONS = [
    """
    CREATE OR REPLACE FUNCTION get_total_available_credits(user_uuid uuid)
    RETURNS integer LANGUAGE sql STABLE AS $$
        SELECT COALESCE((
            SELECT permanent_credits
                 + CASE WHEN bonus_expires_at IS NULL OR bonus_expires_at > now()
                        THEN bonus_credits ELSE 0 END
              FROM credit_wallet WHERE user_id = user_uuid
        ), 0);
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION freeze_credits_for_batch(p_user_id uuid, p_batch_id uuid, p_amount integer)
    RETURNS jsonb LANGUAGE plpgsql AS $$
    DECLARE
        w credit_wallet%ROWTYPE;
        bonus_ok integer;
        available integer;
        from_bonus integer;
    BEGIN
        IF EXISTS (SELECT 1 FROM credit_holds WHERE batch_id = p_batch_id) THEN
            RETURN jsonb_build_object('ok', true, 'already', true);
        END IF;

        SELECT * INTO w FROM credit_wallet WHERE user_id = p_user_id FOR UPDATE;
        IF NOT FOUND THEN
            RETURN jsonb_build_object('ok', false, 'error', 'insufficient_credits', 'available', 0);
        END IF;

        bonus_ok := CASE WHEN w.bonus_expires_at IS NULL OR w.bonus_expires_at > now()
                         THEN w.bonus_credits ELSE 0 END;
        available := w.permanent_credits + bonus_ok;
        IF available < p_amount THEN
            RETURN jsonb_build_object('ok', false, 'error', 'insufficient_credits', 'available', available);
        END IF;

        from_bonus := LEAST(bonus_ok, p_amount);
        UPDATE credit_wallet
           SET bonus_credits = bonus_credits - from_bonus,
               permanent_credits = permanent_credits - (p_amount - from_bonus),
               updated_at = now()
         WHERE user_id = p_user_id;

        INSERT INTO credit_holds (batch_id, user_id, amount, bonus_used, permanent_used)
        VALUES (p_batch_id, p_user_id, p_amount, from_bonus, p_amount - from_bonus);

        RETURN jsonb_build_object('ok', true, 'already', false);
    END;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION finalize_batch_credits(p_user_id uuid, p_batch_id uuid, p_spent integer)
    RETURNS jsonb LANGUAGE plpgsql AS $$
    DECLARE
        h credit_holds%ROWTYPE;
        refund integer;
        to_permanent integer;
    BEGIN
        SELECT * INTO h FROM credit_holds
         WHERE batch_id = p_batch_id AND user_id = p_user_id FOR UPDATE;
        IF NOT FOUND OR h.status = 'finalized' THEN
            RETURN jsonb_build_object('ok', true, 'already', true, 'refunded', 0);
        END IF;

        refund := h.amount - LEAST(GREATEST(p_spent, 0), h.amount);
        -- spend is charged to bonus first, so the unspent part goes back to permanent first
        to_permanent := LEAST(refund, h.permanent_used);
        UPDATE credit_wallet
           SET permanent_credits = permanent_credits + to_permanent,
               bonus_credits = bonus_credits + (refund - to_permanent),
               updated_at = now()
         WHERE user_id = p_user_id;

        UPDATE credit_holds
           SET status = 'finalized', spent = h.amount - refund, refunded = refund, finalized_at = now()
         WHERE batch_id = p_batch_id;

        RETURN jsonb_build_object('ok', true, 'already', false, 'refunded', refund);
    END;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION deduct_credits_from_wallet(user_uuid uuid, credits_needed integer, model_type text)
    RETURNS jsonb LANGUAGE plpgsql AS $$
    DECLARE
        w credit_wallet%ROWTYPE;
        bonus_ok integer;
        from_bonus integer;
    BEGIN
        SELECT * INTO w FROM credit_wallet WHERE user_id = user_uuid FOR UPDATE;
        IF NOT FOUND THEN
            RETURN jsonb_build_object('success', false, 'error', 'insufficient_credits');
        END IF;

        bonus_ok := CASE WHEN w.bonus_expires_at IS NULL OR w.bonus_expires_at > now()
                         THEN w.bonus_credits ELSE 0 END;
        IF w.permanent_credits + bonus_ok < credits_needed THEN
            RETURN jsonb_build_object('success', false, 'error', 'insufficient_credits');
        END IF;

        from_bonus := LEAST(bonus_ok, credits_needed);
        UPDATE credit_wallet
           SET bonus_credits = bonus_credits - from_bonus,
               permanent_credits = permanent_credits - (credits_needed - from_bonus),
               updated_at = now()
         WHERE user_id = user_uuid;

        RETURN jsonb_build_object(
            'success', true,
            'bonus_used', from_bonus,
            'permanent_used', credits_needed - from_bonus,
            'remaining_credits', w.permanent_credits + bonus_ok - credits_needed,
            'model_type', model_type
        );
    END;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION increment_usage_daily(p_user_id uuid, p_model text, p_count integer)
    RETURNS integer LANGUAGE sql AS $$
        INSERT INTO usage_daily (user_id, day, model, count)
        VALUES (p_user_id, (now() AT TIME ZONE 'utc')::date, p_model, p_count)
        ON CONFLICT (user_id, day, model) DO UPDATE SET count = usage_daily.count + EXCLUDED.count
        RETURNING count;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION add_credits_to_wallet(
        user_uuid uuid, permanent_amount integer, bonus_amount integer,
        bonus_expires_at timestamptz, is_starter boolean
    )
    RETURNS jsonb LANGUAGE plpgsql AS $$
    BEGIN
        IF is_starter AND EXISTS (
            SELECT 1 FROM credit_wallet WHERE user_id = user_uuid AND starter_granted
        ) THEN
            RETURN jsonb_build_object('success', false, 'error', 'starter_already_granted');
        END IF;

        INSERT INTO credit_wallet (user_id, permanent_credits, bonus_credits, bonus_expires_at, starter_granted)
        VALUES (user_uuid, permanent_amount, bonus_amount, bonus_expires_at, is_starter)
        ON CONFLICT (user_id) DO UPDATE
           SET permanent_credits = credit_wallet.permanent_credits + EXCLUDED.permanent_credits,
               bonus_credits = CASE
                   WHEN credit_wallet.bonus_expires_at IS NOT NULL AND credit_wallet.bonus_expires_at <= now()
                   THEN EXCLUDED.bonus_credits
                   ELSE credit_wallet.bonus_credits + EXCLUDED.bonus_credits END,
               bonus_expires_at = GREATEST(credit_wallet.bonus_expires_at, EXCLUDED.bonus_expires_at),
               starter_granted = credit_wallet.starter_granted OR EXCLUDED.starter_granted,
               updated_at = now();

        RETURN jsonb_build_object('success', true);
    END;
    $$;
    """,
]

LEDGER_FUNCTION_SIGNATURES = [
    "get_total_available_credits(uuid)",
    "freeze_credits_for_batch(uuid, uuid, integer)",
    "finalize_batch_credits(uuid, uuid, integer)",
    "deduct_credits_from_wallet(uuid, integer, text)",
    "increment_usage_daily(uuid, text, integer)",
    "add_credits_to_wallet(uuid, integer, integer, timestamptz, boolean)",
]


def upgrade() -> None:
    batch_status = postgresql.ENUM("queued", "processing", "completed", "failed", name="batch_status")
    batch_source = postgresql.ENUM("consumer", "enterprise", name="batch_source")
    settlement_status = postgresql.ENUM("pending", "finalized", "refunded", name="settlement_status")
    task_status = postgresql.ENUM("pending", "processing", "succeeded", "failed", name="task_status")
    for enum_type in (batch_status, batch_source, settlement_status, task_status):
        enum_type.create(op.get_bind())

    op.create_table(
        "batch_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", sa.String(128), nullable=True),
        sa.Column("source", postgresql.ENUM(name="batch_source", create_type=False), nullable=False, server_default="consumer"),
        sa.Column("status", postgresql.ENUM(name="batch_status", create_type=False), nullable=False, server_default="queued"),
        sa.Column("total_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_per_video", sa.Integer(), nullable=False),
        sa.Column("frozen_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("settlement_status", postgresql.ENUM(name="settlement_status", create_type=False), nullable=False, server_default="pending"),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_batch_jobs_user_id", "batch_jobs", ["user_id"])
    op.create_index("ix_batch_jobs_status", "batch_jobs", ["status"])

    op.create_table(
        "video_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("model", sa.String(32), nullable=True),
        sa.Column("aspect_ratio", sa.String(8), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("reference_url", sa.Text(), nullable=True),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        sa.Column("status", postgresql.ENUM(name="task_status", create_type=False), nullable=False, server_default="pending"),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["batch_job_id"], ["batch_jobs.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("batch_job_id", "batch_index", name="uq_video_tasks_batch_index"),
    )
    op.create_index("ix_video_tasks_user_id", "video_tasks", ["user_id"])
    op.create_index("ix_video_tasks_batch_job_id", "video_tasks", ["batch_job_id"])
    op.create_index("ix_video_tasks_status", "video_tasks", ["status"])

    op.create_table(
        "enterprise_api_keys",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default="default"),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rate_limit_per_min", sa.Integer(), nullable=True),
        sa.Column("cost_per_video", sa.Integer(), nullable=True),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key_hash"),
    )
    op.create_index("ix_enterprise_api_keys_user_id", "enterprise_api_keys", ["user_id"])
    op.create_index("ix_enterprise_api_keys_key_hash", "enterprise_api_keys", ["key_hash"])

    op.create_table(
        "enterprise_api_usage",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("api_key_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(128), nullable=False),
        sa.Column("minute_bucket", sa.String(32), nullable=False),
        sa.Column("batch_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["api_key_id"], ["enterprise_api_keys.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("api_key_id", "request_id", name="uq_enterprise_usage_request"),
    )
    op.create_index("ix_enterprise_api_usage_minute_bucket", "enterprise_api_usage", ["minute_bucket"])

    op.create_table(
        "credit_wallet",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("permanent_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("starter_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("permanent_credits >= 0", name="ck_credit_wallet_permanent"),
        sa.CheckConstraint("bonus_credits >= 0", name="ck_credit_wallet_bonus"),
    )

    op.create_table(
        "credit_holds",
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("bonus_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("permanent_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="frozen"),
        sa.Column("spent", sa.Integer(), nullable=True),
        sa.Column("refunded", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index("ix_credit_holds_user_id", "credit_holds", ["user_id"])

    op.create_table(
        "usage_daily",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("model", sa.String(32), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("user_id", "day", "model"),
    )

    for ddl in LEDGER_FUNCTIONS:
        op.execute(ddl)


def downgrade() -> None:
    for signature in LEDGER_FUNCTION_SIGNATURES:
        op.execute(f"DROP FUNCTION IF EXISTS {signature}")
    op.drop_table("usage_daily")
    op.drop_table("credit_holds")
    op.drop_table("credit_wallet")
    op.drop_table("enterprise_api_usage")
    op.drop_table("enterprise_api_keys")
    op.drop_table("video_tasks")
    op.drop_table("batch_jobs")
    for name in ("task_status", "settlement_status", "batch_source", "batch_status"):
        postgresql.ENUM(name=name).drop(op.get_bind())
