"""accounts, subscriptions, purchases, wallet ledger and webhook log

Revision ID: 0001_creatorpay_billing
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_creatorpay_billing"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False, default_now: bool = True):
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=(sa.text("now()") if default_now else None),
    )


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("username", sa.Text(), nullable=False, unique=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default="user"),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("external_customer_id", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint("status in ('active','blocked')", name="ck_accounts_status"),
        sa.CheckConstraint("role in ('user','creator','admin')", name="ck_accounts_role"),
        sa.UniqueConstraint("external_customer_id", name="uq_accounts_external_customer_id"),
    )

    op.create_table(
        "creator_tiers",
        sa.Column("creator_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("price_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        _ts("updated_at"),
        sa.CheckConstraint("price_minor >= 0", name="ck_creator_tiers_price"),
    )

    op.create_table(
        "post_offers",
        sa.Column("post_id", sa.Uuid(), primary_key=True),
        sa.Column("creator_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("price_minor", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("price_minor >= 0", name="ck_post_offers_price"),
    )
    op.create_index("ix_post_offers_creator", "post_offers", ["creator_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("subscriber_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("creator_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("price_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        _ts("current_period_start", default_now=False),
        _ts("current_period_end", default_now=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("external_payment_ref", sa.Text(), nullable=True),
        sa.Column("payment_method_ref", sa.Text(), nullable=True),
        sa.Column("renewal_attempt", sa.Integer(), nullable=False, server_default="0"),
        _ts("canceled_at", nullable=True, default_now=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('PENDING','ACTIVE','PAST_DUE','CANCELED')", name="ck_subscriptions_status"),
        sa.CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period"),
        sa.CheckConstraint("price_minor >= 0", name="ck_subscriptions_price"),
    )
    op.create_index("ix_subscriptions_pair_status", "subscriptions", ["subscriber_id", "creator_id", "status"])
    op.create_index("ix_subscriptions_creator_status", "subscriptions", ["creator_id", "status"])
    op.create_index("ix_subscriptions_due", "subscriptions", ["status", "current_period_end"])
    op.create_index("ix_subscriptions_external_payment", "subscriptions", ["external_payment_ref"])
    # At most one live ACTIVE row per pair; expired ACTIVE rows are superseded by subscribe.
    op.create_index(
        "uq_subscriptions_pair_open",
        "subscriptions",
        ["subscriber_id", "creator_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING','ACTIVE')"),
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("buyer_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("creator_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("post_id", sa.Uuid(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("external_payment_ref", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('PENDING','COMPLETED','FAILED','REFUNDED')", name="ck_purchases_status"),
        sa.CheckConstraint("amount_minor >= 0", name="ck_purchases_amount"),
    )
    op.create_index("ix_purchases_buyer_post", "purchases", ["buyer_id", "post_id"])
    op.create_index("ix_purchases_external_payment", "purchases", ["external_payment_ref"])

    op.create_table(
        "refunds",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("purchase_id", sa.Uuid(), sa.ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_refund_id", sa.Text(), nullable=False),
        sa.Column("external_payment_ref", sa.Text(), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('PENDING','COMPLETED','FAILED')", name="ck_refunds_status"),
        sa.CheckConstraint("amount_minor > 0", name="ck_refunds_amount"),
        sa.UniqueConstraint("external_refund_id", name="uq_refunds_external_refund_id"),
    )

    op.create_table(
        "ledger_pairs",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("charge_key", sa.Text(), nullable=False),
        sa.Column("external_payment_ref", sa.Text(), nullable=True),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("gross_minor", sa.BigInteger(), nullable=False),
        sa.Column("platform_fee_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("subscription_id", sa.Uuid(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True),
        sa.Column("purchase_id", sa.Uuid(), sa.ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True),
        sa.Column("customer_ref", sa.Text(), nullable=True),
        sa.Column("source_ref", sa.Text(), nullable=True),
        sa.Column("charge_note", sa.Text(), nullable=True),
        _ts("period_start", nullable=True, default_now=False),
        _ts("period_end", nullable=True, default_now=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("status IN ('PENDING','COMPLETED','FAILED')", name="ck_ledger_pairs_status"),
        sa.CheckConstraint("kind IN ('SUBSCRIPTION','CONTENT_PURCHASE','TIP')", name="ck_ledger_pairs_kind"),
        sa.CheckConstraint("platform_fee_minor >= 0 AND platform_fee_minor <= gross_minor", name="ck_ledger_pairs_fee"),
        sa.UniqueConstraint("charge_key", name="uq_ledger_pairs_charge_key"),
        sa.UniqueConstraint("external_payment_ref", name="uq_ledger_pairs_external_payment_ref"),
    )
    op.create_index("ix_ledger_pairs_status_created", "ledger_pairs", ["status", "created_at"])

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("pair_id", sa.Uuid(), sa.ForeignKey("ledger_pairs.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("account_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="PENDING"),
        sa.Column("external_payment_ref", sa.Text(), nullable=True),
        sa.Column("external_refund_ref", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint("status IN ('PENDING','COMPLETED','FAILED')", name="ck_wallet_transactions_status"),
        sa.CheckConstraint(
            "type IN ('SUBSCRIPTION_PAYMENT','SUBSCRIPTION_EARNING','CONTENT_PURCHASE_PAYMENT',"
            "'CONTENT_PURCHASE_EARNING','REFUND','WITHDRAWAL','DEPOSIT')",
            name="ck_wallet_transactions_type",
        ),
        sa.UniqueConstraint("external_refund_ref", name="uq_wallet_transactions_refund_ref"),
    )
    op.create_index("ix_wallet_transactions_account_status", "wallet_transactions", ["account_id", "status", "created_at"])
    op.create_index("ix_wallet_transactions_external_payment", "wallet_transactions", ["external_payment_ref"])
    op.create_index("ix_wallet_transactions_pair", "wallet_transactions", ["pair_id"])

    # Amount, type and owner never change; only PENDING rows may move to a terminal status.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION wallet_transactions_guard() RETURNS trigger AS $$
        BEGIN
            IF NEW.amount_minor <> OLD.amount_minor
               OR NEW.type <> OLD.type
               OR NEW.account_id <> OLD.account_id THEN
                RAISE EXCEPTION 'wallet transaction % is immutable', OLD.id;
            END IF;
            IF NEW.status <> OLD.status AND OLD.status <> 'PENDING' THEN
                RAISE EXCEPTION 'wallet transaction % is already %', OLD.id, OLD.status;
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_wallet_transactions_guard
        BEFORE UPDATE ON wallet_transactions
        FOR EACH ROW EXECUTE FUNCTION wallet_transactions_guard();
        """
    )

    op.create_table(
        "billing_webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.Text(), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("received_at"),
        _ts("processed_at", nullable=True, default_now=False),
        sa.CheckConstraint(
            "status IN ('received','processed','ignored','error')",
            name="ck_billing_webhook_events_status",
        ),
        sa.UniqueConstraint("provider", "event_id", name="uq_billing_webhook_events_provider_event_id"),
    )
    op.create_index(
        "ix_billing_webhook_events_status_received",
        "billing_webhook_events",
        ["status", "received_at"],
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("account_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("delivery", sa.Text(), nullable=False, server_default="deferred"),
        _ts("created_at"),
        _ts("read_at", nullable=True, default_now=False),
        sa.CheckConstraint("delivery IN ('realtime','deferred')", name="ck_notifications_delivery"),
    )
    op.create_index("ix_notifications_account_created", "notifications", ["account_id", "created_at"])

    op.create_table(
        "presence",
        sa.Column("account_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
        _ts("last_seen_at"),
        _ts("expires_at", default_now=False),
    )
    op.create_index("ix_presence_expires", "presence", ["expires_at"])

    op.create_table(
        "scheduled_job_runs",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("job_name", sa.Text(), nullable=False),
        _ts("slot", default_now=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="running"),
        sa.Column("detail", sa.JSON(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("started_at"),
        _ts("finished_at", nullable=True, default_now=False),
        sa.CheckConstraint("status IN ('running','succeeded','failed')", name="ck_scheduled_job_runs_status"),
        sa.UniqueConstraint("job_name", "slot", name="uq_scheduled_job_runs_job_slot"),
    )
    op.create_index("ix_scheduled_job_runs_job_started", "scheduled_job_runs", ["job_name", "started_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("actor_account_id", sa.Uuid(), sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True),
        sa.Column("entity_type", sa.Text(), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _ts("created_at"),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])
    op.create_index("ix_audit_actor_created", "audit_log", ["actor_account_id", "created_at"])


def downgrade():
    op.drop_table("audit_log")
    op.drop_table("scheduled_job_runs")
    op.drop_table("presence")
    op.drop_table("notifications")
    op.drop_table("billing_webhook_events")
    op.execute("DROP TRIGGER IF EXISTS trg_wallet_transactions_guard ON wallet_transactions")
    op.execute("DROP FUNCTION IF EXISTS wallet_transactions_guard()")
    op.drop_table("wallet_transactions")
    op.drop_table("ledger_pairs")
    op.drop_table("refunds")
    op.drop_table("purchases")
    op.drop_table("subscriptions")
    op.drop_table("post_offers")
    op.drop_table("creator_tiers")
    op.drop_table("accounts")
