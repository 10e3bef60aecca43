"""Initial ledger tables and seed SuperAdmin

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from src.core.auth.password import hash_password

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # Users table
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"], unique=False)

    # Document sequences table
    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("prefix", sa.String(20), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_number", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("prefix", "year", name="uq_document_sequence_prefix_year"),
    )

    # Audit logs table
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("entity_identifier", sa.String(200), nullable=True),
        sa.Column("old_values", postgresql.JSONB(), nullable=True),
        sa.Column("new_values", postgresql.JSONB(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # Classes and students
    op.create_table(
        "class_academics",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("class_name", sa.String(100), nullable=False),
        sa.Column("academic_year", sa.String(20), nullable=False),
        sa.Column("grade", sa.Integer(), nullable=True),
        sa.Column("default_fee", sa.Numeric(15, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("class_name", "academic_year", name="uq_class_academic_name_year"),
    )
    op.create_index("ix_class_academics_academic_year", "class_academics", ["academic_year"])

    op.create_table(
        "students",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("student_number", sa.String(50), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("parent_name", sa.String(200), nullable=True),
        sa.Column("parent_phone", sa.String(20), nullable=True),
        sa.Column("start_join_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("last_payment_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_students_student_number", "students", ["student_number"], unique=True)
    op.create_index("ix_students_status", "students", ["status"])

    op.create_table(
        "student_classes",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.BigInteger(), nullable=False),
        sa.Column("class_academic_id", sa.BigInteger(), nullable=False),
        sa.Column(
            "enrolled_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["class_academic_id"], ["class_academics.id"], ondelete="CASCADE"
        ),
        sa.UniqueConstraint("student_id", "class_academic_id", name="uq_student_class"),
    )
    op.create_index("ix_student_classes_student_id", "student_classes", ["student_id"])
    op.create_index(
        "ix_student_classes_class_academic_id", "student_classes", ["class_academic_id"]
    )

    # Discount campaigns
    op.create_table(
        "discounts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("target_periods", postgresql.JSONB(), nullable=False),
        sa.Column("class_academic_id", sa.BigInteger(), nullable=True),
        sa.Column("academic_year", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_by_id", sa.BigInteger(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_academic_id"], ["class_academics.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
    )
    op.create_index("ix_discounts_class_academic_id", "discounts", ["class_academic_id"])
    op.create_index("ix_discounts_academic_year", "discounts", ["academic_year"])

    # Bank accounts and payment requests
    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("bank_name", sa.String(100), nullable=False),
        sa.Column("bank_code", sa.String(20), nullable=True),
        sa.Column("account_number", sa.String(50), nullable=False),
        sa.Column("account_name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_number"),
    )

    op.create_table(
        "payment_requests",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("reference_number", sa.String(50), nullable=False),
        sa.Column("student_id", sa.BigInteger(), nullable=False),
        sa.Column("base_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("unique_code", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("bank_account_id", sa.BigInteger(), nullable=True),
        sa.Column("idempotency_key", sa.String(100), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.BigInteger(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"]),
        sa.ForeignKeyConstraint(["bank_account_id"], ["bank_accounts.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
    )
    op.create_index(
        "ix_payment_requests_reference_number",
        "payment_requests",
        ["reference_number"],
        unique=True,
    )
    op.create_index("ix_payment_requests_student_id", "payment_requests", ["student_id"])
    op.create_index("ix_payment_requests_total_amount", "payment_requests", ["total_amount"])
    op.create_index("ix_payment_requests_status", "payment_requests", ["status"])
    op.create_index(
        "ix_payment_requests_idempotency_key", "payment_requests", ["idempotency_key"]
    )
    op.create_index("ix_payment_requests_expires_at", "payment_requests", ["expires_at"])
    # A transfer amount identifies at most one pending request
    op.create_index(
        "uq_payment_request_pending_total",
        "payment_requests",
        ["total_amount"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("payment_request_id", sa.BigInteger(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["payment_request_id"], ["payment_requests.id"], ondelete="SET NULL"
        ),
    )
    op.create_index("ix_idempotency_records_key", "idempotency_records", ["key"], unique=True)
    op.create_index("ix_idempotency_records_status", "idempotency_records", ["status"])
    op.create_index("ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"])

    # Tuitions
    op.create_table(
        "tuitions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.BigInteger(), nullable=False),
        sa.Column("class_academic_id", sa.BigInteger(), nullable=False),
        sa.Column("period", sa.String(20), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("fee_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("scholarship_amount", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("discount_amount", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("discount_id", sa.BigInteger(), nullable=True),
        sa.Column("paid_amount", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("status", sa.String(20), nullable=False, server_default="unpaid"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("pending_payment_request_id", sa.BigInteger(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"]),
        sa.ForeignKeyConstraint(["class_academic_id"], ["class_academics.id"]),
        sa.ForeignKeyConstraint(["discount_id"], ["discounts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["pending_payment_request_id"], ["payment_requests.id"], ondelete="SET NULL"
        ),
        sa.UniqueConstraint(
            "student_id", "class_academic_id", "period", "year", name="uq_tuition_period"
        ),
    )
    op.create_index("ix_tuitions_student_id", "tuitions", ["student_id"])
    op.create_index("ix_tuitions_class_academic_id", "tuitions", ["class_academic_id"])
    op.create_index("ix_tuitions_period", "tuitions", ["period"])
    op.create_index("ix_tuitions_discount_id", "tuitions", ["discount_id"])
    op.create_index("ix_tuitions_status", "tuitions", ["status"])
    op.create_index(
        "ix_tuitions_pending_payment_request_id", "tuitions", ["pending_payment_request_id"]
    )

    op.create_table(
        "payment_request_tuitions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_request_id", sa.BigInteger(), nullable=False),
        sa.Column("tuition_id", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["payment_request_id"], ["payment_requests.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["tuition_id"], ["tuitions.id"]),
        sa.UniqueConstraint(
            "payment_request_id", "tuition_id", name="uq_payment_request_tuition"
        ),
    )
    op.create_index(
        "ix_payment_request_tuitions_payment_request_id",
        "payment_request_tuitions",
        ["payment_request_id"],
    )
    op.create_index(
        "ix_payment_request_tuitions_tuition_id", "payment_request_tuitions", ["tuition_id"]
    )

    # Scholarships
    op.create_table(
        "scholarships",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.BigInteger(), nullable=False),
        sa.Column("class_academic_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("nominal", sa.Numeric(15, 2), nullable=False),
        sa.Column("is_full_scholarship", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("granted_by_id", sa.BigInteger(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"]),
        sa.ForeignKeyConstraint(["class_academic_id"], ["class_academics.id"]),
        sa.ForeignKeyConstraint(["granted_by_id"], ["users.id"]),
        sa.UniqueConstraint(
            "student_id",
            "class_academic_id",
            "name",
            name="uq_scholarship_student_class_name",
        ),
    )
    op.create_index("ix_scholarships_student_id", "scholarships", ["student_id"])
    op.create_index("ix_scholarships_class_academic_id", "scholarships", ["class_academic_id"])

    # Ledger entries
    op.create_table(
        "payments",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_number", sa.String(50), nullable=False),
        sa.Column("tuition_id", sa.BigInteger(), nullable=False),
        sa.Column("student_id", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("scholarship_amount", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("source", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("payment_request_id", sa.BigInteger(), nullable=True),
        sa.Column("recorded_by_id", sa.BigInteger(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["tuition_id"], ["tuitions.id"]),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"]),
        sa.ForeignKeyConstraint(["payment_request_id"], ["payment_requests.id"]),
        sa.ForeignKeyConstraint(["recorded_by_id"], ["users.id"]),
    )
    op.create_index("ix_payments_payment_number", "payments", ["payment_number"], unique=True)
    op.create_index("ix_payments_tuition_id", "payments", ["tuition_id"])
    op.create_index("ix_payments_student_id", "payments", ["student_id"])
    op.create_index("ix_payments_source", "payments", ["source"])
    op.create_index("ix_payments_payment_request_id", "payments", ["payment_request_id"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    # Seed first SuperAdmin user
    # Password: Admin123! (change in production!)
    op.execute(
        sa.text(
            """
            INSERT INTO users (email, password_hash, full_name, role, is_active, created_at, updated_at)
            VALUES (
                'admin@school.com',
                :password_hash,
                'System Administrator',
                'SuperAdmin',
                true,
                NOW(),
                NOW()
            )
            """
        ).bindparams(password_hash=hash_password("Admin123!"))
    )


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("scholarships")
    op.drop_table("payment_request_tuitions")
    op.drop_table("tuitions")
    op.drop_table("idempotency_records")
    op.drop_table("payment_requests")
    op.drop_table("bank_accounts")
    op.drop_table("discounts")
    op.drop_table("student_classes")
    op.drop_table("students")
    op.drop_table("class_academics")
    op.drop_table("audit_logs")
    op.drop_table("document_sequences")
    op.drop_table("users")
