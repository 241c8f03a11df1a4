from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "requests",
        sa.Column("seq", sa.Integer(), primary_key=True),
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("doctor_address", sa.String(length=42), nullable=False),
        sa.Column("patient_address", sa.String(length=42), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("ipfs_hash", sa.String(length=128), nullable=True),
        sa.Column("metadata_uri", sa.Text(), nullable=True),
        sa.Column("doctor_signature", sa.Text(), nullable=True),
        sa.Column("nonce", sa.String(length=78), nullable=True),
        sa.Column("valid_until", sa.BigInteger(), nullable=True),
        sa.Column(
            "status", sa.String(length=20), nullable=False, server_default="pending"
        ),
        sa.Column("prescription_id", sa.BigInteger(), nullable=True),
        sa.Column("transaction_hash", sa.String(length=66), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_requests_id", "requests", ["id"], unique=True)
    op.create_index("ix_requests_doctor_address", "requests", ["doctor_address"])
    op.create_index("ix_requests_patient_address", "requests", ["patient_address"])

    op.create_table(
        "metric_samples",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_metric_samples_name", "metric_samples", ["name"])


def downgrade() -> None:
    op.drop_index("ix_metric_samples_name", table_name="metric_samples")
    op.drop_table("metric_samples")
    op.drop_index("ix_requests_patient_address", table_name="requests")
    op.drop_index("ix_requests_doctor_address", table_name="requests")
    op.drop_index("ix_requests_id", table_name="requests")
    op.drop_table("requests")
