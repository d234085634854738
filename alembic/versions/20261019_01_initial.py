"""initial schema

Revision ID: 20261019_01_initial
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # clinical_studies
    op.create_table(
        "clinical_studies",
        sa.Column("clinical_study_id", sa.String(length=64), primary_key=True),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="draft", nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_clinical_studies_organization_id", "clinical_studies", ["organization_id"]
    )

    # visit_template_entries
    op.create_table(
        "visit_template_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "clinical_study_id",
            sa.String(length=64),
            sa.ForeignKey("clinical_studies.clinical_study_id"),
            nullable=False,
        ),
        sa.Column("visit_number", sa.Integer(), nullable=False),
        sa.Column("visit_name", sa.String(length=128), nullable=False),
        sa.Column("visit_type", sa.String(length=64), nullable=False),
        sa.Column("scheduled_days_from_baseline", sa.Integer(), nullable=False),
        sa.Column("window_days_before", sa.Integer(), server_default="0", nullable=False),
        sa.Column("window_days_after", sa.Integer(), server_default="0", nullable=False),
        sa.Column("required_examinations", sa.JSON(), nullable=True),
        sa.Column("optional_examinations", sa.JSON(), nullable=True),
        sa.Column("examination_order", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "clinical_study_id", "visit_number", name="uq_template_visit_number"
        ),
        sa.CheckConstraint(
            "scheduled_days_from_baseline >= 0", name="ck_template_days_non_negative"
        ),
        sa.CheckConstraint(
            "window_days_before >= 0 AND window_days_after >= 0",
            name="ck_template_window_non_negative",
        ),
    )
    op.create_index(
        "ix_visit_template_entries_clinical_study_id",
        "visit_template_entries",
        ["clinical_study_id"],
    )

    # surveys
    op.create_table(
        "surveys",
        sa.Column("survey_id", sa.String(length=64), primary_key=True),
        sa.Column("patient_id", sa.String(length=64), nullable=False),
        sa.Column(
            "clinical_study_id",
            sa.String(length=64),
            sa.ForeignKey("clinical_studies.clinical_study_id"),
            nullable=False,
        ),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("baseline_date", sa.Date(), nullable=False),
        sa.Column("expected_completion_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=16), server_default="active", nullable=False),
        sa.Column("total_visits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("completed_visits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("completion_percentage", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
    )
    for column in ("patient_id", "clinical_study_id", "organization_id"):
        op.create_index(f"ix_surveys_{column}", "surveys", [column])

    # visits
    op.create_table(
        "visits",
        sa.Column("visit_id", sa.String(length=96), primary_key=True),
        sa.Column(
            "survey_id",
            sa.String(length=64),
            sa.ForeignKey("surveys.survey_id"),
            nullable=False,
        ),
        sa.Column("patient_id", sa.String(length=64), nullable=False),
        sa.Column("clinical_study_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("visit_number", sa.Integer(), nullable=False),
        sa.Column("visit_name", sa.String(length=128), nullable=True),
        sa.Column("visit_type", sa.String(length=64), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("window_start_date", sa.Date(), nullable=False),
        sa.Column("window_end_date", sa.Date(), nullable=False),
        sa.Column("actual_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("status_reason", sa.String(length=1024), nullable=True),
        sa.Column("examination_order", sa.JSON(), nullable=True),
        sa.Column("required_examinations", sa.JSON(), nullable=True),
        sa.Column("optional_examinations", sa.JSON(), nullable=True),
        sa.Column("completed_examinations", sa.JSON(), nullable=True),
        sa.Column("skipped_examinations", sa.JSON(), nullable=True),
        sa.Column("completion_percentage", sa.Integer(), server_default="0", nullable=False),
        sa.Column("protocol_deviations", sa.JSON(), nullable=True),
        sa.Column("conducted_by", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("survey_id", "visit_number", name="uq_survey_visit_number"),
        sa.CheckConstraint(
            "window_start_date <= scheduled_date AND scheduled_date <= window_end_date",
            name="ck_visit_window_contains_schedule",
        ),
        sa.CheckConstraint(
            "completion_percentage BETWEEN 0 AND 100",
            name="ck_visit_completion_range",
        ),
    )
    for column in (
        "survey_id",
        "patient_id",
        "clinical_study_id",
        "organization_id",
        "status",
    ):
        op.create_index(f"ix_visits_{column}", "visits", [column])

    # visit_drafts
    op.create_table(
        "visit_drafts",
        sa.Column(
            "visit_id",
            sa.String(length=96),
            sa.ForeignKey("visits.visit_id"),
            primary_key=True,
        ),
        sa.Column("form_data", sa.JSON(), nullable=True),
        sa.Column("current_step", sa.Integer(), nullable=False),
        sa.Column("total_steps", sa.Integer(), nullable=False),
        sa.Column("completed_steps", sa.JSON(), nullable=True),
        sa.Column("examination_order", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_saved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_saved", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "current_step >= 0 AND current_step < total_steps",
            name="ck_draft_current_step_range",
        ),
    )
    op.create_index("ix_visit_drafts_expires_at", "visit_drafts", ["expires_at"])

    # examination_records
    op.create_table(
        "examination_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "visit_id",
            sa.String(length=96),
            sa.ForeignKey("visits.visit_id"),
            nullable=False,
        ),
        sa.Column("examination_id", sa.String(length=64), nullable=False),
        sa.Column("eyeside", sa.String(length=8), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "visit_id", "examination_id", "eyeside", name="uq_examination_record_key"
        ),
    )
    op.create_index("ix_examination_records_visit_id", "examination_records", ["visit_id"])
    op.create_index(
        "ix_examination_records_examination_id", "examination_records", ["examination_id"]
    )

    # protocol_deviations (append-only)
    op.create_table(
        "protocol_deviations",
        sa.Column("deviation_id", sa.String(length=64), primary_key=True),
        sa.Column(
            "visit_id",
            sa.String(length=96),
            sa.ForeignKey("visits.visit_id"),
            nullable=False,
        ),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("kind", sa.String(length=48), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.UniqueConstraint("visit_id", "kind", name="uq_deviation_visit_kind"),
    )
    op.create_index("ix_protocol_deviations_visit_id", "protocol_deviations", ["visit_id"])

    # activity_logs
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=64), nullable=False),
        sa.Column("target_id", sa.String(length=96), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("batch_id", sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    for column in ("actor", "action", "target_type", "target_id", "batch_id"):
        op.create_index(f"ix_activity_logs_{column}", "activity_logs", [column])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("protocol_deviations")
    op.drop_table("examination_records")
    op.drop_table("visit_drafts")
    op.drop_table("visits")
    op.drop_table("surveys")
    op.drop_table("visit_template_entries")
    op.drop_table("clinical_studies")
