"""create clinical_alerts with one-open-alert-per-rule index

Revision ID: 0001_clinical_alerts
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_clinical_alerts'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'clinical_alerts',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('patient_id', sa.String(), nullable=False),
        sa.Column('organisation_id', sa.String(), nullable=False),
        sa.Column('rule_key', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acknowledged_by', sa.String(), nullable=True),
        sa.Column('acknowledgement_note', sa.Text(), nullable=True),
        sa.Column('escalated_to', sa.String(), nullable=True),
        sa.Column('escalated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_resolved', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('auto_resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['patient_id'], ['patients.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_clinical_alerts_patient_id'), 'clinical_alerts', ['patient_id'], unique=False)
    op.create_index(op.f('ix_clinical_alerts_organisation_id'), 'clinical_alerts', ['organisation_id'], unique=False)
    op.create_index('idx_clinical_alerts_patient_created', 'clinical_alerts', ['patient_id', 'created_at'], unique=False)

    # At most one unresolved alert per (patient, rule); concurrent workers race on this.
    # RULE-004 is inserted by the safety-symptom trigger for every qualifying log.
    op.create_index(
        'uq_clinical_alerts_open_rule',
        'clinical_alerts',
        ['patient_id', 'rule_key'],
        unique=True,
        postgresql_where=sa.text("NOT auto_resolved AND rule_key <> 'RULE-004'"),
        sqlite_where=sa.text("NOT auto_resolved AND rule_key <> 'RULE-004'"),
    )


def downgrade():
    op.drop_index('uq_clinical_alerts_open_rule', table_name='clinical_alerts')
    op.drop_index('idx_clinical_alerts_patient_created', table_name='clinical_alerts')
    op.drop_index(op.f('ix_clinical_alerts_organisation_id'), table_name='clinical_alerts')
    op.drop_index(op.f('ix_clinical_alerts_patient_id'), table_name='clinical_alerts')
    op.drop_table('clinical_alerts')
