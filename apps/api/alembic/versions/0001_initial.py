"""Initial schema - tenancy, specialists, intake forms, bookings, audit

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

Creates every table of the booking portal.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create portal tables."""

    # ==========================================================================
    # Extensions
    # ==========================================================================
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()
    op.execute('CREATE EXTENSION IF NOT EXISTS citext')    # For case-insensitive email

    # ==========================================================================
    # Tenancy
    # ==========================================================================
    op.execute('''
        CREATE TABLE organizations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            slug VARCHAR(100) NOT NULL,
            timezone VARCHAR(50) NOT NULL DEFAULT 'Australia/Brisbane',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_organizations_slug UNIQUE (slug)
        )
    ''')

    op.execute('''
        CREATE TABLE users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email CITEXT NOT NULL,
            display_name VARCHAR(255) NOT NULL,
            is_platform_admin BOOLEAN NOT NULL DEFAULT false,
            token_version INTEGER NOT NULL DEFAULT 1,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_users_email UNIQUE (email)
        )
    ''')

    op.execute('''
        CREATE TABLE memberships (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            role VARCHAR(50) NOT NULL DEFAULT 'member',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_membership_org_user UNIQUE (organization_id, user_id)
        )
    ''')
    op.execute('CREATE INDEX idx_memberships_user_id ON memberships(user_id)')

    op.execute('''
        CREATE TABLE teams (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            name VARCHAR(255) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_teams_org ON teams(organization_id, created_at)')

    op.execute('''
        CREATE TABLE team_members (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            team_id UUID NOT NULL REFERENCES teams(id) ON DELETE CASCADE,
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_team_member UNIQUE (team_id, user_id)
        )
    ''')

    # ==========================================================================
    # Specialists and appointment types
    # ==========================================================================
    op.execute('''
        CREATE TABLE specialists (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            acuity_calendar_id INTEGER NOT NULL,
            name VARCHAR(255) NOT NULL,
            slug VARCHAR(255) NOT NULL,
            specialty VARCHAR(255),
            location JSONB,
            accepts_in_person BOOLEAN NOT NULL DEFAULT false,
            accepts_telehealth BOOLEAN NOT NULL DEFAULT true,
            position INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_specialists_acuity_calendar_id UNIQUE (acuity_calendar_id),
            CONSTRAINT uq_specialists_slug UNIQUE (slug),
            CONSTRAINT ck_specialists_at_least_one_modality
                CHECK (accepts_in_person OR accepts_telehealth)
        )
    ''')
    op.execute('CREATE INDEX idx_specialists_user ON specialists(user_id)')
    op.execute('CREATE INDEX idx_specialists_active_position ON specialists(is_active, position)')

    op.execute('''
        CREATE TABLE acuity_appointment_types (
            id INTEGER PRIMARY KEY,
            name VARCHAR(255) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            duration INTEGER NOT NULL,
            category VARCHAR(255) NOT NULL DEFAULT '',
            active BOOLEAN NOT NULL DEFAULT true,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE specialist_appointment_types (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            specialist_id UUID NOT NULL REFERENCES specialists(id) ON DELETE CASCADE,
            appointment_type_id INTEGER NOT NULL
                REFERENCES acuity_appointment_types(id) ON DELETE CASCADE,
            appointment_mode VARCHAR(20) NOT NULL,
            enabled BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_specialist_appointment_type UNIQUE (specialist_id, appointment_type_id),
            CONSTRAINT ck_specialist_appointment_types_appointment_mode_valid
                CHECK (appointment_mode IN ('in-person', 'telehealth'))
        )
    ''')

    # ==========================================================================
    # Intake form configuration
    # ==========================================================================
    op.execute('''
        CREATE TABLE acuity_forms (
            id INTEGER PRIMARY KEY,
            name VARCHAR(255) NOT NULL DEFAULT '',
            hidden BOOLEAN NOT NULL DEFAULT false,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE acuity_appointment_type_forms (
            appointment_type_id INTEGER NOT NULL
                REFERENCES acuity_appointment_types(id) ON DELETE CASCADE,
            form_id INTEGER NOT NULL REFERENCES acuity_forms(id) ON DELETE CASCADE,
            PRIMARY KEY (appointment_type_id, form_id)
        )
    ''')

    op.execute('''
        CREATE TABLE app_forms (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            acuity_form_id INTEGER NOT NULL REFERENCES acuity_forms(id) ON DELETE CASCADE,
            name VARCHAR(255) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_app_forms_acuity_form ON app_forms(acuity_form_id, is_active)')

    op.execute('''
        CREATE TABLE app_form_fields (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            app_form_id UUID NOT NULL REFERENCES app_forms(id) ON DELETE CASCADE,
            acuity_field_id INTEGER NOT NULL,
            examinee_field_mapping VARCHAR(50),
            CONSTRAINT uq_app_form_field UNIQUE (app_form_id, acuity_field_id)
        )
    ''')

    # ==========================================================================
    # Referrers, examinees, bookings
    # ==========================================================================
    op.execute('''
        CREATE TABLE referrers (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            first_name VARCHAR(255) NOT NULL,
            last_name VARCHAR(255) NOT NULL,
            email CITEXT NOT NULL,
            phone VARCHAR(50) NOT NULL DEFAULT '',
            job_title VARCHAR(255),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_referrers_org ON referrers(organization_id)')
    op.execute('CREATE INDEX idx_referrers_user ON referrers(user_id)')
    op.execute('CREATE INDEX idx_referrers_email ON referrers(email)')

    op.execute('''
        CREATE TABLE examinees (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            referrer_id UUID NOT NULL REFERENCES referrers(id) ON DELETE CASCADE,
            first_name VARCHAR(255) NOT NULL,
            last_name VARCHAR(255) NOT NULL,
            date_of_birth VARCHAR(50) NOT NULL,
            address TEXT NOT NULL,
            email VARCHAR(320) NOT NULL,
            phone_number VARCHAR(50) NOT NULL DEFAULT '',
            authorized_contact BOOLEAN NOT NULL DEFAULT false,
            condition TEXT NOT NULL,
            case_type VARCHAR(255) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_examinees_referrer ON examinees(referrer_id)')

    op.execute('''
        CREATE TABLE bookings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            team_id UUID REFERENCES teams(id) ON DELETE SET NULL,
            created_by_id UUID REFERENCES users(id) ON DELETE SET NULL,
            referrer_id UUID NOT NULL REFERENCES referrers(id) ON DELETE RESTRICT,
            specialist_id UUID NOT NULL REFERENCES specialists(id) ON DELETE RESTRICT,
            examinee_id UUID NOT NULL REFERENCES examinees(id) ON DELETE RESTRICT,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            type VARCHAR(20) NOT NULL,
            duration INTEGER NOT NULL,
            location TEXT NOT NULL,
            date_time TIMESTAMPTZ NOT NULL,
            acuity_appointment_id INTEGER NOT NULL,
            acuity_appointment_type_id INTEGER NOT NULL,
            acuity_calendar_id INTEGER NOT NULL,
            scheduled_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ,
            cancelled_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_bookings_acuity_appointment UNIQUE (acuity_appointment_id),
            CONSTRAINT ck_bookings_status_valid
                CHECK (status IN ('active', 'closed', 'archived')),
            CONSTRAINT ck_bookings_type_valid
                CHECK (type IN ('in-person', 'telehealth'))
        )
    ''')
    op.execute('CREATE INDEX idx_bookings_org_created ON bookings(organization_id, created_at)')
    op.execute('CREATE INDEX idx_bookings_specialist_datetime ON bookings(specialist_id, date_time)')
    op.execute('CREATE INDEX idx_bookings_referrer ON bookings(referrer_id)')
    op.execute('CREATE INDEX idx_bookings_created_by ON bookings(created_by_id)')
    op.execute('CREATE INDEX idx_bookings_datetime ON bookings(date_time)')
    op.execute('CREATE INDEX idx_bookings_status ON bookings(status)')
    # One active booking per specialist slot
    op.execute('''
        CREATE UNIQUE INDEX uq_bookings_specialist_slot_active
        ON bookings(specialist_id, date_time)
        WHERE status = 'active'
    ''')

    op.execute('''
        CREATE TABLE booking_progress (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            booking_id UUID NOT NULL REFERENCES bookings(id) ON DELETE CASCADE,
            from_status VARCHAR(30),
            to_status VARCHAR(30) NOT NULL,
            changed_by_id UUID REFERENCES users(id) ON DELETE SET NULL,
            notes TEXT,
            details JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
        )
    ''')
    op.execute(
        'CREATE INDEX idx_booking_progress_booking_created '
        'ON booking_progress(booking_id, created_at)'
    )

    # ==========================================================================
    # Audit and webhook ledger
    # ==========================================================================
    op.execute('''
        CREATE TABLE audit_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID REFERENCES organizations(id) ON DELETE CASCADE,
            actor_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            impersonated_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            event_type VARCHAR(50) NOT NULL,
            target_type VARCHAR(50),
            target_id VARCHAR(64),
            details JSONB,
            ip_address VARCHAR(45),
            user_agent VARCHAR(500),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_audit_org_created ON audit_logs(organization_id, created_at)')
    op.execute('CREATE INDEX idx_audit_target ON audit_logs(target_type, target_id)')
    op.execute('CREATE INDEX idx_audit_actor_created ON audit_logs(actor_user_id, created_at)')

    op.execute('''
        CREATE TABLE webhook_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            source VARCHAR(30) NOT NULL DEFAULT 'acuity',
            event_type VARCHAR(50) NOT NULL,
            resource_id VARCHAR(64) NOT NULL,
            payload JSONB NOT NULL,
            processed_at TIMESTAMPTZ,
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_webhook_events_resource ON webhook_events(source, resource_id)')
    op.execute('CREATE INDEX idx_webhook_events_created ON webhook_events(created_at)')
    op.execute('''
        CREATE INDEX idx_webhook_events_unprocessed
        ON webhook_events(created_at)
        WHERE processed_at IS NULL
    ''')


def downgrade() -> None:
    """Drop portal tables."""
    for table in (
        'webhook_events',
        'audit_logs',
        'booking_progress',
        'bookings',
        'examinees',
        'referrers',
        'app_form_fields',
        'app_forms',
        'acuity_appointment_type_forms',
        'acuity_forms',
        'specialist_appointment_types',
        'acuity_appointment_types',
        'specialists',
        'team_members',
        'teams',
        'memberships',
        'users',
        'organizations',
    ):
        op.execute(f'DROP TABLE IF EXISTS {table}')
