"""create household calendar sync tables

Revision ID: famcal_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the tables used by the calendar synchronization engine:
- households (with the shared family calendar binding)
- household_members (routing-relevant member profile)
- calendar_bindings (per-member OAuth tokens and selected calendar)
- events (local scheduling records and their remote mirror pair)
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "famcal_001"
down_revision = None
branch_labels = ("famcal",)
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS households (
            id TEXT PRIMARY KEY,
            name TEXT,
            family_calendar_id TEXT,
            family_color TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS household_members (
            household_id TEXT NOT NULL REFERENCES households (id) ON DELETE CASCADE,
            member_id TEXT NOT NULL UNIQUE,
            display_name TEXT NOT NULL,
            first_name TEXT,
            email TEXT,
            color TEXT,
            position INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (household_id, member_id)
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS calendar_bindings (
            member_id TEXT PRIMARY KEY REFERENCES household_members (member_id)
                ON DELETE CASCADE,
            access_token TEXT,
            refresh_token TEXT,
            token_expiry TIMESTAMPTZ,
            selected_calendar_id TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            household_id TEXT NOT NULL REFERENCES households (id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            attendees TEXT[] NOT NULL DEFAULT '{}',
            calendar_type TEXT NOT NULL DEFAULT 'personal',
            color TEXT,
            recurrence TEXT,
            remote_event_id TEXT,
            remote_calendar_id TEXT,
            source TEXT NOT NULL DEFAULT 'local',
            status TEXT NOT NULL DEFAULT 'active',
            created_by TEXT,
            last_synced_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT events_calendar_type_check
                CHECK (calendar_type IN ('personal', 'family')),
            CONSTRAINT events_source_check
                CHECK (source IN ('local', 'google')),
            CONSTRAINT events_remote_pair_check
                CHECK ((remote_event_id IS NULL) = (remote_calendar_id IS NULL)),
            CONSTRAINT events_household_remote_event_key
                UNIQUE (household_id, remote_event_id)
        )
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_events_household_start
        ON events (household_id, start_at)
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_events_household_remote_calendar
        ON events (household_id, remote_calendar_id)
        WHERE remote_event_id IS NOT NULL
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS calendar_bindings")
    op.execute("DROP TABLE IF EXISTS household_members")
    op.execute("DROP TABLE IF EXISTS households")
