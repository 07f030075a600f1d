"""Exclusion constraint: no overlapping occupied windows per staff member

Revision ID: 0002_bookings_staff_no_overlap
Revises: 0001_initial_schema
Create Date: 2026-09-30 09:00:00

Installs `btree_gist` and forbids two non-released bookings (status not
CANCELLED / NO_SHOW) of the same staff member from having intersecting
`tstzrange(occupied_start, occupied_end)` ranges. Ranges are half-open,
so back-to-back bookings are allowed. Admission already serializes per
provider; this is the database-level backstop, and a violation surfaces to
the application as IntegrityError (retried, then SlotUnavailable).

PostgreSQL only; other dialects skip it.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_bookings_staff_no_overlap"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

CONSTRAINT = "bookings_staff_no_overlap"


def upgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name != "postgresql":
        return

    conn.execute(sa.text("CREATE EXTENSION IF NOT EXISTS btree_gist;"))

    conflict = conn.execute(
        sa.text(
            """
            SELECT b1.id, b2.id
            FROM bookings b1
            JOIN bookings b2 ON b1.staff_id = b2.staff_id AND b1.id < b2.id
            WHERE b1.staff_id IS NOT NULL
              AND b1.status NOT IN ('CANCELLED', 'NO_SHOW')
              AND b2.status NOT IN ('CANCELLED', 'NO_SHOW')
              AND tstzrange(b1.occupied_start, b1.occupied_end) && tstzrange(b2.occupied_start, b2.occupied_end)
            LIMIT 1;
            """
        )
    ).first()
    if conflict:
        raise RuntimeError(
            f"Overlapping staff bookings found (e.g. {conflict[0]} and {conflict[1]}); resolve them before upgrading"
        )

    conn.execute(
        sa.text(
            f"""
            ALTER TABLE bookings
            ADD CONSTRAINT {CONSTRAINT}
            EXCLUDE USING gist (
                staff_id WITH =,
                tstzrange(occupied_start, occupied_end, '[)') WITH &&
            )
            WHERE (staff_id IS NOT NULL AND status NOT IN ('CANCELLED', 'NO_SHOW'));
            """
        )
    )


def downgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name != "postgresql":
        return
    conn.execute(sa.text(f"ALTER TABLE bookings DROP CONSTRAINT IF EXISTS {CONSTRAINT};"))
