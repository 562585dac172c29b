"""CLI tools for portal administration."""

import asyncio
from datetime import date, timedelta

import click
from sqlalchemy.exc import SQLAlchemyError

from ime_portal.core.config import settings
from ime_portal.db.enums import OrgRole
from ime_portal.db.models import Membership, Organization, Team, User
from ime_portal.db.session import SessionLocal


@click.group()
def cli():
    """IME portal CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Organization name")
@click.option("--slug", required=True, help="URL-friendly slug (lowercase, no spaces)")
@click.option("--owner-email", required=True, help="Owner email address")
@click.option("--owner-name", default=None, help="Owner display name (new users only)")
@click.option("--timezone", "timezone_name", default="Australia/Brisbane", show_default=True)
def create_org(name: str, slug: str, owner_email: str, owner_name: str | None, timezone_name: str):
    """
    Create an organization, its default team and an owner membership.

    The owner user is created when no account has that email.

    Example:
        python -m ime_portal.cli create-org --name "Acme Law" --slug "acme-law" --owner-email "ops@acme.com"
    """
    slug = slug.lower().strip()
    if not slug.replace("-", "").replace("_", "").isalnum():
        raise click.BadParameter("Slug must be alphanumeric (with optional hyphens/underscores)", param_hint="--slug")

    db = SessionLocal()
    try:
        if db.query(Organization).filter(Organization.slug == slug).first():
            raise click.ClickException(f"Organization with slug '{slug}' already exists")

        org = Organization(name=name, slug=slug, timezone=timezone_name)
        db.add(org)
        db.flush()

        owner = db.query(User).filter(User.email == owner_email.lower()).first()
        created_user = owner is None
        if created_user:
            owner = User(
                email=owner_email.lower(),
                display_name=owner_name or owner_email.split("@")[0],
            )
            db.add(owner)
            db.flush()

        db.add(Membership(organization_id=org.id, user_id=owner.id, role=OrgRole.OWNER.value))
        db.add(Team(organization_id=org.id, name="Default"))
        org_id = org.id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise click.ClickException(f"Database error: {e}") from e
    finally:
        db.close()

    click.echo(f"✓ Created organization: {name}")
    click.echo(f"  ID: {org_id}")
    click.echo(f"  Slug: {slug}")
    click.echo(f"✓ {'Created' if created_user else 'Linked'} owner {owner_email}")


@cli.command()
@click.option("--days", default=30, show_default=True, help="Window length ending today")
@click.option("--min-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--max-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--cancel", is_flag=True, help="Cancel orphaned appointments at Acuity")
def reconcile_appointments(days: int, min_date, max_date, cancel: bool):
    """
    List Acuity appointments that have no local booking.

    Example:
        python -m ime_portal.cli reconcile-appointments --days 7
        python -m ime_portal.cli reconcile-appointments --min-date 2026-03-01 --max-date 2026-03-31 --cancel
    """
    from ime_portal.services import reconciliation_service
    from ime_portal.services.acuity_client import AcuityAPIError, AcuityClient

    end = max_date.date() if max_date else date.today()
    start = min_date.date() if min_date else end - timedelta(days=days)
    if start > end:
        raise click.BadParameter("min date must not be after max date", param_hint="--min-date")
    if not settings.acuity_configured:
        raise click.ClickException("ACUITY_USER_ID and ACUITY_API_KEY must be set")

    async def run():
        async with AcuityClient() as client:
            return await reconciliation_service.reconcile(db, client, start, end, cancel=cancel)

    db = SessionLocal()
    try:
        report = asyncio.run(run())
    except ValueError as e:
        raise click.BadParameter(str(e))
    except AcuityAPIError as e:
        raise click.ClickException(f"Acuity error ({e.code}): {e}") from e
    finally:
        db.close()

    click.echo(f"Checked {report.checked} appointments between {start} and {end}")
    if not report.orphans:
        click.echo("✓ No orphaned appointments")
        return
    for appointment in report.orphans:
        status = ""
        if appointment.id in report.cancelled:
            status = " (cancelled)"
        elif appointment.id in report.failed:
            status = f" (cancel failed: {report.failed[appointment.id]})"
        click.echo(f"  {appointment.id}  {appointment.datetime}  calendar {appointment.calendar_id}{status}")
    click.echo(f"Orphans: {len(report.orphans)}")


if __name__ == "__main__":
    cli()
