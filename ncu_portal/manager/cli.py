# Usage:
# flask sync-offline
# flask offline-stats
# flask archive-local-data --days 30
# flask import-users members.csv --actor-id <admin uuid> [--no-welcome-emails] [--yes]
import os
import click
from flask import current_app
from flask.cli import with_appcontext

from ncu_portal.admin.bulk_import import (
    KNOWN_EMAILS_CACHE_KEY,
    ImportFileError,
    ImportParseError,
    ImportSession,
    ImportStateError,
    check_upload,
    decode_upload,
)


@click.command("sync-offline")
@with_appcontext
def sync_offline():
    """Push queued offline transactions to Supabase now."""
    queue = current_app.extensions["offline_queue"]
    result = queue.flush()
    if result.skipped:
        click.echo(f"Sync skipped ({result.reason}).")
        return
    click.echo(f"Processed: {result.processed}  Failed: {result.failed}")
    for err in result.errors:
        click.echo(f"  {err}")


@click.command("offline-stats")
@with_appcontext
def offline_stats():
    """Show what is waiting in the offline queue."""
    stats = current_app.extensions["offline_queue"].stats()
    click.echo(f"Queued transactions: {stats['count']}")
    click.echo(f"Total amount: {stats['total_amount']}")
    for tx_type, count in sorted(stats["by_type"].items()):
        click.echo(f"  {tx_type}: {count}")


@click.command("archive-local-data")
@click.option("--days", default=30, show_default=True, help="Keep synced history newer than this.")
@with_appcontext
def archive_local_data(days):
    """Trim locally cached transaction history."""
    removed = current_app.extensions["offline_queue"].archive_local_data(days)
    click.echo(f"Removed {removed} history entr{'y' if removed == 1 else 'ies'} older than {days} days.")


@click.command("import-users")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--actor-id", required=True, help="Profile id of the administrator performing the import.")
@click.option("--no-welcome-emails", is_flag=True, help="Do not send welcome emails to created users.")
@click.option("--yes", is_flag=True, help="Submit without asking for confirmation.")
@with_appcontext
def import_users(path, actor_id, no_welcome_emails, yes):
    """Validate and bulk-create members from a CSV/XLSX file."""
    config = current_app.config
    gateway = current_app.extensions["supabase_gateway"]
    with open(path, "rb") as fh:
        content = fh.read()
    filename = os.path.basename(path)
    try:
        check_upload(filename, len(content), config["IMPORT_MAX_FILE_BYTES"], config["IMPORT_ALLOWED_EXTENSIONS"])
        text = decode_upload(filename, content)
        import_session = ImportSession(gateway.list_user_emails())
        import_session.parse(text, filename)
    except (ImportFileError, ImportParseError) as e:
        raise click.ClickException(str(e))

    for row in import_session.rows:
        if not row.is_valid:
            click.echo(f"Row {row.row_id + 1} skipped ({row.data['email'] or 'no email'}): {'; '.join(row.errors)}")
    summary = import_session.summary()
    click.echo(f"{summary['valid']} valid / {summary['total']} total")

    try:
        import_session.proceed()
    except ImportStateError as e:
        raise click.ClickException(str(e))
    if not yes and not click.confirm(f"Create {summary['included']} user(s)?", default=False):
        click.echo("Import cancelled.")
        return

    result = import_session.confirm(gateway, actor_id, not no_welcome_emails)
    click.echo(f"Created: {result.success}  Failed: {result.failed}")
    for record in result.failed_records:
        click.echo(f"  {record['email']}: {record['reason']}")
    if result.success:
        current_app.extensions["local_cache"].invalidate(KNOWN_EMAILS_CACHE_KEY)


def register_cli(app):
    app.cli.add_command(sync_offline)
    app.cli.add_command(offline_stats)
    app.cli.add_command(archive_local_data)
    app.cli.add_command(import_users)
