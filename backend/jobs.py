"""Maintenance commands, run from cron with ``flask --app backend.wsgi <command>``."""

from datetime import datetime, timedelta

import click

from backend import ledger


def register_commands(app, db):
    @app.cli.command("expire-pending-topups")
    def expire_pending_topups_command():
        """Cancel top-ups whose payment session has expired."""
        ttl_minutes = int(app.config["PENDING_TOPUP_TTL_MINUTES"])
        cutoff = datetime.utcnow() - timedelta(minutes=ttl_minutes)
        expired = ledger.expire_pending_topups(db, cutoff)
        app.logger.info("Expired %s pending top-ups", expired)
        click.echo(f"Expired {expired} pending top-ups older than {ttl_minutes} minutes.")

    @app.cli.command("reconcile-wallets")
    @click.option("--repair", is_flag=True, help="Reset drifted balances to the ledger sum.")
    @click.option("--user-id", default=None, help="Only check a single user.")
    def reconcile_wallets_command(repair, user_id):
        """Compare wallet balances with their completed transactions."""
        target = ledger.parse_object_id(user_id, "user") if user_id else None
        drifts = ledger.reconcile_balances(db, repair=repair, user_id=target)
        if not drifts:
            click.echo("All wallet balances match the ledger.")
            return

        for drift in drifts:
            click.echo(
                f"{drift['user_id']} {drift['email']}: balance {drift['balance_cents']} "
                f"ledger {drift['ledger_balance_cents']} "
                f"(diff {drift['difference_cents']}){' repaired' if drift['repaired'] else ''}"
            )
        if any(not drift["repaired"] for drift in drifts):
            raise SystemExit(1)

    @app.cli.command("cleanup-notifications")
    def cleanup_notifications_command():
        """Delete notifications past their expiry."""
        result = db.notifications.delete_many({"expires_at": {"$lt": datetime.utcnow()}})
        click.echo(f"Deleted {result.deleted_count} expired notifications.")
