from datetime import date

import click
from flask.cli import AppGroup

from .payments.services import generate_monthly_fees, mark_overdue_payments, send_payment_reminders

fees_cli = AppGroup("fees", help="Monthly fee jobs (generation, overdue marking, reminders).")


@fees_cli.command("generate")
@click.option("--month", "month", default=None, help="Any date in the month to bill (YYYY-MM-DD). Defaults to today.")
def generate_command(month):
    target = date.fromisoformat(month) if month else date.today()
    count = generate_monthly_fees(target)
    click.echo(f"Generated {count} fee records for {target.replace(day=1).isoformat()}")


@fees_cli.command("mark-overdue")
def mark_overdue_command():
    count = mark_overdue_payments()
    click.echo(f"Marked {count} payments as overdue")


@fees_cli.command("remind")
@click.option("--days", "days", default=3, show_default=True, type=click.IntRange(0, 366), help="Remind payments due this many days from today.")
def remind_command(days):
    result = send_payment_reminders(days)
    click.echo(
        f"Processed {result.payments_processed} payments: {result.emails_sent} emails, "
        f"{result.sms_sent} SMS, {result.skipped} skipped"
    )
    for err in result.errors:
        click.echo(f"  error: {err}", err=True)
