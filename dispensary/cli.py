import json

import click
from flask import current_app

from dispensary.extensions import db
from dispensary.services.container import build_services


def register_cli(app):
    @app.cli.command("expiry-report")
    @click.option("--clinic", "clinic_id", required=True, help="Clinic id to report on.")
    def expiry_report(clinic_id: str) -> None:
        """Print the clinic's expiry window counts."""
        services = build_services(db.session, current_app.config)
        report = services.reports.get_expiry_report(clinic_id)
        click.echo(json.dumps(report["summary"], indent=2, sort_keys=True))

    @app.cli.command("reconcile-ledger")
    @click.option("--clinic", "clinic_id", required=True, help="Clinic id to check.")
    def reconcile_ledger(clinic_id: str) -> None:
        """Compare unit balances against their ledger entries."""
        services = build_services(db.session, current_app.config)
        drift = services.ledger.reconcile(clinic_id)
        if not drift:
            click.echo("Ledger OK: every unit reconciles with its transactions.")
            return
        click.echo(f"{len(drift)} unit(s) out of balance:")
        click.echo(json.dumps([entry.to_dict() for entry in drift], indent=2))
        raise SystemExit(1)
