import json
import os
from pathlib import Path

import click

from cfdi import csd
from cfdi.catalogs import CANCELLATION_REASONS
from cfdi.errors import CfdiError
from cfdi.storage import JsonFileStorage, load_fixture
from config import ENV, PAC_PROVIDER, STORAGE_FILE
from dependencies import build_lifecycle, get_credentials_provider, get_registration_client

current_dir = os.getcwd()


def resolve_path(path: str) -> Path:
    file_path = Path(path)

    # Relative paths are taken from the directory the CLI was started in
    if not file_path.is_absolute():
        file_path = Path(current_dir) / file_path

    return file_path.resolve()


def echo_json(data) -> None:
    click.echo(json.dumps(data, indent=4, ensure_ascii=False, default=str))


def echo_result(result) -> None:
    echo_json(result.model_dump(mode="json", exclude_none=True))
    if not result.success:
        raise click.ClickException(f"{result.error.title}: {result.error.detail}")


def lifecycle_from(ctx):
    return build_lifecycle(ctx.obj["store"], ctx.obj["env"], ctx.obj["pac"])


# ---------------- GLOBAL APP ---------------- #
@click.group()
@click.option("--env", type=click.Choice(["demo", "production"]), default=ENV,
              help="Fiscal environment (PAC endpoints and CSD folder).")
@click.option("--store", default=STORAGE_FILE, help="JSON file holding parties, invoices and payments.")
@click.option("--pac", type=click.Choice(["finkok", "dummy"]), default=PAC_PROVIDER, help="PAC provider.")
@click.pass_context
def commands(ctx, env, store, pac):
    """CLI for the CFDI 4.0 stamping lifecycle."""
    ctx.ensure_object(dict)
    ctx.obj["env"] = env
    ctx.obj["store"] = str(resolve_path(store))
    ctx.obj["pac"] = pac


# ---------------- COMMAND: LOAD ---------------- #
@commands.command()
@click.argument("fixture")
@click.pass_context
def load(ctx, fixture):
    """Load parties, invoices and payments from a JSON file into the store."""
    fixture_path = resolve_path(fixture)
    if not fixture_path.exists():
        raise click.UsageError(f"File not found: {fixture_path}")
    storage = JsonFileStorage(ctx.obj["store"])
    load_fixture(storage, str(fixture_path))
    click.echo(f"{len(storage.invoices)} invoices, {len(storage.payments)} payments in {ctx.obj['store']}")


# ---------------- COMMAND: PREVIEW ---------------- #
@commands.command()
@click.argument("invoice_id")
@click.option("--output", default=None, help="Write the unsigned XML to this file.")
@click.pass_context
def preview(ctx, invoice_id, output):
    """Show the unsigned XML, totals and validation messages of an invoice."""
    try:
        result = lifecycle_from(ctx).preview(invoice_id)
    except CfdiError as e:
        raise click.ClickException(e.detail)

    if output:
        with open(resolve_path(output), "w", encoding="utf-8") as outf:
            outf.write(result.xml)
        click.echo(f"XML saved at {resolve_path(output)}")
    else:
        click.echo(result.xml)
    echo_json(result.totals.model_dump(mode="json"))
    if result.messages:
        click.echo("Validation messages:")
        for message in result.messages:
            click.echo(f"  - {message}")
    else:
        click.echo("Ready to stamp.")


# ---------------- COMMAND: STAMP ---------------- #
@commands.command()
@click.argument("invoice_id")
@click.pass_context
def stamp(ctx, invoice_id):
    """Sign and stamp a draft invoice."""
    try:
        result = lifecycle_from(ctx).stamp(invoice_id)
    except CfdiError as e:
        raise click.ClickException(e.detail)
    echo_result(result)


# ---------------- COMMAND: RETRY ---------------- #
@commands.command()
@click.argument("invoice_id")
@click.pass_context
def retry(ctx, invoice_id):
    """Retry stamping an invoice whose last attempt failed."""
    try:
        result = lifecycle_from(ctx).retry(invoice_id)
    except CfdiError as e:
        raise click.ClickException(e.detail)
    echo_result(result)


# ---------------- COMMAND: CANCEL ---------------- #
@commands.command()
@click.argument("invoice_id")
@click.option("--reason", required=True, type=click.Choice(sorted(CANCELLATION_REASONS)),
              help="; ".join(f"{code}: {text}" for code, text in sorted(CANCELLATION_REASONS.items())))
@click.option("--substitute-uuid", default=None, help="UUID of the replacing CFDI (motivo 01).")
@click.pass_context
def cancel(ctx, invoice_id, reason, substitute_uuid):
    """Cancel a stamped invoice."""
    if reason == "01" and not substitute_uuid:
        raise click.UsageError("Motivo 01 requires --substitute-uuid.")
    try:
        result = lifecycle_from(ctx).cancel(invoice_id, reason, substitute_uuid)
    except CfdiError as e:
        raise click.ClickException(e.detail)
    echo_result(result)


# ---------------- COMMAND: RECEIPT ---------------- #
@commands.command()
@click.argument("invoice_id")
@click.option("--output", default=None, help="Write the acuse XML to this file.")
@click.pass_context
def receipt(ctx, invoice_id, output):
    """Show (or recover from the PAC) the cancellation acuse of an invoice."""
    try:
        result = lifecycle_from(ctx).cancellation_receipt(invoice_id)
    except CfdiError as e:
        raise click.ClickException(e.detail)
    if output and result.success:
        with open(resolve_path(output), "w", encoding="utf-8") as outf:
            outf.write(result.acknowledgement or "")
    echo_result(result)


# ---------------- COMMAND: STATUS ---------------- #
@commands.command()
@click.argument("invoice_id")
@click.pass_context
def status(ctx, invoice_id):
    """Show the local fiscal state and the SAT status of an invoice."""
    try:
        result = lifecycle_from(ctx).query_status(invoice_id)
    except CfdiError as e:
        raise click.ClickException(e.detail)
    echo_json(result.model_dump(mode="json", exclude_none=True))


# ---------------- COMMAND: COMPLEMENT ---------------- #
@commands.command()
@click.argument("payment_id")
@click.pass_context
def complement(ctx, payment_id):
    """Issue the payment complement of a registered payment."""
    try:
        result = lifecycle_from(ctx).issue_payment_complement(payment_id)
    except CfdiError as e:
        raise click.ClickException(e.detail)
    echo_result(result)


# ---------------- COMMAND: INSPECT CSD ---------------- #
@commands.command("inspect-csd")
@click.option("--cer", required=True, help="Path to the .cer file.")
@click.option("--key", default=None, help="Path to the .key file.")
@click.option("--passphrase", default=None, help="Private key passphrase.")
def inspect_csd(cer, key, passphrase):
    """Show certificate number, RFC and validity of a CSD."""
    with open(resolve_path(cer), "rb") as inf:
        cer_bytes = inf.read()
    key_bytes = None
    if key:
        with open(resolve_path(key), "rb") as inf:
            key_bytes = inf.read()
    try:
        echo_json(csd.inspect_csd(cer_bytes, key_bytes, passphrase))
    except CfdiError as e:
        raise click.ClickException(e.message)


# ---------------- COMMAND: UPLOAD CSD ---------------- #
@commands.command("upload-csd")
@click.option("--rfc", required=True, help="Emitter RFC.")
@click.option("--cer", required=True, help="Path to the .cer file.")
@click.option("--key", required=True, help="Path to the .key file.")
@click.option("--passphrase", required=True, prompt=True, hide_input=True, help="Private key passphrase.")
@click.pass_context
def upload_csd(ctx, rfc, cer, key, passphrase):
    """Register an emitter CSD with Finkok and keep it for signing."""
    with open(resolve_path(cer), "rb") as inf:
        cer_bytes = inf.read()
    with open(resolve_path(key), "rb") as inf:
        key_bytes = inf.read()

    try:
        info = csd.inspect_csd(cer_bytes, key_bytes, passphrase)
        if info["rfc"] and info["rfc"] != rfc.upper():
            raise click.ClickException(f"The certificate belongs to {info['rfc']}, not {rfc.upper()}")
        get_registration_client(ctx.obj["env"]).upload_csd(rfc, cer_bytes, key_bytes, passphrase)
        get_credentials_provider().save(rfc, ctx.obj["env"], cer_bytes, key_bytes, passphrase)
    except CfdiError as e:
        raise click.ClickException(e.message)

    click.echo(f"CSD {info['certificate_number']} registered for {rfc.upper()} ({ctx.obj['env']})")


if __name__ == "__main__":
    commands()
