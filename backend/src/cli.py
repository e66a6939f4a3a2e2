"""Operator commands for partner API credentials.

Run from the backend directory:
  - python -m src.cli credentials issue "Acme webshop"
    Create a credential and print its API key and signing secret.
  - python -m src.cli credentials rotate <credential-id>
    Deactivate a credential and print the replacement's key and secret.

Keys and secrets are printed once; only the key hash is stored.
"""
import asyncio
import uuid

import click

from src.core.database import async_session_factory
from src.core.exceptions import NotFoundError
from src.core.logging import setup_logging
from src.services.request_auth import issue_credential, rotate_credential


async def _issue(display_name: str):
    async with async_session_factory() as db:
        result = await issue_credential(db, display_name)
        await db.commit()
    return result


async def _rotate(credential_id: uuid.UUID):
    async with async_session_factory() as db:
        result = await rotate_credential(db, credential_id)
        await db.commit()
    return result


def _echo_issued(credential, api_key: str, secret: str) -> None:
    click.echo(f"Credential: {credential.id} ({credential.display_name})")
    click.echo(f"API key:    {api_key}")
    click.echo(f"Secret:     {secret}")
    click.echo("Store both now; they cannot be shown again.")


@click.group()
def cli():
    """Invoicing service administration."""
    setup_logging()


@cli.group("credentials")
def credentials_group():
    """Partner API credentials."""


@credentials_group.command("issue")
@click.argument("display_name")
def issue_command(display_name):
    """Create a credential for DISPLAY_NAME."""
    credential, api_key, secret = asyncio.run(_issue(display_name))
    _echo_issued(credential, api_key, secret)


@credentials_group.command("rotate")
@click.argument("credential_id", type=click.UUID)
def rotate_command(credential_id):
    """Replace CREDENTIAL_ID with a fresh key and secret."""
    try:
        credential, api_key, secret = asyncio.run(_rotate(credential_id))
    except NotFoundError as exc:
        raise click.ClickException(exc.detail["message"]) from exc
    click.echo(f"Revoked:    {credential_id}")
    _echo_issued(credential, api_key, secret)


if __name__ == "__main__":
    cli()
