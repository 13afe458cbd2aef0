"""keyloop CLI - sign in, inspect and manage stored credentials."""

import logging
from datetime import datetime
from typing import Optional

import click
from rich.logging import RichHandler

from .config import ConfigManager
from .errors import AuthError
from .service import AuthService, Credentials
from .theme import console, CYAN, GREEN, VIOLET


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_consented_store(service: AuthService) -> None:
    """Switch to the durable store when the user has opted in before."""
    if service.config is not None and service.config.is_credential_storage_enabled():
        result = service.load_from_persistent_store()
        if not result.success:
            console.print(f"  {result.error}", style="dim")


def _print_credentials(credentials: Credentials) -> None:
    user = credentials.user
    console.print(f"  Signed in as {user.get('name') or user.get('sub')}", style=f"bold {GREEN}")
    if user.get("email"):
        verified = "verified" if user.get("email_verified") else "unverified"
        console.print(f"    email       {user['email']} ({verified})", style="dim")
    if credentials.expires_at:
        expiry = datetime.fromtimestamp(credentials.expires_at).strftime("%Y-%m-%d %H:%M")
        state = "expired" if credentials.is_expired() else "valid"
        console.print(f"    token       {state} until {expiry}", style="dim")
    has_refresh = bool(credentials.tokens.get("refresh_token"))
    console.print(f"    refresh     {'available' if has_refresh else 'none'}", style="dim")


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """keyloop - OAuth sign-in with optional encrypted credential storage."""
    _configure_logging(verbose)
    config = ConfigManager(config_path)
    ctx.obj = AuthService.from_config(config, watch_store=False)


@cli.command()
@click.option("--persist", is_flag=True, help="Keep credentials in the encrypted store")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the browser")
@click.pass_obj
def login(service: AuthService, persist: bool, timeout: Optional[float]):
    """Sign in through the browser."""
    if not service.auth_settings.client_id:
        raise click.ClickException("No client_id configured. Set auth.client_id or KEYLOOP_CLIENT_ID.")

    try:
        service.start()
        if persist:
            service.enable_persistence()
        console.print("\n  Waiting for browser sign-in...", style=f"dim {CYAN}")
        credentials = service.login(timeout=timeout)
    except (AuthError, OSError) as exc:
        raise click.ClickException(str(exc))
    finally:
        service.stop()

    _print_credentials(credentials)
    if not service.is_persistent:
        console.print(
            "  Credentials were kept in memory only. Use --persist to store them.",
            style=f"dim {VIOLET}",
        )
    console.print()


@cli.command()
@click.pass_obj
def logout(service: AuthService):
    """Forget tokens and profile; the API key is kept."""
    _load_consented_store(service)
    try:
        service.logout()
    except AuthError as exc:
        raise click.ClickException(str(exc))
    console.print("  Signed out.", style=f"dim {CYAN}")


@cli.command()
@click.pass_obj
def status(service: AuthService):
    """Show authentication status."""
    _load_consented_store(service)
    console.print("\n  Auth Status:", style=f"bold {CYAN}")

    credentials = service.get_stored_credentials()
    if credentials is None:
        console.print("  Not authenticated.", style="dim")
    else:
        _print_credentials(credentials)

    backend = "encrypted store" if service.is_persistent else "memory"
    console.print(f"    storage     {backend}", style="dim")
    if service.has_existing_encrypted_store() and not service.is_persistent:
        console.print("    an encrypted store exists but is not enabled", style="dim")
    console.print()


@cli.command()
@click.pass_obj
def refresh(service: AuthService):
    """Refresh the stored access token."""
    _load_consented_store(service)
    result = service.refresh_tokens()
    if not result.success:
        raise click.ClickException(f"Refresh failed: {result.error}")
    console.print("  Tokens refreshed.", style=f"dim {GREEN}")


@cli.command(name="enable-persistence")
@click.pass_obj
def enable_persistence(service: AuthService):
    """Keep credentials in the encrypted store from now on."""
    _load_consented_store(service)
    try:
        service.enable_persistence()
    except OSError as exc:
        raise click.ClickException(str(exc))
    console.print(
        f"  Credential storage enabled ({service.storage_settings.data_dir}).",
        style=f"dim {CYAN}",
    )


if __name__ == "__main__":
    cli()
