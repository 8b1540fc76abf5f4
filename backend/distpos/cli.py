# Overview: Flask CLI command groups for bootstrap, lease inspection and operator management.

# backend/distpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables, default warehouses and default users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Order leases:
# - python -m flask locks list
#   List live order leases.
# - python -m flask locks sweep
#   Delete expired leases now (the background sweeper does this every 30s).
#
# Operators:
# - python -m flask users list
# - python -m flask users create --username ana --password "secret" --role cashier
# - python -m flask users grant ana CREDIT_SALES
# - python -m flask users deny ana SELL_WITHOUT_STOCK

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import EngineError
from .extensions import db
from .models import User, Warehouse
from .services import identity_service, lock_service


DEFAULT_WAREHOUSES = [
    # (code, name, is_primary)
    ("BODEGA", "Bodega", True),
    ("FRIJOL", "Frijol", False),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--password', default='Password123!', help='Password for the default users')
@with_appcontext
def init_system(password):
    """
    Initialize tables, default warehouses and default users.

    Creates:
    - Warehouses: BODEGA (primary), FRIJOL
    - Users: admin, manager, cashier (roles of the same name)

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing distpos...")
    db.create_all()

    for code, name, is_primary in DEFAULT_WAREHOUSES:
        if Warehouse.query.filter_by(code=code).first():
            click.echo(f"WARN  Warehouse '{code}' already exists, skipping...")
            continue
        db.session.add(Warehouse(code=code, name=name, is_primary=is_primary, is_active=True))
        db.session.commit()
        click.echo(f"PASS Created warehouse: {code}")

    for username in ("admin", "manager", "cashier"):
        if User.query.filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            identity_service.create_user(username, password, display_name=username.title(), role=username)
            click.echo(f"PASS Created user: {username} with role '{username}'")
        except EngineError as e:
            click.echo(f"FAIL Failed to create user '{username}': {e.message}")

    click.echo("DONE distpos initialized")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()
    click.echo("BUILD Creating all tables...")
    db.create_all()
    click.echo("PASS Database reset complete")


@click.group('locks')
def locks_group():
    """Order lease inspection and cleanup."""


@locks_group.command('list')
@with_appcontext
def list_locks():
    """List live order leases, newest first."""
    locks = lock_service.list_locks()
    if not locks:
        click.echo("No live leases")
        return
    click.echo(f"Terminal session: {current_app.config.get('TERMINAL_SESSION_ID')}")
    for lock in locks:
        click.echo(
            f"order {lock.order_id:<8} {lock.user_name:<20} {lock.session_id:<28} expires {lock.expires_at}"
        )


@locks_group.command('sweep')
@with_appcontext
def sweep_locks():
    """Delete expired leases now."""
    removed = lock_service.sweep_expired_locks()
    click.echo(f"PASS Removed {removed} expired lease(s)")


@click.group('users')
def users_group():
    """Operator inspection and bootstrap."""


@users_group.command('list')
@with_appcontext
def list_users():
    for user in User.query.order_by(User.id).all():
        caps = ", ".join(sorted(identity_service.get_capabilities(user.id))) or "-"
        state = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:<4} {user.username:<16} {user.role:<8} {state:<8} {caps}")


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--display-name', default=None)
@click.option('--role', type=click.Choice(['admin', 'manager', 'cashier']), default='cashier')
@with_appcontext
def create_user(username, password, display_name, role):
    try:
        user = identity_service.create_user(username, password, display_name=display_name, role=role)
    except EngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")


def _override(username: str, capability: str, override_type: str) -> None:
    user = User.query.filter_by(username=username).first()
    if user is None:
        raise click.ClickException(f"User '{username}' not found")
    try:
        identity_service.set_capability_override(user.id, capability.upper(), override_type)
    except EngineError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS {override_type} {capability.upper()} for {username}")


@users_group.command('grant')
@click.argument('username')
@click.argument('capability')
@with_appcontext
def grant_capability(username, capability):
    """Grant one capability to one user."""
    _override(username, capability, identity_service.OVERRIDE_GRANT)


@users_group.command('deny')
@click.argument('username')
@click.argument('capability')
@with_appcontext
def deny_capability(username, capability):
    """Deny one capability to one user, whatever the role grants."""
    _override(username, capability, identity_service.OVERRIDE_DENY)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(locks_group)
    app.cli.add_command(users_group)
