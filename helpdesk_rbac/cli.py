"""Helpdesk RBAC CLI tool (rbacctl)."""

import json
from typing import Optional

import typer

app = typer.Typer(name="rbacctl", help="Helpdesk RBAC CLI")
db_app = typer.Typer(help="Database management commands")
rbac_app = typer.Typer(help="Permission cache and grant maintenance")
security_app = typer.Typer(help="Threat response commands")
app.add_typer(db_app, name="db")
app.add_typer(rbac_app, name="rbac")
app.add_typer(security_app, name="security")


def _registry():
    from helpdesk_rbac.core.config import settings
    from helpdesk_rbac.core.registry import build_registry

    return build_registry(settings)


@db_app.command("init")
def db_init():
    """Create all tables."""
    from helpdesk_rbac.db.base import Base
    from helpdesk_rbac.db.session import engine
    import helpdesk_rbac.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    typer.echo("Tables created")


@db_app.command("seed")
def db_seed():
    """Seed departments, permissions and default roles."""
    from helpdesk_rbac.db.session import SessionLocal
    from helpdesk_rbac.db.seeds.seed_roles import seed_roles

    db = SessionLocal()
    try:
        roles = seed_roles(db)
    finally:
        db.close()
    typer.echo(f"Seeded {len(roles)} roles")


@rbac_app.command("warm-cache")
def warm_cache(
    user: Optional[list[int]] = typer.Option(None, "--user", help="Warm only these user ids"),
    batch_size: int = typer.Option(100, help="Users per batch when warming everyone"),
):
    """Pre-load permission cache entries."""
    from helpdesk_rbac.db.session import SessionLocal

    registry = _registry()
    db = SessionLocal()
    try:
        warmed = registry.permissions.warm_batch(db, user_ids=user or None, batch_size=batch_size)
    finally:
        db.close()
    typer.echo(f"Warmed {warmed} users")
    typer.echo(json.dumps(registry.permissions.stats(), indent=2))


@rbac_app.command("sweep-expired")
def sweep_expired():
    """Deactivate lapsed grants and audit expired IP blocks."""
    from helpdesk_rbac.db.session import SessionLocal

    registry = _registry()
    db = SessionLocal()
    try:
        temporal = registry.temporal.cleanup_expired(db)
        emergency = registry.emergency.cleanup_expired(db)
        blocks = registry.threats.process_expired_blocks(db)
    finally:
        db.close()
    typer.echo(f"Temporal roles: {temporal}, emergency grants: {emergency}, IP blocks: {blocks}")


@rbac_app.command("health-check")
def health_check(detailed: bool = typer.Option(False, "--detailed", help="Print the full report")):
    """Check cache connectivity and assignment consistency."""
    from helpdesk_rbac.db.session import SessionLocal

    registry = _registry()
    db = SessionLocal()
    try:
        report = registry.permissions.health_check(db)
    finally:
        db.close()

    if detailed:
        typer.echo(json.dumps(report, indent=2, default=str))
    for issue in report["issues"]:
        typer.echo(f"  - {issue}")
    if not report["healthy"]:
        typer.echo("RBAC health check failed")
        raise typer.Exit(code=1)
    typer.echo("RBAC system healthy")


@security_app.command("blocked")
def list_blocked():
    """List currently blocked IP addresses."""
    blocked = _registry().threats.list_blocked_ips()
    if not blocked:
        typer.echo("No blocked IPs")
    for info in blocked:
        typer.echo(f"  {info['ip_address']}  {info.get('event_type')}  until {info.get('blocked_until')}")


@security_app.command("unblock")
def unblock(
    ip_address: str = typer.Argument(..., help="IP address to unblock"),
    actor: int = typer.Option(..., help="Acting user id"),
    reason: str = typer.Option(..., help="Why the block is lifted"),
):
    """Lift a block before it expires."""
    from helpdesk_rbac.core.exceptions import RBACError
    from helpdesk_rbac.db.session import SessionLocal

    registry = _registry()
    db = SessionLocal()
    try:
        unblocked = registry.threats.unblock_ip(db, ip_address, actor, reason)
    except RBACError as e:
        typer.echo(f"Error: {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()
    typer.echo(f"{ip_address} unblocked" if unblocked else f"{ip_address} was not blocked")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload on code changes"),
):
    """Run the API with uvicorn."""
    import uvicorn

    from helpdesk_rbac.core.config import settings

    uvicorn.run(
        "helpdesk_rbac.main:app",
        host=host,
        port=port,
        reload=reload,
        forwarded_allow_ips=settings.FORWARDED_ALLOW_IPS,
    )


if __name__ == "__main__":
    app()
