"""kubenav command line interface."""

import asyncio
import json
import logging
import sys
from typing import Optional

import click

from kubenav.render import Renderer
from kubenav.repl import KubenavRepl, Workspace, bootstrap
from kubenav.shared import debug
from kubenav.shared.config import Settings, get_config_manager
from kubenav.shared.errors import KubenavError


def _settings(ctx: click.Context) -> Settings:
    settings = get_config_manager().settings()
    override = ctx.obj.get("kubeconfig")
    if override:
        settings.kubeconfig = override
    return settings


def _workspace(settings: Settings) -> Workspace:
    try:
        endpoints, current = bootstrap(settings)
    except OSError as e:
        raise click.ClickException(f"cannot read kubeconfig: {e}") from e
    return Workspace(endpoints, settings, current_context=current)


@click.group(help="kubenav - navigate many Kubernetes clusters from one interactive shell.")
@click.option(
    "--kubeconfig",
    type=click.Path(dir_okay=False),
    help="Kubeconfig to read instead of the configured / $KUBECONFIG one.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, kubeconfig: Optional[str], verbose: bool) -> None:
    """Root command for kubenav."""
    debug.configure_root()
    if verbose:
        debug.enable()
    ctx.ensure_object(dict)
    ctx.obj["kubeconfig"] = kubeconfig


@cli.command(help="Start the interactive navigation shell.")
@click.pass_context
def repl(ctx: click.Context) -> None:
    """Run the REPL until EOF or exit."""
    workspace = _workspace(_settings(ctx))
    try:
        asyncio.run(KubenavRepl(workspace).run())
    except KeyboardInterrupt:
        pass


@cli.command(help="List the clusters defined in the kubeconfig without connecting.")
@click.pass_context
def clusters(ctx: click.Context) -> None:
    """Print one row per kubeconfig context."""
    try:
        endpoints, current = bootstrap(_settings(ctx))
    except OSError as e:
        raise click.ClickException(f"cannot read kubeconfig: {e}") from e
    if not endpoints:
        click.echo("No clusters configured.")
        return
    rows = []
    for endpoint in endpoints:
        row = endpoint.describe()
        row["current"] = "*" if endpoint.name == current else ""
        rows.append(row)
    Renderer().clusters(rows)


@cli.command(help="Run a single REPL line, e.g. kubenav run 'get pods'.")
@click.argument("line")
@click.option("--context", "context_name", help="Cluster to use instead of the current context.")
@click.option("--namespace", "-n", help="Namespace to use (default: all namespaces).")
@click.option("--stdin", "read_stdin", is_flag=True, help="Send standard input to the command (exec).")
@click.pass_context
def run(
    ctx: click.Context,
    line: str,
    context_name: Optional[str],
    namespace: Optional[str],
    read_stdin: bool,
) -> None:
    """Dispatch LINE once; exit status 1 when any target failed."""
    workspace = _workspace(_settings(ctx))
    input_data = sys.stdin.buffer.read() if read_stdin else None

    async def _run() -> bool:
        try:
            try:
                if context_name:
                    workspace.state.use_cluster(context_name)
                if namespace:
                    workspace.state.use_namespace(namespace)
            except KubenavError as e:
                workspace.renderer.error(str(e))
                return False
            try:
                result = await workspace.run_line(line, input_data=input_data)
            except KubenavError:
                # run_line already rendered the error.
                return False
        finally:
            await workspace.close()
        return result is None or result.status == "success"

    if not asyncio.run(_run()):
        sys.exit(1)


@cli.group(help="Show or change persistent settings.")
def config() -> None:
    """Configuration commands."""


@config.command("show")
def show_config() -> None:
    """Show current configuration."""
    config_manager = get_config_manager()
    config = debug.redact(config_manager.load_config())

    click.echo(f"Configuration file: {config_manager.config_path}")
    click.echo(json.dumps(config, indent=2))


@config.command(
    "set", help="Set KEY to VALUE (worker_budget, stream_budget, kubeconfig, terminal, ...)."
)
@click.argument("key")
@click.argument("value")
def set_value(key: str, value: str) -> None:
    """Persist one setting."""
    try:
        get_config_manager().set_value(key, value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="KEY/VALUE") from e
    click.echo(f"✓ {key} set to {value}")


@config.command("set-passphrase", help="Store the PKCS#12 passphrase for a kubeconfig USER.")
@click.argument("user")
@click.password_option("--passphrase", confirmation_prompt=False)
def set_passphrase(user: str, passphrase: str) -> None:
    """Persist a PKCS#12 passphrase (the file is created with mode 0600)."""
    get_config_manager().set_pkcs12_passphrase(user, passphrase)
    click.echo(f"✓ Passphrase stored for {user}")


def main():
    """Main entry point."""
    logging.captureWarnings(True)
    cli()


if __name__ == "__main__":
    main()
