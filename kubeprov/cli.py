import logging

import typer

from kubeprov import __version__
from kubeprov.commands import bootstrap, inventory, site, validate
from kubeprov.commands.common import fatal
from kubeprov.config import Config
from kubeprov.logging import setup_logging
from kubeprov.modules.errors import ConfigurationError

app = typer.Typer(help="Provision kubeadm clusters over SSH.")

# Add all commands
app.command("site")(site.site_cmd)
app.command("bootstrap")(bootstrap.bootstrap_cmd)
app.command("validate")(validate.validate_cmd)
app.add_typer(inventory.app, name="inventory")


def version_callback(value: bool):
    if value:
        typer.echo(f"kubeprov {__version__}")
        raise typer.Exit()


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    log_file: str = typer.Option(None, "--log-file", help="Also write logs to this file"),
    version: bool = typer.Option(None, "--version", callback=version_callback, is_eager=True,
                                 help="Show the version and exit"),
):
    """kubeprov - kubeadm cluster provisioning."""
    try:
        Config.validate()
    except ConfigurationError as e:
        fatal(e)
    setup_logging(debug, log_file)
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    app()
