"""
dokkuprov CLI - Provision a Dokku host and the applications on it.

Commands:
    dokkuprov server    Harden the host and install Dokku (also: provision-server)
    dokkuprov app       Set up one application (also: provision-app)
    dokkuprov ledger    Show or reset the state ledgers
"""

import click

from dokkuprov import __version__

from .app import provision_app
from .ledger import ledger
from .server import provision_server


@click.group()
@click.version_option(version=__version__, prog_name="dokkuprov")
def main():
    """dokkuprov - Idempotent, resumable Dokku provisioning."""
    pass


main.add_command(provision_server, name="server")
main.add_command(provision_app, name="app")
main.add_command(ledger)


if __name__ == "__main__":
    main()
