"""
CLI layer for dockbase.

Provides a Typer application with sub-commands that delegate to
:class:`dockbase.deploy.service.DockbaseService`. All engine logic lives in
the service; this package handles only terminal transport: argument
parsing, coloured output, and table formatting.

Entry point::

    dockbase --help
"""

from dockbase.cli.app import app

__all__ = ["app"]
