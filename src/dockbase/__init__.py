"""
Dockbase - database containers on a local container runtime.

Provisions, monitors and migrates database containers (PostgreSQL, MySQL,
MariaDB, MongoDB, Redis) through the Docker Engine API.

Packages:
- dockbase.core: Errors, results, logging and settings
- dockbase.deploy: Orchestration engine (specs, images, migration, compose, stats)
- dockbase.cli: Typer command-line interface
"""

__version__ = "0.1.0"
