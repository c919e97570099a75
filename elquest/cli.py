#!/usr/bin/env python3
# elquest/cli.py
"""
elquest CLI

    elquest install magit
    elquest install '(foo :fetcher github :repo "me/foo")'
    elquest build foo
    elquest upgrade foo | upgrade-all
    elquest index | list | recipe NAME

Each subcommand delegates to the installer built by bootstrap.make_installer.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from elquest import config as config_mod
from elquest import logging as elog
from elquest.archive import build_index, write_index
from elquest.bootstrap import Context, init, make_installer
from elquest.errors import ElquestError
from elquest.logging import get_logger
from elquest.recipes import parse_ref

logger = get_logger("cli")
console = Console()

# -----------------------
# Output helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# CLI Implementation
# -----------------------
class ElquestCLI:
    def __init__(self, update_recipes: Optional[bool] = None):
        self.config = config_mod.get_config()
        self.context = Context.from_config(self.config)
        if update_recipes is not None:
            self.context.update_recipes = update_recipes
        self._installer = None
        self.disable_spinner = False

    @property
    def installer(self):
        if self._installer is None:
            self._installer = make_installer(self.context)
        return self._installer

    def _ready(self):
        ok, issues = config_mod.validate_config()
        if not ok:
            for issue in issues:
                print_warn(f"config: {issue}")
        installer = self.installer
        init(self.context, installer.host, installer.resolver.repository)
        return installer

    def _status(self, text: str):
        if self.disable_spinner:
            return _NullStatus()
        return console.status(text)

    def install(self, ref: str, upgrade: bool = False):
        installer = self._ready()
        parsed = parse_ref(ref)
        name = installer.resolver.package_name(parsed)
        if not upgrade and installer.host.is_installed(name):
            print_info(f"{name} is already installed")
            return
        with self._status(f"installing {name}"):
            installer.install(parsed, upgrade=upgrade)
        print_ok(f"installed {name}")

    def build(self, ref: str):
        installer = self._ready()
        with self._status(f"building {ref}"):
            path = installer.build_only(parse_ref(ref))
        print_ok(f"built {path}")

    def upgrade(self, name: str):
        installer = self._ready()
        with self._status(f"upgrading {name}"):
            installer.upgrade(parse_ref(name))
        print_ok(f"upgraded {name}")

    def upgrade_all(self):
        installer = self._ready()
        with self._status("upgrading installed packages"):
            names = installer.upgrade_all()
        if names:
            print_ok("upgraded " + ", ".join(names))
        else:
            print_info("nothing to upgrade")

    def index(self):
        Path(self.context.archive_dir).mkdir(parents=True, exist_ok=True)
        path = write_index(self.context.archive_dir)
        print_ok(f"wrote {path} ({len(build_index(self.context.archive_dir))} packages)")

    def list_packages(self):
        index = build_index(self.context.archive_dir)
        installed = dict(self.installer.host.installed())
        table = Table(title=f"Archive {self.context.archive_name}")
        table.add_column("name")
        table.add_column("version")
        table.add_column("kind")
        table.add_column("installed")
        table.add_column("summary")
        for d in index.descriptors():
            table.add_row(d.name, d.version_string, d.kind.symbol, installed.get(d.name, ""), d.summary)
        console.print(table)

    def recipe(self, name: str):
        installer = self._ready()
        console.print(installer.resolver.resolve(parse_ref(name)).dumps(), markup=False, highlight=False, soft_wrap=True)


class _NullStatus:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="elquest", description="Build Emacs Lisp packages from recipes into a local archive")
    ap.add_argument("--config", help="path to a configuration file")
    ap.add_argument("--no-update", action="store_true", help="do not update the recipe repository")
    ap.add_argument("--no-spinner", action="store_true", help="Disable spinner animations")
    sub = ap.add_subparsers(dest="cmd")

    p_install = sub.add_parser("install", help="build and install a package and its dependencies")
    p_install.add_argument("ref", help="package name or recipe literal")
    p_install.add_argument("--upgrade", action="store_true", help="rebuild even if already installed")

    p_build = sub.add_parser("build", help="build a package into the archive without installing")
    p_build.add_argument("ref")

    p_upgrade = sub.add_parser("upgrade")
    p_upgrade.add_argument("name")
    sub.add_parser("upgrade-all")

    sub.add_parser("index", help="rewrite archive-contents")
    sub.add_parser("list")

    p_recipe = sub.add_parser("recipe", help="print the resolved recipe")
    p_recipe.add_argument("name")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 0

    try:
        if args.config:
            config_mod.load(args.config, fatal=True)
            elog.reload_config()
        cli = ElquestCLI(update_recipes=False if args.no_update else None)
        cli.disable_spinner = args.no_spinner
        if args.cmd == "install":
            cli.install(args.ref, upgrade=args.upgrade)
        elif args.cmd == "build":
            cli.build(args.ref)
        elif args.cmd == "upgrade":
            cli.upgrade(args.name)
        elif args.cmd == "upgrade-all":
            cli.upgrade_all()
        elif args.cmd == "index":
            cli.index()
        elif args.cmd == "list":
            cli.list_packages()
        elif args.cmd == "recipe":
            cli.recipe(args.name)
    except (ElquestError, ValueError, OSError) as e:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        print_err(f"Command failed: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
