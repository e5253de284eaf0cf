"""Click CLI for t9s."""

import json
import logging
from typing import Optional

import click
import yaml
from trogon import tui

from t9s import __version__
from t9s.cache import CacheStore
from t9s.config import SETTABLE_KEYS, T9sConfig, get_home_dir
from t9s.models import EntityKind


LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(config: T9sConfig, level: str = "WARNING") -> None:
    """Send log records to the t9s log file.

    The TUI owns the terminal, so nothing is logged to stderr.
    """
    log_path = config.resolve_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("t9s")
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    root.propagate = False


def open_cache(config: T9sConfig) -> CacheStore:
    """Load the cache store the configuration points at."""
    return CacheStore.load(
        config.resolve_cache_path(),
        ttls={
            EntityKind.PROJECT: config.cache_ttl,
            EntityKind.BUILD_CONFIG: config.cache_ttl,
            EntityKind.BUILD: config.build_ttl,
        },
    )


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} bytes"
    return f"{size / 1024:.1f} KB"


def _mask(token: str) -> str:
    if not token:
        return ""
    return token[:4] + "..." if len(token) > 8 else "***"


@tui()
@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="t9s")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """t9s - TeamCity in the terminal.

    Browse projects, build configurations and builds from a cached,
    keyboard-driven UI.

    Quick start:
        t9s config init           Write a config file
        t9s browse                Launch the browser (same as plain `t9s`)
        t9s cache info            Show what is cached
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(browse)


@cli.command()
@click.option("--url", "-u", envvar="T9S_TEAMCITY_URL", help="TeamCity server URL")
@click.option("--token", "-t", envvar="T9S_TOKEN", help="TeamCity access token")
@click.option("--project", "-p", "projects", multiple=True, help="Only browse this project id (repeatable)")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    help="Log file verbosity",
)
def browse(
    url: Optional[str] = None,
    token: Optional[str] = None,
    projects: tuple[str, ...] = (),
    log_level: str = "WARNING",
) -> None:
    """Launch the interactive TeamCity browser.

    Keyboard shortcuts:
        j/k     - Move          enter/l - Open
        h/esc   - Back          /       - Filter projects
        f       - Fuzzy find    r       - Refresh
        m       - More builds   o       - Open in browser
        v       - View log      q       - Quit
    """
    config = T9sConfig.load()
    if url:
        config.teamcity_url = url
    if token:
        config.token = token
    if projects:
        config.projects = list(projects)

    problems = config.validate()
    if problems:
        for problem in problems:
            click.echo(click.style(f"✗ {problem}", fg="red"), err=True)
        click.echo("Run `t9s config init` or set T9S_TEAMCITY_URL / T9S_TOKEN.", err=True)
        raise SystemExit(1)

    setup_logging(config, log_level)
    logging.getLogger(__name__).info("Starting t9s against %s", config.base_url)

    from t9s.tui import T9sApp

    app = T9sApp(config)
    app.run()


# -- cache ------------------------------------------------------------------


@cli.group()
def cache() -> None:
    """Inspect and manage the local cache."""
    pass


@cache.command("info")
def cache_info() -> None:
    """Show cache location and contents."""
    config = T9sConfig.load()
    stats = open_cache(config).stats()

    click.echo(f"📁 Cache: {stats['path']}")
    click.echo(f"  Size: {_format_size(stats['size'])}")
    click.echo(f"  📂 Projects: {stats['entities'][EntityKind.PROJECT.value]}")
    click.echo(f"  ⚙️  Build configurations: {stats['entities'][EntityKind.BUILD_CONFIG.value]}")
    click.echo(f"  🔨 Builds: {stats['entities'][EntityKind.BUILD.value]}")
    click.echo(f"  Listings: {stats['scopes']}")


@cache.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def cache_clear(yes: bool) -> None:
    """Delete all cached data.

    The next browse session starts cold and refetches everything.
    """
    if not yes:
        click.confirm(
            click.style("⚠️  This will delete all cached data. Continue?", fg="yellow"),
            abort=True,
        )
    config = T9sConfig.load()
    store = open_cache(config)
    store.clear()
    if not store.flush():
        click.echo(click.style("✗ Failed to write cache file", fg="red"), err=True)
        raise SystemExit(1)
    click.echo(click.style("✓ Cache cleared", fg="green"))


@cache.command("dump")
@click.option("--format", "-f", "fmt", type=click.Choice(["yaml", "json"]), default="yaml")
def cache_dump(fmt: str) -> None:
    """Print the cached entities for inspection."""
    config = T9sConfig.load()
    data = open_cache(config).snapshot()

    if fmt == "json":
        content = json.dumps(data, indent=2)
    else:
        content = yaml.dump(
            data,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=100,
        )
    click.echo(content)


# -- config -----------------------------------------------------------------


@cli.group("config")
def config_group() -> None:
    """Show and edit the configuration file."""
    pass


@config_group.command("show")
def config_show() -> None:
    """Print the effective configuration (token masked)."""
    config = T9sConfig.load()
    click.echo(f"Config file: {config.get_config_path()}")
    click.echo(f"Home: {get_home_dir()}")
    click.echo("-" * 40)
    for key in SETTABLE_KEYS:
        value = getattr(config, key)
        if key == "token":
            value = _mask(value)
        elif key == "projects":
            value = ", ".join(value) or "(all)"
        elif value is None or value == "":
            value = "(default)"
        click.echo(f"  {key}: {value}")

    for problem in config.validate():
        click.echo(click.style(f"⚠️  {problem}", fg="yellow"))


@config_group.command("init")
@click.option("--url", "-u", prompt="TeamCity server URL", help="TeamCity server URL")
@click.option("--token", "-t", prompt="Access token", hide_input=True, help="TeamCity access token")
@click.option("--project", "-p", "projects", multiple=True, help="Only browse this project id (repeatable)")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing config file")
def config_init(url: str, token: str, projects: tuple[str, ...], force: bool) -> None:
    """Write a new config file."""
    path = T9sConfig.get_config_path()
    if path.exists() and not force:
        click.confirm(f"{path} exists. Overwrite?", abort=True)

    config = T9sConfig(teamcity_url=url, token=token, projects=list(projects))
    problems = config.validate()
    for problem in problems:
        click.echo(click.style(f"⚠️  {problem}", fg="yellow"))
    config.save(path)
    click.echo(click.style(f"✓ Created {path}", fg="green"))


@config_group.command("set")
@click.argument("key", type=click.Choice(sorted(SETTABLE_KEYS)))
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set one configuration value.

    Lists (projects) are comma separated; an empty value clears them.
    """
    config = T9sConfig.load(use_env=False)
    kind = SETTABLE_KEYS[key]
    try:
        if kind is list:
            parsed = [v.strip() for v in value.split(",") if v.strip()]
        elif kind is int:
            parsed = int(value)
        elif kind is float:
            parsed = float(value)
        else:
            parsed = value
    except ValueError:
        raise click.BadParameter(f"{value!r} is not a valid {kind.__name__}", param_hint="VALUE")

    setattr(config, key, parsed)
    config.save()
    shown = _mask(value) if key == "token" else value
    click.echo(click.style(f"✓ {key} = {shown}", fg="green"))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
