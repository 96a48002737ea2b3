#!/usr/bin/env python3
"""sockssh - run ssh through the SOCKS proxy configured for an environment."""

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

import click
import yaml

# ---------------------------------------------------------------------------
# Constants / paths
# ---------------------------------------------------------------------------

CONFIG_DIR_NAME = ".config"
CONFIG_FILE_NAME = "sockssh.yaml"

SSH_BINARY = "ssh"
PROXY_COMMAND_TEMPLATE = "nc -x {server}:{port} %h %p"
ARG_SEPARATOR = "--"
NULL_TAG = "tag:yaml.org,2002:null"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SockSSHError(click.ClickException):
    """Base class for every failure that ends a sockssh run."""

    exit_code = 1


class ArgumentError(SockSSHError):
    """The command line has no usable target."""

    def __init__(self, message: str, show_usage: bool = False) -> None:
        super().__init__(message)
        self.show_usage = show_usage


class ConfigError(SockSSHError):
    """The proxy settings could not be loaded or resolved."""


class ExecutionError(SockSSHError):
    """ssh could not be started or exited non-zero."""


# ---------------------------------------------------------------------------
# Config resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProxySettings:
    server: str = ""
    port: int = 0


@dataclass(frozen=True)
class Configuration:
    defaults: ProxySettings = field(default_factory=ProxySettings)
    environments: dict[str, ProxySettings] = field(default_factory=dict)


def config_path() -> Path:
    """Return the location of the per-user config file."""
    try:
        home = Path.home()
    except (RuntimeError, KeyError) as exc:
        raise ConfigError(f"cannot determine home directory: {exc}") from exc
    return home / CONFIG_DIR_NAME / CONFIG_FILE_NAME


class ConfigLoader(yaml.SafeLoader):
    """Safe loader that keeps mapping keys and socks_server values as written.

    Plain YAML 1.1 resolution would turn an environment named ``on`` into
    True and a server written as ``10.0`` into a float.
    """

    def construct_mapping(self, node, deep=False):
        self.flatten_mapping(node)
        mapping = {}
        for key_node, value_node in node.value:
            if not isinstance(key_node, yaml.ScalarNode):
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark,
                    "found a non-scalar key", key_node.start_mark,
                )
            key = self.construct_scalar(key_node)
            if (
                key == "socks_server"
                and isinstance(value_node, yaml.ScalarNode)
                and value_node.tag != NULL_TAG
            ):
                mapping[key] = self.construct_scalar(value_node)
            else:
                mapping[key] = self.construct_object(value_node, deep=deep)
        return mapping


def _parse_settings(entry: object, where: str) -> ProxySettings:
    # A null entry (``prod:`` with nothing under it) overrides nothing.
    if entry is None:
        return ProxySettings()
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(entry).__name__}")

    server = entry.get("socks_server")
    if server is None:
        server = ""
    elif not isinstance(server, str):
        raise ConfigError(f"{where}.socks_server: expected a string, got {type(server).__name__}")

    port = entry.get("port")
    if port is None:
        port = 0
    elif isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError(f"{where}.port: expected an integer, got {type(port).__name__}")

    return ProxySettings(server=server, port=port)


def parse_config(text: str | bytes) -> Configuration:
    """Parse the YAML config document into a Configuration."""
    try:
        data = yaml.load(text, Loader=ConfigLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}") from exc

    if data is None:
        return Configuration()
    if not isinstance(data, dict):
        raise ConfigError(f"expected a mapping at top level, got {type(data).__name__}")

    defaults = _parse_settings(data.get("defaults"), "defaults")

    raw_envs = data.get("environments")
    if raw_envs is None:
        raw_envs = {}
    if not isinstance(raw_envs, dict):
        raise ConfigError(f"environments: expected a mapping, got {type(raw_envs).__name__}")

    environments = {
        name: _parse_settings(entry, f"environments.{name}")
        for name, entry in raw_envs.items()
    }
    return Configuration(defaults=defaults, environments=environments)


def load_config(path: str | Path | None = None) -> Configuration:
    """Read and parse the config file (``~/.config/sockssh.yaml`` by default)."""
    path = Path(path) if path is not None else config_path()
    try:
        text = path.read_bytes()
    except OSError as exc:
        raise ConfigError(str(exc)) from exc
    return parse_config(text)


def resolve_settings(config: Configuration, environment: str = "") -> ProxySettings:
    """Overlay *environment* on the defaults.

    Only a non-empty server or a non-zero port in the environment entry
    replaces the default; empty fields inherit.
    """
    settings = config.defaults

    if environment:
        override = config.environments.get(environment)
        if override is None:
            raise ConfigError(f"environment '{environment}' not found in config")
        settings = ProxySettings(
            server=override.server or settings.server,
            port=override.port or settings.port,
        )

    if not settings.server:
        raise ConfigError("socks_server not configured")
    return settings


def resolve(environment: str = "", path: str | Path | None = None) -> ProxySettings:
    """Load the config file and resolve the proxy settings for *environment*."""
    return resolve_settings(load_config(path), environment)


# ---------------------------------------------------------------------------
# Command assembly
# ---------------------------------------------------------------------------

def split_positionals(args: tuple[str, ...] | list[str]) -> tuple[str, list[str]]:
    """Return (target, ssh_options) from the positional arguments."""
    args = list(args)
    if not args:
        raise ArgumentError("Target host not specified", show_usage=True)

    if args[0] == ARG_SEPARATOR:
        args = args[1:]
    if not args:
        raise ArgumentError("No command specified")

    return args[0], args[1:]


def proxy_command(settings: ProxySettings) -> str:
    return PROXY_COMMAND_TEMPLATE.format(server=settings.server, port=settings.port)


def build_ssh_args(settings: ProxySettings, target: str, ssh_options: list[str]) -> list[str]:
    """Proxy and agent options first, then pass-through options, target last."""
    return [
        "-o", f"ProxyCommand={proxy_command(settings)}",
        "-o", "ForwardAgent=yes",
        *ssh_options,
        target,
    ]


def format_command(ssh_args: list[str]) -> str:
    return " ".join([SSH_BINARY, *ssh_args])


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def run_ssh(ssh_args: list[str]) -> None:
    """Run ssh with inherited stdio and wait for it to exit."""
    try:
        result = subprocess.run([SSH_BINARY, *ssh_args])
    except OSError as exc:
        raise ExecutionError(str(exc)) from exc

    if result.returncode < 0:
        raise ExecutionError(f"terminated by signal {-result.returncode}")
    if result.returncode != 0:
        raise ExecutionError(f"exit status {result.returncode}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

CONTEXT_SETTINGS = {
    # Everything after the target belongs to ssh.
    "allow_interspersed_args": False,
}

EPILOG = """\b
Examples:
  sockssh user@example.com
  sockssh -env prod -- user@example.com -i ~/.ssh/id_rsa
  sockssh user@example.com -v
"""


def _show_usage(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    if not value or ctx.resilient_parsing:
        return
    click.echo(ctx.get_help(), err=True)
    ctx.exit()


@click.command(
    context_settings=CONTEXT_SETTINGS,
    add_help_option=False,
    options_metavar="[-env <environment>] [-verbose] [--]",
    epilog=EPILOG,
)
@click.option("-env", "--env", "environment", default="", metavar="<environment>", help="Environment to use")
@click.option("-verbose", "--verbose", "verbose", is_flag=True, help="Enable verbose output")
@click.option(
    "-h", "-help", "--help",
    is_flag=True,
    expose_value=False,
    is_eager=True,
    callback=_show_usage,
    help="Show this message and exit.",
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED, metavar="<target> [ssh-options...]")
@click.pass_context
def cli(ctx: click.Context, environment: str, verbose: bool, args: tuple[str, ...]) -> int:
    """Run ssh through the SOCKS proxy configured in ~/.config/sockssh.yaml."""
    try:
        target, ssh_options = split_positionals(args)
    except ArgumentError as exc:
        click.echo(f"Error: {exc}", err=True)
        if exc.show_usage:
            click.echo(ctx.get_help(), err=True)
        return exc.exit_code

    try:
        settings = resolve(environment)
    except ConfigError as exc:
        click.echo(f"Error loading config: {exc}", err=True)
        return exc.exit_code

    ssh_args = build_ssh_args(settings, target, ssh_options)

    if verbose:
        click.echo(f"sockssh: Using SOCKS proxy {settings.server}:{settings.port}", err=True)
        click.echo(f"Command: {format_command(ssh_args)}", err=True)

    try:
        run_ssh(ssh_args)
    except ExecutionError as exc:
        if verbose:
            click.echo(f"sockssh: Error executing SSH command: {exc}", err=True)
        return exc.exit_code

    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point: run the CLI and map every failure to exit code 1."""
    try:
        rv = cli.main(args=argv, prog_name="sockssh", standalone_mode=False)
    except click.ClickException as exc:
        # click's own usage errors default to exit code 2
        exc.show()
        return 1
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    return rv or 0


if __name__ == "__main__":
    sys.exit(main())
