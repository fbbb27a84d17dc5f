"""
Command-line interface for skr.

Commands are plain click commands collected in COMMANDS and attached to the
group in create_cli(); nothing registers itself at import time.
"""

import functools
import json
import logging
import subprocess

import click

from . import __version__, auth, installer, remote
from . import skill as skill_mod
from .config import config
from .errors import SkrError
from .oci import ANNOTATION_SOURCE
from .store import Store

logger = logging.getLogger(__name__)


def _handle_errors(func):
    """Turn SkrError into a click error message and non-zero exit."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SkrError as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _store(ctx) -> Store:
    return Store(ctx.obj["store_path"])


def _git_remote_url(path: str) -> str:
    """Best-effort HTTPS URL of the git origin remote, or ""."""
    try:
        result = subprocess.run(
            ["git", "-C", path, "config", "--get", "remote.origin.url"],
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    url = result.stdout.decode().strip()
    if url.startswith("git@github.com:"):
        url = "https://github.com/" + url[len("git@github.com:"):]
    if url.startswith("https://github.com/") and url.endswith(".git"):
        url = url[: -len(".git")]
    return url


def _puller(store: Store):
    client = remote.RegistryClient()

    def pull(reference, cancel=None):
        click.echo(f"Pulling {reference}...")
        client.pull(store, reference, cancel=cancel)

    return pull


def _build(store: Store, path: str, tag: str):
    """Build ``path`` into ``store`` with the skill's annotations; returns (skill, tag, descriptor)."""
    skill = skill_mod.load(path)
    if not tag:
        tag = f"{skill.name}:latest"
        click.echo(f"No tag provided. Defaulting to: {tag}")

    annotations = skill.annotations()
    source_url = _git_remote_url(path)
    if source_url:
        annotations[ANNOTATION_SOURCE] = source_url
        click.echo(f"Detected git source: {source_url}")

    desc = store.build(path, tag, annotations)
    click.echo(f"Successfully built artifact for skill '{skill.name}'")
    click.echo(f"Tagged as: {tag} ({desc.digest})")
    return skill, tag, desc


@click.command("build")
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False))
@click.option("-t", "--tag", "tag", default="", help="Tag for the built artifact (e.g. ghcr.io/acme/skill:v1)")
@click.pass_context
@_handle_errors
def build(ctx, path, tag):
    """Build a skill artifact from a local directory."""
    _build(_store(ctx), path, tag)


@click.command("publish")
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False))
@click.option("-t", "--tag", "tag", required=True, help="Registry reference to publish to (e.g. ghcr.io/acme/skill:v1)")
@click.pass_context
@_handle_errors
def publish(ctx, path, tag):
    """Build a skill artifact and push it to its registry."""
    store = _store(ctx)
    _build(store, path, tag)
    click.echo(f"Pushing {tag}...")
    desc = remote.push(store, tag)
    click.echo(f"Successfully published {tag} ({desc.digest})")


@click.command("tag")
@click.argument("source")
@click.argument("target")
@click.pass_context
@_handle_errors
def tag_cmd(ctx, source, target):
    """Tag a local artifact with a new reference."""
    desc = _store(ctx).retag(source, target)
    click.echo(f"Tagged {source} as {target} ({desc.digest})")


@click.command("list")
@click.option("--root", "install_root", default=None, help="Directory skills are installed in")
@_handle_errors
def list_cmd(install_root):
    """List installed skills."""
    for skill in installer.list_installed(install_root or config.INSTALL_ROOT):
        version = skill.version or "-"
        click.echo(f"{skill.name}\t{version}\t{skill.description}")


@click.command("list")
@click.pass_context
@_handle_errors
def system_list(ctx):
    """List tagged artifacts in the local store."""
    for tag in sorted(_store(ctx).list()):
        click.echo(tag)


@click.command("inspect")
@click.argument("reference")
@click.pass_context
@_handle_errors
def inspect(ctx, reference):
    """Show the manifest, annotations and config of a local artifact."""
    click.echo(json.dumps(_store(ctx).inspect(reference), indent=2, sort_keys=True))


@click.command("push")
@click.argument("reference")
@click.pass_context
@_handle_errors
def push(ctx, reference):
    """Push a local artifact to its registry."""
    desc = remote.push(_store(ctx), reference)
    click.echo(f"Pushed {reference} ({desc.digest})")


@click.command("pull")
@click.argument("reference")
@click.pass_context
@_handle_errors
def pull(ctx, reference):
    """Pull an artifact from its registry into the local store."""
    desc = remote.pull(_store(ctx), reference)
    click.echo(f"Pulled {reference} ({desc.digest})")


@click.command("install")
@click.argument("references", nargs=-1, required=True)
@click.option("--root", "install_root", default=None, help="Directory to install skills into")
@click.pass_context
@_handle_errors
def install(ctx, references, install_root):
    """Install skills and their dependencies."""
    store = _store(ctx)
    inst = installer.Installer(store, puller=_puller(store))
    install_root = install_root or config.INSTALL_ROOT
    installed, failures = inst.install_many(references, install_root)
    for name in installed:
        click.echo(f"Installed {name} into {install_root}")
    if failures:
        raise click.ClickException(
            "; ".join(f"{ref}: {exc}" for ref, exc in failures.items())
        )


@click.command("rm")
@click.argument("name")
@click.option("--root", "install_root", default=None, help="Directory skills are installed in")
@_handle_errors
def rm(name, install_root):
    """Remove an installed skill."""
    installer.remove(name, install_root or config.INSTALL_ROOT)
    click.echo(f"Removed {name}")


@click.command("prune")
@click.option("--skip-unreadable", is_flag=True, help="Skip tags whose manifest cannot be read instead of aborting")
@click.pass_context
@_handle_errors
def prune(ctx, skip_unreadable):
    """Delete blobs not reachable from any tag."""
    count, size = _store(ctx).prune(skip_unreadable=skip_unreadable)
    click.echo(f"Deleted {count} blobs, reclaimed {size} bytes")


@click.command("login")
@click.argument("server")
@click.option("-u", "--username", prompt=True)
@click.password_option("-p", "--password", confirmation_prompt=False)
@_handle_errors
def login(server, username, password):
    """Store credentials for a registry."""
    auth.login(server, username, password)
    click.echo(f"Login succeeded for {server}")


@click.command("logout")
@click.argument("server")
@_handle_errors
def logout(server):
    """Remove stored credentials for a registry."""
    auth.logout(server)
    click.echo(f"Removed credentials for {server}")


@click.command("serve")
@click.option("--host", default=None, help="Bind address")
@click.option("-p", "--port", default=None, type=int, help="Port to listen on")
@click.option("--oci-endpoint", default=None, help="Remote registry to proxy instead of serving the local store")
@click.pass_context
@_handle_errors
def serve(ctx, host, port, oci_endpoint):
    """Serve the OCI Distribution read API."""
    from .backends import LocalBackend, ProxyBackend
    from .routes import create_app

    if oci_endpoint:
        backend = ProxyBackend(oci_endpoint, timeout=config.REGISTRY_TIMEOUT)
    else:
        backend = LocalBackend(_store(ctx))
    logger.info(f"Serving {backend!r}")
    app = create_app(backend)
    app.run(host=host or config.FLASK_HOST, port=port or config.FLASK_PORT)


system = click.Group("system", commands=[system_list, inspect, prune], help="Inspect and maintain the local store.")

COMMANDS = [build, publish, tag_cmd, list_cmd, push, pull, install, rm, login, logout, serve, system]


def create_cli() -> click.Group:
    @click.group(commands=COMMANDS)
    @click.version_option(version=__version__, prog_name="skr")
    @click.option("--store", "store_path", default=None, help="Path of the local OCI store")
    @click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    @click.pass_context
    def cli(ctx, store_path, log_level):
        """skr - distribute skills through OCI registries."""
        logging.basicConfig(
            level=(log_level or config.LOG_LEVEL).upper(),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        ctx.ensure_object(dict)
        ctx.obj["store_path"] = store_path or config.STORE_PATH

    return cli


def main():
    create_cli()(obj={})


if __name__ == "__main__":
    main()
