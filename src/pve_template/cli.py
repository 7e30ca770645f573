"""
Command-line entry points.

    build-template <image_name> <image_url> <vm_name> <vm_id>
    build-templates --config templates.yaml
"""

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pve_template.batch import load_requests, run_batch
from pve_template.config import DEFAULT_ENV_FILE, EnvironmentConfig
from pve_template.exceptions import PreconditionFailed
from pve_template.notifier import NtfyNotifier
from pve_template.pipeline import BuildRequest, BuildResult, TemplatePipeline

app = typer.Typer(
    name="build-template",
    help="Build a Proxmox VM template from a cloud image",
    add_completion=False,
)
batch_app = typer.Typer(
    name="build-templates",
    help="Build every template listed in a YAML file",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s",
    )


def load_environment(env_file: Path) -> EnvironmentConfig:
    try:
        return EnvironmentConfig.from_env_file(str(env_file))
    except PreconditionFailed as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)


def report(result: BuildResult) -> None:
    request = result.request
    if result.ok:
        console.print(f"✅ TEMPLATE {request.vm_name} (ID {request.vm_id}) successfully created!")
        console.print("Now create a clone of this VM in the Proxmox web interface (or via CLI).")
    else:
        console.print(f"❌ TEMPLATE {request.vm_name} (ID {request.vm_id}) failed at stage '{result.stage}'")
        console.print(f"   {escape(result.cause or '')}")


@app.command()
def build(
    image_name: str = typer.Argument(..., help="Image file name, e.g. noble-server-cloudimg-amd64.img"),
    image_url: str = typer.Argument(..., help="URL of the directory holding the image"),
    vm_name: str = typer.Argument(..., help="Name of the template VM"),
    vm_id: int = typer.Argument(..., min=1, help="Proxmox VM id of the template"),
    env_file: Path = typer.Option(Path(DEFAULT_ENV_FILE), "--env-file", "-e", help="dotenv file with build settings"),
    notify: bool = typer.Option(True, "--notify/--no-notify", help="Send the result to NTFY_URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every host command"),
) -> None:
    """Download, customize and register one cloud image as a VM template."""
    configure_logging(verbose)
    env = load_environment(env_file)

    try:
        request = BuildRequest(image_name=image_name, image_url=image_url, vm_name=vm_name, vm_id=vm_id)
    except PreconditionFailed as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)

    pipeline = TemplatePipeline(env)
    try:
        result = pipeline.run(request)
    finally:
        pipeline.executor.close()

    if notify:
        NtfyNotifier(env.ntfy_url).send(result)

    report(result)
    raise typer.Exit(0 if result.ok else 1)


@batch_app.command()
def build_all(
    config: Path = typer.Option(Path("templates.yaml"), "--config", "-c", help="YAML list of templates"),
    env_file: Path = typer.Option(Path(DEFAULT_ENV_FILE), "--env-file", "-e", help="dotenv file with build settings"),
    notify: bool = typer.Option(True, "--notify/--no-notify", help="Send each result to NTFY_URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every host command"),
) -> None:
    """Build each template in turn; later builds run even if an earlier one fails."""
    configure_logging(verbose)
    env = load_environment(env_file)

    try:
        requests = load_requests(config)
    except PreconditionFailed as e:
        console.print(f"❌ {escape(str(e))}")
        raise typer.Exit(1)

    notifier = NtfyNotifier(env.ntfy_url if notify else None)
    pipeline = TemplatePipeline(env)
    try:
        results = run_batch(pipeline, requests, notifier)
    finally:
        pipeline.executor.close()

    table = Table(title="Template Builds")
    table.add_column("VM ID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Status", style="green")
    for result in results:
        status = "✅ ok" if result.ok else f"❌ {result.stage}"
        table.add_row(str(result.request.vm_id), result.request.vm_name, status)
    console.print(table)

    raise typer.Exit(0 if all(r.ok for r in results) else 1)


def main() -> None:
    app()


def main_batch() -> None:
    batch_app()


if __name__ == "__main__":
    main()
