"""
Command-line interface for local model management.

Lists, searches, downloads and deletes GGUF models, inspects and edits load
settings, and serves the HTTP API.
"""

from __future__ import annotations

import asyncio
from typing import List, NoReturn, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from mindstrike.logging_utils import configure_logging

from .config import LocalLlmConfig
from .errors import Cancelled, LocalLlmError
from .models import (
    CancellationToken,
    DownloadProgress,
    LocalModel,
    ModelLoadingSettings,
    RemoteModelInfo,
)
from .orchestrator import LocalLlmOrchestrator

app = typer.Typer(
    name="mindstrike-llm",
    help="MindStrike local LLM - manage and serve GGUF models",
    no_args_is_help=True,
)
settings_app = typer.Typer(help="Inspect and change per-model load settings")
app.add_typer(settings_app, name="settings")
console = Console()


def _build_orchestrator() -> LocalLlmOrchestrator:
    return LocalLlmOrchestrator(LocalLlmConfig.load())


def _format_size(size_bytes: int) -> str:
    size = float(size_bytes or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _local_table(models: List[LocalModel], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="white dim")
    table.add_column("Model", style="cyan", overflow="fold")
    table.add_column("Quant", style="magenta")
    table.add_column("Params", style="green")
    table.add_column("Context", justify="right", style="yellow")
    table.add_column("Size", justify="right", style="blue")
    for model in models:
        table.add_row(
            model.id[:12],
            model.display_name,
            model.quantization or "-",
            model.parameter_count or "-",
            str(model.context_length or "-"),
            _format_size(model.size_bytes),
        )
    return table


def _remote_table(models: List[RemoteModelInfo], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Repository", style="cyan", overflow="fold")
    table.add_column("File", style="white")
    table.add_column("Quant", style="magenta")
    table.add_column("Downloads", justify="right", style="green")
    table.add_column("Size", justify="right", style="blue")
    for model in models:
        table.add_row(
            model.model_id,
            model.filename,
            model.quantization or "-",
            str(model.downloads),
            _format_size(model.size_bytes),
        )
    return table


def _fail(exc: LocalLlmError) -> NoReturn:
    rprint(f"❌ [red]{exc.message}[/red]")
    if exc.hint:
        rprint(f"   💡 {exc.hint}")
    raise typer.Exit(code=1)


@app.command("list")
def list_models():
    """List GGUF models in the models directory."""

    async def _run() -> List[LocalModel]:
        async with _build_orchestrator() as orchestrator:
            return await orchestrator.get_local_models()

    try:
        models = asyncio.run(_run())
    except LocalLlmError as exc:
        _fail(exc)
    if not models:
        rprint("📭 [yellow]No local models found[/yellow]")
        return
    console.print(_local_table(models, "Local Models"))


@app.command("available")
def available_models():
    """List downloadable models from the remote catalog."""

    async def _run():
        async with _build_orchestrator() as orchestrator:
            return await orchestrator.get_available_models()

    found = asyncio.run(_run())
    if not found["remote"]:
        rprint("📭 [yellow]Remote catalog returned no models[/yellow]")
        return
    console.print(_remote_table(found["remote"], "Available Models"))


@app.command("search")
def search_models(query: str = typer.Argument(..., help="Search text")):
    """Search local and remote models."""

    async def _run():
        async with _build_orchestrator() as orchestrator:
            return await orchestrator.search_models(query)

    found = asyncio.run(_run())
    if found["local"]:
        console.print(_local_table(found["local"], f"Local matches for '{query}'"))
    if found["remote"]:
        console.print(_remote_table(found["remote"], f"Remote matches for '{query}'"))
    if not found["local"] and not found["remote"]:
        rprint(f"📭 [yellow]Nothing matches '{query}'[/yellow]")


@app.command("download")
def download_model(
    model: str = typer.Argument(
        ..., help="Catalog repository id or GGUF filename to download"
    ),
):
    """Download a model from the remote catalog (Ctrl-C cancels)."""

    cancel = CancellationToken()

    async def _run():
        async with _build_orchestrator() as orchestrator:
            found = await orchestrator.search_models(model)
            matches = [
                m for m in found["remote"] if model in (m.filename, m.model_id)
            ] or found["remote"]
            if not matches:
                return None
            info = matches[0]
            with Progress(
                TextColumn("[cyan]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
                console=console,
            ) as progress:
                task_id = progress.add_task(info.filename, total=info.size_bytes or None)

                def update(snapshot: DownloadProgress) -> None:
                    progress.update(
                        task_id,
                        completed=snapshot.bytes_received,
                        total=snapshot.total_bytes or None,
                    )

                try:
                    return await orchestrator.download_model(
                        info, on_progress=update, cancel=cancel
                    )
                except asyncio.CancelledError:
                    orchestrator.cancel_download(info.filename)
                    raise

    try:
        path = asyncio.run(_run())
    except KeyboardInterrupt:
        rprint("⏹️  [yellow]Download cancelled[/yellow]")
        raise typer.Exit(code=130)
    except Cancelled:
        rprint("⏹️  [yellow]Download cancelled[/yellow]")
        raise typer.Exit(code=130)
    except LocalLlmError as exc:
        _fail(exc)
    if path is None:
        rprint(f"📭 [yellow]No downloadable GGUF found for '{model}'[/yellow]")
        raise typer.Exit(code=1)
    rprint(f"✅ [green]Downloaded:[/green] {path}")


@app.command("delete")
def delete_model(
    model: str = typer.Argument(..., help="Model id, filename or display name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a local model file (unloads it first)."""

    if not yes and not typer.confirm(f"Delete {model}?"):
        raise typer.Exit(code=1)

    async def _run() -> LocalModel:
        async with _build_orchestrator() as orchestrator:
            return await orchestrator.delete_model(model)

    try:
        deleted = asyncio.run(_run())
    except LocalLlmError as exc:
        _fail(exc)
    rprint(f"🗑️  [green]Deleted[/green] {deleted.filename}")


def _print_settings(title: str, settings: ModelLoadingSettings) -> None:
    table = Table(title=title)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", justify="right", style="white")
    for key, value in settings.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@settings_app.command("show")
def settings_show(model: str = typer.Argument(..., help="Model id or name")):
    """Show the settings a model loads (or runs) with."""

    async def _run():
        async with _build_orchestrator() as orchestrator:
            return await orchestrator.get_model_settings(model)

    try:
        settings = asyncio.run(_run())
    except LocalLlmError as exc:
        _fail(exc)
    _print_settings(f"Settings for {model}", settings)


@settings_app.command("set")
def settings_set(
    model: str = typer.Argument(..., help="Model id or name"),
    gpu_layers: Optional[int] = typer.Option(
        None, "--gpu-layers", help="Layers to offload (-1 = auto)"
    ),
    context_size: Optional[int] = typer.Option(None, "--context-size"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size"),
    threads: Optional[int] = typer.Option(None, "--threads"),
    temperature: Optional[float] = typer.Option(None, "--temperature"),
):
    """Persist load settings for a model."""

    settings = ModelLoadingSettings(
        gpu_layers=gpu_layers,
        context_size=context_size,
        batch_size=batch_size,
        threads=threads,
        temperature=temperature,
    )

    async def _run():
        async with _build_orchestrator() as orchestrator:
            await orchestrator.set_model_settings(model, settings)

    try:
        asyncio.run(_run())
    except LocalLlmError as exc:
        _fail(exc)
    rprint(f"✅ [green]Saved settings for[/green] {model}: {settings.to_dict()}")


@settings_app.command("calc")
def settings_calc(model: str = typer.Argument(..., help="Model id or name")):
    """Calculate optimal settings for this machine."""

    async def _run():
        async with _build_orchestrator() as orchestrator:
            return await orchestrator.calculate_optimal_settings(model)

    try:
        settings = asyncio.run(_run())
    except LocalLlmError as exc:
        _fail(exc)
    _print_settings(f"Optimal settings for {model}", settings)


@app.command("config")
def show_config(
    write: bool = typer.Option(
        False, "--write", help="Save the effective configuration to the config file"
    ),
):
    """Show the effective configuration and any environment overrides."""

    from dataclasses import asdict

    from .config_loader import list_env_overrides, write_config

    config = LocalLlmConfig.load()
    table = Table(title=f"Configuration ({config.config_file_path})")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white", overflow="fold")
    for key, value in asdict(config).items():
        if key == "huggingface_token" and value:
            value = "***"
        table.add_row(key, str(value))
    console.print(table)
    overrides = list_env_overrides()
    if overrides:
        rprint(f"🔧 Environment overrides: {', '.join(sorted(overrides))}")
    if write:
        path = write_config(config, config.config_file_path)
        rprint(f"💾 [green]Wrote[/green] {path}")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the HTTP API."""

    import uvicorn

    from .api import create_app

    config = LocalLlmConfig.load()
    log_path = configure_logging(
        "local_llm", level=config.log_level, log_dir=config.log_dir
    )
    rprint(f"📝 Logging to {log_path}")
    orchestrator = LocalLlmOrchestrator(config)
    uvicorn.run(
        create_app(orchestrator),
        host=host or config.api_host,
        port=port or config.api_port,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
