"""Click CLI: solve screenshots, manage the user config, check providers."""

import asyncio
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path

import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import VALID_MODES, AppSettings, load_config
from config.user_config import ConfigStore, UserConfig, looks_like_api_key
from snapsolve.healthcheck import run_health_checks
from snapsolve.models import PipelineOutcome
from snapsolve.ocr import OcrExtractor
from snapsolve.orchestrator import Orchestrator
from snapsolve.output import ConsoleSink
from snapsolve.providers.registry import ProviderRegistry
from snapsolve.screenshots import ScreenshotStore, archive_file, scan_directory

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_SETTABLE_FIELDS = (
    "provider", "mode", "solution_model", "debugging_model",
    "extraction_model", "language", "opacity",
)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _mask(key: str) -> str:
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


class SessionConfigStore(ConfigStore):
    """Config store that layers per-invocation overrides on every load.

    Overrides are never written back to disk.
    """

    def __init__(self, settings: AppSettings, path: Path | None, overrides: dict[str, str]) -> None:
        super().__init__(settings, path)
        self._overrides = overrides

    def load(self) -> UserConfig:
        config = super().load()
        if not self._overrides:
            return config
        return self.validate(replace(config, **self._overrides))


def _overrides(settings: AppSettings, provider: str | None, mode: str | None, language: str | None) -> dict[str, str]:
    overrides: dict[str, str] = {}
    if provider:
        if provider not in settings.providers:
            raise click.BadParameter(
                f"Unknown provider '{provider}'. Choose from: {', '.join(settings.providers)}",
                param_hint="--provider",
            )
        # Stage models of another provider would fail its allow-list
        overrides.update(provider=provider, solution_model="", debugging_model="", extraction_model="")
    if mode:
        overrides["mode"] = mode
    if language:
        overrides["language"] = language
    return overrides


async def _run_solve(
    settings: AppSettings,
    store: ConfigStore,
    images: list[Path],
    debug_images: list[Path],
) -> PipelineOutcome:
    screenshots = ScreenshotStore(settings.defaults.queue_size)
    for path in images:
        screenshots.add(path)
    registry = ProviderRegistry(settings, store)
    ocr = OcrExtractor(settings.ocr)
    orchestrator = Orchestrator(settings, screenshots, store, registry, ocr, ConsoleSink(console))

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Solving...", total=None)
            outcome = await orchestrator.process_screenshots()
            if outcome.ok and debug_images:
                progress.update(task, description="Debugging...")
                for path in debug_images:
                    screenshots.add(path, extra=True)
                outcome = await orchestrator.process_screenshots()
    finally:
        ocr.terminate()
        registry.close()
    return outcome


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--config-path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              envvar="SNAPSOLVE_CONFIG", help="User config file (default: per-user app dir)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """snapsolve -- answer screenshot questions with a vision model.

    \b
    Examples:
      snapsolve solve question.png
      snapsolve solve q1.png q2.png --debug error.png
      snapsolve solve --dir ~/Screenshots --archive ~/Screenshots/done
      snapsolve config set provider anthropic
      snapsolve check
    """
    # Model output may contain characters the Windows console codepage can't encode
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        settings = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    ctx.obj = {"settings": settings, "config_path": config_path}


@main.command()
@click.argument("images", nargs=-1, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--debug", "debug_images", multiple=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Error screenshot for a follow-up debug pass (repeatable)")
@click.option("--dir", "image_dir", type=click.Path(exists=True, file_okay=False, path_type=Path),
              help="Queue every image in this folder, oldest first")
@click.option("--archive", "archive_dir", type=click.Path(file_okay=False, path_type=Path),
              help="Move consumed screenshots here afterwards")
@click.option("--provider", default=None, help="Provider for this run only")
@click.option("--mode", type=click.Choice(VALID_MODES), default=None, help="Processing mode for this run only")
@click.option("--language", default=None, help="Preferred code language for this run only")
@click.pass_obj
def solve(
    obj: dict,
    images: tuple[Path, ...],
    debug_images: tuple[Path, ...],
    image_dir: Path | None,
    archive_dir: Path | None,
    provider: str | None,
    mode: str | None,
    language: str | None,
) -> None:
    """Solve the question shown in IMAGES."""
    settings: AppSettings = obj["settings"]
    store = SessionConfigStore(settings, obj["config_path"], _overrides(settings, provider, mode, language))

    queued = list(images)
    if image_dir is not None:
        queued += scan_directory(image_dir)
    if not queued:
        raise click.UsageError("Provide IMAGES or --dir.")

    queue_size = settings.defaults.queue_size
    if len(queued) > queue_size:
        console.print(f"[yellow]Only the last {queue_size} of {len(queued)} screenshots are used.[/yellow]")
        queued = queued[-queue_size:]
    debug_list = list(debug_images)
    if len(debug_list) > queue_size:
        console.print(f"[yellow]Only the last {queue_size} of {len(debug_list)} debug screenshots are used.[/yellow]")
        debug_list = debug_list[-queue_size:]

    outcome = asyncio.run(_run_solve(settings, store, queued, debug_list))

    if archive_dir is not None:
        for path in queued + debug_list:
            archived = archive_file(path, archive_dir, failed=not outcome.ok)
            logger.info("Archived %s -> %s", path.name, archived)

    if not outcome.ok:
        sys.exit(1)


@main.group("config")
def config_group() -> None:
    """Show or change the persisted user config."""


@config_group.command("show")
@click.pass_obj
def config_show(obj: dict) -> None:
    store = ConfigStore(obj["settings"], obj["config_path"])
    config = store.load()
    data = asdict(config)
    data["api_keys"] = {name: _mask(key) for name, key in config.api_keys.items() if key}
    console.print(f"[dim]{store.path}[/dim]")
    console.print(escape(yaml.safe_dump(data, sort_keys=False).rstrip()))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(obj: dict, key: str, value: str) -> None:
    """Set KEY to VALUE. Invalid values fall back to their defaults."""
    if key not in _SETTABLE_FIELDS:
        raise click.BadParameter(f"Choose from: {', '.join(_SETTABLE_FIELDS)}", param_hint="KEY")
    store = ConfigStore(obj["settings"], obj["config_path"])
    if key == "opacity":
        try:
            config = store.set_opacity(float(value))
        except ValueError as exc:
            raise click.BadParameter(f"'{value}' is not a number", param_hint="VALUE") from exc
    else:
        config = store.update(**{key: value})
    console.print(f"[green]OK[/green] {key} = {escape(str(getattr(config, key)))}")


@config_group.command("set-key")
@click.argument("provider")
@click.argument("api_key")
@click.pass_obj
def config_set_key(obj: dict, provider: str, api_key: str) -> None:
    """Store API_KEY for PROVIDER."""
    settings: AppSettings = obj["settings"]
    if provider not in settings.providers:
        raise click.BadParameter(f"Choose from: {', '.join(settings.providers)}", param_hint="PROVIDER")
    if not looks_like_api_key(provider, api_key):
        console.print(f"[yellow]Warning:[/yellow] that does not look like a {provider} API key. Stored anyway.")
    ConfigStore(settings, obj["config_path"]).update(api_keys={provider: api_key})
    console.print(f"[green]OK[/green] API key stored for {provider}")


@main.command()
@click.pass_obj
def check(obj: dict) -> None:
    """Ping every configured provider."""
    settings: AppSettings = obj["settings"]
    registry = ProviderRegistry(settings, ConfigStore(settings, obj["config_path"]))
    providers = registry.available()

    for name, reason in sorted(registry.unavailable().items()):
        console.print(f"  [dim]SKIP[/dim] {name}: {escape(reason)}")

    if not providers:
        console.print("[bold red]Error:[/bold red] No providers configured. Set an API key first.")
        sys.exit(1)

    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(providers))

    failed = [name for name, result in results.items() if not result.ok]
    for name in sorted(results):
        result = results[name]
        if result.ok:
            console.print(f"  [green]OK  [/green] {name} [dim]{result.latency_sec:.1f}s[/dim]")
        else:
            short_err = result.error.splitlines()[0][:120] if result.error else "unknown error"
            kind = result.kind.value if result.kind else "unknown"
            console.print(f"  [red]FAIL[/red] {name} ({kind}): {escape(short_err)}")

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
