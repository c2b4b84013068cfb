"""
EdgeChat CLI — interactive chat plus model, settings and environment diagnostics.

Registered as the `edgechat` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import importlib.util
import platform
import signal
import sys
from pathlib import Path

import click

from . import config
from .catalog import Backend, ModelCatalog, ModelIdentifier
from .controller import GenerationSessionController, GenerationState, StateTransition
from .engines.apple_fm import AppleFMEngine
from .engines.llama_cpp import LlamaCppEngine
from .exceptions import EdgeChatError
from .history import ChatHistory, HistoryChange
from .lifecycle import ModelLifecycleManager
from .settings import SessionConfig, SettingsStore

_OVERRIDE_TYPES: dict[str, click.ParamType] = {
    "top_k": click.INT,
    "top_p": click.FLOAT,
    "temperature": click.FLOAT,
    "vision_enabled": click.BOOL,
}

_CHAT_HELP = """\
  /help               show this help
  /clear              cancel any reply and clear the chat
  /stop               stop the reply in progress (Ctrl-C works too)
  /model [id]         list models, or switch to <id> (clears the chat)
  /image <path>       attach an image to the next message
  /apply [key=value]  save settings and rebuild the session (clears the chat)
  /reset              restore default settings (clears the chat)
  /stats              show statistics for the last reply
  /quit               leave the chat"""


def _resolve_models_dir(models_dir: Path | None) -> Path:
    return models_dir if models_dir is not None else config.models_dir()


def _open_settings() -> SettingsStore:
    return SettingsStore(config.settings_db_path())


def _apply_overrides(base: SessionConfig, pairs: list[str]) -> SessionConfig:
    """Parse ``key=value`` tokens onto *base*. Raises ``click.BadParameter``."""
    changes: dict[str, object] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        key = key.strip().replace("-", "_")
        if not sep or key not in _OVERRIDE_TYPES:
            raise click.BadParameter(
                f"expected one of {', '.join(_OVERRIDE_TYPES)} as key=value; got {pair!r}"
            )
        changes[key] = _OVERRIDE_TYPES[key].convert(raw.strip(), None, None)
    return dataclasses.replace(base, **changes)


def _print_session_config(session_config: SessionConfig, auto_scroll: bool) -> None:
    click.secho("\nSession settings:\n", fg="cyan", bold=True)
    for key, value in session_config.to_dict().items():
        click.echo(f"  {key:<16}{value}")
    click.echo(f"  {'auto_scroll':<16}{auto_scroll}")
    click.echo()


def build_controller(
    models_dir: Path, settings: SettingsStore, *, verbose: bool = False
) -> GenerationSessionController:
    """Wire catalog, engines, lifecycle and history into a controller."""
    catalog = ModelCatalog(models_dir)
    engines = {
        Backend.LLAMA_CPP: LlamaCppEngine(verbose=verbose),
        Backend.APPLE_FM: AppleFMEngine(),
    }
    lifecycle = ModelLifecycleManager(catalog, engines)
    return GenerationSessionController(catalog, lifecycle, ChatHistory(), settings)


# ── Chat rendering ────────────────────────────────────────────────────────────


class _TerminalRenderer:
    """Prints history changes as they happen; the reply slot streams in place."""

    def __init__(self, controller: GenerationSessionController) -> None:
        self.controller = controller
        self._stream_slot: int | None = None
        self._printed = ""

    def attach(self) -> list:
        return [
            self.controller.history.changes.subscribe(self.on_history),
            self.controller.state_changes.subscribe(self.on_state),
        ]

    def _end_stream(self) -> None:
        if self._stream_slot is not None:
            click.echo()
        self._stream_slot = None
        self._printed = ""

    def _streaming_slot(self) -> int | None:
        entry = self.controller.history.last_user_facing_entry()
        return None if entry is None else entry[0]

    def _notice(self, text: str, fg: str = "yellow") -> None:
        self._end_stream()
        click.secho(text, fg=fg)

    def on_history(self, change: HistoryChange) -> None:
        message = change.message
        if change.kind == "clear":
            self._end_stream()
            click.secho("(chat cleared)", dim=True)
            return
        if message is None or message.is_user_turn:
            return
        if change.kind == "append":
            if message.content == config.THINKING_PLACEHOLDER:
                self._end_stream()
                click.secho("assistant> ", fg="green", bold=True, nl=False)
                self._stream_slot = self._streaming_slot()
                return
            fg = "red" if message.content.startswith(("Error:", "Failed")) else "yellow"
            self._notice(message.content, fg=fg)
            return
        if change.index == self._stream_slot:
            content = message.content
            if content.startswith(self._printed):
                click.echo(content[len(self._printed) :], nl=False)
            else:
                click.echo("\n" + content, nl=False)
            self._printed = content
            return
        self._notice(message.content)

    def on_state(self, transition: StateTransition) -> None:
        if transition.state is GenerationState.CANCELLED:
            self._notice("(stopped)", fg="white")
        elif transition.state.is_terminal:
            self._end_stream()

    def print_stats(self) -> None:
        stats = self.controller.stats
        if stats is None:
            click.secho("No reply has completed yet.", dim=True)
            return
        click.secho(
            f"{stats.token_count} tokens in {stats.duration_seconds:.2f} s "
            f"({stats.tokens_per_second:.2f} tok/s)",
            dim=True,
        )


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(
            click.prompt, prompt, default="", show_default=False, prompt_suffix="> "
        )
    except (click.Abort, EOFError):
        return None


async def _handle_command(
    controller: GenerationSessionController,
    renderer: _TerminalRenderer,
    line: str,
    pending_image: list[bytes],
) -> bool:
    """Run one slash command; returns False when the chat should end."""
    command, _, rest = line.partition(" ")
    rest = rest.strip()
    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        click.echo(_CHAT_HELP)
    elif command == "/clear":
        controller.clear_chat()
    elif command == "/stop":
        if controller.active_task is None:
            click.secho("Nothing to stop.", dim=True)
        controller.stop_generation()
    elif command == "/model":
        if not rest:
            for identifier in controller.available_models:
                marker = "*" if identifier is controller.selected_model else " "
                click.echo(f"  {marker} {identifier.value:<14}{identifier.display_name}")
            return True
        try:
            identifier = ModelIdentifier.parse(rest)
        except ValueError as exc:
            click.secho(str(exc), fg="red")
            return True
        if identifier not in controller.available_models:
            click.secho(f"{identifier.display_name} is not installed.", fg="red")
            return True
        await controller.switch_model(identifier)
    elif command == "/image":
        path = Path(rest).expanduser()
        try:
            data = path.read_bytes()
        except OSError as exc:
            click.secho(f"Cannot read image: {exc}", fg="red")
            return True
        pending_image[:] = [data]
        click.secho(f"Attached {path.name} ({len(data)} bytes) to the next message.", dim=True)
    elif command == "/apply":
        try:
            session_config = _apply_overrides(controller.settings.get(), rest.split())
            await controller.apply_settings(session_config)
        except (click.BadParameter, ValueError) as exc:
            click.secho(f"Invalid settings: {exc}", fg="red")
    elif command == "/reset":
        await controller.reset_settings_to_defaults()
    elif command == "/stats":
        renderer.print_stats()
    else:
        click.secho(f"Unknown command {command!r}. Type /help.", fg="red")
    return True


async def _chat_session(models_dir: Path, model: str | None, verbose: bool) -> int:
    settings = _open_settings()
    if model is not None:
        settings.selected_model = ModelIdentifier.parse(model).value
    controller = build_controller(models_dir, settings, verbose=verbose)
    renderer = _TerminalRenderer(controller)
    unsubscribers = renderer.attach()

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, controller.stop_generation)

    try:
        await controller.start()
        if controller.critical_error is not None and not controller.available_models:
            click.secho(controller.critical_error, fg="red", err=True)
            return 1
        click.secho("Type a message, or /help for commands.", dim=True)
        pending_image: list[bytes] = []
        while True:
            line = await _read_line("you")
            if line is None:
                click.echo()
                break
            line = line.strip()
            if line.startswith("/"):
                if not await _handle_command(controller, renderer, line, pending_image):
                    break
                continue
            image = pending_image.pop() if pending_image else None
            task = controller.send_message(line, image)
            if task is None:
                if line or image is not None:
                    click.secho("The model is not ready; try /model or /apply.", fg="red")
                continue
            await task.wait()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        for unsubscribe in unsubscribers:
            unsubscribe()
        await controller.shutdown()
        settings.close()
    return 0


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="edgechat")
@click.option("-v", "--verbose", is_flag=True, help="Log engine and session activity to stderr.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """EdgeChat — chat with on-device models from the terminal."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    config.configure_logging(verbose)


_models_dir_option = click.option(
    "--models-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help=f"Model files directory (default: ${config.ENV_MODELS_DIR} or ~/.edgechat/models).",
)


# ── Chat ──────────────────────────────────────────────────────────────────────


@cli.command()
@_models_dir_option
@click.option("--model", "model", default=None, help="Model identifier to load first.")
@click.pass_context
def chat(ctx: click.Context, models_dir: Path | None, model: str | None) -> None:
    """Start an interactive chat with a local model."""
    if model is not None:
        try:
            ModelIdentifier.parse(model)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--model") from exc
    rc = asyncio.run(
        _chat_session(_resolve_models_dir(models_dir), model, ctx.obj.get("verbose", False))
    )
    raise SystemExit(rc)


# ── Models ────────────────────────────────────────────────────────────────────


@cli.command()
@_models_dir_option
def models(models_dir: Path | None) -> None:
    """List known model variants and whether each is installed."""
    catalog = ModelCatalog(_resolve_models_dir(models_dir))
    available = set(catalog.available_models())

    click.secho(f"\nModels in {catalog.models_dir}:\n", fg="cyan", bold=True)
    click.secho(f"  {'Identifier':<16}{'Name':<26}{'Backend':<12}{'Status'}", fg="cyan")
    click.secho(f"  {'─' * 15} {'─' * 25} {'─' * 11} {'─' * 14}", fg="cyan")
    for identifier in ModelIdentifier:
        installed = identifier in available
        status = click.style(
            "installed" if installed else "missing", fg="green" if installed else "yellow"
        )
        click.echo(
            f"  {identifier.value:<16}{identifier.display_name:<26}"
            f"{identifier.backend.value:<12}{status}"
        )
        spec = identifier.spec
        if not installed and spec.filename is not None:
            click.echo(f"  {'':<16}expects {spec.filename}")
            if spec.vision_encoder_filename is not None:
                click.echo(f"  {'':<16}optional {spec.vision_encoder_filename}")
    click.echo()


# ── Settings ──────────────────────────────────────────────────────────────────


@cli.group(name="settings")
def settings_group() -> None:
    """Show or change the persisted session settings."""


@settings_group.command(name="show")
def settings_show() -> None:
    """Print the persisted settings."""
    store = _open_settings()
    try:
        _print_session_config(store.get(), store.auto_scroll)
    finally:
        store.close()


@settings_group.command(name="set")
@click.option("--top-k", type=click.IntRange(min=1), default=None)
@click.option("--top-p", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--temperature", type=click.FloatRange(0.0, 2.0), default=None)
@click.option("--vision/--no-vision", "vision_enabled", default=None)
@click.option("--auto-scroll/--no-auto-scroll", "auto_scroll", default=None)
def settings_set(
    top_k: int | None,
    top_p: float | None,
    temperature: float | None,
    vision_enabled: bool | None,
    auto_scroll: bool | None,
) -> None:
    """Persist new settings. A running chat picks them up on /apply."""
    store = _open_settings()
    try:
        changes = {
            key: value
            for key, value in (
                ("top_k", top_k),
                ("top_p", top_p),
                ("temperature", temperature),
                ("vision_enabled", vision_enabled),
            )
            if value is not None
        }
        session_config = dataclasses.replace(store.get(), **changes)
        try:
            store.set(session_config)
        except ValueError as exc:
            raise click.BadParameter(str(exc)) from exc
        if auto_scroll is not None:
            store.auto_scroll = auto_scroll
        _print_session_config(store.get(), store.auto_scroll)
    finally:
        store.close()


@settings_group.command(name="reset")
def settings_reset() -> None:
    """Restore the default settings."""
    store = _open_settings()
    try:
        defaults = store.reset_to_defaults()
        click.secho("Settings restored to defaults.", fg="green")
        _print_session_config(defaults, store.auto_scroll)
    finally:
        store.close()


# ── Doctor ────────────────────────────────────────────────────────────────────


def _check(label: str, ok: bool, detail: str = "") -> bool:
    mark = click.style("ok", fg="green") if ok else click.style("missing", fg="yellow")
    suffix = f" ({detail})" if detail else ""
    click.echo(f"  {label:<28}{mark}{suffix}")
    return ok


@cli.command()
@_models_dir_option
def doctor(models_dir: Path | None) -> None:
    """Check model files and engine SDKs; exits 1 when no model can load."""
    directory = _resolve_models_dir(models_dir)
    catalog = ModelCatalog(directory)

    click.secho("\nEdgeChat environment:\n", fg="cyan", bold=True)
    click.echo(f"  {'Python':<28}{sys.version.split()[0]}")
    click.echo(f"  {'Platform':<28}{platform.platform()}")
    _check("Models directory", directory.is_dir(), str(directory))
    has_llama = _check(
        "llama-cpp-python", importlib.util.find_spec("llama_cpp") is not None, "GGUF models"
    )
    has_apple = _check(
        "apple-fm-sdk", importlib.util.find_spec("apple_fm_sdk") is not None, "Apple system model"
    )

    usable = []
    for identifier in catalog.available_models():
        backend_ok = has_llama if identifier.backend is Backend.LLAMA_CPP else has_apple
        if backend_ok:
            usable.append(identifier)
        _check(identifier.display_name, backend_ok, "installed")
    click.echo()

    if not usable:
        click.secho("No model can be loaded. See `edgechat models`.", fg="red", err=True)
        raise SystemExit(1)
    click.secho(f"{len(usable)} model(s) ready.", fg="green")


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli(obj={})
    except EdgeChatError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
