"""CLI interface for the chatgate proxy."""

from __future__ import annotations

import json
import locale
import sys
from collections.abc import Iterable, Iterator
from datetime import datetime

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import Settings, load_settings

console = Console()


@click.group()
@click.option(
    "-c", "--config",
    envvar="CHATGATE_CONFIG",
    default=None,
    help="Path to chatgate.yaml config file",
)
@click.pass_context
def cli(ctx, config):
    """chatgate: validating, rate-limiting proxy for hosted LLM chat."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config


def _load(ctx) -> Settings:
    try:
        return load_settings(ctx.obj.get("config_path"))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]{escape(str(e))}[/red]", soft_wrap=True)
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", default=None, type=int, help="Bind port (overrides config)")
@click.pass_context
def serve(ctx, host, port):
    """Start the chat proxy server."""
    settings = _load(ctx)
    if host:
        settings.host = host
    if port:
        settings.port = port

    chat_config = settings.chat_config()
    console.print("[bold]Starting chatgate...[/bold]")
    console.print(f"  Model: {chat_config.model_id}")
    console.print(f"  Provider: {settings.provider.base_url}")
    if not settings.provider.configured:
        console.print("  [yellow]Provider credentials missing; chat requests will fail.[/yellow]")
    if settings.assets_dir:
        console.print(f"  Assets: {settings.assets_dir}")
    console.print(f"  Listening on: {settings.host}:{settings.port}")

    import uvicorn

    from .proxy import create_app

    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")


@cli.command("config")
@click.pass_context
def show_config(ctx):
    """Show the effective chat configuration."""
    settings = _load(ctx)
    cc = settings.chat_config()

    table = Table(title="Effective configuration")
    table.add_column("Option")
    table.add_column("Value")
    table.add_row("Model", cc.model_id)
    table.add_row("Allowed models", "\n".join(cc.model_allowlist))
    table.add_row("Max message length", str(cc.max_message_length))
    table.add_row("Max messages", str(cc.max_messages))
    table.add_row("Max tokens", str(cc.max_tokens))
    table.add_row("Max body bytes", str(cc.max_body_bytes))
    table.add_row(
        "Rate limit",
        f"{cc.rate_limit_requests} requests / {cc.rate_limit_window_ms} ms",
    )
    table.add_row("Provider", settings.provider.base_url)
    table.add_row(
        "Credentials",
        "[green]set[/green]" if settings.provider.configured else "[red]missing[/red]",
    )
    console.print(table)
    console.print(f"\n[bold]System prompt:[/bold] {cc.system_prompt}")


# --- Interactive client ---


def iter_response_fragments(lines: Iterable[str]) -> Iterator[str]:
    """Yield the ``response`` text fragments from a streamed chat body.

    Accepts SSE ``data:`` lines and bare JSON lines; blank lines, the
    ``[DONE]`` marker and unparseable lines are skipped.
    """
    for line in lines:
        payload = line.strip()
        if payload.startswith("data:"):
            payload = payload[5:].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            data = json.loads(payload)
        except ValueError:
            continue
        fragment = data.get("response") if isinstance(data, dict) else None
        if isinstance(fragment, str) and fragment:
            yield fragment


def client_context() -> dict:
    """Context describing this terminal, in the gateway's wire format."""
    now = datetime.now().astimezone()
    lang = locale.getlocale()[0]
    ctx = {
        "currentTimeIso": now.isoformat(),
        "timeZone": now.tzname(),
        "userAgent": f"chatgate-cli/{__version__}",
    }
    if lang:
        ctx["locale"] = lang.replace("_", "-")
    return ctx


@cli.command()
@click.option("--url", default=None, help="Gateway base URL (default: local server)")
@click.option("-m", "--model", default=None, help="Model from the allowlist")
@click.pass_context
def chat(ctx, url, model):
    """Interactive chat through a running chatgate server."""
    import httpx

    if url is None:
        settings = _load(ctx)
        host = "127.0.0.1" if settings.host in ("0.0.0.0", "::") else settings.host
        url = f"http://{host}:{settings.port}"
    endpoint = f"{url.rstrip('/')}/api/chat"

    console.print(f"\n[bold]Chatting via[/bold] {endpoint}")
    console.print("[dim]Type your message and press Enter. Ctrl+C to quit.[/dim]\n")
    messages: list[dict] = []
    while True:
        try:
            user_input = console.input("[bold green]You:[/bold green] ")
        except (KeyboardInterrupt, EOFError):
            console.print("\n[dim]Goodbye.[/dim]")
            break
        if not user_input.strip():
            continue
        messages.append({"role": "user", "content": user_input})
        body: dict = {"messages": messages, "clientContext": client_context()}
        if model:
            body["model"] = model

        text = ""
        try:
            with httpx.Client(timeout=120.0) as client:
                with client.stream("POST", endpoint, json=body) as resp:
                    if resp.is_error:
                        resp.read()
                        try:
                            error = resp.json().get("error")
                        except ValueError:
                            error = None
                        raise RuntimeError(error or f"Server error: {resp.status_code}")
                    console.print("[bold cyan]AI:[/bold cyan] ", end="")
                    for fragment in iter_response_fragments(resp.iter_lines()):
                        text += fragment
                        console.print(fragment, end="", markup=False, highlight=False)
            console.print("\n")
            if not text:
                raise RuntimeError("No response received from server")
            messages.append({"role": "assistant", "content": text})
        except KeyboardInterrupt:
            console.print("\n[dim]Interrupted.[/dim]\n")
            messages.pop()
        except Exception as e:
            console.print(f"\n[red]Error: {e}[/red]\n")
            messages.pop()


def main():
    cli()
