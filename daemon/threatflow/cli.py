import json
import os
from pathlib import Path

import click
import requests
import structlog

from threatflow import providers
from threatflow.config import load_settings
from threatflow.errors import InvalidInput
from threatflow.events import DONE_SENTINEL

logger = structlog.get_logger(__name__)

DEFAULT_URL = "http://127.0.0.1:16005"


@click.group()
def main():
    """ThreatFlow Daemon CLI"""
    pass

@main.command()
@click.option('--host', default='127.0.0.1', help='Host to bind the server to')
@click.option('--port', default=16005, type=int, help='Port to listen on')
def start(host: str, port: int):
    """Start the ThreatFlow daemon server"""
    try:
        load_settings(os.environ)
    except InvalidInput as e:
        raise click.ClickException(str(e))
    from threatflow.server import serve
    serve(host, port)

@main.command(name="providers")
@click.option('--json', 'as_json', is_flag=True, help='Print the descriptors as JSON')
def list_providers(as_json: bool):
    """List providers configured in the current environment."""
    env = load_settings(os.environ, strict=False).env
    available = providers.list_available(env)
    default = providers.resolve_default(env)
    if as_json:
        click.echo(json.dumps({
            "providers": [d.model_dump(by_alias=True) for d in available],
            "defaultProvider": default,
        }, indent=2))
        return
    if not available:
        click.echo("No providers configured. Set ANTHROPIC_API_KEY, OPENAI_API_KEY or OLLAMA_BASE_URL.")
        return
    for d in available:
        marker = "*" if d.id == default else " "
        click.echo(f"{marker} {d.id:<10} {d.display_name:<10} default model: {d.default_model}")

@main.command()
@click.argument("article", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--provider', default=None, help='Provider id or alias (default: daemon default)')
@click.option('--model', default=None, help='Model override for this analysis')
@click.option('--url', default=DEFAULT_URL, show_default=True, help='Daemon base URL')
def analyze(article: Path, provider: str | None, model: str | None, url: str):
    """Stream an attack-flow analysis of ARTICLE from a running daemon."""
    body = {"text": article.read_text(encoding="utf-8"), "provider": provider, "model": model}
    try:
        response = requests.post(f"{url.rstrip('/')}/api/ai-stream", json=body, stream=True, timeout=(5, None))
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Could not reach the daemon at {url}: {e}")

    with response:
        if not response.ok:
            try:
                msg = response.json()["error"]["msg"]
            except (ValueError, KeyError, TypeError):
                msg = response.text
            raise click.ClickException(f"{response.status_code}: {msg}")

        failed = False
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "):
                continue
            data = line[len("data: "):]
            if data == DONE_SENTINEL:
                break
            event = json.loads(data)
            if event.get("type") == "content_block_delta":
                click.echo(event["delta"]["text"], nl=False)
            elif event.get("type") == "progress":
                click.echo(f"[{event['stage']}] {event['message']}", err=True)
            elif event.get("type") == "error":
                failed = True
                click.echo(f"error: {event['error']}", err=True)
        click.echo()
    if failed:
        raise SystemExit(1)

@main.command()
@click.option('--url', default=DEFAULT_URL, show_default=True, help='Daemon base URL')
def reload(url: str):
    """Tell a running daemon to re-read its environment."""
    try:
        response = requests.post(f"{url.rstrip('/')}/admin/reload-config", timeout=5)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        click.echo(f"Warning: could not signal the daemon to reload: {e}", err=True)
        click.echo("Restart the daemon to pick up environment changes.", err=True)
        return
    logger.info("Daemon reloaded its configuration", url=url)
    click.echo(response.json().get("message", "Configuration reloaded"))


if __name__ == '__main__':
    main()
