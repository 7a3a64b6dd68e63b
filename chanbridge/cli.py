from __future__ import annotations
import itertools
from typing import Optional
import typer
from rich import print
from rich.table import Table

from chanbridge.channels.discord_threads import decide_thread_route
from chanbridge.config import load_settings
from chanbridge.observability.logging import configure_logging

app = typer.Typer(help="chanbridge - inspect channel adapter setup and routing. Does not start adapters.")

@app.callback()
def main():
    s = load_settings()
    configure_logging(s.log_level, s.json_logs, instance_id=s.instance_id)

def _setup_specs():
    from chanbridge.channels.discord import DiscordChannel
    from chanbridge.channels.whatsapp import WhatsAppChannel
    return {c.id: c.get_setup_spec() for c in (WhatsAppChannel, DiscordChannel)}

@app.command()
def setup(channel: Optional[str] = typer.Argument(None, help="whatsapp|discord; all when omitted")):
    """Show the settings each channel reads."""
    specs = _setup_specs()
    if channel and channel not in specs:
        print(f"[red]unknown channel[/red] {channel}")
        raise typer.Exit(code=1)
    for cid, spec in specs.items():
        if channel and cid != channel:
            continue
        t = Table(title=spec.title, caption=spec.summary)
        t.add_column("key"); t.add_column("label"); t.add_column("required"); t.add_column("example")
        for f in spec.fields:
            example = "<secret>" if f.secret else (f.example or "")
            t.add_row(f.key, f.label, "yes" if f.required else "no", example)
        print(t)

@app.command()
def config():
    """Print the resolved settings (secrets masked)."""
    settings = load_settings()
    t = Table(title="Settings")
    t.add_column("field"); t.add_column("value")
    for name, value in settings.model_dump().items():
        t.add_row(name, str(value))
    print(t)

@app.command()
def route(
    thread_id: Optional[bool] = typer.Option(None, "--thread-id/--no-thread-id"),
    mentioned: Optional[bool] = typer.Option(None, "--mentioned/--not-mentioned"),
    reply_context: Optional[bool] = typer.Option(None, "--reply-context/--no-reply-context"),
):
    """Evaluate the Discord thread-routing decision; prints the whole table when no flag is given."""
    if thread_id is None and mentioned is None and reply_context is None:
        t = Table(title="Thread routing")
        t.add_column("thread_id"); t.add_column("mentioned"); t.add_column("reply_context"); t.add_column("decision")
        for a, b, c in itertools.product((False, True), repeat=3):
            t.add_row(str(a), str(b), str(c), decide_thread_route(a, b, c).value)
        print(t)
        return
    decision = decide_thread_route(bool(thread_id), bool(mentioned), bool(reply_context))
    print(decision.value)

if __name__ == "__main__":
    app()
