"""
DocVoice CLI

Command-line interface for the DocVoice server and terminal voice sessions.
"""

import asyncio
import sys

import click
import structlog

from docvoice import __version__
from docvoice.config import settings

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# CLI Group
# ══════════════════════════════════════════════════════════════


@click.group()
@click.version_option(version=__version__, prog_name="docvoice")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """DocVoice - talk to your documents."""
    if debug:
        import logging
        logging.basicConfig(level=logging.DEBUG)
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        )


# ══════════════════════════════════════════════════════════════
# Server Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload/--no-reload", default=False, help="Enable auto-reload")
@click.option("--workers", default=1, help="Number of worker processes")
def serve(host: str, port: int, reload: bool, workers: int) -> None:
    """Start the DocVoice API server.

    Serves credential minting for WebRTC clients and the websocket relay:
    - POST /api/v1/realtime/session
    - ws://<host>:<port>/ws/realtime
    """
    import uvicorn

    click.echo(f"Starting DocVoice API on {host}:{port}")

    uvicorn.run(
        "docvoice.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        workers=workers if not reload else 1,
        factory=True,
    )


# ══════════════════════════════════════════════════════════════
# Voice Commands
# ══════════════════════════════════════════════════════════════


VOICE_HELP = """Commands:
  <Enter>   start/stop recording (push-to-talk)
  v         toggle continuous voice mode
  q         quit
  <text>    ask a typed question
"""


async def run_voice_session(
    token: str,
    document_id: str | None,
    voice_mode: bool,
    load_context: bool,
    output_device: str | None,
) -> None:
    from docvoice.integrations.backend import BackendClient
    from docvoice.realtime.media import DevicePlaybackSink, NullPlaybackSink
    from docvoice.realtime.session import VoiceSession

    backend = BackendClient(token=token)
    output = (
        DevicePlaybackSink(output_device, settings.microphone_format)
        if output_device
        else NullPlaybackSink()
    )
    session = VoiceSession(backend, output=output, document_id=document_id)

    session.on_message.subscribe(
        lambda message: click.echo(f"[{message.message_type}] {message.text}")
    )
    session.on_error.subscribe(
        lambda error: click.echo(f"✗ {error.kind}: {error.message}", err=True)
    )
    session.on_status_change.subscribe(
        lambda connected: click.echo("● Connected" if connected else "○ Disconnected")
    )
    session.on_playback_blocked.subscribe(
        lambda blocked: click.echo(f"Audio playback blocked: {blocked.reason}", err=True)
    )

    if voice_mode:
        await session.toggle_voice_mode()

    if document_id and load_context:
        from docvoice.core.errors import DocumentContentError

        try:
            await session.load_document(backend, document_id)
            click.echo(f"Loaded context for document {document_id}")
        except DocumentContentError as e:
            click.echo(f"Continuing without document context: {e}", err=True)

    click.echo(VOICE_HELP)
    await session.connect()

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            command = line.strip()

            if command == "q":
                break
            elif command == "v":
                enabled = await session.toggle_voice_mode()
                click.echo(f"Voice mode {'on' if enabled else 'off'}")
            elif not command:
                if session.state.recording:
                    await session.stop_recording()
                    click.echo("■ Stopped recording")
                else:
                    await session.start_recording()
                    if session.state.recording:
                        click.echo("● Recording... press Enter to stop")
            else:
                session.send_text(command)
    finally:
        await session.aclose()
        await backend.close()
        if session.transcript:
            click.echo("\nTranscript:")
            click.echo(session.transcript)


@cli.command()
@click.option("--token", envvar="DOCVOICE_TOKEN", required=True, help="Bearer token for the backend")
@click.option("--document-id", "-d", default=None, help="Document to talk about")
@click.option("--voice-mode/--push-to-talk", default=False, help="Start in continuous voice mode")
@click.option("--load-context/--no-load-context", default=True, help="Seed the session with the document text")
@click.option("--output-device", default=None, help="Audio output device (default: discard audio)")
def voice(
    token: str,
    document_id: str | None,
    voice_mode: bool,
    load_context: bool,
    output_device: str | None,
) -> None:
    """Start an interactive voice session in the terminal."""
    click.echo(f"Backend: {settings.backend_base_url}")
    click.echo(f"Model: {settings.realtime_model}")

    try:
        asyncio.run(run_voice_session(token, document_id, voice_mode, load_context, output_device))
    except KeyboardInterrupt:
        click.echo("\nInterrupted")


# ══════════════════════════════════════════════════════════════
# Config Commands
# ══════════════════════════════════════════════════════════════


@cli.command()
def config() -> None:
    """Show current configuration."""
    click.echo("DocVoice Configuration\n")

    config_items = [
        ("Environment", settings.app_env),
        ("Debug", str(settings.debug)),
        ("Backend URL", settings.backend_base_url),
        ("OpenAI API Key", settings.openai_api_key),
        ("JWT Secret", settings.jwt_secret),
        ("Realtime Model", settings.realtime_model),
        ("Relay Model", settings.realtime_ws_model),
        ("Voice", settings.realtime_voice),
        ("ICE Servers", ", ".join(settings.ice_servers)),
        ("Microphone", f"{settings.microphone_device} ({settings.microphone_format})"),
        ("Reconnect Attempts", str(settings.reconnect_max_attempts)),
    ]

    for key, value in config_items:
        # Mask sensitive values
        if "key" in key.lower() or "secret" in key.lower():
            value = "***" if value else "Not set"
        click.echo(f"  {key:20} {value}")


# ══════════════════════════════════════════════════════════════
# Entry Point
# ══════════════════════════════════════════════════════════════


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
