#!/usr/bin/env python3
"""
Local call demo: talk to the voice model through the microphone and speakers,
or start the telephony server.
"""

import argparse
import asyncio
import logging
import os
import subprocess
import sys

from logging_config import setup_call_logging


def _print_entry(entry, change):
    if change not in ("completed", "interrupted", "tool_resolved"):
        return
    if entry.kind == "speech":
        print(f"[{entry.sequence_number:>3}] {entry.role:>9}: {entry.text}")
    else:
        print(f"[{entry.sequence_number:>3}]      tool: {entry.function_name} -> {entry.status}")


async def run_local_call(provider_name, device):
    from call_engine.config import SessionConfig
    from call_engine.logging.flight_recorder import FlightRecorder
    from call_engine.services.audio_output import SoundDeviceOutput
    from call_engine.services.capture import MicrophoneSource
    from call_engine.services.conversation_log import ConversationLogger
    from call_engine.services.providers.factory import create_voice_provider
    from call_engine.services.realtime_loop import RealtimeLoop

    config = SessionConfig.for_provider(provider_name)
    recorder = FlightRecorder()
    call = RealtimeLoop(
        recorder,
        create_voice_provider(provider_name, recorder=recorder),
        conversation_logger=ConversationLogger(),
        on_transcript=_print_entry,
    )
    await call.connect(
        config,
        MicrophoneSource(config.input_sample_rate, device=device),
        SoundDeviceOutput(config.output_sample_rate),
    )
    print(f"📞 Connected to {provider_name} ({config.model}). Ctrl+C to hang up.")
    try:
        while call.connected:
            await asyncio.sleep(0.5)
    finally:
        await call.disconnect()
    if call.error:
        print(f"⚠️ {call.error}")


def start_server(port):
    print("🚀 Starting call engine server...")
    cmd = [
        sys.executable, "-m", "uvicorn",
        "call_engine.main:app",
        "--host", "0.0.0.0",
        "--port", str(port),
        "--log-level", "info",
    ]
    try:
        subprocess.run(cmd, cwd=os.getcwd())
    except KeyboardInterrupt:
        print("\n🛑 Server stopped")


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--provider", default=os.getenv("CALL_PROVIDER", "openai"), choices=["openai", "gemini"])
    parser.add_argument("--device", default=None, help="input device index or name fragment")
    parser.add_argument("--list-devices", action="store_true", help="list input devices and exit")
    parser.add_argument("--serve", action="store_true", help="run the FastAPI server instead")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    setup_call_logging(verbose=args.verbose)

    if args.list_devices:
        from call_engine.services.capture import list_input_devices

        for device in list_input_devices():
            print(f"{device['index']:>3}  {device['name']}  ({device['channels']} ch)")
        return 0
    if args.serve:
        start_server(args.port)
        return 0

    try:
        asyncio.run(run_local_call(args.provider, args.device))
    except KeyboardInterrupt:
        print("\n🛑 Call ended")
    except Exception as exc:
        logging.getLogger(__name__).error("demo.failed %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
