# main.py - Voice Chat Engine Main Entry Point
"""
Console front end for the voice chat engine.

It creates the ConversationManager, loads the session's transcript history
and maps keyboard commands onto the conversation lifecycle:

    Enter        start / stop the conversation (like the talk button)
    m + Enter    switch between live and pipeline mode (forces a stop)
    q + Enter    quit, releasing every audio and network resource

State changes, the in-flight transcript and finalized turns are printed as
they happen.
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from config import load_settings
from conversation_manager import ConversationManager
from errors import VoiceChatError
from models import ConversationState, PendingTurn, ServiceMode, Turn
from supabase_client import SupabaseClient


def print_state(state: ConversationState, error: str = None):
    if state is ConversationState.ERROR and error:
        print(f"● {state.value}: {error}")
    else:
        print(f"● {state.value}")


def print_transcript(pending: PendingTurn):
    if pending.user_text:
        print(f"  you> {pending.user_text}", end="\r")
    if pending.model_text:
        print(f"  ai > {pending.model_text}", end="\r")


def print_turn(turn: Turn):
    if turn.user_text:
        print(f"you: {turn.user_text}")
    if turn.model_text:
        print(f"ai : {turn.model_text}")


async def check_connection(settings) -> int:
    if not settings.supabase_configured:
        print("SUPABASE_URL and SUPABASE_KEY are not set.")
        return 1
    client = SupabaseClient(settings.supabase_url, settings.supabase_key, timeout=settings.request_timeout)
    try:
        result = await client.test_connection()
        print(result.get("message", "Connection successful!"))
        return 0
    except VoiceChatError as e:
        print(f"Connection failed: {e}")
        return 1
    finally:
        await client.aclose()


async def run(args) -> int:
    settings = load_settings(
        service_mode=ServiceMode(args.mode) if args.mode else None,
        session_id=args.session_id,
    )
    if args.check:
        return await check_connection(settings)

    manager = ConversationManager(
        settings,
        on_state_change=print_state,
        on_transcript=print_transcript,
        on_turn=print_turn,
    )
    for turn in await manager.load_history():
        print_turn(turn)
    print(f"Mode: {manager.mode.value}. Enter = talk/stop, m = switch mode, q = quit")

    loop = asyncio.get_running_loop()
    commands: asyncio.Queue = asyncio.Queue()
    loop.add_reader(sys.stdin, lambda: commands.put_nowait(sys.stdin.readline()))
    try:
        while True:
            line = await commands.get()
            command = line.strip().lower()
            if not line or command == "q":
                break
            if command == "m":
                other = ServiceMode.PIPELINE if manager.mode is ServiceMode.LIVE else ServiceMode.LIVE
                await manager.switch_mode(other)
                print(f"Mode: {manager.mode.value}")
            else:
                await manager.toggle()
    finally:
        loop.remove_reader(sys.stdin)
        await manager.shutdown()
    return 0


def main():
    # Load environment variables from .env file
    load_dotenv()

    parser = argparse.ArgumentParser(description="Real-time duplex voice conversation")
    parser.add_argument("--mode", choices=[m.value for m in ServiceMode], help="conversation mode")
    parser.add_argument("--session-id", help="transcript history session to resume")
    parser.add_argument("--check", action="store_true", help="test the Supabase connection and exit")
    parser.add_argument("--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(name)s] %(message)s",
    )
    try:
        sys.exit(asyncio.run(run(args)))
    except VoiceChatError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
