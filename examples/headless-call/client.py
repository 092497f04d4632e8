"""Headless call participant: joins a room and calls or answers with a test tone.

Run two of these against a relay (see examples/relay-server):
    python client.py r1 alice --call
    python client.py r1 bob
"""

import argparse
import asyncio
import logging

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("headless-call")

from roomcall.call import CallController
from roomcall.channels import MailboxChannel, WebSocketChannel
from roomcall.config import CallConfig
from roomcall.ice import TwilioIceServers
from roomcall.media import SyntheticMediaDevices
from roomcall.ring import RemoteRingChannel
from roomcall.selector import SignalingSelector


async def main(room_id: str, user_id: str, call: bool, video: bool, seconds: float):
    config = CallConfig.from_env()
    # Falls back to the public servers when Twilio is not configured.
    ice = TwilioIceServers()

    selector = SignalingSelector(
        WebSocketChannel(config["relay_url"], join_timeout=config["join_timeout"]),
        MailboxChannel(config["mailbox_url"],
                       poll_wait=config["mailbox_poll_wait"],
                       poll_interval=config["mailbox_poll_interval"]),
        config,
    )
    ring = RemoteRingChannel(config["mailbox_url"], poll_interval=config["ring_poll_interval"])
    controller = CallController(
        room_id, user_id, selector, SyntheticMediaDevices(tone_hz=440.0),
        ring=ring, config=config, ice_servers=ice,
    )

    done = asyncio.Event()
    incoming = asyncio.Queue()
    controller.on_incoming_call = incoming.put_nowait

    def on_status(state):
        if state in ("ended", "failed"):
            done.set()

    controller.on_status_change = on_status
    controller.on_remote_stream = lambda stream: log.info(
        "Remote stream: %s", ", ".join(t.kind for t in stream.tracks))
    controller.on_error = lambda error: log.error("Call error: %s", error.detail)

    await controller.open()
    try:
        if call:
            await controller.start(video=video)
        else:
            descriptor = await incoming.get()
            log.info("Answering %s", descriptor)
            await controller.answer()
        try:
            await asyncio.wait_for(done.wait(), seconds)
        except asyncio.TimeoutError:
            log.info("Hanging up after %.0fs", seconds)
    finally:
        await controller.close()
        await ring.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("room")
    parser.add_argument("user")
    parser.add_argument("--call", action="store_true", help="place the call instead of waiting")
    parser.add_argument("--video", action="store_true")
    parser.add_argument("--seconds", type=float, default=30.0)
    args = parser.parse_args()
    asyncio.run(main(args.room, args.user, args.call, args.video, args.seconds))
