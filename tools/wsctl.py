from __future__ import annotations

import argparse
import asyncio
import json

import websockets


async def run(url: str, cmd: str, args: argparse.Namespace):
    async with websockets.connect(url) as ws:
        # Initial hello/state
        hello = json.loads(await ws.recv())
        state = json.loads(await ws.recv())
        if cmd == "state":
            print(json.dumps({"hello": hello.get("payload"), "state": state.get("payload")}, indent=2))
            return
        if cmd == "play":
            msg = {"type": "play", "id": 1}
            if args.from_seconds is not None:
                msg["fromSeconds"] = float(args.from_seconds)
        elif cmd == "pause":
            msg = {"type": "pause", "id": 1}
        elif cmd == "seek":
            msg = {"type": "seek", "id": 1, "seconds": float(args.seconds)}
        elif cmd == "mode":
            msg = {"type": "setAudioMode", "id": 1, "mode": args.mode}
            if args.path:
                msg["path"] = args.path
                msg["offsetMs"] = float(args.offset_ms)
        else:
            msg = {"type": "getTiming", "id": 1}
            if args.page_bars is not None:
                msg["pageBars"] = int(args.page_bars)
        await ws.send(json.dumps(msg))
        # Print the reply and the state that follows it
        for _ in range(3):
            try:
                reply = await asyncio.wait_for(ws.recv(), timeout=2.0)
            except asyncio.TimeoutError:
                break
            print(reply)
            if json.loads(reply).get("type") == "state":
                break


def main():
    ap = argparse.ArgumentParser(description="Simple WS controller for the player server")
    ap.add_argument("--url", default="ws://127.0.0.1:8765")
    sub = ap.add_subparsers(dest="cmd", required=True)
    p_play = sub.add_parser("play"); p_play.add_argument("--from", dest="from_seconds", type=float)
    sub.add_parser("pause")
    p_seek = sub.add_parser("seek"); p_seek.add_argument("seconds", type=float)
    p_mode = sub.add_parser("mode"); p_mode.add_argument("mode", choices=["midi", "external"]); p_mode.add_argument("--path"); p_mode.add_argument("--offset-ms", type=float, default=0.0)
    p_timing = sub.add_parser("timing"); p_timing.add_argument("--page-bars", type=int)
    sub.add_parser("state")
    args = ap.parse_args()
    asyncio.run(run(args.url, args.cmd, args))


if __name__ == "__main__":
    main()
