"""Player server: websocket transport control and position state for one sequence."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import time
from typing import Any, Dict, Optional, Set

import websockets

from playhead.active_notes import ActiveNoteTracker
from playhead.automation import compaction_from_intervals
from playhead.midi_out import MidoSink, open_mido_output
from playhead.player import (
    MODE_EXTERNAL,
    MODE_MIDI,
    AudioLoadError,
    ExternalAudioSource,
    PlaybackScheduler,
    TransportStateError,
)
from playhead.sequence import load_sequence

DEFAULT_PAGE_BARS = 4


class PlayerHost:
    def __init__(self, scheduler: PlaybackScheduler, page_bars: int = DEFAULT_PAGE_BARS):
        self.scheduler = scheduler
        self.timing = scheduler.timing
        self.page_bars = page_bars
        seq = scheduler.sequence
        self.active = ActiveNoteTracker(seq, range(len(seq.tracks)), include_drums=False)

    # --- State ---
    def get_state(self) -> Dict[str, Any]:
        pos = self.scheduler.get_position_seconds()
        ticks = self.timing.seconds_to_ticks(pos)
        bb = self.timing.get_bar_beat_at_ticks(ticks)
        self.active.update(pos)
        return {
            "transport": "playing" if self.scheduler.is_playing() else "stopped",
            "positionSeconds": round(pos, 6),
            "positionTicks": ticks,
            "durationSeconds": self.scheduler.duration_seconds,
            "barBeat": {
                "bar": bb.bar,
                "beat": bb.beat,
                "subBeat1000": bb.sub_beat_1000,
                "timeSignature": list(bb.time_signature),
            },
            "activeNotes": self.active.active_pitches(),
            "audioMode": self.scheduler.audio_mode,
        }

    def get_timing(self, ticks: Any = None, page_bars: Any = None) -> Dict[str, Any]:
        if ticks is None:
            ticks = self.timing.seconds_to_ticks(self.scheduler.get_position_seconds())
        if page_bars is None:
            page_bars = self.page_bars
        bb = self.timing.get_bar_beat_at_ticks(ticks)
        page = self.timing.get_page_range_for_bar(bb.bar, page_bars)
        span = self.timing.get_page_tick_range(page.page_index, page_bars)
        steps = self.timing.get_seek_step_ticks_at_ticks(ticks, page_bars)
        return {
            "seconds": self.timing.ticks_to_seconds(ticks),
            "bar": bb.bar,
            "beat": bb.beat,
            "subBeat1000": bb.sub_beat_1000,
            "timeSignature": list(bb.time_signature),
            "page": {"index": page.page_index, "startBar": page.start_bar, "endBar": page.end_bar},
            "pageTicks": {"start": span.start_tick, "end": span.end_tick},
            "seekSteps": {"beat": steps.beat, "bar": steps.bar, "page": steps.page},
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {"clock": self.scheduler.clock.get_metrics(), "generation": self.scheduler.generation}

    # --- Control ---
    async def do_play(self, from_seconds: Optional[float] = None) -> None:
        start = self.scheduler.get_position_seconds() if from_seconds is None else float(from_seconds)
        await self.scheduler.play_from(start)
        self.active.seek(self.scheduler.get_position_seconds())

    def do_pause(self) -> None:
        self.scheduler.pause()

    def do_seek(self, seconds: float) -> None:
        if self.scheduler.is_playing():
            self.scheduler.pause()
        self.scheduler.set_position_seconds(float(seconds))
        self.active.seek(self.scheduler.get_position_seconds())

    def do_set_audio_mode(self, mode: str, path: Optional[str] = None, offset_ms: float = 0.0) -> None:
        source = None
        if path:
            source = ExternalAudioSource.from_path(path, offset_ms=offset_ms)
        elif mode == MODE_EXTERNAL:
            source = self.scheduler.external_source
        self.scheduler.set_audio_mode(mode, source)


def _msg(kind: str, req_id: Any = None, payload: Any = None) -> str:
    obj: Dict[str, Any] = {"type": kind, "ts": time.time()}
    if req_id is not None:
        obj["id"] = req_id
    if payload is not None:
        obj["payload"] = payload
    return json.dumps(obj)


async def serve_ws(host: PlayerHost, bind: str, port: int):
    clients: Set[Any] = set()

    async def broadcast(text: str):
        if not clients:
            return
        await asyncio.gather(*[c.send(text) for c in list(clients)], return_exceptions=True)

    async def metrics_task():
        while True:
            await asyncio.sleep(0.5)
            try:
                payload = host.get_metrics()
                payload["ws"] = {"clients": len(clients)}
                await broadcast(_msg("metrics", payload=payload))
            except Exception as e:
                print(f"[ws] metrics error: {e}", flush=True)
            # State separately so a metrics error doesn't block state updates
            await broadcast(_msg("state", payload=host.get_state()))

    async def dispatch(ws, obj: Dict[str, Any]) -> None:
        t = obj.get("type")
        req_id = obj.get("id")
        if t == "ping":
            await ws.send(_msg("pong", req_id))
        elif t == "play":
            await host.do_play(obj.get("fromSeconds"))
            await ws.send(_msg("ack", req_id, {"ok": True}))
        elif t == "pause":
            host.do_pause()
            await ws.send(_msg("ack", req_id, {"ok": True}))
        elif t == "seek":
            host.do_seek(obj.get("seconds", 0.0))
            await ws.send(_msg("ack", req_id, {"ok": True}))
        elif t == "setAudioMode":
            host.do_set_audio_mode(str(obj.get("mode")), obj.get("path"), float(obj.get("offsetMs", 0.0)))
            await ws.send(_msg("ack", req_id, {"ok": True}))
        elif t == "getTiming":
            await ws.send(_msg("timing", req_id, host.get_timing(obj.get("ticks"), obj.get("pageBars"))))
        elif t == "getState":
            # Explicit poll for current state
            await ws.send(_msg("state", req_id, host.get_state()))
        else:
            await ws.send(_msg("error", req_id, {"ok": False, "error": "unknown_type", "details": str(t)}))

    async def handler(ws, *maybe_path):
        ra = getattr(ws, "remote_address", None)
        print(f"[ws] client connected: {ra}", flush=True)
        clients.add(ws)
        seq = host.scheduler.sequence
        await ws.send(_msg("hello", payload={"protocol": 1, "durationSeconds": host.scheduler.duration_seconds, "tracks": len(seq.tracks)}))
        await ws.send(_msg("state", payload=host.get_state()))
        try:
            async for message in ws:
                try:
                    obj = json.loads(message)
                except ValueError:
                    continue
                if not isinstance(obj, dict):
                    continue
                t = obj.get("type")
                print(f"[ws] recv type={t}", flush=True)
                try:
                    await dispatch(ws, obj)
                except TransportStateError as e:
                    await ws.send(_msg("error", obj.get("id"), {"ok": False, "error": "transport_state", "details": str(e)}))
                except AudioLoadError as e:
                    await ws.send(_msg("error", obj.get("id"), {"ok": False, "error": "audio_load", "details": str(e)}))
                except (ValueError, TypeError, OSError) as e:
                    await ws.send(_msg("error", obj.get("id"), {"ok": False, "error": "bad_request", "details": str(e)}))
                # Updated state after commands (getState and ping already responded)
                if t not in ("getState", "ping"):
                    await ws.send(_msg("state", payload=host.get_state()))
        finally:
            clients.discard(ws)
            print(f"[ws] client disconnected: {ra}", flush=True)

    async with websockets.serve(handler, bind, port):
        print(f"[ws] player listening on ws://{bind}:{port}", flush=True)
        task = asyncio.create_task(metrics_task())
        try:
            await asyncio.Future()
        finally:
            task.cancel()


def main():
    ap = argparse.ArgumentParser(description="Player WS server (state/metrics + transport)")
    ap.add_argument("sequence", help="Path to a .mid file or sequence JSON")
    ap.add_argument("--port", help="Substring to match MIDI port")
    ap.add_argument("--ws-host", default="127.0.0.1")
    ap.add_argument("--ws-port", type=int, default=8765)
    ap.add_argument("--page-bars", type=int, default=DEFAULT_PAGE_BARS)
    ap.add_argument("--audio", help="External audio file (starts in external mode)")
    ap.add_argument("--offset-ms", type=float, default=0.0, help="External audio offset; positive skips forward")
    ap.add_argument("--pitch-bend-interval-ms", type=float, default=None)
    ap.add_argument("--cc-interval-ms", type=float, default=None)
    args = ap.parse_args()

    seq = load_sequence(args.sequence)
    sink = MidoSink(open_mido_output(args.port))
    source = ExternalAudioSource.from_path(args.audio, offset_ms=args.offset_ms) if args.audio else None
    scheduler = PlaybackScheduler(
        seq,
        sink,
        audio_mode=MODE_EXTERNAL if source else MODE_MIDI,
        external_source=source,
        compaction=compaction_from_intervals(args.pitch_bend_interval_ms, args.cc_interval_ms),
    )
    host = PlayerHost(scheduler, page_bars=args.page_bars)

    def shutdown(*_):
        scheduler.dispose()
        sink.panic()
        print("[ws] shutting down", flush=True)
        os._exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        asyncio.run(serve_ws(host, args.ws_host, args.ws_port))
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
