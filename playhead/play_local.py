from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import threading
import time
from typing import Optional

from playhead.automation import compaction_from_intervals
from playhead.midi_out import MidoSink, open_mido_input, open_mido_output
from playhead.player import MODE_EXTERNAL, MODE_MIDI, ExternalAudioSource, PlaybackScheduler
from playhead.sequence import load_sequence


def run(
    path: str,
    port_filter: Optional[str],
    from_seconds: float = 0.0,
    pitch_bend_interval_ms: Optional[float] = None,
    cc_interval_ms: Optional[float] = None,
    audio_path: Optional[str] = None,
    offset_ms: float = 0.0,
    transport_in: Optional[str] = None,
    print_metrics: bool = False,
) -> None:
    seq = load_sequence(path)
    out = open_mido_output(port_filter)
    sink = MidoSink(out)
    source = ExternalAudioSource.from_path(audio_path, offset_ms=offset_ms) if audio_path else None
    scheduler = PlaybackScheduler(
        seq,
        sink,
        audio_mode=MODE_EXTERNAL if source else MODE_MIDI,
        external_source=source,
        compaction=compaction_from_intervals(pitch_bend_interval_ms, cc_interval_ms),
    )
    timing = scheduler.timing
    print(
        f"[player] {path}: {len(seq.tracks)} tracks, {scheduler.duration_seconds:.2f}s, "
        f"{len(timing.segments)} tempo segments, {len(timing.measures)} bars",
        flush=True,
    )

    loop = asyncio.new_event_loop()
    done = threading.Event()

    def play(seconds: float) -> None:
        loop.run_until_complete(scheduler.play_from(seconds))

    def on_input(msg):
        # Device transport: Start plays from the top, Continue resumes, Stop pauses.
        if msg.type == "start":
            loop.call_soon_threadsafe(lambda: loop.create_task(scheduler.play_from(0.0)))
        elif msg.type == "continue":
            pos = scheduler.get_position_seconds()
            loop.call_soon_threadsafe(lambda: loop.create_task(scheduler.play_from(pos)))
        elif msg.type == "stop":
            loop.call_soon_threadsafe(scheduler.pause)

    inp = open_mido_input(transport_in, callback=on_input) if transport_in else None

    def shutdown(*_):
        scheduler.dispose()
        sink.panic()
        if inp is not None:
            inp.close()
        done.set()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    if transport_in:
        # Wait for the device; Continue resumes from here.
        scheduler.set_position_seconds(from_seconds)
        print(f"[player] waiting for Start/Continue on {transport_in}", flush=True)
    else:
        play(from_seconds)

    def metrics_printer():
        while not done.is_set():
            m = scheduler.clock.get_metrics()
            pos = scheduler.get_position_seconds()
            bb = timing.get_bar_beat_at_ticks(timing.seconds_to_ticks(pos))
            print(
                f"[metrics] pos={pos:.2f}s bar={bb.bar}.{bb.beat} lateness_p95={m['latenessMsP95']}ms "
                f"p99={m['latenessMsP99']}ms pending={m['pending']}",
                flush=True,
            )
            time.sleep(1.0)

    if print_metrics:
        threading.Thread(target=metrics_printer, daemon=True).start()

    if transport_in:
        # Device transport drives playback until interrupted.
        loop.run_forever()
        return

    # Play to the end, then stop cleanly.
    while scheduler.get_position_seconds() < scheduler.duration_seconds and scheduler.is_playing():
        time.sleep(0.05)
    scheduler.dispose()
    sink.panic()
    done.set()


def main():
    ap = argparse.ArgumentParser(description="Play a MIDI file or sequence JSON to a MIDI output port")
    ap.add_argument("sequence", help="Path to a .mid file or sequence JSON")
    ap.add_argument("--port", help="Substring to match MIDI port")
    ap.add_argument("--from", dest="from_seconds", type=float, default=0.0, help="Start position in seconds")
    ap.add_argument("--pitch-bend-interval-ms", type=float, default=None, help="Minimum spacing of scheduled pitch-bend updates")
    ap.add_argument("--cc-interval-ms", type=float, default=None, help="Minimum spacing of scheduled controller updates")
    ap.add_argument("--audio", help="Play an external audio file instead of the MIDI notes")
    ap.add_argument("--offset-ms", type=float, default=0.0, help="External audio offset; positive skips forward")
    ap.add_argument("--transport-in", help="Substring of a MIDI input port whose Start/Continue/Stop control playback")
    ap.add_argument("--metrics", action="store_true", help="Print position and clock lateness once per second")
    args = ap.parse_args()

    run(
        args.sequence,
        args.port,
        from_seconds=args.from_seconds,
        pitch_bend_interval_ms=args.pitch_bend_interval_ms,
        cc_interval_ms=args.cc_interval_ms,
        audio_path=args.audio,
        offset_ms=args.offset_ms,
        transport_in=args.transport_in,
        print_metrics=bool(args.metrics),
    )


if __name__ == "__main__":
    main()
