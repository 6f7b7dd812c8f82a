from __future__ import annotations

import argparse

from playhead.midi_out import MidoSink, open_mido_output


def main():
    ap = argparse.ArgumentParser(description="Send Sustain Off / All Sound Off / All Notes Off on every channel")
    ap.add_argument("--port", required=True, help="Substring to match MIDI port")
    ap.add_argument("--restore-gain", action="store_true", help="Also reset master volume to full")
    args = ap.parse_args()
    sink = MidoSink(open_mido_output(args.port))
    sink.panic()
    if args.restore_gain:
        sink.master_gain(1.0)
    print("panic sent (CC64/120/123)")


if __name__ == "__main__":
    main()
