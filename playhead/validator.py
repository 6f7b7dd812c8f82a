from __future__ import annotations

import argparse
import copy
import hashlib
import json
import math
import sys
from typing import Any, Dict, List, Tuple


class ValidationError(Exception):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) if self.errors else "invalid sequence")


def _err(errors: List[str], path: str, msg: str) -> None:
    errors.append(f"{path}: {msg}")


def _is_num(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _is_int(v: Any) -> bool:
    return _is_num(v) and math.isfinite(v) and float(v).is_integer()


def _in_range(v: Any, lo: float, hi: float) -> bool:
    return _is_num(v) and lo <= v <= hi


def _check_list(errors: List[str], parent: Dict[str, Any], key: str, path: str, required: bool = False) -> List[Any]:
    value = parent.get(key)
    if value is None:
        if required:
            _err(errors, path, "required array")
        return []
    if not isinstance(value, list):
        _err(errors, path, "must be array")
        return []
    return value


def _check_tick_time(errors: List[str], ev: Dict[str, Any], path: str) -> None:
    if not _is_int(ev.get("tick")) or ev.get("tick") < 0:
        _err(errors, f"{path}/tick", "integer ≥0 required")
    if not _is_num(ev.get("time")):
        _err(errors, f"{path}/time", "required number (seconds)")


def validate_sequence(doc: Any) -> List[str]:
    """Structural checks for the JSON form of a parsed sequence.

    Returns a list of human-readable errors with JSON-pointer-like paths.
    Tempo and time-signature values are not checked beyond their shape:
    out-of-range entries are dropped later by the timing map.
    """
    errors: List[str] = []
    if not isinstance(doc, dict):
        _err(errors, "", "document must be an object")
        return errors

    ppq = doc.get("ticksPerQuarter")
    if not _is_num(ppq):
        _err(errors, "/ticksPerQuarter", "required number (ticks per quarter note)")
    dt = doc.get("durationTicks")
    if not _is_num(dt):
        _err(errors, "/durationTicks", "required number")
    ds = doc.get("durationSeconds")
    if ds is not None and not _is_num(ds):
        _err(errors, "/durationSeconds", "must be a number if present")

    for ti, t in enumerate(_check_list(errors, doc, "tempos", "/tempos")):
        if not isinstance(t, dict):
            _err(errors, f"/tempos/{ti}", "must be object")
            continue
        for key in ("tick", "bpm"):
            if not _is_num(t.get(key)):
                _err(errors, f"/tempos/{ti}/{key}", "required number")

    for si, ts in enumerate(_check_list(errors, doc, "timeSignatures", "/timeSignatures")):
        if not isinstance(ts, dict):
            _err(errors, f"/timeSignatures/{si}", "must be object")
            continue
        for key in ("tick", "numerator", "denominator"):
            if not _is_num(ts.get(key)):
                _err(errors, f"/timeSignatures/{si}/{key}", "required number")

    for ti, tr in enumerate(_check_list(errors, doc, "tracks", "/tracks", required=True)):
        tpath = f"/tracks/{ti}"
        if not isinstance(tr, dict):
            _err(errors, tpath, "must be object")
            continue
        ch = tr.get("channel")
        if not _is_int(ch) or not (0 <= ch <= 15):
            _err(errors, f"{tpath}/channel", "required integer 0..15")
        if "isDrum" in tr and not isinstance(tr.get("isDrum"), bool):
            _err(errors, f"{tpath}/isDrum", "must be boolean if present")
        if tr.get("name") is not None and not isinstance(tr.get("name"), str):
            _err(errors, f"{tpath}/name", "must be string if present")

        for ni, n in enumerate(_check_list(errors, tr, "notes", f"{tpath}/notes")):
            npath = f"{tpath}/notes/{ni}"
            if not isinstance(n, dict):
                _err(errors, npath, "must be object")
                continue
            if not _is_int(n.get("pitch")) or not (0 <= n.get("pitch") <= 127):
                _err(errors, f"{npath}/pitch", "integer 0..127 required")
            if not _in_range(n.get("velocity"), 0.0, 1.0):
                _err(errors, f"{npath}/velocity", "number 0..1 required")
            for key in ("startTick", "durationTicks"):
                if not _is_int(n.get(key)) or n.get(key) < 0:
                    _err(errors, f"{npath}/{key}", "integer ≥0 required")
            if not _is_num(n.get("startTime")):
                _err(errors, f"{npath}/startTime", "required number (seconds)")
            if not _is_num(n.get("duration")) or n.get("duration") < 0:
                _err(errors, f"{npath}/duration", "number ≥0 required (seconds)")

        for bi, pb in enumerate(_check_list(errors, tr, "pitchBends", f"{tpath}/pitchBends")):
            bpath = f"{tpath}/pitchBends/{bi}"
            if not isinstance(pb, dict):
                _err(errors, bpath, "must be object")
                continue
            _check_tick_time(errors, pb, bpath)
            if not _in_range(pb.get("value"), -1.0, 1.0):
                _err(errors, f"{bpath}/value", "number -1..1 required")

        for ci, cc in enumerate(_check_list(errors, tr, "controlChanges", f"{tpath}/controlChanges")):
            cpath = f"{tpath}/controlChanges/{ci}"
            if not isinstance(cc, dict):
                _err(errors, cpath, "must be object")
                continue
            if not _is_int(cc.get("controller")) or not (0 <= cc.get("controller") <= 127):
                _err(errors, f"{cpath}/controller", "integer 0..127 required")
            _check_tick_time(errors, cc, cpath)
            if not _in_range(cc.get("value"), 0.0, 1.0):
                _err(errors, f"{cpath}/value", "number 0..1 required")

        for key in ("channelAftertouch", "noteAftertouch"):
            for ai, at in enumerate(_check_list(errors, tr, key, f"{tpath}/{key}")):
                apath = f"{tpath}/{key}/{ai}"
                if not isinstance(at, dict):
                    _err(errors, apath, "must be object")
                    continue
                ach = at.get("channel")
                if not _is_int(ach) or not (0 <= ach <= 15):
                    _err(errors, f"{apath}/channel", "required integer 0..15")
                if key == "noteAftertouch" and (not _is_int(at.get("pitch")) or not (0 <= at.get("pitch") <= 127)):
                    _err(errors, f"{apath}/pitch", "integer 0..127 required")
                _check_tick_time(errors, at, apath)
                if not _in_range(at.get("value"), 0.0, 1.0):
                    _err(errors, f"{apath}/value", "number 0..1 required")

    return errors


def canonicalize(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Return a deep-copied document with every event list in playback order."""
    doc = copy.deepcopy(doc)

    def event_key(ev: Dict[str, Any]) -> Tuple[float, float]:
        return (float(ev.get("time", 0) or 0), float(ev.get("tick", 0) or 0))

    if isinstance(doc.get("tempos"), list):
        doc["tempos"].sort(key=lambda t: float(t.get("tick", 0) or 0))
    if isinstance(doc.get("timeSignatures"), list):
        doc["timeSignatures"].sort(key=lambda t: float(t.get("tick", 0) or 0))

    tracks = doc.get("tracks")
    if isinstance(tracks, list):
        for tr in tracks:
            if isinstance(tr.get("notes"), list):
                tr["notes"].sort(key=lambda n: (float(n.get("startTime", 0) or 0), float(n.get("startTick", 0) or 0), n.get("pitch", 0)))
            if isinstance(tr.get("controlChanges"), list):
                tr["controlChanges"].sort(key=lambda c: event_key(c) + (c.get("controller", 0),))
            for key in ("pitchBends", "channelAftertouch", "noteAftertouch"):
                if isinstance(tr.get(key), list):
                    tr[key].sort(key=event_key)

    return doc


def sha256_canonical(doc: Dict[str, Any]) -> str:
    """Compute SHA-256 of canonical JSON string (sorted keys, compact)."""
    s = json.dumps(doc, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Validate and canonicalize a sequence JSON document")
    ap.add_argument("path", help="Path to sequence JSON file")
    ap.add_argument("--write", "-w", action="store_true", help="Rewrite file with canonical formatting")
    ap.add_argument("--print-hash", action="store_true", help="Print SHA-256 of canonical JSON")
    args = ap.parse_args(argv)

    try:
        with open(args.path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except Exception as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2

    errors = validate_sequence(doc)
    if errors:
        print("invalid sequence:")
        for e in errors:
            print(f" - {e}")
        return 1

    doc = canonicalize(doc)
    if args.print_hash:
        print(sha256_canonical(doc))

    if args.write:
        data = json.dumps(doc, sort_keys=True, indent=2, ensure_ascii=False)
        if not data.endswith("\n"):
            data += "\n"
        with open(args.path, "w", encoding="utf-8") as f:
            f.write(data)
        print(f"wrote canonical form to {args.path}")
    else:
        print("ok: valid and canonicalizable")

    return 0


if __name__ == "__main__":
    sys.exit(main())
