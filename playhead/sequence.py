from __future__ import annotations

import json
import math
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, List, Sequence as Seq, Tuple, Union

import mido

from playhead.tempo_map import DEFAULT_TICKS_PER_QUARTER, TempoEvent, TempoMeasureMap, TimeSignatureEvent
from playhead.validator import ValidationError, validate_sequence

DRUM_CHANNEL = 9


@dataclass(frozen=True)
class Note:
    pitch: int
    velocity: float
    start_tick: int
    duration_ticks: int
    start_time: float
    duration: float

    @property
    def end_tick(self) -> int:
        return self.start_tick + self.duration_ticks

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass(frozen=True)
class PitchBendEvent:
    tick: int
    time: float
    value: float  # -1..1


@dataclass(frozen=True)
class ControlChangeEvent:
    controller: int
    tick: int
    time: float
    value: float  # 0..1


@dataclass(frozen=True)
class ChannelAftertouchEvent:
    channel: int
    tick: int
    time: float
    value: float


@dataclass(frozen=True)
class NoteAftertouchEvent:
    channel: int
    pitch: int
    tick: int
    time: float
    value: float


@dataclass(frozen=True)
class Track:
    index: int
    name: str
    channel: int
    is_drum: bool = False
    notes: Tuple[Note, ...] = ()
    pitch_bends: Tuple[PitchBendEvent, ...] = ()
    control_changes: Tuple[ControlChangeEvent, ...] = ()
    channel_aftertouch: Tuple[ChannelAftertouchEvent, ...] = ()
    note_aftertouch: Tuple[NoteAftertouchEvent, ...] = ()


@dataclass(frozen=True)
class Sequence:
    """Immutable parsed sequence; shared read-only by the scheduler and UI queries."""

    ticks_per_quarter: int
    duration_ticks: int
    duration_seconds: float
    tempos: Tuple[TempoEvent, ...] = ()
    time_signatures: Tuple[TimeSignatureEvent, ...] = ()
    tracks: Tuple[Track, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "Sequence":
        """Build from the camelCase JSON form. Raises ValidationError on structural errors."""
        errors = validate_sequence(doc)
        if errors:
            raise ValidationError(errors)

        tempos = tuple(TempoEvent(tick=t.get("tick"), bpm=t.get("bpm")) for t in doc.get("tempos") or [])
        time_signatures = tuple(
            TimeSignatureEvent(tick=ts.get("tick"), numerator=ts.get("numerator"), denominator=ts.get("denominator"))
            for ts in doc.get("timeSignatures") or []
        )
        tracks = []
        for i, tr in enumerate(doc["tracks"]):
            channel = int(tr["channel"])
            notes = sorted(
                (
                    Note(
                        pitch=int(n["pitch"]),
                        velocity=float(n["velocity"]),
                        start_tick=int(n["startTick"]),
                        duration_ticks=int(n["durationTicks"]),
                        start_time=float(n["startTime"]),
                        duration=float(n["duration"]),
                    )
                    for n in tr.get("notes") or []
                ),
                key=lambda n: (n.start_tick, n.pitch),
            )
            tracks.append(
                Track(
                    index=i,
                    name=tr.get("name") or "",
                    channel=channel,
                    is_drum=bool(tr.get("isDrum", channel == DRUM_CHANNEL)),
                    notes=tuple(notes),
                    pitch_bends=_sorted_events(
                        PitchBendEvent(tick=int(e["tick"]), time=float(e["time"]), value=float(e["value"]))
                        for e in tr.get("pitchBends") or []
                    ),
                    control_changes=_sorted_events(
                        ControlChangeEvent(
                            controller=int(e["controller"]), tick=int(e["tick"]), time=float(e["time"]), value=float(e["value"])
                        )
                        for e in tr.get("controlChanges") or []
                    ),
                    channel_aftertouch=_sorted_events(
                        ChannelAftertouchEvent(channel=int(e["channel"]), tick=int(e["tick"]), time=float(e["time"]), value=float(e["value"]))
                        for e in tr.get("channelAftertouch") or []
                    ),
                    note_aftertouch=_sorted_events(
                        NoteAftertouchEvent(
                            channel=int(e["channel"]),
                            pitch=int(e["pitch"]),
                            tick=int(e["tick"]),
                            time=float(e["time"]),
                            value=float(e["value"]),
                        )
                        for e in tr.get("noteAftertouch") or []
                    ),
                )
            )

        ppq = doc.get("ticksPerQuarter")
        duration_ticks = doc.get("durationTicks")
        timing = TempoMeasureMap(ppq, duration_ticks, tempos, time_signatures)
        duration_seconds = doc.get("durationSeconds")
        if not isinstance(duration_seconds, (int, float)) or not math.isfinite(duration_seconds):
            duration_seconds = timing.duration_seconds
        return cls(
            ticks_per_quarter=timing.ppq,
            duration_ticks=timing.duration_ticks,
            duration_seconds=float(duration_seconds),
            tempos=tempos,
            time_signatures=time_signatures,
            tracks=tuple(tracks),
        )


def _sorted_events(events) -> tuple:
    return tuple(sorted(events, key=lambda e: (e.time, e.tick)))


def find_start_index_including_sustains(notes: Seq[Note], start_tick: float) -> int:
    """Earliest index (notes sorted by start tick) that might overlap `start_tick`.

    Includes notes that start before `start_tick` but are still sounding at it.
    """
    lo, hi = 0, len(notes)
    while lo < hi:
        mid = (lo + hi) // 2
        if notes[mid].start_tick < start_tick:
            lo = mid + 1
        else:
            hi = mid
    idx = lo
    for j in range(lo - 1, -1, -1):
        if notes[j].end_tick > start_tick:
            idx = j
    return idx


# --- Standard MIDI File adapter ---


@dataclass
class _TrackBuilder:
    channel: int
    name: str
    notes: List[Tuple[int, int, int, float]] = field(default_factory=list)  # (pitch, start, end, velocity)
    pitch_bends: List[Tuple[int, float]] = field(default_factory=list)
    control_changes: List[Tuple[int, int, float]] = field(default_factory=list)
    channel_aftertouch: List[Tuple[int, float]] = field(default_factory=list)
    note_aftertouch: List[Tuple[int, int, float]] = field(default_factory=list)


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


def load_midi_file(path: Union[str, Path]) -> Sequence:
    """Decode a .mid file with mido into a Sequence (one Track per source track and channel)."""
    mid = mido.MidiFile(str(path))
    ppq = mid.ticks_per_beat or DEFAULT_TICKS_PER_QUARTER

    tempos: List[TempoEvent] = []
    time_signatures: List[TimeSignatureEvent] = []
    builders: List[_TrackBuilder] = []
    duration_ticks = 0

    for mtrack in mid.tracks:
        abs_tick = 0
        name = ""
        by_channel: Dict[int, _TrackBuilder] = {}
        open_notes: Dict[Tuple[int, int], Deque[Tuple[int, float]]] = defaultdict(deque)

        def builder(ch: int) -> _TrackBuilder:
            if ch not in by_channel:
                by_channel[ch] = _TrackBuilder(channel=ch, name=name)
            return by_channel[ch]

        for msg in mtrack:
            abs_tick += msg.time
            if msg.is_meta:
                if msg.type == "set_tempo":
                    tempos.append(TempoEvent(tick=abs_tick, bpm=mido.tempo2bpm(msg.tempo)))
                elif msg.type == "time_signature":
                    time_signatures.append(TimeSignatureEvent(tick=abs_tick, numerator=msg.numerator, denominator=msg.denominator))
                elif msg.type == "track_name" and not name:
                    name = msg.name
                continue

            kind = msg.type
            if kind == "note_on" and msg.velocity > 0:
                open_notes[(msg.channel, msg.note)].append((abs_tick, msg.velocity / 127.0))
                builder(msg.channel)
            elif kind == "note_off" or (kind == "note_on" and msg.velocity == 0):
                pending = open_notes.get((msg.channel, msg.note))
                if pending:
                    start, vel = pending.popleft()
                    builder(msg.channel).notes.append((msg.note, start, abs_tick, vel))
            elif kind == "control_change":
                builder(msg.channel).control_changes.append((msg.control, abs_tick, _clamp01(msg.value / 127.0)))
            elif kind == "pitchwheel":
                builder(msg.channel).pitch_bends.append((abs_tick, max(-1.0, min(1.0, msg.pitch / 8192.0))))
            elif kind == "aftertouch":
                builder(msg.channel).channel_aftertouch.append((abs_tick, _clamp01(msg.value / 127.0)))
            elif kind == "polytouch":
                builder(msg.channel).note_aftertouch.append((msg.note, abs_tick, _clamp01(msg.value / 127.0)))

        # Hanging notes end with the track.
        for (ch, pitch), pending in open_notes.items():
            for start, vel in pending:
                by_channel[ch].notes.append((pitch, start, abs_tick, vel))

        duration_ticks = max(duration_ticks, abs_tick)
        for ch in sorted(by_channel):
            b = by_channel[ch]
            if not b.name:
                b.name = name
            builders.append(b)

    timing = TempoMeasureMap(ppq, duration_ticks, tempos, time_signatures)
    sec = timing.ticks_to_seconds

    tracks: List[Track] = []
    for index, b in enumerate(builders):
        notes = []
        for pitch, start, end, vel in sorted(b.notes, key=lambda n: (n[1], n[0])):
            start_time = sec(start)
            notes.append(
                Note(
                    pitch=pitch,
                    velocity=vel,
                    start_tick=start,
                    duration_ticks=end - start,
                    start_time=start_time,
                    duration=sec(end) - start_time,
                )
            )
        tracks.append(
            Track(
                index=index,
                name=b.name,
                channel=b.channel,
                is_drum=b.channel == DRUM_CHANNEL,
                notes=tuple(notes),
                pitch_bends=tuple(PitchBendEvent(tick=t, time=sec(t), value=v) for t, v in b.pitch_bends),
                control_changes=tuple(
                    ControlChangeEvent(controller=c, tick=t, time=sec(t), value=v) for c, t, v in b.control_changes
                ),
                channel_aftertouch=tuple(
                    ChannelAftertouchEvent(channel=b.channel, tick=t, time=sec(t), value=v) for t, v in b.channel_aftertouch
                ),
                note_aftertouch=tuple(
                    NoteAftertouchEvent(channel=b.channel, pitch=p, tick=t, time=sec(t), value=v) for p, t, v in b.note_aftertouch
                ),
            )
        )

    return Sequence(
        ticks_per_quarter=timing.ppq,
        duration_ticks=timing.duration_ticks,
        duration_seconds=timing.duration_seconds,
        tempos=tuple(tempos),
        time_signatures=tuple(time_signatures),
        tracks=tuple(tracks),
    )


def load_sequence(path: Union[str, Path]) -> Sequence:
    """Load a `.mid`/`.midi` file via mido or a `.json` document via Sequence.from_dict."""
    p = Path(path)
    if p.suffix.lower() == ".json":
        with p.open("r", encoding="utf-8") as f:
            return Sequence.from_dict(json.load(f))
    return load_midi_file(p)

