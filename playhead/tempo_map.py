from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

DEFAULT_TICKS_PER_QUARTER = 480
DEFAULT_BPM = 120.0
DEFAULT_TIME_SIGNATURE: Tuple[int, int] = (4, 4)

# Floor epsilon (ticks) for seconds -> ticks; keeps integer ticks round-tripping.
TICK_EPSILON = 1e-6


@dataclass(frozen=True)
class TempoEvent:
    tick: int
    bpm: float


@dataclass(frozen=True)
class TimeSignatureEvent:
    tick: int
    numerator: int
    denominator: int

    @property
    def time_signature(self) -> Tuple[int, int]:
        return (self.numerator, self.denominator)


@dataclass(frozen=True)
class TempoSegment:
    start_tick: int
    end_tick: int
    bpm: float
    start_seconds: float
    end_seconds: float


@dataclass(frozen=True)
class MeasureInfo:
    start_tick: float
    time_signature: Tuple[int, int]


@dataclass(frozen=True)
class BarBeatPosition:
    """1-based bar and beat, plus 0..999 progress within the beat."""

    bar: int
    beat: int
    sub_beat_1000: int
    time_signature: Tuple[int, int]


@dataclass(frozen=True)
class PageRange:
    page_index: int
    start_bar: int
    end_bar: int


@dataclass(frozen=True)
class TickRange:
    start_tick: float
    end_tick: float


@dataclass(frozen=True)
class SeekSteps:
    beat: int
    bar: float
    page: float


def _is_finite(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _sanitize(value: Any, upper: float) -> float:
    """NaN/garbage -> 0, +inf -> upper, then clamp to [0, upper]."""
    if _is_finite(value):
        v = float(value)
    elif isinstance(value, float) and value == math.inf:
        v = upper
    else:
        v = 0.0
    return max(0.0, min(upper, v))


def _int_if_whole(v: float) -> float:
    return int(v) if float(v).is_integer() else v


def _floor_or(value: Any, default: int, lo: int) -> int:
    if not _is_finite(value):
        return default
    return max(lo, int(math.floor(value)))


def ticks_per_beat(ppq: int, time_signature: Tuple[int, int]) -> float:
    # Beat is the denominator note length (4 => quarter note).
    return (ppq * 4) / time_signature[1]


def _ticks_to_seconds_delta(ticks: float, bpm: float, ppq: int) -> float:
    return (ticks / ppq) * (60.0 / bpm)


def _seconds_to_ticks_delta(seconds: float, bpm: float, ppq: int) -> float:
    return (seconds * bpm * ppq) / 60.0


def _dedupe_last_wins(events: List[Any]) -> List[Any]:
    out: List[Any] = []
    for ev in events:
        if out and out[-1].tick == ev.tick:
            out[-1] = ev
        else:
            out.append(ev)
    return out


def normalize_tempos(tempos: Iterable[Any]) -> List[TempoEvent]:
    """Drop invalid entries, floor/sort ticks, collapse duplicates, add the tick-0 default."""
    kept: List[TempoEvent] = []
    for t in tempos:
        tick = _field(t, "tick")
        bpm = _field(t, "bpm")
        if not (_is_finite(tick) and tick >= 0 and _is_finite(bpm) and bpm > 0):
            continue
        kept.append(TempoEvent(tick=int(math.floor(tick)), bpm=float(bpm)))
    # Stable sort keeps input order for equal ticks, so the last one still wins.
    kept.sort(key=lambda e: e.tick)
    deduped = _dedupe_last_wins(kept)
    if not deduped or deduped[0].tick != 0:
        # MIDI default tempo before the first set-tempo event.
        deduped.insert(0, TempoEvent(tick=0, bpm=DEFAULT_BPM))
    return deduped


def normalize_time_signatures(time_signatures: Iterable[Any]) -> List[TimeSignatureEvent]:
    kept: List[TimeSignatureEvent] = []
    for ts in time_signatures:
        tick = _field(ts, "tick")
        num = _field(ts, "numerator")
        den = _field(ts, "denominator")
        if not (_is_finite(tick) and tick >= 0 and _is_finite(num) and _is_finite(den)):
            continue
        # Validate after flooring so 0.5 does not sneak through as 0.
        n, d = int(math.floor(num)), int(math.floor(den))
        if n <= 0 or d <= 0:
            continue
        kept.append(TimeSignatureEvent(tick=int(math.floor(tick)), numerator=n, denominator=d))
    kept.sort(key=lambda e: e.tick)
    deduped = _dedupe_last_wins(kept)
    if not deduped or deduped[0].tick != 0:
        deduped.insert(0, TimeSignatureEvent(tick=0, numerator=DEFAULT_TIME_SIGNATURE[0], denominator=DEFAULT_TIME_SIGNATURE[1]))
    return deduped


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class TempoMeasureMap:
    """Tick <-> second conversion and bar/beat/page queries for one sequence.

    Built once from sparse tempo and time-signature events. Every query is
    pure and sanitizes its numeric arguments instead of raising.
    """

    def __init__(
        self,
        ticks_per_quarter: Any = DEFAULT_TICKS_PER_QUARTER,
        duration_ticks: Any = 0,
        tempos: Optional[Iterable[Any]] = None,
        time_signatures: Optional[Iterable[Any]] = None,
    ) -> None:
        self.ppq: int = int(ticks_per_quarter) if _is_finite(ticks_per_quarter) and ticks_per_quarter > 0 else DEFAULT_TICKS_PER_QUARTER
        self.duration_ticks: int = int(math.floor(max(0.0, duration_ticks))) if _is_finite(duration_ticks) else 0

        self.tempos: List[TempoEvent] = normalize_tempos(tempos or [])
        self._segments: List[TempoSegment] = self._build_tempo_segments(self.tempos)
        self._segment_start_ticks = [s.start_tick for s in self._segments]
        self._segment_start_seconds = [s.start_seconds for s in self._segments]
        self.duration_seconds: float = self._segments[-1].end_seconds if self._segments else 0.0

        self.time_signatures: List[TimeSignatureEvent] = normalize_time_signatures(time_signatures or [])
        self._measures: List[MeasureInfo] = self._build_measures(self.time_signatures)
        self._measure_starts = [m.start_tick for m in self._measures]

    @classmethod
    def from_sequence(cls, seq: Any) -> "TempoMeasureMap":
        return cls(
            ticks_per_quarter=seq.ticks_per_quarter,
            duration_ticks=seq.duration_ticks,
            tempos=seq.tempos,
            time_signatures=seq.time_signatures,
        )

    @property
    def segments(self) -> List[TempoSegment]:
        return list(self._segments)

    @property
    def measures(self) -> List[MeasureInfo]:
        return list(self._measures)

    # --- Construction ---
    def _build_tempo_segments(self, tempos: List[TempoEvent]) -> List[TempoSegment]:
        segments: List[TempoSegment] = []
        seconds_cursor = 0.0
        for i, cur in enumerate(tempos):
            next_tick = tempos[i + 1].tick if i + 1 < len(tempos) else self.duration_ticks
            start_tick = cur.tick
            end_tick = max(start_tick, min(next_tick, self.duration_ticks))
            seg_seconds = _ticks_to_seconds_delta(end_tick - start_tick, cur.bpm, self.ppq)
            seg = TempoSegment(
                start_tick=start_tick,
                end_tick=end_tick,
                bpm=cur.bpm,
                start_seconds=seconds_cursor,
                end_seconds=seconds_cursor + seg_seconds,
            )
            segments.append(seg)
            seconds_cursor = seg.end_seconds
            if end_tick >= self.duration_ticks:
                break
        return segments

    def _build_measures(self, time_signatures: List[TimeSignatureEvent]) -> List[MeasureInfo]:
        measures: List[MeasureInfo] = []
        ts_index = 0
        current = time_signatures[0].time_signature
        next_ts_tick = time_signatures[1].tick if len(time_signatures) > 1 else math.inf

        cursor: float = 0
        while cursor <= self.duration_ticks:
            measures.append(MeasureInfo(start_tick=_int_if_whole(cursor), time_signature=current))
            measure_len = ticks_per_beat(self.ppq, current) * current[0]
            next_measure = cursor + measure_len
            if next_measure > next_ts_tick:
                # Signature changes mid-measure: forced boundary at the change tick.
                cursor = next_ts_tick
            else:
                cursor = next_measure

            if cursor >= next_ts_tick:
                ts_index += 1
                if ts_index < len(time_signatures):
                    current = time_signatures[ts_index].time_signature
                next_ts_tick = time_signatures[ts_index + 1].tick if ts_index + 1 < len(time_signatures) else math.inf

            if not math.isfinite(cursor) or cursor <= measures[-1].start_tick:
                break
        return measures

    # --- Time conversion ---
    def ticks_to_seconds(self, ticks: Any) -> float:
        t = _sanitize(ticks, float(self.duration_ticks))
        idx = max(0, bisect_right(self._segment_start_ticks, t) - 1)
        seg = self._segments[idx]
        return seg.start_seconds + _ticks_to_seconds_delta(t - seg.start_tick, seg.bpm, self.ppq)

    def seconds_to_ticks(self, seconds: Any) -> int:
        s = _sanitize(seconds, self.duration_seconds)
        idx = max(0, bisect_right(self._segment_start_seconds, s) - 1)
        seg = self._segments[idx]
        tick_float = seg.start_tick + _seconds_to_ticks_delta(s - seg.start_seconds, seg.bpm, self.ppq)
        tick = int(math.floor(tick_float + TICK_EPSILON))
        return max(0, min(self.duration_ticks, tick))

    # --- Bars and beats ---
    def get_bar_beat_at_ticks(self, ticks: Any) -> BarBeatPosition:
        t = _sanitize(ticks, float(self.duration_ticks))
        # End-exclusive: the exact end belongs to the last real bar.
        if self.duration_ticks > 0 and t == self.duration_ticks:
            t = self.duration_ticks - 1
        measure_index = max(0, bisect_right(self._measure_starts, t) - 1)
        measure = self._measures[measure_index]

        ts = measure.time_signature
        tpb = ticks_per_beat(self.ppq, ts)
        into_measure = t - measure.start_tick
        beat_index = min(ts[0] - 1, max(0, int(math.floor(into_measure / tpb))))

        into_beat = into_measure - beat_index * tpb
        progress = max(0.0, min(0.999999, into_beat / tpb)) if tpb > 0 else 0.0
        sub_beat = min(999, max(0, int(math.floor(progress * 1000))))
        return BarBeatPosition(bar=measure_index + 1, beat=beat_index + 1, sub_beat_1000=sub_beat, time_signature=ts)

    def get_bar_start_tick(self, bar: Any) -> float:
        b = int(math.floor(bar)) if _is_finite(bar) else 1
        idx = b - 1
        if idx <= 0:
            return 0
        if idx >= len(self._measures):
            return self.duration_ticks
        return self._measures[idx].start_tick

    # --- Paging ---
    def get_page_index_for_bar(self, bar: Any, page_bars: Any) -> int:
        b = _floor_or(bar, 1, 1)
        bars = _floor_or(page_bars, 1, 1)
        return (b - 1) // bars

    def get_page_range_for_bar(self, bar: Any, page_bars: Any) -> PageRange:
        b = _floor_or(bar, 1, 1)
        bars = _floor_or(page_bars, 1, 1)
        page_index = self.get_page_index_for_bar(b, bars)
        start_bar = page_index * bars + 1
        return PageRange(page_index=page_index, start_bar=start_bar, end_bar=start_bar + bars - 1)

    def get_page_tick_range(self, page_index: Any, page_bars: Any) -> TickRange:
        pi = _floor_or(page_index, 0, 0)
        bars = _floor_or(page_bars, 1, 1)
        start_bar = pi * bars + 1
        return TickRange(start_tick=self.get_bar_start_tick(start_bar), end_tick=self.get_bar_start_tick(start_bar + bars))

    def get_seek_step_ticks_at_ticks(self, ticks: Any, page_bars: Any) -> SeekSteps:
        """Beat/bar/page step sizes from the actual measure boundaries around `ticks`."""
        pos = self.get_bar_beat_at_ticks(ticks)
        tpb = ticks_per_beat(self.ppq, pos.time_signature)
        beat = max(1, int(math.floor(tpb + 0.5)))

        bar = max(1, self.get_bar_start_tick(pos.bar + 1) - self.get_bar_start_tick(pos.bar))

        page_index = self.get_page_index_for_bar(pos.bar, page_bars)
        rng = self.get_page_tick_range(page_index, page_bars)
        page = max(1, rng.end_tick - rng.start_tick)
        return SeekSteps(beat=beat, bar=bar, page=page)
