from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence


@dataclass(frozen=True)
class AutomationPoint:
    time: float
    value: float


@dataclass(frozen=True)
class CompactionSettings:
    """Per-stream thinning thresholds.

    min_interval: seconds; points closer than this to the start of the current
    bucket replace its kept point (latest value wins).
    epsilon: value delta at or below which a point is dropped as redundant.
    """

    min_interval: float
    epsilon: float


# 14-bit pitch wheel resolution, ~display frame rate.
PITCH_BEND_COMPACTION = CompactionSettings(min_interval=1.0 / 60.0, epsilon=1.0 / 8192.0)
# 7-bit controller resolution.
CONTROLLER_COMPACTION = CompactionSettings(min_interval=1.0 / 30.0, epsilon=1.0 / 127.0)

# Stream names used by the scheduler; any of them can be overridden.
STREAM_PITCH_BEND = "pitch_bend"
STREAM_MOD_WHEEL = "mod_wheel"
STREAM_AFTERTOUCH = "aftertouch"
STREAM_TREMOLO = "tremolo"
STREAM_VOLUME = "volume"
STREAM_EXPRESSION = "expression"
STREAM_PAN = "pan"

DEFAULT_COMPACTION: Dict[str, CompactionSettings] = {
    STREAM_PITCH_BEND: PITCH_BEND_COMPACTION,
    STREAM_MOD_WHEEL: CONTROLLER_COMPACTION,
    STREAM_AFTERTOUCH: CONTROLLER_COMPACTION,
    STREAM_TREMOLO: CONTROLLER_COMPACTION,
    STREAM_VOLUME: CONTROLLER_COMPACTION,
    STREAM_EXPRESSION: CONTROLLER_COMPACTION,
    STREAM_PAN: CONTROLLER_COMPACTION,
}


def resolve_compaction(overrides: Optional[Dict[str, CompactionSettings]] = None) -> Dict[str, CompactionSettings]:
    out = dict(DEFAULT_COMPACTION)
    for name, settings in (overrides or {}).items():
        if name not in out:
            raise KeyError(f"unknown automation stream: {name}")
        out[name] = settings
    return out


def sort_points(points: Iterable[AutomationPoint]) -> List[AutomationPoint]:
    return sorted(points, key=lambda p: p.time)


class AutomationCompactor:
    """Reduce a dense automation stream to its significant points.

    The first point is always kept. After it, points falling within
    min_interval of the point that opened the current bucket replace that
    bucket's kept point, so output size stays within duration / min_interval + 2
    regardless of input density.
    """

    def __init__(self, settings: CompactionSettings) -> None:
        self.settings = settings

    def compact(self, points: Sequence[AutomationPoint]) -> List[AutomationPoint]:
        ordered = sort_points(points)
        if len(ordered) <= 1:
            return ordered
        min_interval = self.settings.min_interval
        epsilon = self.settings.epsilon
        kept: List[AutomationPoint] = [ordered[0]]
        bucket_start = ordered[0].time
        for p in ordered[1:]:
            if abs(p.value - kept[-1].value) <= epsilon:
                continue
            if len(kept) > 1 and p.time - bucket_start < min_interval:
                # Same bucket: keep the latest value.
                kept[-1] = p
                continue
            kept.append(p)
            bucket_start = p.time
        return kept


def compact(points: Sequence[AutomationPoint], settings: CompactionSettings) -> List[AutomationPoint]:
    return AutomationCompactor(settings).compact(points)


def latest_at_or_before(points: Sequence[AutomationPoint], seconds: float) -> Optional[AutomationPoint]:
    """Last point with time <= seconds in a time-sorted stream."""
    latest: Optional[AutomationPoint] = None
    for p in points:
        if p.time <= seconds:
            latest = p
        else:
            break
    return latest


def compaction_from_intervals(
    pitch_bend_interval_ms: Optional[float] = None, cc_interval_ms: Optional[float] = None
) -> Dict[str, CompactionSettings]:
    """Overrides for the minimum intervals (milliseconds); epsilons stay at their defaults."""
    out: Dict[str, CompactionSettings] = {}
    for name, base in DEFAULT_COMPACTION.items():
        ms = pitch_bend_interval_ms if name == STREAM_PITCH_BEND else cc_interval_ms
        if ms is not None:
            out[name] = CompactionSettings(min_interval=max(0.0, ms) / 1000.0, epsilon=base.epsilon)
    return out
