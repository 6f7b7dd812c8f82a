from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from playhead.automation import AutomationPoint

DEFAULT_PITCH_BEND_RANGE_SEMITONES = 2.0
SUSTAIN_THRESHOLD = 0.5

# Controller numbers
CC_MOD_WHEEL = 1
CC_DATA_ENTRY_MSB = 6
CC_VOLUME = 7
CC_PAN = 10
CC_EXPRESSION = 11
CC_DATA_ENTRY_LSB = 38
CC_SUSTAIN = 64
CC_TREMOLO_DEPTH = 92
CC_RPN_LSB = 100
CC_RPN_MSB = 101

RPN_CONTROLLERS = (CC_RPN_MSB, CC_RPN_LSB, CC_DATA_ENTRY_MSB, CC_DATA_ENTRY_LSB)
# Selector bytes go out before data entry at the same timestamp.
_RPN_PRIORITY = {CC_RPN_MSB: 0, CC_RPN_LSB: 1, CC_DATA_ENTRY_MSB: 2, CC_DATA_ENTRY_LSB: 3}
_RPN_NULL = 127


def clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


def clamp11(v: float) -> float:
    return max(-1.0, min(1.0, v))


def linear_gain_to_db(gain: float) -> float:
    g = clamp01(gain)
    if g <= 0.00001:
        return -80.0
    return 20.0 * math.log10(g)


def cc_to_pan(value: float) -> float:
    """0..1 controller value to -1 (left) .. +1 (right)."""
    return clamp11(value * 2.0 - 1.0)


def to_7bit(value: float) -> int:
    return max(0, min(127, int(math.floor(value * 127 + 0.5))))


def validate_channel(channel: Any) -> int:
    if isinstance(channel, bool) or not isinstance(channel, int) or not (0 <= channel <= 15):
        raise ValueError(f"MIDI channel must be an integer 0..15, got {channel!r}")
    return channel


@dataclass
class ChannelAutomationState:
    """Mutable automation record for one MIDI channel during a playback session."""

    channel: int
    pitch_bend_range_semitones: float = DEFAULT_PITCH_BEND_RANGE_SEMITONES
    pitch_bend_value: float = 0.0
    mod_wheel: float = 0.0
    aftertouch: float = 0.0
    tremolo_depth: float = 0.0
    volume: float = 1.0
    expression: float = 1.0
    pan: float = 0.0
    sustain_down: bool = False
    sustained_notes: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_channel(self.channel)

    def reset(self) -> None:
        self.pitch_bend_range_semitones = DEFAULT_PITCH_BEND_RANGE_SEMITONES
        self.pitch_bend_value = 0.0
        self.mod_wheel = 0.0
        self.aftertouch = 0.0
        self.tremolo_depth = 0.0
        self.volume = 1.0
        self.expression = 1.0
        self.pan = 0.0
        self.sustain_down = False
        self.sustained_notes.clear()

    # --- Derived synthesis parameters ---
    @property
    def detune_cents(self) -> float:
        return self.pitch_bend_value * self.pitch_bend_range_semitones * 100.0

    @property
    def gain_db(self) -> float:
        return linear_gain_to_db(self.volume * self.expression)

    @property
    def vibrato_depth(self) -> float:
        return clamp01(max(self.mod_wheel, self.aftertouch))

    # --- Sustain pedal ---
    def set_sustain(self, value: float) -> List[int]:
        """Apply a CC64 value; returns note-offs to send on a down -> up transition.

        A pitch appears once per deferred note-off, so overlapping voices of
        the same pitch are all released.
        """
        down = value >= SUSTAIN_THRESHOLD
        was_down = self.sustain_down
        self.sustain_down = down
        if was_down and not down:
            released = [p for p in sorted(self.sustained_notes) for _ in range(self.sustained_notes[p])]
            self.sustained_notes.clear()
            return released
        return []

    def defer_release(self, pitch: int) -> bool:
        """True if the pedal holds this note-off; the pitch is then remembered."""
        if self.sustain_down:
            self.sustained_notes[pitch] = self.sustained_notes.get(pitch, 0) + 1
            return True
        return False

    def take_sustained(self, pitch: int) -> int:
        """Number of pedal-held note-offs for `pitch` to send before a re-attack."""
        return self.sustained_notes.pop(pitch, 0)

    def release_all(self) -> None:
        self.sustain_down = False
        self.sustained_notes.clear()


@dataclass(frozen=True)
class RpnEvent:
    time: float
    controller: int
    value: float


def derive_pitch_bend_range(events: Iterable[RpnEvent]) -> List[AutomationPoint]:
    """Turn RPN selector/data-entry controller traffic into a pitch-bend-range stream.

    Data entry only counts while the selector is RPN 0,0 (pitch bend
    sensitivity). Range = MSB semitones + LSB cents / 100.
    """
    ordered = sorted(
        (e for e in events if e.controller in _RPN_PRIORITY),
        key=lambda e: (e.time, _RPN_PRIORITY[e.controller]),
    )
    out: List[AutomationPoint] = []
    rpn_msb = _RPN_NULL
    rpn_lsb = _RPN_NULL
    semitones = DEFAULT_PITCH_BEND_RANGE_SEMITONES
    cents = 0
    for e in ordered:
        v7 = to_7bit(e.value)
        if e.controller == CC_RPN_MSB:
            rpn_msb = v7
            continue
        if e.controller == CC_RPN_LSB:
            rpn_lsb = v7
            continue
        if rpn_msb != 0 or rpn_lsb != 0:
            continue
        if e.controller == CC_DATA_ENTRY_MSB:
            semitones = v7
        else:
            cents = v7
        out.append(AutomationPoint(time=e.time, value=semitones + cents / 100.0))
    return out
